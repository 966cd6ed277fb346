"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ledgerhook.config import Settings
from ledgerhook.ledger import CallbackRegistry
from ledgerhook.models import CompletionNotice, OperationInput, TransactionStatus, WebhookJob, WebhookPayload
from ledgerhook.storage import InMemoryStore, Keys
from ledgerhook.webhooks import DeadLetterStore, DeliveryArchive, WebhookDispatcher, WebhookQueue

# Add tests directory to path so test modules can import these helpers
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

START_TIME = 1_700_000_000.0
SECRET = "test_secret_for_signatures"


class FakeClock:
    """Settable replacement for time.time."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    @property
    def now_ms(self) -> int:
        return int(self.now * 1000)


class FakeLedgerBackend:
    """Ledger backend that hands out fixed ids and never completes on its own.

    Tests report completion by calling the ledger directly.
    """

    def __init__(self, tx_ids: list[str] | None = None, error: Exception | None = None) -> None:
        self._tx_ids = list(tx_ids or [])
        self._counter = 0
        self.error = error
        self.submissions: list[tuple[str, str, OperationInput]] = []
        self.handler = None
        self.closed = False

    def new_transaction_id(self) -> str:
        if self._tx_ids:
            return self._tx_ids.pop(0)
        self._counter += 1
        return f"tx_fake_{self._counter}"

    async def submit(self, tx_id: str, correlation_id: str, operation: OperationInput) -> None:
        self.submissions.append((tx_id, correlation_id, operation))
        if self.error is not None:
            raise self.error

    def bind_completion_handler(self, handler) -> None:
        self.handler = handler

    async def close(self) -> None:
        self.closed = True


def make_operation(**overrides: str) -> OperationInput:
    """Create a valid operation input."""
    values = {
        "container_id": "container-7",
        "instruction": "release",
        "source": "port-system",
        "timestamp": "2024-01-01T00:00:00+00:00",
    }
    values.update(overrides)
    return OperationInput(**values)


def make_job(
    correlation_id: str = "abc-1",
    callback_url: str = "https://example.com/hooks/ledger",
    **overrides: object,
) -> WebhookJob:
    """Create a webhook job for a COMMITTED transaction."""
    payload = WebhookPayload(
        tx_id="tx_42",
        correlation_id=correlation_id,
        status=TransactionStatus.COMMITTED,
        block_number=100,
        payload_hash="sha256:abc",
    )
    job = WebhookJob.create(payload, callback_url)
    return job.model_copy(update=overrides)


def committed(tx_id: str, block_number: int = 100) -> CompletionNotice:
    """Completion notice for a committed transaction."""
    return CompletionNotice(
        tx_id=tx_id,
        status=TransactionStatus.COMMITTED,
        block_number=block_number,
        payload_hash="sha256:feed",
    )


def http_response(status_code: int, text: str = "") -> MagicMock:
    """Create a mock httpx response."""
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


@contextmanager
def mock_http(*outcomes: object) -> Iterator[AsyncMock]:
    """Patch httpx.AsyncClient so each POST returns or raises the next outcome.

    Integers become responses with that status; exceptions are raised.

    Yields:
        The mocked client, for asserting on ``post`` calls.
    """
    side_effect = [http_response(o) if isinstance(o, int) else o for o in outcomes]

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(side_effect=side_effect)
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=None)
        mock_client_class.return_value = mock_client
        yield mock_client


@pytest.fixture
def store() -> InMemoryStore:
    """Fresh in-memory store."""
    return InMemoryStore()


@pytest.fixture
def keys() -> Keys:
    return Keys()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(store: InMemoryStore, keys: Keys) -> WebhookQueue:
    return WebhookQueue(store, keys)


@pytest.fixture
def dead_letters(store: InMemoryStore, queue: WebhookQueue, keys: Keys) -> DeadLetterStore:
    return DeadLetterStore(store, queue, keys)


@pytest.fixture
def archive(
    store: InMemoryStore,
    queue: WebhookQueue,
    dead_letters: DeadLetterStore,
    keys: Keys,
) -> DeliveryArchive:
    return DeliveryArchive(store, queue, dead_letters, keys)


@pytest.fixture
def callbacks(store: InMemoryStore, keys: Keys) -> CallbackRegistry:
    return CallbackRegistry(store, keys)


@pytest.fixture
def dispatcher(
    queue: WebhookQueue,
    dead_letters: DeadLetterStore,
    archive: DeliveryArchive,
    clock: FakeClock,
) -> WebhookDispatcher:
    """Dispatcher on the shared in-memory pipeline with a fake clock."""
    return WebhookDispatcher(
        queue,
        dead_letters,
        archive,
        secret=SECRET,
        poll_interval_seconds=0.01,
        clock=clock,
    )


@pytest.fixture
def settings() -> Settings:
    """Test settings with a fixed signing secret."""
    return Settings(env="test", webhook_secret=SECRET, redis_url=None)
