"""Base model and time helpers shared by Ledgerhook records."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Self

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def now_ms() -> int:
    """Current Unix time in milliseconds.

    Used as the score of the retry schedule and as the suffix of job ids.
    """
    return int(time.time() * 1000)


class StoredModel(BaseModel):
    """Base class for records persisted in the key-value store.

    Fields are snake_case in Python and camelCase on the wire, so records
    written by other gateway components (``txId``, ``correlationId``) load
    unchanged. Both spellings are accepted on input.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json(self) -> str:
        """Serialize for the store or the webhook body."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, data: str | bytes) -> Self:
        """Deserialize a record read from the store."""
        return cls.model_validate_json(data)


__all__ = ["StoredModel", "now_ms", "utc_now"]
