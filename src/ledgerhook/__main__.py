"""Entry point for running the Ledgerhook worker as a module.

Usage:
    python -m ledgerhook

Configure with LEDGERHOOK_* environment variables (see ledgerhook.config).
"""

from .worker import main

if __name__ == "__main__":
    main()
