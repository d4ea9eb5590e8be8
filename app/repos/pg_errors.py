"""Translate driver-level connectivity failures into StoreUnavailable."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from app.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Wrap a block of repo I/O.

    Integrity and programming errors pass through untouched; only
    "cannot reach / talk to the database" becomes StoreUnavailable.
    """
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as exc:
        logger.warning("Database %s failed: %s", operation, exc)
        raise StoreUnavailable(f"database {operation} failed") from exc
