"""Retry helper for transient store contention."""

from __future__ import annotations

import time
from typing import Callable, TypeVar

from privacy_vault.core.errors import AuditWriteFailure, PersistenceFailure
from privacy_vault.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE = (PersistenceFailure, AuditWriteFailure)


def with_retry(operation: Callable[[], T], retries: int = 1, backoff: float = 0.05) -> T:
    """Run ``operation``, retrying store and audit failures with linear backoff."""
    attempt = 0
    while True:
        try:
            return operation()
        except RETRYABLE as exc:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning("Retrying after %s (attempt %s)", exc.code, attempt)
            time.sleep(backoff * attempt)


__all__ = ["with_retry"]
