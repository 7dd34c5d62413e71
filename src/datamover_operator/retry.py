from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from .constants import HANDOFF_BACKOFF_SECONDS, HANDOFF_UPDATE_ATTEMPTS
from .k8s import ResourceConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetriesExhaustedError(RuntimeError):
    def __init__(self, *, operation: str, attempts: int, last_error: Exception) -> None:
        super().__init__(f"{operation} still conflicting after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


def update_with_retry(
    operation: str,
    read_mutate_write: Callable[[], T],
    *,
    attempts: int = HANDOFF_UPDATE_ATTEMPTS,
    backoff_seconds: float = HANDOFF_BACKOFF_SECONDS,
) -> T:
    """Run ``read_mutate_write`` until it stops hitting version conflicts.

    The callable must re-read the object on every call so that each attempt
    carries a fresh resourceVersion. Backoff grows linearly with the attempt
    number. Errors other than ``ResourceConflictError`` propagate immediately.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return read_mutate_write()
        except ResourceConflictError as error:
            if attempt >= attempts:
                raise RetriesExhaustedError(operation=operation, attempts=attempts, last_error=error) from error
            logger.info("Conflict during %s, retrying (attempt %d/%d)", operation, attempt, attempts)
            time.sleep(backoff_seconds * attempt)
