# Overview: Retry/backoff policy shared by database commits and marketplace HTTP calls.

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

T = TypeVar("T")


@dataclass(frozen=True)
class Backoff:
    """
    Bounded exponential backoff: delay(n) = base * 2**n, capped at `cap`.

    `attempts` is the total number of tries, not the number of retries.
    """
    attempts: int = 3
    base: float = 0.1
    cap: float | None = None

    def delay(self, attempt: int) -> float:
        value = self.base * (2 ** attempt)
        if self.cap is not None:
            value = min(value, self.cap)
        return value


DB_BACKOFF = Backoff(attempts=3, base=0.1)


def run_with_retry(func: Callable[[], T], *, backoff: Backoff = DB_BACKOFF, sleep=time.sleep) -> T:
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, "database is locked") and
    StaleDataError (version_id conflicts on InventoryItem).
    """
    for attempt in range(backoff.attempts):
        try:
            return func()
        except (OperationalError, StaleDataError):
            db.session.rollback()
            if attempt >= backoff.attempts - 1:
                raise
            sleep(backoff.delay(attempt))
    raise RuntimeError("run_with_retry called with zero attempts")


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield lists of at most `size` items."""
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
