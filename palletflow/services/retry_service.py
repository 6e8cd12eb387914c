from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from palletflow.config import settings
from palletflow.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def constant_backoff(seconds: float) -> Callable[[int], float]:
    return lambda _attempt: seconds


def exponential_backoff(base_seconds: float, cap_seconds: float = 600.0) -> Callable[[int], float]:
    """Delay before retry number `attempt` (1-based): base, 2*base, 4*base, ... capped."""
    return lambda attempt: min(cap_seconds, base_seconds * (2 ** max(attempt - 1, 0)))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff: Callable[[int], float]
    is_retryable: Callable[[BaseException], bool]
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)
    name: str = 'operation'

    def call(self, fn: Callable[[], T]) -> T:
        if self.max_attempts < 1:
            raise ValueError('Retry policy needs at least one attempt')
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as exc:
                if attempt >= self.max_attempts or not self.is_retryable(exc):
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    '%s attempt %s/%s failed (%s); retrying in %.2fs',
                    self.name,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                self.sleep(delay)
                attempt += 1


def _is_store_unavailable(exc: BaseException) -> bool:
    return isinstance(exc, StoreUnavailableError)


def store_write_policy(*, sleep: Callable[[float], None] = time.sleep) -> RetryPolicy:
    # Writes retry on timeouts only; everything else is reported to the caller as-is.
    return RetryPolicy(
        max_attempts=settings.store_write_attempts,
        backoff=constant_backoff(settings.store_retry_backoff_seconds),
        is_retryable=_is_store_unavailable,
        sleep=sleep,
        name='store write',
    )


def email_policy(*, sleep: Callable[[float], None] = time.sleep) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.email_max_attempts,
        backoff=exponential_backoff(settings.email_backoff_base_seconds),
        is_retryable=lambda exc: not isinstance(exc, (ValueError, TypeError)),
        sleep=sleep,
        name='shipping email',
    )


def _is_store_io_error(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


def run_in_transaction(db: Session, operation: Callable[[], T], *, policy: RetryPolicy | None = None) -> T:
    """Run `operation` and commit as one unit; roll back on any error.

    Each retry calls `operation` again from the start, so every read it makes
    (eligibility, remaining quantities) is taken fresh after the rollback.
    """
    policy = policy or store_write_policy()

    def _attempt() -> T:
        try:
            result = operation()
            db.commit()
            return result
        except Exception as exc:
            db.rollback()
            if _is_store_io_error(exc):
                raise StoreUnavailableError('The store did not respond in time; please retry') from exc
            raise

    return policy.call(_attempt)
