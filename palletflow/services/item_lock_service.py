from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager

from sqlalchemy import text
from sqlalchemy.orm import Session

from palletflow.errors import ConcurrencyConflictError


class ItemLocks:
    """Exclusive access keyed by item_id within this process.

    Workers in other processes are serialized by `lock_items_for_transaction`;
    this registry keeps two requests in the same worker from queuing on the
    database for one item's remaining-quantity budget.
    """

    def __init__(self, *, timeout_seconds: float = 10.0) -> None:
        self.timeout_seconds = timeout_seconds
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, item_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(item_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[item_id] = lock
            return lock

    @contextmanager
    def hold(self, item_id: str) -> Iterator[None]:
        lock = self._lock_for(item_id)
        if not lock.acquire(timeout=self.timeout_seconds):
            raise ConcurrencyConflictError(f'Item {item_id} is busy with another allocation; please retry')
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def hold_many(self, item_ids) -> Iterator[None]:
        # Sorted acquisition keeps two multi-item holders from deadlocking.
        with ExitStack() as stack:
            for item_id in sorted(set(item_ids)):
                stack.enter_context(self.hold(item_id))
            yield


def lock_items_for_transaction(db: Session, item_ids) -> None:
    """Take a PostgreSQL advisory lock per item, held until the transaction ends.

    Serializes allocators across worker processes. Other dialects have no
    advisory locks and rely on `ItemLocks` alone.
    """
    if db.get_bind().dialect.name != 'postgresql':
        return
    for item_id in sorted(set(item_ids)):
        db.execute(
            text('SELECT pg_advisory_xact_lock(hashtext(:advisory_key))'),
            {'advisory_key': f'item:{item_id}'},
        )
