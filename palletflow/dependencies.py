from functools import lru_cache

from palletflow.config import settings
from palletflow.services.email_dispatcher import EmailDispatcher
from palletflow.services.item_lock_service import ItemLocks
from palletflow.services.provider_factory import get_email_dispatcher as _configured_email_dispatcher


@lru_cache(maxsize=1)
def get_item_locks() -> ItemLocks:
    # One registry per process; every request for the same item contends on it.
    return ItemLocks(timeout_seconds=settings.item_lock_timeout_seconds)


def get_email_dispatcher() -> EmailDispatcher:
    return _configured_email_dispatcher()
