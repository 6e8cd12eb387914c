from __future__ import annotations

from functools import lru_cache

from palletflow.config import settings
from palletflow.services.email_dispatcher import EmailDispatcher
from palletflow.services.log_email_dispatcher import LogEmailDispatcher
from palletflow.services.smtp_email_dispatcher import SmtpEmailDispatcher


@lru_cache(maxsize=1)
def get_email_dispatcher() -> EmailDispatcher:
    provider = settings.email_provider.strip().lower()
    if provider == 'smtp':
        return SmtpEmailDispatcher()
    return LogEmailDispatcher()
