from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

logger = logging.getLogger(__name__)

RECENT_LIMIT = 50


@dataclass(frozen=True)
class SentEmail:
    to: list[str]
    subject: str
    body: str
    attachments: list[str]


class LogEmailDispatcher:
    """Writes outgoing mail to the log instead of delivering it.

    Only the most recent `keep` messages stay in `sent`.
    """

    def __init__(self, keep: int = RECENT_LIMIT) -> None:
        self.sent: deque[SentEmail] = deque(maxlen=keep)

    def send(self, *, to: list[str], subject: str, body: str, attachments: list[str]) -> None:
        self.sent.append(SentEmail(to=list(to), subject=subject, body=body, attachments=list(attachments)))
        logger.info('Email to %s: %s (%s attachment ref(s))\n%s', ', '.join(to), subject, len(attachments), body)
