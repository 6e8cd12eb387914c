from __future__ import annotations

from typing import Protocol


class EmailDispatcher(Protocol):
    def send(self, *, to: list[str], subject: str, body: str, attachments: list[str]) -> None: ...
