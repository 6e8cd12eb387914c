from __future__ import annotations

import smtplib
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

from palletflow.config import settings


def build_message(*, from_email: str, to_emails: list[str], subject: str, body: str, attachments: list[str]) -> EmailMessage:
    msg = EmailMessage()
    msg['From'] = from_email
    msg['To'] = ', '.join(to_emails)
    msg['Subject'] = subject
    msg['Date'] = formatdate(localtime=True)
    msg['Message-ID'] = make_msgid(domain=None)
    if attachments:
        # Files live in external storage; the mail carries their references.
        msg['X-Attachment-Refs'] = ', '.join(attachments)
    msg.set_content(body or ' ')
    return msg


class SmtpEmailDispatcher:
    def __init__(
        self,
        *,
        host: str | None = None,
        port: int | None = None,
        use_tls: bool | None = None,
        username: str | None = None,
        password: str | None = None,
        from_email: str | None = None,
        timeout_seconds: int | None = None,
    ) -> None:
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.use_tls = settings.smtp_use_tls if use_tls is None else use_tls
        self.username = username if username is not None else settings.smtp_username
        self.password = password if password is not None else settings.smtp_password
        self.from_email = from_email or settings.email_from
        self.timeout_seconds = timeout_seconds or settings.smtp_timeout_seconds

    def send(self, *, to: list[str], subject: str, body: str, attachments: list[str]) -> None:
        msg = build_message(from_email=self.from_email, to_emails=to, subject=subject, body=body, attachments=attachments)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as smtp:
            smtp.ehlo()
            if self.use_tls:
                smtp.starttls()
                smtp.ehlo()
            if self.username:
                smtp.login(self.username, self.password or '')
            smtp.send_message(msg, from_addr=self.from_email, to_addrs=to)
