"""SMTP email transport."""

from __future__ import annotations

import asyncio
import html
import smtplib
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence

import structlog

from ..alerting.messages import AlertMessage
from ..config import SmtpConfig
from ..errors import DispatchError


logger = structlog.get_logger(__name__)


def render_email_html(
    message: AlertMessage,
    *,
    label: str,
    tz_name: str | None = None,
    dashboard_url: str | None = None,
) -> str:
    rows = "".join(
        f"<tr><td><strong>{html.escape(str(f['title']))}</strong></td><td>{html.escape(str(f['value']))}</td></tr>"
        for f in message.fields(tz_name)
    )
    link = ""
    if dashboard_url:
        href = html.escape(dashboard_url, quote=True)
        link = f'<p><a href="{href}">Open dashboard</a></p>'
    return (
        f'<h2 style="color:{message.color}">{html.escape(message.title(label))}</h2>'
        f"<table>{rows}</table>"
        f"{link}"
    )


class SmtpMailer:
    """Sends mail over SMTP in a worker thread."""

    def __init__(self, config: SmtpConfig):
        self.config = config

    @property
    def enabled(self) -> bool:
        return bool(self.config.host)

    def _build_email(self, to: Sequence[str], subject: str, html_body: str, text_body: Optional[str]) -> MIMEMultipart:
        email = MIMEMultipart("alternative")
        email["Subject"] = subject
        email["From"] = self.config.from_address
        email["To"] = ", ".join(to)
        if text_body:
            email.attach(MIMEText(text_body, "plain"))
        email.attach(MIMEText(html_body, "html"))
        return email

    def _send_sync(self, to: Sequence[str], subject: str, html_body: str, text_body: Optional[str]) -> str:
        cfg = self.config
        email = self._build_email(to, subject, html_body, text_body)
        message_id = str(uuid.uuid4())
        email["Message-ID"] = f"<{message_id}@{cfg.host}>"

        server: smtplib.SMTP | smtplib.SMTP_SSL
        if cfg.use_ssl:
            server = smtplib.SMTP_SSL(cfg.host, cfg.port, timeout=cfg.timeout_seconds)
        else:
            server = smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout_seconds)
        try:
            if cfg.use_tls and not cfg.use_ssl:
                server.starttls()
            if cfg.username and cfg.password:
                server.login(cfg.username, cfg.password)
            server.sendmail(cfg.from_address, list(to), email.as_string())
        finally:
            try:
                server.quit()
            except smtplib.SMTPException:
                pass
        return message_id

    async def send_mail(self, to: Sequence[str], subject: str, html_body: str, text_body: Optional[str] = None) -> str:
        if not self.enabled:
            raise DispatchError("email", "smtp host not configured")
        recipients = [addr for addr in to if addr]
        if not recipients:
            raise DispatchError("email", "no recipients")
        try:
            message_id = await asyncio.to_thread(self._send_sync, recipients, subject, html_body, text_body)
        except smtplib.SMTPAuthenticationError as e:
            raise DispatchError("email", f"authentication failed: {e}") from e
        except (smtplib.SMTPException, OSError) as e:
            raise DispatchError("email", f"{type(e).__name__}: {e}") from e
        logger.info("Email sent", message_id=message_id, recipients=len(recipients))
        return message_id
