"""
Notification channels used by the inactivity monitor and usage reports.

Every channel implements ``send(to_address, subject, body) -> bool``:
True when the message was accepted, False when the channel rejected it.
Transport failures raise NotifierError.

Channels:
- WebhookNotifier: HTTPS POST of ``{"to", "subject", "body"}`` with Bearer
  token authentication. TLS certificate verification is always enabled.
- SmtpNotifier: plain-text email through an SMTP relay (STARTTLS by
  default) using fastapi-mail.
- LogNotifier: logs the message and reports success. Used when no channel
  is configured.

build_notifier(settings) picks webhook, then SMTP, then log.

CHANGELOG:
- 2026-10-19: Move SMTP delivery to fastapi-mail (STORY-021)
- 2026-10-12: Add webhook channel and build_notifier (STORY-017)
- 2026-10-09: Initial creation (STORY-014)

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import aiosmtplib
import httpx
from fastapi_mail import ConnectionConfig, FastMail, MessageSchema
from fastapi_mail.errors import ConnectionErrors
from pydantic import ValidationError

from pipeline.src.errors import NotifierError

if TYPE_CHECKING:
    from pipeline.src.config import PipelineSettings

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_S = 10.0


class Notifier(Protocol):
    async def send(self, to_address: str, subject: str, body: str) -> bool: ...


class WebhookNotifier:
    """Posts notifications to an HTTPS webhook.

    Args:
        url: Webhook endpoint. Must start with ``https://``.
        token: Bearer token sent in the Authorization header. Omitted when
            empty.
        timeout_s: Request timeout in seconds.

    Raises:
        ValueError: If *url* does not start with ``https://``.
    """

    def __init__(self, url: str, token: str = "", timeout_s: float = _DEFAULT_TIMEOUT_S) -> None:
        if not url.lower().startswith("https://"):
            raise ValueError(f"Alert webhook URL must use HTTPS (got: '{url}').")
        self._url = url
        self._token = token
        self._timeout_s = timeout_s

    async def send(self, to_address: str, subject: str, body: str) -> bool:
        """POST the message to the webhook.

        Returns:
            True on a 2xx response, False otherwise.

        Raises:
            NotifierError: On connection errors and timeouts.
        """
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            async with httpx.AsyncClient(verify=True, timeout=self._timeout_s) as client:
                response = await client.post(
                    self._url,
                    json={"to": to_address, "subject": subject, "body": body},
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            raise NotifierError(f"Webhook delivery failed: {exc}") from exc

        if 200 <= response.status_code < 300:
            logger.info("Webhook notification sent to %s: %s", to_address, subject)
            return True

        logger.warning(
            "Webhook rejected notification to %s (HTTP %d)", to_address, response.status_code
        )
        return False


class SmtpNotifier:
    """Sends plain-text email through an SMTP relay with fastapi-mail.

    Args:
        host: SMTP server hostname.
        port: SMTP server port.
        sender: From address.
        username: Login user; no login when empty.
        password: Login password.
        use_tls: Upgrade the connection with STARTTLS.
        timeout_s: Connection timeout in seconds.
    """

    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
    ) -> None:
        self._sender = sender
        self._config = ConnectionConfig(
            MAIL_USERNAME=username,
            MAIL_PASSWORD=password,
            MAIL_FROM=sender,
            MAIL_SERVER=host,
            MAIL_PORT=port,
            MAIL_STARTTLS=use_tls,
            MAIL_SSL_TLS=False,
            USE_CREDENTIALS=bool(username),
            VALIDATE_CERTS=True,
            TIMEOUT=int(timeout_s),
        )
        self._mail = FastMail(self._config)

    async def send(self, to_address: str, subject: str, body: str) -> bool:
        """Deliver one email.

        Raises:
            NotifierError: On an invalid recipient, connection or SMTP errors.
        """
        try:
            message = MessageSchema(
                subject=subject,
                recipients=[to_address],
                body=body,
                subtype="plain",
            )
        except ValidationError as exc:
            raise NotifierError(f"Invalid recipient address '{to_address}'") from exc

        try:
            await self._mail.send_message(message)
        except (ConnectionErrors, aiosmtplib.SMTPException, OSError) as exc:
            raise NotifierError(f"SMTP delivery to {to_address} failed: {exc}") from exc
        logger.info("Email sent to %s: %s", to_address, subject)
        return True


class LogNotifier:
    """Logs notifications instead of delivering them."""

    async def send(self, to_address: str, subject: str, body: str) -> bool:
        logger.info("Notification for %s: %s | %s", to_address, subject, body)
        return True


def build_notifier(settings: PipelineSettings) -> Notifier:
    """Pick the notification channel from settings: webhook, SMTP, log."""
    if settings.alert_webhook_url:
        logger.info("Using webhook notifier")
        return WebhookNotifier(settings.alert_webhook_url, settings.alert_webhook_token)
    if settings.smtp_host:
        logger.info("Using SMTP notifier (%s:%d)", settings.smtp_host, settings.smtp_port)
        return SmtpNotifier(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.smtp_sender or settings.smtp_username,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
        )
    logger.warning("No notification channel configured, alerts will only be logged")
    return LogNotifier()
