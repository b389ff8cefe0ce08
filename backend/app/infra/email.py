import logging
import random
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any

import anyio
import httpx

from app.infra.metrics import metrics
from app.settings import settings
from app.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

NOTICE_KIND_HEADER = "X-Billing-Notice"
SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"
RETRYABLE_STATUS = 429


@dataclass
class CapturedEmail:
    recipient: str
    subject: str
    body: str
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OutgoingEmail:
    recipient: str
    subject: str
    body: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def notice_kind(self) -> str | None:
        return self.headers.get(NOTICE_KIND_HEADER)


class NoopEmailAdapter:
    """Used when ``email_mode=off``: records messages in ``captured`` and sends nothing."""

    def __init__(self) -> None:
        self.captured: list[CapturedEmail] = []

    async def send_email(
        self, recipient: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> bool:
        self.captured.append(CapturedEmail(recipient, subject, body, dict(headers or {})))
        logger.info("email_send_skipped", extra={"extra": {"recipient": recipient, "mode": "noop"}})
        metrics.record_email_adapter("skipped")
        return False


def _backoff_delay(attempt: int) -> float:
    delay = min(settings.email_http_backoff_seconds * (2 ** (attempt - 1)), settings.email_http_backoff_max_seconds)
    return delay + delay * random.uniform(0.0, 0.3)


def _sender_address() -> str | None:
    if not settings.email_from:
        return None
    if settings.email_from_name:
        return formataddr((settings.email_from_name, settings.email_from))
    return settings.email_from


class SendGridTransport:
    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self.http_client = http_client

    def _payload(self, message: OutgoingEmail) -> dict[str, Any]:
        sender: dict[str, str] = {"email": settings.email_from}
        if settings.email_from_name:
            sender["name"] = settings.email_from_name
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": message.recipient}]}],
            "from": sender,
            "subject": message.subject,
            "content": [{"type": "text/plain", "value": message.body}],
        }
        if message.headers:
            payload["headers"] = dict(message.headers)
        if message.notice_kind:
            payload["categories"] = ["billing", message.notice_kind]
        return payload

    async def _post(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        attempts = max(1, settings.email_http_max_attempts)
        for attempt in range(1, attempts + 1):
            final_attempt = attempt == attempts
            try:
                response = await client.post(
                    SENDGRID_SEND_URL,
                    headers={"Authorization": f"Bearer {settings.sendgrid_api_key}"},
                    json=payload,
                    timeout=settings.email_timeout_seconds,
                )
            except (httpx.TimeoutException, httpx.ConnectError):
                if final_attempt:
                    raise
            else:
                retryable = response.status_code == RETRYABLE_STATUS or response.status_code >= 500
                if not retryable or final_attempt:
                    return response
            await anyio.sleep(_backoff_delay(attempt))
        raise RuntimeError("email_http_retry_exhausted")  # pragma: no cover

    async def send(self, message: OutgoingEmail) -> None:
        if not settings.sendgrid_api_key or not settings.email_from:
            raise RuntimeError("sendgrid_not_configured")
        payload = self._payload(message)
        if self.http_client is not None:
            response = await self._post(self.http_client, payload)
        else:
            async with httpx.AsyncClient() as client:
                response = await self._post(client, payload)
        if response.status_code >= 400:
            raise RuntimeError(f"sendgrid_status_{response.status_code}")


class SmtpTransport:
    async def send(self, message: OutgoingEmail) -> None:
        sender = _sender_address()
        if not settings.smtp_host or not sender:
            raise RuntimeError("smtp_not_configured")

        mime = EmailMessage()
        mime["From"] = sender
        mime["To"] = message.recipient
        mime["Subject"] = message.subject
        for name, value in message.headers.items():
            mime[name] = value
        mime.set_content(message.body)

        def _deliver() -> None:
            smtp_cls = smtplib.SMTP if settings.smtp_use_tls else smtplib.SMTP_SSL
            with smtp_cls(settings.smtp_host, settings.smtp_port or 587, timeout=settings.smtp_timeout_seconds) as smtp:
                if settings.smtp_use_tls:
                    smtp.starttls()
                if settings.smtp_username and settings.smtp_password:
                    smtp.login(settings.smtp_username, settings.smtp_password)
                smtp.send_message(mime)

        await anyio.to_thread.run_sync(_deliver)


class EmailAdapter:
    """Sends through SendGrid or SMTP according to ``settings.email_mode``, behind a circuit breaker."""

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self.http_client = http_client
        self._transports = {"sendgrid": SendGridTransport(http_client), "smtp": SmtpTransport()}
        self._breaker = CircuitBreaker(
            name="email",
            failure_threshold=settings.email_circuit_failure_threshold,
            recovery_time=settings.email_circuit_recovery_seconds,
        )

    async def send_email(
        self, recipient: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> bool:
        transport = self._transports.get(settings.email_mode)
        if transport is None or not recipient:
            metrics.record_email_adapter("skipped")
            return False
        message = OutgoingEmail(recipient, subject, body, dict(headers or {}))
        try:
            await self._breaker.call(transport.send, message)
        except CircuitBreakerOpenError:
            logger.warning("email_circuit_open", extra={"extra": {"recipient": recipient}})
            metrics.record_email_adapter("circuit_open")
            return False
        except Exception:
            metrics.record_email_adapter("error")
            raise
        metrics.record_email_adapter("sent")
        return True


def resolve_email_adapter(app_settings) -> EmailAdapter | NoopEmailAdapter:  # noqa: ANN001
    if app_settings.email_mode == "off" or getattr(app_settings, "testing", False):
        return NoopEmailAdapter()
    return EmailAdapter()


def resolve_app_email_adapter(app_like) -> EmailAdapter | NoopEmailAdapter | None:  # noqa: ANN001
    """Adapter installed on the app; accepts an app, a request, or a bare state object."""
    owner = getattr(app_like, "app", app_like)
    state = getattr(owner, "state", None)
    if state is None:
        return None
    adapter = getattr(state, "email_adapter", None)
    if adapter is not None:
        return adapter
    return getattr(getattr(state, "services", None), "email_adapter", None)
