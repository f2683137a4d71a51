"""
Outbound transports - the last hop to an email, SMS or push provider.

Every transport exposes ``async send(message) -> bool`` and ``close()``.
A False return or a raised error both count as a failed delivery; the
channel adapter never retries. HTTP transports retry once on a
connection-level error, before any request reached the provider.

Provides:
- LoggingTransport: development transport that logs and records messages
- SmtpEmailTransport: aiosmtplib
- HttpSmsTransport / HttpPushTransport: JSON over httpx
- build_transport: selects a transport from ChannelConfig
"""
from __future__ import annotations

import structlog
from email.message import EmailMessage
from typing import Any, Optional

import aiosmtplib
import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import OutboundMessage
from channels.content import html_to_text
from config.settings import ChannelConfig
from models.schemas import ChannelType

logger = structlog.get_logger()


class LoggingTransport:
    """Logs every message and keeps it in ``sent`` (tests, local runs)."""

    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.sent: list[OutboundMessage] = []

    async def send(self, message: OutboundMessage) -> bool:
        self.sent.append(message)
        logger.info("notification_logged",
                    channel=self.channel.value,
                    to=message.address,
                    subject=message.subject,
                    notification_id=message.notification_id)
        return True

    async def close(self):
        pass


# ──────────────────────────────────────────────────────────────
#  SMTP
# ──────────────────────────────────────────────────────────────

class SmtpEmailTransport:
    """Sends one SMTP session per message; HTML body with a plain-text part."""

    def __init__(self, host: str, port: int = 587, username: str = "", password: str = "",
                 from_address: str = "", use_tls: bool = True, timeout: float = 30.0):
        self.host = host
        self.port = int(port)
        self.username = username
        self.password = password
        self.from_address = from_address
        self.use_tls = use_tls
        self.timeout = timeout

    def _build(self, message: OutboundMessage) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.from_address
        msg["To"] = message.address
        msg["Subject"] = message.subject or ""
        if message.notification_id:
            msg["X-Notification-Id"] = message.notification_id
        msg.set_content(html_to_text(message.content))
        msg.add_alternative(message.content, subtype="html")
        for att in message.attachments:
            maintype, _, subtype = att.content_type.partition("/")
            msg.add_attachment(att.content, maintype=maintype or "application",
                               subtype=subtype or "octet-stream", filename=att.filename)
        return msg

    async def send(self, message: OutboundMessage) -> bool:
        await aiosmtplib.send(
            self._build(message),
            hostname=self.host,
            port=self.port,
            username=self.username or None,
            password=self.password or None,
            start_tls=self.use_tls and self.port != 465,
            use_tls=self.use_tls and self.port == 465,
            timeout=self.timeout,
        )
        logger.info("email_sent", to=message.address, subject=message.subject,
                    notification_id=message.notification_id)
        return True

    async def close(self):
        pass


# ──────────────────────────────────────────────────────────────
#  HTTP providers
# ──────────────────────────────────────────────────────────────

class _HttpTransport:
    """Shared httpx plumbing for JSON provider APIs."""

    def __init__(self, api_url: str, headers: dict[str, str] = None, timeout: float = 15.0):
        self.api_url = api_url
        self.headers = headers or {}
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=httpx.Timeout(self.timeout, connect=5.0),
            )
        return self._client

    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=0.5, max=2),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(self.api_url, json=payload)

    async def _send_payload(self, payload: dict[str, Any], log_event: str) -> bool:
        resp = await self._post(payload)
        if resp.status_code >= 400:
            logger.error(log_event, status=resp.status_code, body=resp.text[:500])
            return False
        return True

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


class HttpSmsTransport(_HttpTransport):

    def __init__(self, api_url: str, api_key: str = "", sender_id: str = "", **kwargs):
        super().__init__(api_url, headers={"Authorization": f"Bearer {api_key}"} if api_key else {},
                         **kwargs)
        self.sender_id = sender_id

    async def send(self, message: OutboundMessage) -> bool:
        return await self._send_payload({
            "to": message.address,
            "from": self.sender_id,
            "text": message.content,
            "reference": message.notification_id,
        }, "sms_provider_error")


class HttpPushTransport(_HttpTransport):

    def __init__(self, api_url: str, server_key: str = "", **kwargs):
        super().__init__(api_url, headers={"Authorization": f"key={server_key}"} if server_key else {},
                         **kwargs)

    async def send(self, message: OutboundMessage) -> bool:
        return await self._send_payload({
            "to": message.address,
            "priority": "high" if message.priority.value == "high" else "normal",
            "notification": {"title": message.subject or "", "body": message.content},
            "data": {"notification_id": message.notification_id, **message.metadata},
        }, "push_provider_error")


def build_transport(channel: ChannelType, config: ChannelConfig):
    """Pick a transport for ``channel`` from its ChannelConfig."""
    creds = config.credentials or {}
    if config.transport == "smtp" and channel == ChannelType.EMAIL:
        return SmtpEmailTransport(
            host=creds.get("host", "localhost"),
            port=creds.get("port", 587),
            username=creds.get("username", ""),
            password=creds.get("password", ""),
            from_address=creds.get("from_address", ""),
            use_tls=creds.get("use_tls", True),
        )
    if config.transport == "http" and channel == ChannelType.SMS:
        return HttpSmsTransport(creds.get("api_url", ""), api_key=creds.get("api_key", ""),
                                sender_id=creds.get("sender_id", ""))
    if config.transport == "http" and channel == ChannelType.PUSH:
        return HttpPushTransport(creds.get("api_url", ""), server_key=creds.get("server_key", ""))
    return LoggingTransport(channel)
