"""
NotificationChannelSender - single entry point for one-recipient sends.

Send flow:
  1. render ``{{var}}`` placeholders, then shape content for the channel
     (sanitized HTML for email, plain text for SMS / push)
  2. channel validation                      → ValidationError
  3. fixed-window rate limit                 → RateLimitExceeded
  4. persist a NotificationRecord
  5. transport call; ``sent_at`` is stamped only when it succeeds

Transport failures return False. Validation and rate-limit errors raise,
before anything is persisted or sent.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.base import ChannelAdapter, ChannelRegistry, FixedWindowRateLimiter, OutboundMessage
from channels.content import render_template
from channels.email_adapter import EmailAdapter
from channels.push_adapter import PushAdapter
from channels.sms_adapter import SMSAdapter
from channels.transports import build_transport
from config.settings import ChannelConfig, Settings
from database.repositories import TemplateRepository
from database.store_base import BaseNotificationStore
from models.errors import ValidationError
from models.schemas import (
    Attachment, ChannelType, NotificationPriority, NotificationRecord,
    NotificationTemplate, utcnow,
)

logger = structlog.get_logger()

_ADAPTERS: dict[ChannelType, type[ChannelAdapter]] = {
    ChannelType.EMAIL: EmailAdapter,
    ChannelType.SMS: SMSAdapter,
    ChannelType.PUSH: PushAdapter,
}


class NotificationChannelSender:
    """
    Routes sends to the email / SMS / push adapters.

    Usage:
        sender = NotificationChannelSender.from_settings(settings, store)
        ok = await sender.send(ChannelType.EMAIL, "a@b.co", "Hi", "<p>Hello {{name}}</p>",
                               variables={"name": "Ann"}, user_id="u1")
    """

    def __init__(
        self,
        store: BaseNotificationStore,
        registry: ChannelRegistry,
        templates: Optional[TemplateRepository] = None,
        channel_configs: dict[str, ChannelConfig] = None,
    ):
        self.store = store
        self.registry = registry
        self.templates = templates
        self._limiters: dict[ChannelType, FixedWindowRateLimiter] = {}
        self._per_recipient: dict[ChannelType, bool] = {}
        self._template_cache: dict[str, NotificationTemplate] = {}

        configs = channel_configs or {}
        for channel in ChannelType:
            cfg = configs.get(channel.value, ChannelConfig())
            self._limiters[channel] = FixedWindowRateLimiter(cfg.rate_limit, cfg.rate_window)
            self._per_recipient[channel] = cfg.per_recipient

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: BaseNotificationStore,
        templates: Optional[TemplateRepository] = None,
        transports: dict[ChannelType, Any] = None,
    ) -> NotificationChannelSender:
        """Build adapters from settings; ``transports`` overrides the configured ones."""
        registry = ChannelRegistry()
        for channel, adapter_cls in _ADAPTERS.items():
            cfg = settings.channels.get(channel.value, ChannelConfig())
            transport = (transports or {}).get(channel) or build_transport(channel, cfg)
            registry.register(adapter_cls(transport, limits=settings.limits, enabled=cfg.enabled))
        return cls(store, registry, templates=templates, channel_configs=settings.channels)

    def _adapter(self, channel: ChannelType) -> ChannelAdapter:
        adapter = self.registry.get(channel)
        if adapter is None or not adapter.enabled:
            raise ValidationError(f"Channel {channel.value} is not available", field="channel")
        return adapter

    def _limit_key(self, channel: ChannelType, address: str, user_id: Optional[str]) -> str:
        if not self._per_recipient[channel]:
            return channel.value
        return f"{channel.value}:{user_id or address}"

    # ── Send ──────────────────────────────────────────────────

    async def send(
        self,
        channel: ChannelType,
        address: str,
        subject: Optional[str],
        content: str,
        attachments: list[Attachment] = None,
        user_id: Optional[str] = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        metadata: dict[str, Any] = None,
        variables: dict[str, Any] = None,
    ) -> bool:
        adapter = self._adapter(channel)
        attachments = attachments or []

        body = adapter.prepare_content(render_template(content, variables))
        title = render_template(subject, variables) if subject else subject

        adapter.validate(address, body, subject=title, attachments=attachments)
        self._limiters[channel].hit(self._limit_key(channel, address, user_id), channel=channel.value)

        record = await self.store.save_notification(NotificationRecord(
            user_id=user_id,
            channel=channel,
            address=address,
            subject=title,
            content=body,
            priority=priority,
            metadata=metadata or {},
            attachment_names=[a.filename for a in attachments],
        ))

        ok = await adapter.deliver(OutboundMessage(
            channel=channel,
            address=address,
            content=body,
            subject=title,
            attachments=attachments,
            priority=priority,
            notification_id=record.id,
            metadata=metadata or {},
        ))
        if ok:
            await self.store.update_notification(record.id, sent_at=utcnow())
        else:
            logger.warning("notification_not_sent", channel=channel.value,
                           notification_id=record.id, user_id=user_id)
        return ok

    async def send_email(self, email: str, subject: str, content: str, **kwargs) -> bool:
        return await self.send(ChannelType.EMAIL, email, subject, content, **kwargs)

    async def send_sms(self, phone_number: str, content: str, **kwargs) -> bool:
        return await self.send(ChannelType.SMS, phone_number, None, content, **kwargs)

    async def send_push(self, device_token: str, title: str, content: str, **kwargs) -> bool:
        return await self.send(ChannelType.PUSH, device_token, title, content, **kwargs)

    # ── Templates ─────────────────────────────────────────────

    async def get_template(self, name: str) -> NotificationTemplate:
        if name in self._template_cache:
            return self._template_cache[name]
        template = await self.templates.get_template(name) if self.templates else None
        if template is None:
            raise ValidationError(f"Template not found: {name}", field="template_name")
        self._template_cache[name] = template
        return template

    def invalidate_template(self, name: Optional[str] = None):
        if name is None:
            self._template_cache.clear()
        else:
            self._template_cache.pop(name, None)

    async def send_template(
        self,
        template_name: str,
        channel: ChannelType,
        address: str,
        variables: dict[str, Any] = None,
        **kwargs,
    ) -> bool:
        template = await self.get_template(template_name)
        metadata = {**(kwargs.pop("metadata", None) or {}), "template": template_name}
        return await self.send(channel, address, template.subject, template.content,
                               variables=variables, metadata=metadata, **kwargs)

    # ── Bookkeeping ───────────────────────────────────────────

    async def mark_read(self, notification_id: str) -> Optional[NotificationRecord]:
        return await self.store.update_notification(notification_id, read=True, read_at=utcnow())

    async def list_for_user(self, user_id: str, unread_only: bool = False,
                            limit: int = 50) -> list[NotificationRecord]:
        return await self.store.list_notifications(user_id, unread_only=unread_only, limit=limit)

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return await self.registry.health_check_all()

    async def shutdown(self):
        await self.registry.shutdown_all()
