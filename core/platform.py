"""
NotificationPlatform - wires broker, store, scheduler, sender, bulk
dispatcher and campaign orchestrator into one unit with a start/stop
lifecycle.

This is the surface the surrounding application talks to:

    platform = NotificationPlatform(get_settings(), recipients=repo)
    await platform.start()
    task_id = await platform.schedule_task(TaskType.PAYMENT_REMINDER, {...}, when)
    job_id = await platform.enqueue_bulk_email("Hi", "<p>Hello {{name}}</p>")
    progress = await platform.get_job_status(job_id)
    await platform.stop()
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from campaigns.orchestrator import CampaignOrchestrator
from channels.sender import NotificationChannelSender
from config.settings import Settings, get_settings
from database.repositories import (
    DeviceTokenRepository, InMemoryDeviceTokenRepository,
    InMemoryRecipientRepository, InMemoryTemplateRepository,
    RecipientRepository, TemplateRepository,
)
from database.store_base import BaseNotificationStore
from database.store_factory import build_store
from job_queue.broker import MessageBroker, create_broker
from models.schemas import (
    ChannelType, JobProgress, RecipientFilter, Task, TaskType,
)
from notifications.bulk import BulkNotificationDispatcher
from scheduler.handlers import TaskHandler, TaskHandlerRegistry
from scheduler.service import DelayedTaskScheduler

logger = structlog.get_logger()


class NotificationPlatform:

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[BaseNotificationStore] = None,
        broker: Optional[MessageBroker] = None,
        recipients: Optional[RecipientRepository] = None,
        device_tokens: Optional[DeviceTokenRepository] = None,
        templates: Optional[TemplateRepository] = None,
        transports: dict[ChannelType, Any] = None,
    ):
        self.settings = settings or get_settings()
        self._owns_store = store is None
        self.store = store or build_store(self.settings.database)
        self.broker = broker or create_broker(self.settings.broker)
        self.recipients = recipients or InMemoryRecipientRepository()
        self.device_tokens = device_tokens or InMemoryDeviceTokenRepository()
        self.templates = templates or InMemoryTemplateRepository()

        self.sender = NotificationChannelSender.from_settings(
            self.settings, self.store, templates=self.templates, transports=transports,
        )
        self.handlers = TaskHandlerRegistry()
        self.scheduler = DelayedTaskScheduler(
            self.store, self.broker, handlers=self.handlers, config=self.settings.scheduler,
        )
        self.dispatcher = BulkNotificationDispatcher(
            self.store, self.broker, self.sender, self.recipients,
            device_tokens=self.device_tokens, config=self.settings.bulk,
        )
        self.campaigns = CampaignOrchestrator(self.store, self.scheduler, self.dispatcher)
        self.handlers.register(TaskType.EMAIL_CAMPAIGN, self._run_email_campaign)
        self._started = False

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self):
        """Connect the broker (retrying until it answers) and start both workers."""
        if self._started:
            return
        await self.broker.connect()
        await self.scheduler.start()
        await self.dispatcher.start()
        self._started = True
        logger.info("notification_platform_started",
                    broker=type(self.broker).__name__,
                    store=type(self.store).__name__)

    async def stop(self):
        if not self._started:
            return
        await self.scheduler.stop()
        await self.dispatcher.stop()
        await self.broker.close()
        await self.sender.shutdown()
        if self._owns_store:
            await self.store.close()
        self._started = False
        logger.info("notification_platform_stopped")

    async def health(self) -> dict[str, Any]:
        return {
            "broker": self.broker.health(),
            "channels": await self.sender.health_check(),
        }

    def register_handler(self, task_type: TaskType, handler: TaskHandler):
        """Attach the host application's handler for a task type."""
        self.handlers.register(task_type, handler)

    async def _run_email_campaign(self, task: Task) -> str:
        payload = task.payload
        user_ids = payload.get("user_ids") or []
        # Link the job only when the id names a stored campaign.
        campaign_id = payload.get("campaign_id")
        if campaign_id and await self.store.get_campaign(campaign_id) is None:
            logger.info("email_campaign_unlinked", task_id=task.id, campaign_id=campaign_id)
            campaign_id = None
        return await self.dispatcher.enqueue_bulk_email(
            payload.get("subject") or "",
            payload.get("content") or "",
            RecipientFilter(specific_ids=user_ids) if user_ids else None,
            template_name=payload.get("template_name"),
            template_variables=payload.get("template_variables") or {},
            campaign_id=campaign_id,
            created_by=task.created_by,
        )

    # ── Tasks ─────────────────────────────────────────────────

    async def schedule_task(
        self,
        task_type: TaskType | str,
        payload: dict[str, Any],
        when: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
        task_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> str:
        return await self.scheduler.schedule(task_type, payload, when, max_attempts=max_attempts,
                                             task_id=task_id, created_by=created_by)

    async def cancel_task(self, task_id: str) -> bool:
        return await self.scheduler.cancel(task_id)

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await self.scheduler.get_task(task_id)

    # ── Bulk jobs ─────────────────────────────────────────────

    async def enqueue_bulk_email(self, subject: str, content: str,
                                 recipient_filter: Optional[RecipientFilter] = None,
                                 **kwargs) -> str:
        return await self.dispatcher.enqueue_bulk_email(subject, content, recipient_filter, **kwargs)

    async def enqueue_bulk_sms(self, content: str,
                               recipient_filter: Optional[RecipientFilter] = None,
                               **kwargs) -> str:
        return await self.dispatcher.enqueue_bulk_sms(content, recipient_filter, **kwargs)

    async def enqueue_bulk_push(self, title: str, content: str,
                                recipient_filter: Optional[RecipientFilter] = None,
                                **kwargs) -> str:
        return await self.dispatcher.enqueue_bulk_push(title, content, recipient_filter, **kwargs)

    async def get_job_status(self, job_id: str) -> Optional[JobProgress]:
        return await self.dispatcher.get_job_status(job_id)

    async def cancel_job(self, job_id: str) -> bool:
        return await self.dispatcher.cancel_job(job_id)

    async def list_active_jobs(self) -> list[JobProgress]:
        return await self.dispatcher.list_active_jobs()
