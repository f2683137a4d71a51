"""
Abstract Notification Store - Interface for all storage backends.

Implementations:
  - SqlNotificationStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryNotificationStore (dict-based, single-process, no persistence)

The store is the source of truth for task, job and campaign status.
Broker messages only carry ids; every consumer re-reads state here.

``transition_*`` methods are compare-and-set: the row is updated only if
its current status is in ``from_statuses``. They return the updated model,
or None when the row is missing or in another state.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from models.schemas import (
    BulkJob, BulkJobStatus, Campaign, CampaignQuery, CampaignStatus,
    NotificationRecord, Task, TaskStatus, TaskType,
)


class BaseNotificationStore(ABC):
    """Interface that all store backends must implement."""

    async def initialize(self):
        """Create backing storage if missing. No-op for stores without a schema."""

    async def close(self):
        """Release connections. No-op for stores without any."""

    # ── Tasks ─────────────────────────────────────────────────

    @abstractmethod
    async def create_task(self, task: Task) -> Task:
        ...

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        ...

    @abstractmethod
    async def update_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        ...

    @abstractmethod
    async def transition_task(
        self,
        task_id: str,
        from_statuses: Iterable[TaskStatus],
        to_status: TaskStatus,
        **fields: Any,
    ) -> Optional[Task]:
        ...

    @abstractmethod
    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        task_type: Optional[TaskType] = None,
        created_by: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Task], int]:
        """Newest-first page of tasks plus the total matching count."""
        ...

    @abstractmethod
    async def find_overdue_tasks(self, now: datetime, limit: int = 100) -> list[Task]:
        """PENDING tasks with scheduled_for <= now, oldest first."""
        ...

    @abstractmethod
    async def find_stale_tasks(self, started_before: datetime, limit: int = 100) -> list[Task]:
        """PROCESSING tasks whose last attempt began before ``started_before``."""
        ...

    # ── Bulk jobs ─────────────────────────────────────────────

    @abstractmethod
    async def create_job(self, job: BulkJob) -> BulkJob:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[BulkJob]:
        ...

    @abstractmethod
    async def update_job(self, job_id: str, **fields: Any) -> Optional[BulkJob]:
        ...

    @abstractmethod
    async def transition_job(
        self,
        job_id: str,
        from_statuses: Iterable[BulkJobStatus],
        to_status: BulkJobStatus,
        **fields: Any,
    ) -> Optional[BulkJob]:
        ...

    @abstractmethod
    async def list_jobs(
        self,
        statuses: Optional[Iterable[BulkJobStatus]] = None,
        campaign_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[BulkJob]:
        """Jobs oldest first."""
        ...

    # ── Campaigns ─────────────────────────────────────────────

    @abstractmethod
    async def create_campaign(self, campaign: Campaign) -> Campaign:
        ...

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        ...

    @abstractmethod
    async def update_campaign(self, campaign_id: str, **fields: Any) -> Optional[Campaign]:
        ...

    @abstractmethod
    async def transition_campaign(
        self,
        campaign_id: str,
        from_statuses: Iterable[CampaignStatus],
        to_status: CampaignStatus,
        **fields: Any,
    ) -> Optional[Campaign]:
        ...

    @abstractmethod
    async def list_campaigns(self, query: Optional[CampaignQuery] = None,
                             limit: int = 50, offset: int = 0) -> tuple[list[Campaign], int]:
        """Newest-first page of campaigns matching ``query`` plus the total count."""
        ...

    # ── Notifications ─────────────────────────────────────────

    @abstractmethod
    async def save_notification(self, record: NotificationRecord) -> NotificationRecord:
        ...

    @abstractmethod
    async def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        ...

    @abstractmethod
    async def update_notification(self, notification_id: str, **fields: Any) -> Optional[NotificationRecord]:
        ...

    @abstractmethod
    async def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[NotificationRecord]:
        """Newest first."""
        ...
