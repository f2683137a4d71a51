"""
InMemoryNotificationStore - Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlNotificationStore
  - Single event loop: each method runs without awaiting, so
    compare-and-set transitions are atomic
  - All data lost on process restart

Models are copied in and out so callers never share mutable state with
the store.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Iterable, Optional, TypeVar

from pydantic import BaseModel

from database.store_base import BaseNotificationStore
from models.schemas import (
    BulkJob, BulkJobStatus, Campaign, CampaignQuery, CampaignStatus,
    NotificationRecord, Task, TaskStatus, TaskType, utcnow,
)

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)


def _copy(model: Optional[M]) -> Optional[M]:
    return model.model_copy(deep=True) if model is not None else None


class InMemoryNotificationStore(BaseNotificationStore):
    """Full-featured in-memory store with the same interface as SqlNotificationStore."""

    def __init__(self):
        self._tasks: dict[str, Task] = {}
        self._jobs: dict[str, BulkJob] = {}
        self._campaigns: dict[str, Campaign] = {}
        self._notifications: dict[str, NotificationRecord] = {}
        logger.info("inmemory_store_initialized")

    def _apply(self, table: dict[str, M], key: str, fields: dict[str, Any],
               touch: bool = False) -> Optional[M]:
        current = table.get(key)
        if current is None:
            return None
        if touch:
            fields = {**fields, "updated_at": utcnow()}
        table[key] = current.model_copy(update=fields, deep=True)
        return _copy(table[key])

    # ── Tasks ─────────────────────────────────────────────

    async def create_task(self, task: Task) -> Task:
        self._tasks[task.id] = _copy(task)
        return _copy(task)

    async def get_task(self, task_id: str) -> Optional[Task]:
        return _copy(self._tasks.get(task_id))

    async def update_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        return self._apply(self._tasks, task_id, fields, touch=True)

    async def transition_task(self, task_id: str, from_statuses: Iterable[TaskStatus],
                              to_status: TaskStatus, **fields: Any) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is None or task.status not in set(from_statuses):
            return None
        return self._apply(self._tasks, task_id, {**fields, "status": to_status}, touch=True)

    async def list_tasks(self, status: Optional[TaskStatus] = None,
                         task_type: Optional[TaskType] = None,
                         created_by: Optional[str] = None,
                         limit: int = 50, offset: int = 0) -> tuple[list[Task], int]:
        matched = [
            t for t in self._tasks.values()
            if (status is None or t.status == status)
            and (task_type is None or t.type == task_type)
            and (created_by is None or t.created_by == created_by)
        ]
        matched.sort(key=lambda t: t.created_at, reverse=True)
        page = matched[offset:offset + limit]
        return [_copy(t) for t in page], len(matched)

    async def find_overdue_tasks(self, now: datetime, limit: int = 100) -> list[Task]:
        due = [
            t for t in self._tasks.values()
            if t.status == TaskStatus.PENDING and t.scheduled_for <= now
        ]
        due.sort(key=lambda t: t.scheduled_for)
        return [_copy(t) for t in due[:limit]]

    async def find_stale_tasks(self, started_before: datetime, limit: int = 100) -> list[Task]:
        stale = [
            t for t in self._tasks.values()
            if t.status == TaskStatus.PROCESSING
            and t.last_attempt_at is not None and t.last_attempt_at < started_before
        ]
        stale.sort(key=lambda t: t.last_attempt_at)
        return [_copy(t) for t in stale[:limit]]

    # ── Bulk jobs ─────────────────────────────────────────

    async def create_job(self, job: BulkJob) -> BulkJob:
        self._jobs[job.id] = _copy(job)
        return _copy(job)

    async def get_job(self, job_id: str) -> Optional[BulkJob]:
        return _copy(self._jobs.get(job_id))

    async def update_job(self, job_id: str, **fields: Any) -> Optional[BulkJob]:
        return self._apply(self._jobs, job_id, fields)

    async def transition_job(self, job_id: str, from_statuses: Iterable[BulkJobStatus],
                             to_status: BulkJobStatus, **fields: Any) -> Optional[BulkJob]:
        job = self._jobs.get(job_id)
        if job is None or job.status not in set(from_statuses):
            return None
        return self._apply(self._jobs, job_id, {**fields, "status": to_status})

    async def list_jobs(self, statuses: Optional[Iterable[BulkJobStatus]] = None,
                        campaign_id: Optional[str] = None,
                        limit: int = 100) -> list[BulkJob]:
        wanted = set(statuses) if statuses is not None else None
        jobs = [
            j for j in self._jobs.values()
            if (wanted is None or j.status in wanted)
            and (campaign_id is None or j.campaign_id == campaign_id)
        ]
        jobs.sort(key=lambda j: j.created_at)
        return [_copy(j) for j in jobs[:limit]]

    # ── Campaigns ─────────────────────────────────────────

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        self._campaigns[campaign.id] = _copy(campaign)
        return _copy(campaign)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return _copy(self._campaigns.get(campaign_id))

    async def update_campaign(self, campaign_id: str, **fields: Any) -> Optional[Campaign]:
        return self._apply(self._campaigns, campaign_id, fields, touch=True)

    async def transition_campaign(self, campaign_id: str,
                                  from_statuses: Iterable[CampaignStatus],
                                  to_status: CampaignStatus,
                                  **fields: Any) -> Optional[Campaign]:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None or campaign.status not in set(from_statuses):
            return None
        return self._apply(self._campaigns, campaign_id,
                           {**fields, "status": to_status}, touch=True)

    async def list_campaigns(self, query: Optional[CampaignQuery] = None,
                             limit: int = 50, offset: int = 0) -> tuple[list[Campaign], int]:
        query = query or CampaignQuery()
        matched = [c for c in self._campaigns.values() if query.matches(c)]
        matched.sort(key=lambda c: c.created_at, reverse=True)
        return [_copy(c) for c in matched[offset:offset + limit]], len(matched)

    # ── Notifications ─────────────────────────────────────

    async def save_notification(self, record: NotificationRecord) -> NotificationRecord:
        self._notifications[record.id] = _copy(record)
        return _copy(record)

    async def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        return _copy(self._notifications.get(notification_id))

    async def update_notification(self, notification_id: str, **fields: Any) -> Optional[NotificationRecord]:
        return self._apply(self._notifications, notification_id, fields)

    async def list_notifications(self, user_id: str, unread_only: bool = False,
                                 limit: int = 50) -> list[NotificationRecord]:
        records = [
            n for n in self._notifications.values()
            if n.user_id == user_id and not (unread_only and n.read)
        ]
        records.sort(key=lambda n: n.created_at, reverse=True)
        return [_copy(n) for n in records[:limit]]
