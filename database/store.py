"""
SqlNotificationStore - Portable SQL queries for PostgreSQL, MySQL, SQLite.

Status transitions are single conditional UPDATE statements
(``WHERE id = :id AND status IN (...)``), so two workers racing on the
same row cannot both win.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel
from sqlalchemy import JSON, func, or_, select, update

from config.settings import DatabaseConfig
from database.models import Base, BulkJobRow, CampaignRow, NotificationRow, TaskRow
from database.session import Database
from database.store_base import BaseNotificationStore
from models.schemas import (
    BulkJob, BulkJobStatus, Campaign, CampaignQuery, CampaignStatus,
    NotificationRecord, Task, TaskStatus, TaskType,
)

logger = structlog.get_logger()

# Model field → ORM attribute where the column name is reserved by SQLAlchemy.
_ATTR_ALIASES = {"metadata": "metadata_"}


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_column_value(v) for v in value]
    return value


def _to_row(row_cls: type[Base], model: BaseModel) -> Base:
    native = model.model_dump()
    as_json = model.model_dump(mode="json")
    values = {}
    for attr in row_cls.__mapper__.column_attrs:
        field = next((f for f, a in _ATTR_ALIASES.items() if a == attr.key), attr.key)
        if field not in native:
            continue
        column = attr.columns[0]
        if isinstance(column.type, JSON):
            values[attr.key] = as_json[field]
        else:
            values[attr.key] = _column_value(native[field])
    return row_cls(**values)


def _to_model(model_cls: type[BaseModel], row: Base) -> BaseModel:
    data = {}
    for attr in row.__mapper__.column_attrs:
        field = next((f for f, a in _ATTR_ALIASES.items() if a == attr.key), attr.key)
        data[field] = getattr(row, attr.key)
    return model_cls.model_validate(data)


def _to_columns(fields: dict[str, Any]) -> dict[str, Any]:
    return {_ATTR_ALIASES.get(k, k): _column_value(v) for k, v in fields.items()}


class SqlNotificationStore(BaseNotificationStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None,
                 database: Optional[Database] = None):
        self.db = database or Database(config)

    async def initialize(self):
        await self.db.create_tables()

    async def close(self):
        await self.db.dispose()

    # ── Generic helpers ───────────────────────────────────

    async def _insert(self, row_cls, model):
        async with self.db.session() as db:
            db.add(_to_row(row_cls, model))
        return model.model_copy(deep=True)

    async def _get(self, row_cls, model_cls, key: str):
        async with self.db.session() as db:
            row = await db.get(row_cls, key)
            return _to_model(model_cls, row) if row else None

    async def _update(self, row_cls, model_cls, key: str, fields: dict[str, Any],
                      from_statuses: Optional[Iterable[Enum]] = None):
        stmt = update(row_cls).where(row_cls.id == key)
        if from_statuses is not None:
            stmt = stmt.where(row_cls.status.in_([s.value for s in from_statuses]))
        async with self.db.session() as db:
            result = await db.execute(stmt.values(**_to_columns(fields)))
            if result.rowcount == 0:
                return None
        return await self._get(row_cls, model_cls, key)

    # ── Tasks ─────────────────────────────────────────────

    async def create_task(self, task: Task) -> Task:
        return await self._insert(TaskRow, task)

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await self._get(TaskRow, Task, task_id)

    async def update_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        return await self._update(TaskRow, Task, task_id, fields)

    async def transition_task(self, task_id: str, from_statuses: Iterable[TaskStatus],
                              to_status: TaskStatus, **fields: Any) -> Optional[Task]:
        return await self._update(TaskRow, Task, task_id,
                                  {**fields, "status": to_status}, from_statuses)

    async def list_tasks(self, status: Optional[TaskStatus] = None,
                         task_type: Optional[TaskType] = None,
                         created_by: Optional[str] = None,
                         limit: int = 50, offset: int = 0) -> tuple[list[Task], int]:
        conditions = []
        if status is not None:
            conditions.append(TaskRow.status == status.value)
        if task_type is not None:
            conditions.append(TaskRow.type == task_type.value)
        if created_by is not None:
            conditions.append(TaskRow.created_by == created_by)

        async with self.db.session() as db:
            total = await db.scalar(
                select(func.count()).select_from(TaskRow).where(*conditions)
            )
            result = await db.execute(
                select(TaskRow).where(*conditions)
                .order_by(TaskRow.created_at.desc())
                .offset(offset).limit(limit)
            )
            tasks = [_to_model(Task, row) for row in result.scalars()]
        return tasks, total or 0

    async def find_overdue_tasks(self, now: datetime, limit: int = 100) -> list[Task]:
        async with self.db.session() as db:
            result = await db.execute(
                select(TaskRow)
                .where(TaskRow.status == TaskStatus.PENDING.value,
                       TaskRow.scheduled_for <= now)
                .order_by(TaskRow.scheduled_for)
                .limit(limit)
            )
            return [_to_model(Task, row) for row in result.scalars()]

    async def find_stale_tasks(self, started_before: datetime, limit: int = 100) -> list[Task]:
        async with self.db.session() as db:
            result = await db.execute(
                select(TaskRow)
                .where(TaskRow.status == TaskStatus.PROCESSING.value,
                       TaskRow.last_attempt_at < started_before)
                .order_by(TaskRow.last_attempt_at)
                .limit(limit)
            )
            return [_to_model(Task, row) for row in result.scalars()]

    # ── Bulk jobs ─────────────────────────────────────────

    async def create_job(self, job: BulkJob) -> BulkJob:
        return await self._insert(BulkJobRow, job)

    async def get_job(self, job_id: str) -> Optional[BulkJob]:
        return await self._get(BulkJobRow, BulkJob, job_id)

    async def update_job(self, job_id: str, **fields: Any) -> Optional[BulkJob]:
        return await self._update(BulkJobRow, BulkJob, job_id, fields)

    async def transition_job(self, job_id: str, from_statuses: Iterable[BulkJobStatus],
                             to_status: BulkJobStatus, **fields: Any) -> Optional[BulkJob]:
        return await self._update(BulkJobRow, BulkJob, job_id,
                                  {**fields, "status": to_status}, from_statuses)

    async def list_jobs(self, statuses: Optional[Iterable[BulkJobStatus]] = None,
                        campaign_id: Optional[str] = None,
                        limit: int = 100) -> list[BulkJob]:
        stmt = select(BulkJobRow)
        if statuses is not None:
            stmt = stmt.where(BulkJobRow.status.in_([s.value for s in statuses]))
        if campaign_id is not None:
            stmt = stmt.where(BulkJobRow.campaign_id == campaign_id)
        async with self.db.session() as db:
            result = await db.execute(stmt.order_by(BulkJobRow.created_at).limit(limit))
            return [_to_model(BulkJob, row) for row in result.scalars()]

    # ── Campaigns ─────────────────────────────────────────

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        return await self._insert(CampaignRow, campaign)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return await self._get(CampaignRow, Campaign, campaign_id)

    async def update_campaign(self, campaign_id: str, **fields: Any) -> Optional[Campaign]:
        return await self._update(CampaignRow, Campaign, campaign_id, fields)

    async def transition_campaign(self, campaign_id: str,
                                  from_statuses: Iterable[CampaignStatus],
                                  to_status: CampaignStatus,
                                  **fields: Any) -> Optional[Campaign]:
        return await self._update(CampaignRow, Campaign, campaign_id,
                                  {**fields, "status": to_status}, from_statuses)

    async def list_campaigns(self, query: Optional[CampaignQuery] = None,
                             limit: int = 50, offset: int = 0) -> tuple[list[Campaign], int]:
        query = query or CampaignQuery()
        conditions = []
        if query.status is not None:
            conditions.append(CampaignRow.status == query.status.value)
        if query.type is not None:
            conditions.append(CampaignRow.type == query.type.value)
        if query.created_by is not None:
            conditions.append(CampaignRow.created_by == query.created_by)
        if query.search:
            conditions.append(or_(
                CampaignRow.name.icontains(query.search, autoescape=True),
                CampaignRow.description.icontains(query.search, autoescape=True),
            ))
        if query.start_from is not None:
            conditions.append(CampaignRow.start_date >= query.start_from)
        if query.start_to is not None:
            conditions.append(CampaignRow.start_date <= query.start_to)
        if query.end_from is not None:
            conditions.append(CampaignRow.end_date >= query.end_from)
        if query.end_to is not None:
            conditions.append(CampaignRow.end_date <= query.end_to)

        async with self.db.session() as db:
            total = await db.scalar(
                select(func.count()).select_from(CampaignRow).where(*conditions)
            )
            result = await db.execute(
                select(CampaignRow).where(*conditions)
                .order_by(CampaignRow.created_at.desc())
                .offset(offset).limit(limit)
            )
            campaigns = [_to_model(Campaign, row) for row in result.scalars()]
        return campaigns, total or 0

    # ── Notifications ─────────────────────────────────────

    async def save_notification(self, record: NotificationRecord) -> NotificationRecord:
        return await self._insert(NotificationRow, record)

    async def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        return await self._get(NotificationRow, NotificationRecord, notification_id)

    async def update_notification(self, notification_id: str, **fields: Any) -> Optional[NotificationRecord]:
        return await self._update(NotificationRow, NotificationRecord, notification_id, fields)

    async def list_notifications(self, user_id: str, unread_only: bool = False,
                                 limit: int = 50) -> list[NotificationRecord]:
        stmt = select(NotificationRow).where(NotificationRow.user_id == user_id)
        if unread_only:
            stmt = stmt.where(NotificationRow.read.is_(False))
        async with self.db.session() as db:
            result = await db.execute(
                stmt.order_by(NotificationRow.created_at.desc()).limit(limit)
            )
            return [_to_model(NotificationRecord, row) for row in result.scalars()]
