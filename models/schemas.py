"""
Core data models for the notification core.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Naive UTC timestamp; every persisted datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4()}"


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class TaskType(str, Enum):
    LISTING_DEACTIVATION = "listing_deactivation"
    PAYMENT_REMINDER = "payment_reminder"
    LISTING_BOOST_END = "listing_boost_end"
    USER_SUBSCRIPTION_EXPIRY = "user_subscription_expiry"
    EMAIL_CAMPAIGN = "email_campaign"
    DATA_CLEANUP = "data_cleanup"
    CUSTOM = "custom"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


TERMINAL_TASK_STATUSES = frozenset({
    TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED,
})


class BulkJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({
    BulkJobStatus.COMPLETED, BulkJobStatus.FAILED, BulkJobStatus.CANCELLED,
})


class CampaignType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    MIXED = "mixed"
    NEWSLETTER = "newsletter"
    PROMO = "promo"
    EVENT = "event"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# ──────────────────────────────────────────────────────────────
#  Task - a unit of deferred work
# ──────────────────────────────────────────────────────────────

class Task(BaseModel):
    id: str = Field(default_factory=lambda: new_id("task"))
    type: TaskType
    payload: dict[str, Any] = {}
    scheduled_for: datetime
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    last_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


# ──────────────────────────────────────────────────────────────
#  Recipients
# ──────────────────────────────────────────────────────────────

class RecipientFilter(BaseModel):
    """
    Selects a recipient population. All set criteria must match.
    An empty filter selects the default population (verified users).
    """
    role: Optional[str] = None
    is_verified: Optional[bool] = None
    created_before: Optional[datetime] = None
    created_after: Optional[datetime] = None
    last_login_before: Optional[datetime] = None
    last_login_after: Optional[datetime] = None
    has_listings: Optional[bool] = None
    specific_ids: list[str] = []
    category_ids: list[str] = []
    newsletter_subscribed: Optional[bool] = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_defaults=True)


class Recipient(BaseModel):
    id: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    name: Optional[str] = None
    # Attributes matched by RecipientFilter; repositories may ignore them.
    role: str = "user"
    is_verified: bool = False
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    listing_count: int = 0
    category_ids: list[str] = []
    newsletter_subscribed: bool = False


# ──────────────────────────────────────────────────────────────
#  Bulk notification jobs
# ──────────────────────────────────────────────────────────────

class BulkJob(BaseModel):
    id: str = Field(default_factory=lambda: new_id("bulk"))
    channel: ChannelType
    subject: Optional[str] = None
    content: str = ""
    template_name: Optional[str] = None
    template_variables: dict[str, Any] = {}
    recipient_filter: RecipientFilter = Field(default_factory=RecipientFilter)
    priority: NotificationPriority = NotificationPriority.NORMAL
    status: BulkJobStatus = BulkJobStatus.PENDING
    total_recipients: int = 0
    total_sent: int = 0
    total_failed: int = 0
    cursor: int = 0                           # recipients already processed
    last_recipient_id: Optional[str] = None   # resume point, recipients are ordered by id
    error: Optional[str] = None
    campaign_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class JobProgress(BaseModel):
    """Status snapshot returned to pollers."""
    job_id: str
    channel: ChannelType
    status: BulkJobStatus
    total_recipients: int = 0
    total_sent: int = 0
    total_failed: int = 0
    campaign_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: BulkJob) -> "JobProgress":
        return cls(
            job_id=job.id, channel=job.channel, status=job.status,
            total_recipients=job.total_recipients,
            total_sent=job.total_sent, total_failed=job.total_failed,
            campaign_id=job.campaign_id,
            started_at=job.started_at, completed_at=job.completed_at,
            error=job.error,
        )


# ──────────────────────────────────────────────────────────────
#  Notifications - one per recipient send
# ──────────────────────────────────────────────────────────────

class Attachment(BaseModel):
    filename: str
    content_type: str = "application/octet-stream"
    content: bytes = b""

    @property
    def size_bytes(self) -> int:
        return len(self.content)


class NotificationRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    channel: ChannelType
    address: str
    subject: Optional[str] = None
    content: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    metadata: dict[str, Any] = {}
    attachment_names: list[str] = []
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
    read: bool = False
    read_at: Optional[datetime] = None


class NotificationTemplate(BaseModel):
    name: str
    subject: Optional[str] = None
    content: str


# ──────────────────────────────────────────────────────────────
#  Campaigns
# ──────────────────────────────────────────────────────────────

class Campaign(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str = ""
    type: CampaignType
    status: CampaignStatus = CampaignStatus.DRAFT
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    target_filter: RecipientFilter = Field(default_factory=RecipientFilter)
    subject: Optional[str] = None
    content: Optional[str] = None
    template_name: Optional[str] = None
    template_variables: dict[str, Any] = {}
    channels: list[ChannelType] = []          # explicit override for PROMO / EVENT
    start_task_id: Optional[str] = None
    end_task_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CampaignQuery(BaseModel):
    """Campaign listing criteria. Date bounds are inclusive; search is case-insensitive."""
    status: Optional[CampaignStatus] = None
    type: Optional[CampaignType] = None
    created_by: Optional[str] = None
    search: Optional[str] = None              # matched against name and description
    start_from: Optional[datetime] = None
    start_to: Optional[datetime] = None
    end_from: Optional[datetime] = None
    end_to: Optional[datetime] = None

    def matches(self, campaign: Campaign) -> bool:
        if self.status is not None and campaign.status != self.status:
            return False
        if self.type is not None and campaign.type != self.type:
            return False
        if self.created_by is not None and campaign.created_by != self.created_by:
            return False
        if self.search:
            needle = self.search.lower()
            if needle not in campaign.name.lower() and needle not in campaign.description.lower():
                return False
        return (_within(campaign.start_date, self.start_from, self.start_to)
                and _within(campaign.end_date, self.end_from, self.end_to))


def _within(value: Optional[datetime], low: Optional[datetime], high: Optional[datetime]) -> bool:
    if low is None and high is None:
        return True
    if value is None:
        return False
    return (low is None or value >= low) and (high is None or value <= high)


class CampaignAnalytics(BaseModel):
    campaign_id: str
    status: CampaignStatus
    total_jobs: int = 0
    completed_jobs: int = 0
    total_sent: int = 0
    total_failed: int = 0
    delivery_rate: float = 0.0
