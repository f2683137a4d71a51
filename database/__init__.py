"""
Database layer - Multi-backend persistence for tasks, bulk jobs,
campaigns and notification records.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Recipient, device-token and template lookups are external collaborators;
see database/repositories.py for their interfaces and in-memory versions.

Quick start:
  from database import create_store, get_store
  store = create_store(settings.database)
  task = await store.get_task("task_...")
"""
from database.models import Base, TaskRow, BulkJobRow, CampaignRow, NotificationRow
from database.session import Database
from database.store_base import BaseNotificationStore
from database.store import SqlNotificationStore
from database.store_memory import InMemoryNotificationStore
from database.store_factory import create_store, get_store, reset_store
from database.repositories import (
    RecipientRepository, DeviceTokenRepository, TemplateRepository,
    InMemoryRecipientRepository, InMemoryDeviceTokenRepository,
    InMemoryTemplateRepository,
)

__all__ = [
    # ORM models
    "Base", "TaskRow", "BulkJobRow", "CampaignRow", "NotificationRow",
    # Session management
    "Database",
    # Store interface + backends
    "BaseNotificationStore", "SqlNotificationStore", "InMemoryNotificationStore",
    # Factory
    "create_store", "get_store", "reset_store",
    # External collaborators
    "RecipientRepository", "DeviceTokenRepository", "TemplateRepository",
    "InMemoryRecipientRepository", "InMemoryDeviceTokenRepository",
    "InMemoryTemplateRepository",
]
