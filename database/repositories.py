"""
External collaborators - recipient, device-token and template lookups.

The marketplace user domain lives outside this package. These interfaces
are what the bulk dispatcher and channel sender consume; the in-memory
implementations back development and tests.

Provides:
  - RecipientRepository:   find_recipients(filter) → ordered list of Recipient
  - DeviceTokenRepository: tokens_for_user(user_id) → push tokens
  - TemplateRepository:    get_template(name) → NotificationTemplate | None
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from models.schemas import NotificationTemplate, Recipient, RecipientFilter


class RecipientRepository(ABC):

    @abstractmethod
    async def find_recipients(self, recipient_filter: RecipientFilter) -> list[Recipient]:
        """Resolve a filter. Implementations must return a stable order (by id)."""
        ...


class DeviceTokenRepository(ABC):

    @abstractmethod
    async def tokens_for_user(self, user_id: str) -> list[str]:
        ...


class TemplateRepository(ABC):

    @abstractmethod
    async def get_template(self, name: str) -> Optional[NotificationTemplate]:
        ...


# ──────────────────────────────────────────────────────────────
#  In-memory implementations
# ──────────────────────────────────────────────────────────────

def matches_filter(r: Recipient, f: RecipientFilter) -> bool:
    """
    Apply RecipientFilter semantics to one recipient. Every set criterion
    must hold; date bounds are exclusive. An empty filter means verified users.
    """
    if f.is_empty():
        return r.is_verified

    if f.role is not None and r.role != f.role:
        return False
    if f.is_verified is not None and r.is_verified != f.is_verified:
        return False
    if f.created_before is not None and not (r.created_at and r.created_at < f.created_before):
        return False
    if f.created_after is not None and not (r.created_at and r.created_at > f.created_after):
        return False
    if f.last_login_before is not None and not (r.last_login_at and r.last_login_at < f.last_login_before):
        return False
    if f.last_login_after is not None and not (r.last_login_at and r.last_login_at > f.last_login_after):
        return False
    if f.has_listings is not None and (r.listing_count > 0) != f.has_listings:
        return False
    if f.specific_ids and r.id not in f.specific_ids:
        return False
    if f.category_ids and not set(f.category_ids) & set(r.category_ids):
        return False
    if f.newsletter_subscribed is not None and r.newsletter_subscribed != f.newsletter_subscribed:
        return False
    return True


class InMemoryRecipientRepository(RecipientRepository):

    def __init__(self, recipients: Iterable[Recipient] = ()):
        self._recipients: dict[str, Recipient] = {r.id: r for r in recipients}

    def add(self, recipient: Recipient):
        self._recipients[recipient.id] = recipient

    async def find_recipients(self, recipient_filter: RecipientFilter) -> list[Recipient]:
        found = [r for r in self._recipients.values() if matches_filter(r, recipient_filter)]
        return sorted(found, key=lambda r: r.id)


class InMemoryDeviceTokenRepository(DeviceTokenRepository):

    def __init__(self, tokens: dict[str, list[str]] = None):
        self._tokens: dict[str, list[str]] = {k: list(v) for k, v in (tokens or {}).items()}

    def register(self, user_id: str, token: str):
        self._tokens.setdefault(user_id, [])
        if token not in self._tokens[user_id]:
            self._tokens[user_id].append(token)

    async def tokens_for_user(self, user_id: str) -> list[str]:
        return list(self._tokens.get(user_id, []))


class InMemoryTemplateRepository(TemplateRepository):

    def __init__(self, templates: Iterable[NotificationTemplate] = ()):
        self._templates: dict[str, NotificationTemplate] = {t.name: t for t in templates}

    def add(self, template: NotificationTemplate):
        self._templates[template.name] = template

    async def get_template(self, name: str) -> Optional[NotificationTemplate]:
        return self._templates.get(name)
