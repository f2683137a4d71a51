"""
Error taxonomy shared by broker, scheduler, channels and bulk dispatch.

Provides:
  - NotificationCoreError: common base
  - TransientInfraError / BrokerConnectionError: broker-level, absorbed by reconnect
  - ValidationError: bad input, raised synchronously, never retried
  - RateLimitExceeded: per-channel window exhausted
  - RecipientDeliveryError: one recipient failed, counted, job continues
  - TaskExecutionError: task handler failure, retried until max_attempts
"""
from __future__ import annotations

from typing import Optional


class NotificationCoreError(Exception):
    """Base for every error raised by this package."""
    pass


class TransientInfraError(NotificationCoreError):
    """Broker unavailable or a channel dropped. Callers see False, not this."""
    pass


class BrokerConnectionError(TransientInfraError):
    pass


class ValidationError(NotificationCoreError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class RateLimitExceeded(NotificationCoreError):
    def __init__(self, channel: str, key: str, retry_after: float = 0.0):
        super().__init__(f"Rate limit exceeded for {key}")
        self.channel = channel
        self.key = key
        self.retry_after = retry_after


class RecipientDeliveryError(NotificationCoreError):
    def __init__(self, recipient_id: str, reason: str):
        super().__init__(f"Delivery to {recipient_id} failed: {reason}")
        self.recipient_id = recipient_id
        self.reason = reason


class TaskExecutionError(NotificationCoreError):
    """Raised by task handlers. ``retryable=False`` fails the task at once."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
