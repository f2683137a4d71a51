"""
Channel Adapters - Shared base infrastructure for all outbound channels.

Provides:
- FixedWindowRateLimiter: per-key fixed-window send limits
- ChannelMetrics: per-channel sent/failed/rejected/latency tracking
- OutboundMessage: the payload handed to a transport
- ChannelAdapter: abstract base owning validation, content shaping and
  transport invocation for one channel
- ChannelRegistry: adapter lookup and health checks
"""
from __future__ import annotations

import abc
import time
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

from config.settings import LimitsConfig
from models.errors import RateLimitExceeded, ValidationError
from models.schemas import Attachment, ChannelType, NotificationPriority

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  FIXED WINDOW RATE LIMITER
# ══════════════════════════════════════════════════════════════

class FixedWindowRateLimiter:
    """
    At most ``limit`` hits per key within each ``window`` seconds.
    The window starts at the first hit and resets once it has elapsed.
    """

    def __init__(self, limit: int, window: float = 60.0, clock=time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}    # key → (window start, count)
        self._last_prune = clock()

    def hit(self, key: str, channel: str = "") -> None:
        """Count one send for ``key``; raises RateLimitExceeded past the limit."""
        now = self._clock()
        self._prune(now)
        start, count = self._windows.get(key, (now, 0))
        if now - start >= self.window:
            start, count = now, 0
        if count >= self.limit:
            retry_after = max(0.0, self.window - (now - start))
            raise RateLimitExceeded(channel=channel, key=key, retry_after=retry_after)
        self._windows[key] = (start, count + 1)

    def remaining(self, key: str) -> int:
        now = self._clock()
        start, count = self._windows.get(key, (now, 0))
        if now - start >= self.window:
            return self.limit
        return max(0, self.limit - count)

    def _prune(self, now: float):
        if now - self._last_prune < self.window:
            return
        self._last_prune = now
        expired = [k for k, (start, _) in self._windows.items() if now - start >= self.window]
        for k in expired:
            del self._windows[k]


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure, rejection and latency metrics."""

    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.messages_rejected: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    def record_rejection(self):
        self.messages_rejected += 1

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "rejected": self.messages_rejected,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  OUTBOUND MESSAGE
# ══════════════════════════════════════════════════════════════

@dataclass
class OutboundMessage:
    channel: ChannelType
    address: str                              # email, phone number or device token
    content: str
    subject: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)
    priority: NotificationPriority = NotificationPriority.NORMAL
    notification_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER - Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement ``validate`` and may override ``prepare_content``.
    ``deliver`` wraps the transport call with metrics and turns any
    transport error into False.
    """

    channel_type: ChannelType

    def __init__(self, transport, limits: LimitsConfig = None, enabled: bool = True):
        self.transport = transport
        self.limits = limits or LimitsConfig()
        self.enabled = enabled
        self._metrics = ChannelMetrics(self.channel_type)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    def validate(self, address: str, content: str, subject: Optional[str] = None,
                 attachments: list[Attachment] = None) -> None:
        """Raise ValidationError when the message cannot be sent on this channel."""
        ...

    def prepare_content(self, content: str) -> str:
        return content

    # ── Send ──────────────────────────────────────────────────

    def reject(self, message: str, field: str = "") -> None:
        self._metrics.record_rejection()
        raise ValidationError(message, field=field or None)

    async def deliver(self, message: OutboundMessage) -> bool:
        start = time.monotonic()
        try:
            ok = bool(await self.transport.send(message))
        except Exception as e:
            logger.error("transport_send_failed",
                         channel=self.channel_type.value,
                         notification_id=message.notification_id,
                         error=str(e))
            self._metrics.record_failure(str(e))
            return False

        if ok:
            self._metrics.record_send((time.monotonic() - start) * 1000)
        else:
            self._metrics.record_failure("transport_returned_false")
        return ok

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type.value,
            "enabled": self.enabled,
            "transport": type(self.transport).__name__,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel_type)

    def get_available(self) -> list[ChannelType]:
        return [ch for ch, a in self._adapters.items() if a.enabled]

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await a.health_check() for ch, a in self._adapters.items()}

    async def shutdown_all(self):
        for a in self._adapters.values():
            try:
                await a.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed",
                               channel=a.channel_type.value, error=str(e))
