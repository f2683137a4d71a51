"""
DelayedTaskScheduler - persisted tasks, delayed publish, bounded retries.

Topology:
  ┌──────────────┐  due now   ┌──────────────────┐        ┌─────────────────┐
  │  schedule()  │──────────▶│ scheduled_tasks   │──task─▶│ scheduled_tasks │──▶ worker
  │  sweep()     │           │ (direct exchange) │        │ (queue)         │
  └──────┬───────┘           └──────────────────┘        └────────▲────────┘
         │ future                                                 │
         ▼                                                        │
  ┌──────────────────┐  after x-delay ms                          │
  │  delay_exchange   │────────────── delayed_task ───────────────┘
  │ (x-delayed-msg)   │
  └──────────────────┘

The store row is the source of truth. A broker message only says
"look at task X now"; the worker re-reads the row and decides:

  status not PENDING/PROCESSING   → tombstone, acknowledge and drop
  scheduled_for still in future   → early duplicate, drop
  attempts >= max_attempts        → FAILED
  otherwise                       → PROCESSING, attempts+1, run the handler

Lost or early-dropped messages are recovered by the overdue sweep, which
republishes PENDING tasks whose time has passed.
"""
from __future__ import annotations

import asyncio
import math
import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from config.settings import SchedulerConfig
from database.store_base import BaseNotificationStore
from job_queue.broker import BrokerMessage, ExchangeType, HandlerOutcome, MessageBroker
from models.errors import TaskExecutionError, ValidationError
from models.schemas import Task, TaskStatus, TaskType, as_utc, utcnow
from scheduler.handlers import TaskHandlerRegistry

logger = structlog.get_logger()

SCHEDULED_TASKS_QUEUE = "scheduled_tasks"
TASKS_EXCHANGE = "scheduled_tasks"
TASK_ROUTING_KEY = "task"
DELAY_EXCHANGE = "delay_exchange"
DELAYED_ROUTING_KEY = "delayed_task"

# Deliveries this close to scheduled_for are treated as on time.
_EARLY_TOLERANCE = timedelta(seconds=1)

_ACTIVE = (TaskStatus.PENDING, TaskStatus.PROCESSING)


class DelayedTaskScheduler:
    """
    Usage:
        scheduler = DelayedTaskScheduler(store, broker)
        scheduler.handlers.register(TaskType.PAYMENT_REMINDER, remind)
        await scheduler.start()
        task_id = await scheduler.schedule(TaskType.PAYMENT_REMINDER, {...}, when)
    """

    def __init__(
        self,
        store: BaseNotificationStore,
        broker: MessageBroker,
        handlers: Optional[TaskHandlerRegistry] = None,
        config: Optional[SchedulerConfig] = None,
    ):
        self.store = store
        self.broker = broker
        self.handlers = handlers or TaskHandlerRegistry()
        self.config = config or SchedulerConfig()
        self._sweep_task: Optional[asyncio.Task] = None

    # ── Lifecycle ─────────────────────────────────────────────

    async def setup_topology(self):
        await self.broker.assert_exchange(TASKS_EXCHANGE, ExchangeType.DIRECT)
        await self.broker.assert_exchange(DELAY_EXCHANGE, ExchangeType.DELAYED,
                                          {"x-delayed-type": "direct"})
        await self.broker.assert_queue(SCHEDULED_TASKS_QUEUE)
        await self.broker.bind_queue(SCHEDULED_TASKS_QUEUE, TASKS_EXCHANGE, TASK_ROUTING_KEY)
        await self.broker.bind_queue(SCHEDULED_TASKS_QUEUE, DELAY_EXCHANGE, DELAYED_ROUTING_KEY)

    async def start(self):
        """Declare topology, start the worker and the overdue sweep."""
        await self.setup_topology()
        await self.broker.consume(SCHEDULED_TASKS_QUEUE, self._handle_message)
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("task_scheduler_started",
                    sweep_interval=self.config.sweep_interval,
                    handlers=[t.value for t in TaskType if self.handlers.get(t)])

    async def stop(self):
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.broker.cancel_consumer(SCHEDULED_TASKS_QUEUE)
        logger.info("task_scheduler_stopped")

    # ── Scheduling ────────────────────────────────────────────

    async def schedule(
        self,
        task_type: TaskType | str,
        payload: dict[str, Any] = None,
        scheduled_for: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
        task_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> str:
        """
        Persist a PENDING task and publish it (now, or through the delay
        exchange). Returns the task id. Raises ValidationError before
        anything is persisted. A failed publish is logged, not raised:
        the sweep republishes the task once it is due.
        """
        try:
            task_type = TaskType(task_type)
        except ValueError:
            raise ValidationError(f"Unknown task type: {task_type}", field="type")
        if payload is not None and not isinstance(payload, dict):
            raise ValidationError("Task payload must be an object", field="payload")
        if scheduled_for is not None and not isinstance(scheduled_for, datetime):
            raise ValidationError("scheduled_for must be a datetime", field="scheduled_for")
        max_attempts = self.config.default_max_attempts if max_attempts is None else max_attempts
        if not isinstance(max_attempts, int) or max_attempts < 1:
            raise ValidationError("max_attempts must be a positive integer", field="max_attempts")
        payload = payload or {}
        if task_type == TaskType.CUSTOM and not self.handlers.has_action(payload.get("action")):
            raise ValidationError(f"Unknown custom action: {payload.get('action')}", field="payload")
        if task_id and await self.store.get_task(task_id):
            raise ValidationError(f"Task {task_id} already exists", field="task_id")

        fields = dict(
            type=task_type,
            payload=payload,
            scheduled_for=as_utc(scheduled_for) if scheduled_for else utcnow(),
            max_attempts=max_attempts,
            created_by=created_by,
        )
        if task_id:
            fields["id"] = task_id
        task = await self.store.create_task(Task(**fields))

        published = await self._publish(task)
        logger.info("task_scheduled",
                    task_id=task.id,
                    type=task.type.value,
                    scheduled_for=task.scheduled_for.isoformat(),
                    published=published)
        return task.id

    async def _publish(self, task: Task) -> bool:
        envelope = {
            "id": task.id,
            "type": task.type.value,
            "payload": task.payload,
            "scheduled_for": task.scheduled_for.isoformat(),
            "status": task.status.value,
            "attempts": task.attempts,
            "max_attempts": task.max_attempts,
        }
        delay_ms = math.ceil((task.scheduled_for - utcnow()).total_seconds() * 1000)
        if delay_ms > 0:
            ok = await self.broker.publish(DELAY_EXCHANGE, DELAYED_ROUTING_KEY, envelope,
                                           headers={"x-delay": delay_ms})
        else:
            ok = await self.broker.publish(TASKS_EXCHANGE, TASK_ROUTING_KEY, envelope)
        if not ok:
            logger.warning("task_publish_failed", task_id=task.id,
                           scheduled_for=task.scheduled_for.isoformat())
        return ok

    # Convenience schedulers for the built-in task types.

    async def schedule_listing_deactivation(self, listing_id: str, deactivate_at: datetime,
                                            created_by: Optional[str] = None) -> str:
        return await self.schedule(TaskType.LISTING_DEACTIVATION, {"listing_id": listing_id},
                                   deactivate_at, created_by=created_by)

    async def schedule_payment_reminder(self, user_id: str, payment_id: str, remind_at: datetime,
                                        created_by: Optional[str] = None) -> str:
        return await self.schedule(TaskType.PAYMENT_REMINDER,
                                   {"user_id": user_id, "payment_id": payment_id},
                                   remind_at, created_by=created_by)

    async def schedule_listing_boost_end(self, listing_id: str, boost_id: str, end_at: datetime,
                                         created_by: Optional[str] = None) -> str:
        return await self.schedule(TaskType.LISTING_BOOST_END,
                                   {"listing_id": listing_id, "boost_id": boost_id},
                                   end_at, created_by=created_by)

    async def schedule_user_subscription_expiry(self, user_id: str, subscription_id: str,
                                                expiry_at: datetime,
                                                created_by: Optional[str] = None) -> str:
        return await self.schedule(TaskType.USER_SUBSCRIPTION_EXPIRY,
                                   {"user_id": user_id, "subscription_id": subscription_id},
                                   expiry_at, created_by=created_by)

    async def schedule_email_campaign(self, campaign_id: str, subject: str, content: str,
                                      send_at: datetime, user_ids: list[str] = None,
                                      created_by: Optional[str] = None) -> str:
        return await self.schedule(TaskType.EMAIL_CAMPAIGN,
                                   {"campaign_id": campaign_id, "subject": subject,
                                    "content": content, "user_ids": user_ids or []},
                                   send_at, created_by=created_by)

    async def schedule_data_cleanup(self, target: str, older_than: datetime,
                                    run_at: Optional[datetime] = None, limit: int = 1000,
                                    created_by: Optional[str] = None) -> str:
        return await self.schedule(TaskType.DATA_CLEANUP,
                                   {"target": target, "older_than": as_utc(older_than).isoformat(),
                                    "limit": limit},
                                   run_at, created_by=created_by)

    async def schedule_custom_task(self, action: str, params: dict[str, Any], run_at: datetime,
                                   created_by: Optional[str] = None) -> str:
        return await self.schedule(TaskType.CUSTOM, {"action": action, "params": params or {}},
                                   run_at, created_by=created_by)

    # ── Control ───────────────────────────────────────────────

    async def cancel(self, task_id: str) -> bool:
        """Cancel a task that has not finished. A running handler is not interrupted."""
        task = await self.store.transition_task(
            task_id, (TaskStatus.PENDING, TaskStatus.PROCESSING, TaskStatus.PAUSED),
            TaskStatus.CANCELLED,
        )
        logger.info("task_cancel", task_id=task_id, cancelled=task is not None)
        return task is not None

    async def pause(self, task_id: str) -> bool:
        task = await self.store.transition_task(task_id, (TaskStatus.PENDING,), TaskStatus.PAUSED)
        logger.info("task_pause", task_id=task_id, paused=task is not None)
        return task is not None

    async def resume(self, task_id: str) -> bool:
        """Return a PAUSED task to PENDING and publish it again."""
        task = await self.store.transition_task(task_id, (TaskStatus.PAUSED,), TaskStatus.PENDING)
        if task is None:
            return False
        await self._publish(task)
        logger.info("task_resumed", task_id=task_id)
        return True

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await self.store.get_task(task_id)

    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        task_type: Optional[TaskType] = None,
        created_by: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Task], int]:
        return await self.store.list_tasks(status=status, task_type=task_type,
                                           created_by=created_by, limit=limit, offset=offset)

    # ── Overdue sweep ─────────────────────────────────────────

    async def sweep_overdue(self) -> int:
        """
        Republish PENDING tasks whose scheduled time has passed. Tasks stuck
        in PROCESSING past ``processing_timeout`` (their worker died mid-run)
        go back to PENDING first; the attempt they used stays counted.
        """
        now = utcnow()
        stale = await self.store.find_stale_tasks(
            now - timedelta(seconds=self.config.processing_timeout),
            limit=self.config.sweep_batch_size,
        )
        for task in stale:
            released = await self.store.transition_task(
                task.id, (TaskStatus.PROCESSING,), TaskStatus.PENDING,
                last_error="processing timed out",
            )
            if released is not None:
                logger.warning("task_processing_timed_out", task_id=task.id,
                               attempts=task.attempts,
                               last_attempt_at=task.last_attempt_at.isoformat())

        tasks = await self.store.find_overdue_tasks(now, limit=self.config.sweep_batch_size)
        republished = 0
        for task in tasks:
            if await self._publish(task):
                republished += 1
        if tasks:
            logger.info("overdue_tasks_swept", found=len(tasks), republished=republished)
        return republished

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                await self.sweep_overdue()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("overdue_sweep_error", error=str(e))

    # ── Worker ────────────────────────────────────────────────

    def _retry_delay(self, attempts: int) -> float:
        base = self.config.retry_backoff_base
        if base <= 0:
            return 0.0
        return min(base * (2 ** max(attempts - 1, 0)), self.config.retry_backoff_max)

    async def _handle_message(self, message: BrokerMessage) -> HandlerOutcome:
        body = message.body if isinstance(message.body, dict) else {}
        task_id = body.get("id")
        if not task_id:
            logger.error("task_message_invalid", message_id=message.message_id)
            return HandlerOutcome.REJECT

        task = await self.store.get_task(task_id)
        if task is None:
            logger.warning("task_not_found", task_id=task_id)
            return HandlerOutcome.ACK

        if task.status not in _ACTIVE:
            logger.info("task_skipped", task_id=task.id, status=task.status.value)
            return HandlerOutcome.ACK

        now = utcnow()
        if task.scheduled_for > now + _EARLY_TOLERANCE:
            logger.info("task_early_delivery_dropped", task_id=task.id,
                        scheduled_for=task.scheduled_for.isoformat())
            return HandlerOutcome.ACK

        if task.attempts >= task.max_attempts:
            await self.store.transition_task(task.id, _ACTIVE, TaskStatus.FAILED,
                                             last_error=task.last_error or "max attempts reached")
            logger.warning("task_max_attempts_reached", task_id=task.id, attempts=task.attempts)
            return HandlerOutcome.ACK

        handler = self.handlers.get(task.type)
        if handler is None:
            await self.store.transition_task(task.id, _ACTIVE, TaskStatus.FAILED,
                                             last_error=f"No handler for {task.type.value}")
            logger.error("task_handler_missing", task_id=task.id, type=task.type.value)
            return HandlerOutcome.ACK

        claimed = await self.store.transition_task(
            task.id, _ACTIVE, TaskStatus.PROCESSING,
            attempts=task.attempts + 1, last_attempt_at=now,
        )
        if claimed is None:
            return HandlerOutcome.ACK

        logger.info("task_processing", task_id=claimed.id, type=claimed.type.value,
                    attempt=claimed.attempts, max_attempts=claimed.max_attempts)
        try:
            result = await handler(claimed)
            if result is False:
                raise TaskExecutionError("handler reported failure")
        except Exception as e:
            await self._record_failure(claimed, e)
            return HandlerOutcome.ACK

        done = await self.store.transition_task(
            claimed.id, (TaskStatus.PROCESSING,), TaskStatus.COMPLETED,
            completed_at=utcnow(), last_error=None,
        )
        if done is None:
            logger.info("task_finished_after_status_change", task_id=claimed.id)
        else:
            logger.info("task_completed", task_id=claimed.id, attempts=claimed.attempts)
        return HandlerOutcome.ACK

    async def _record_failure(self, task: Task, error: Exception):
        retryable = getattr(error, "retryable", True)
        if retryable and task.attempts < task.max_attempts:
            delay = self._retry_delay(task.attempts)
            retried = await self.store.transition_task(
                task.id, (TaskStatus.PROCESSING,), TaskStatus.PENDING,
                scheduled_for=utcnow() + timedelta(seconds=delay),
                last_error=str(error),
            )
            logger.warning("task_attempt_failed", task_id=task.id, attempt=task.attempts,
                           retry_in=delay, error=str(error))
            if retried is not None:
                await self._publish(retried)
            return

        await self.store.transition_task(task.id, (TaskStatus.PROCESSING,), TaskStatus.FAILED,
                                         last_error=str(error))
        logger.error("task_failed", task_id=task.id, attempts=task.attempts, error=str(error))
