"""
Tests for the delayed task scheduler.

Covers:
  - schedule(): validation, immediate vs delayed publish, publish failure
  - Worker: completion, bounded retries, backoff, tombstones, early drops,
    missing handlers, non-retryable failures, cancel during execution
  - CUSTOM actions, pause/resume, overdue sweep, listing
"""
import asyncio
from datetime import timedelta

import pytest

from config.settings import SchedulerConfig
from job_queue.broker import BrokerMessage, HandlerOutcome, InMemoryBroker
from models.errors import TaskExecutionError, ValidationError
from models.schemas import Task, TaskStatus, TaskType, utcnow
from scheduler.service import (
    DELAY_EXCHANGE, SCHEDULED_TASKS_QUEUE, DelayedTaskScheduler,
)


@pytest.fixture
async def scheduler(store, broker, settings):
    s = DelayedTaskScheduler(store, broker, config=settings.scheduler)
    await s.setup_topology()
    return s


@pytest.fixture
async def running(scheduler):
    await scheduler.start()
    yield scheduler
    await scheduler.stop()


def deliver(task_id: str) -> BrokerMessage:
    return BrokerMessage(body={"id": task_id}, routing_key="task")


# ──────────────────────────────────────────────────────────────
#  Scheduling
# ──────────────────────────────────────────────────────────────

class TestSchedule:
    @pytest.mark.asyncio
    async def test_due_task_published_to_ready_queue(self, scheduler, broker, store):
        task_id = await scheduler.schedule(TaskType.PAYMENT_REMINDER, {"user_id": "u1"})
        task = await store.get_task(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.attempts == 0
        assert task.max_attempts == 3
        assert await broker.queue_length(SCHEDULED_TASKS_QUEUE) == 1
        assert broker.delayed_count() == 0

    @pytest.mark.asyncio
    async def test_future_task_goes_through_delay_exchange(self, scheduler, broker):
        await scheduler.schedule(TaskType.LISTING_DEACTIVATION, {"listing_id": "l1"},
                                 utcnow() + timedelta(hours=1))
        assert broker.delayed_count() == 1
        assert await broker.queue_length(SCHEDULED_TASKS_QUEUE) == 0

    @pytest.mark.asyncio
    async def test_delay_header_is_milliseconds_until_due(self, scheduler, broker):
        published = []
        original = broker.publish

        async def spy(exchange, routing_key, payload, headers=None, message_id=""):
            published.append((exchange, headers))
            return await original(exchange, routing_key, payload, headers=headers)

        broker.publish = spy
        await scheduler.schedule(TaskType.PAYMENT_REMINDER, {}, utcnow() + timedelta(seconds=10))
        exchange, headers = published[0]
        assert exchange == DELAY_EXCHANGE
        assert 9000 < headers["x-delay"] <= 10000

    @pytest.mark.asyncio
    async def test_envelope_shape(self, scheduler, broker):
        seen = []

        async def handler(message):
            seen.append(message.body)

        task_id = await scheduler.schedule(TaskType.DATA_CLEANUP, {"target": "logs"}, max_attempts=5)
        await broker.consume(SCHEDULED_TASKS_QUEUE, handler)
        await asyncio.sleep(0.1)
        body = seen[0]
        assert body["id"] == task_id
        assert body["type"] == "data_cleanup"
        assert body["payload"] == {"target": "logs"}
        assert body["status"] == "pending"
        assert body["attempts"] == 0
        assert body["max_attempts"] == 5
        assert "scheduled_for" in body

    @pytest.mark.asyncio
    async def test_explicit_task_id(self, scheduler, store):
        task_id = await scheduler.schedule(TaskType.PAYMENT_REMINDER, {}, task_id="task_fixed")
        assert task_id == "task_fixed"
        assert await store.get_task("task_fixed") is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"task_type": "not_a_type"},
        {"task_type": TaskType.PAYMENT_REMINDER, "max_attempts": 0},
        {"task_type": TaskType.CUSTOM, "payload": {"action": "unknown"}},
        {"task_type": TaskType.PAYMENT_REMINDER, "payload": ["not", "a", "dict"]},
    ])
    async def test_validation_errors_persist_nothing(self, scheduler, store, kwargs):
        with pytest.raises(ValidationError):
            await scheduler.schedule(**kwargs)
        _, total = await store.list_tasks()
        assert total == 0

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, scheduler, store):
        await scheduler.schedule(TaskType.PAYMENT_REMINDER, {}, task_id="task_dup")
        with pytest.raises(ValidationError):
            await scheduler.schedule(TaskType.PAYMENT_REMINDER, {}, task_id="task_dup")
        _, total = await store.list_tasks()
        assert total == 1

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_task_pending(self, store, broker_config):
        offline = InMemoryBroker(broker_config)
        scheduler = DelayedTaskScheduler(store, offline)
        await scheduler.setup_topology()
        task_id = await scheduler.schedule(TaskType.PAYMENT_REMINDER, {"user_id": "u1"})
        task = await store.get_task(task_id)
        assert task.status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_convenience_schedulers(self, scheduler, store):
        when = utcnow() + timedelta(days=1)
        ids = [
            await scheduler.schedule_listing_deactivation("l1", when),
            await scheduler.schedule_payment_reminder("u1", "p1", when),
            await scheduler.schedule_listing_boost_end("l1", "b1", when),
            await scheduler.schedule_user_subscription_expiry("u1", "s1", when),
            await scheduler.schedule_email_campaign("c1", "Hi", "<p>x</p>", when, ["u1"]),
            await scheduler.schedule_data_cleanup("notifications", utcnow() - timedelta(days=90)),
        ]
        tasks = [await store.get_task(i) for i in ids]
        assert [t.type for t in tasks] == [
            TaskType.LISTING_DEACTIVATION, TaskType.PAYMENT_REMINDER,
            TaskType.LISTING_BOOST_END, TaskType.USER_SUBSCRIPTION_EXPIRY,
            TaskType.EMAIL_CAMPAIGN, TaskType.DATA_CLEANUP,
        ]
        assert tasks[1].payload == {"user_id": "u1", "payment_id": "p1"}
        assert tasks[4].payload["user_ids"] == ["u1"]


# ──────────────────────────────────────────────────────────────
#  Worker
# ──────────────────────────────────────────────────────────────

class TestWorker:
    @pytest.mark.asyncio
    async def test_due_task_runs_without_delay(self, running, store, eventually):
        ran = []

        async def handler(task):
            ran.append(task.id)

        running.handlers.register(TaskType.PAYMENT_REMINDER, handler)
        task_id = await running.schedule(TaskType.PAYMENT_REMINDER, {"user_id": "u1"})

        task = await eventually(lambda: _status_is(store, task_id, TaskStatus.COMPLETED), timeout=1.0)
        assert ran == [task_id]
        assert task.attempts == 1
        assert task.completed_at is not None
        assert task.last_attempt_at is not None

    @pytest.mark.asyncio
    async def test_delayed_task_runs_after_due(self, running, store, eventually):
        ran = []

        async def handler(task):
            ran.append(utcnow())

        running.handlers.register(TaskType.LISTING_BOOST_END, handler)
        due = utcnow() + timedelta(milliseconds=200)
        task_id = await running.schedule(TaskType.LISTING_BOOST_END, {}, due)
        await eventually(lambda: _status_is(store, task_id, TaskStatus.COMPLETED))
        assert ran[0] >= due - timedelta(seconds=1)

    @pytest.mark.asyncio
    async def test_failing_task_stops_at_max_attempts(self, running, store, eventually):
        calls = []

        async def handler(task):
            calls.append(task.attempts)
            raise RuntimeError("provider down")

        running.handlers.register(TaskType.PAYMENT_REMINDER, handler)
        task_id = await running.schedule(TaskType.PAYMENT_REMINDER, {}, max_attempts=3)

        task = await eventually(lambda: _status_is(store, task_id, TaskStatus.FAILED))
        await asyncio.sleep(0.15)
        task = await store.get_task(task_id)
        assert task.attempts == 3
        assert calls == [1, 2, 3]
        assert task.last_error == "provider down"

    @pytest.mark.asyncio
    async def test_handler_returning_false_is_a_failure(self, running, store, eventually):
        async def handler(task):
            return False

        running.handlers.register(TaskType.PAYMENT_REMINDER, handler)
        task_id = await running.schedule(TaskType.PAYMENT_REMINDER, {}, max_attempts=1)
        task = await eventually(lambda: _status_is(store, task_id, TaskStatus.FAILED))
        assert task.attempts == 1

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self, running, store, eventually):
        async def handler(task):
            raise TaskExecutionError("listing gone", retryable=False)

        running.handlers.register(TaskType.LISTING_DEACTIVATION, handler)
        task_id = await running.schedule(TaskType.LISTING_DEACTIVATION, {}, max_attempts=5)
        task = await eventually(lambda: _status_is(store, task_id, TaskStatus.FAILED))
        assert task.attempts == 1

    @pytest.mark.asyncio
    async def test_cancel_before_claim_prevents_execution(self, running, store):
        ran = []

        async def handler(task):
            ran.append(task.id)

        running.handlers.register(TaskType.PAYMENT_REMINDER, handler)
        task_id = await running.schedule(TaskType.PAYMENT_REMINDER, {},
                                         utcnow() + timedelta(milliseconds=150))
        assert await running.cancel(task_id) is True
        await asyncio.sleep(0.5)
        assert ran == []
        task = await store.get_task(task_id)
        assert task.status == TaskStatus.CANCELLED
        assert task.attempts == 0

    @pytest.mark.asyncio
    async def test_missing_handler_fails_task(self, scheduler, store):
        task_id = await scheduler.schedule(TaskType.USER_SUBSCRIPTION_EXPIRY, {})
        assert await scheduler._handle_message(deliver(task_id)) == HandlerOutcome.ACK
        task = await store.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.attempts == 0
        assert "No handler" in task.last_error

    @pytest.mark.asyncio
    async def test_early_delivery_is_dropped(self, scheduler, store):
        ran = []

        async def handler(task):
            ran.append(task.id)

        scheduler.handlers.register(TaskType.PAYMENT_REMINDER, handler)
        task_id = await scheduler.schedule(TaskType.PAYMENT_REMINDER, {},
                                           utcnow() + timedelta(hours=1))
        assert await scheduler._handle_message(deliver(task_id)) == HandlerOutcome.ACK
        task = await store.get_task(task_id)
        assert ran == []
        assert task.status == TaskStatus.PENDING
        assert task.attempts == 0

    @pytest.mark.asyncio
    async def test_tombstoned_task_is_not_run(self, scheduler, store):
        ran = []

        async def handler(task):
            ran.append(task.id)

        scheduler.handlers.register(TaskType.PAYMENT_REMINDER, handler)
        task_id = await scheduler.schedule(TaskType.PAYMENT_REMINDER, {})
        await scheduler.cancel(task_id)
        await scheduler._handle_message(deliver(task_id))
        assert ran == []

    @pytest.mark.asyncio
    async def test_completed_task_redelivery_is_noop(self, scheduler, store):
        ran = []

        async def handler(task):
            ran.append(task.id)

        scheduler.handlers.register(TaskType.PAYMENT_REMINDER, handler)
        task_id = await scheduler.schedule(TaskType.PAYMENT_REMINDER, {})
        await scheduler._handle_message(deliver(task_id))
        await scheduler._handle_message(deliver(task_id))
        assert ran == [task_id]
        assert (await store.get_task(task_id)).attempts == 1

    @pytest.mark.asyncio
    async def test_message_without_id_is_rejected(self, scheduler):
        outcome = await scheduler._handle_message(BrokerMessage(body={"nope": 1}))
        assert outcome == HandlerOutcome.REJECT

    @pytest.mark.asyncio
    async def test_unknown_task_is_acked(self, scheduler):
        assert await scheduler._handle_message(deliver("task_missing")) == HandlerOutcome.ACK

    @pytest.mark.asyncio
    async def test_cancel_during_execution_wins(self, scheduler, store):
        async def handler(task):
            await scheduler.cancel(task.id)
            return "done"

        scheduler.handlers.register(TaskType.PAYMENT_REMINDER, handler)
        task_id = await scheduler.schedule(TaskType.PAYMENT_REMINDER, {})
        await scheduler._handle_message(deliver(task_id))
        task = await store.get_task(task_id)
        assert task.status == TaskStatus.CANCELLED
        assert task.completed_at is None

    @pytest.mark.asyncio
    async def test_exhausted_task_redelivered_goes_failed(self, scheduler, store):
        task = await store.create_task(Task(type=TaskType.PAYMENT_REMINDER, scheduled_for=utcnow(),
                                            status=TaskStatus.PROCESSING, attempts=3, max_attempts=3))
        await scheduler._handle_message(deliver(task.id))
        assert (await store.get_task(task.id)).status == TaskStatus.FAILED


class TestRetryBackoff:
    def test_backoff_doubles_and_caps(self, store, broker_config):
        scheduler = DelayedTaskScheduler(store, InMemoryBroker(broker_config),
                                         config=SchedulerConfig(retry_backoff_base=30,
                                                                retry_backoff_max=100))
        assert [scheduler._retry_delay(n) for n in (1, 2, 3, 4)] == [30, 60, 100, 100]

    def test_zero_base_means_immediate(self, store, broker_config):
        scheduler = DelayedTaskScheduler(store, InMemoryBroker(broker_config),
                                         config=SchedulerConfig(retry_backoff_base=0))
        assert scheduler._retry_delay(3) == 0

    @pytest.mark.asyncio
    async def test_failed_attempt_rescheduled_through_delay_exchange(self, store, broker):
        scheduler = DelayedTaskScheduler(store, broker, config=SchedulerConfig(retry_backoff_base=30))
        await scheduler.setup_topology()

        async def handler(task):
            raise RuntimeError("try later")

        scheduler.handlers.register(TaskType.PAYMENT_REMINDER, handler)
        task_id = await scheduler.schedule(TaskType.PAYMENT_REMINDER, {})
        before = utcnow()
        await scheduler._handle_message(deliver(task_id))

        task = await store.get_task(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.attempts == 1
        assert task.scheduled_for >= before + timedelta(seconds=29)
        assert broker.delayed_count() == 1


# ──────────────────────────────────────────────────────────────
#  Custom actions, pause / resume, sweep, listing
# ──────────────────────────────────────────────────────────────

class TestCustomActions:
    @pytest.mark.asyncio
    async def test_registered_action_runs_with_params(self, running, store, eventually):
        received = []

        async def refresh_cache(params):
            received.append(params)

        running.handlers.register_action("refresh_cache", refresh_cache)
        task_id = await running.schedule_custom_task("refresh_cache", {"region": "eu"}, utcnow())
        await eventually(lambda: _status_is(store, task_id, TaskStatus.COMPLETED))
        assert received == [{"region": "eu"}]

    @pytest.mark.asyncio
    async def test_action_removed_after_scheduling_fails_task(self, scheduler, store):
        async def noop(params):
            pass

        scheduler.handlers.register_action("temporary", noop)
        task_id = await scheduler.schedule_custom_task("temporary", {}, utcnow())
        scheduler.handlers._actions.clear()
        await scheduler._handle_message(deliver(task_id))
        task = await store.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.attempts == 1


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_and_resume(self, scheduler, store, broker):
        task_id = await scheduler.schedule(TaskType.PAYMENT_REMINDER, {},
                                           utcnow() + timedelta(hours=1))
        assert await scheduler.pause(task_id) is True
        paused = await store.get_task(task_id)
        assert paused.status == TaskStatus.PAUSED

        assert await scheduler.resume(task_id) is True
        resumed = await store.get_task(task_id)
        assert resumed.status == TaskStatus.PENDING
        assert resumed.scheduled_for == paused.scheduled_for
        assert broker.delayed_count() == 2

    @pytest.mark.asyncio
    async def test_only_pending_can_pause(self, scheduler, store):
        task_id = await scheduler.schedule(TaskType.PAYMENT_REMINDER, {})
        await scheduler.cancel(task_id)
        assert await scheduler.pause(task_id) is False
        assert await scheduler.resume(task_id) is False

    @pytest.mark.asyncio
    async def test_cancel_terminal_task_returns_false(self, scheduler, store):
        task_id = await scheduler.schedule(TaskType.PAYMENT_REMINDER, {})
        assert await scheduler.cancel(task_id) is True
        assert await scheduler.cancel(task_id) is False
        assert await scheduler.cancel("task_missing") is False


class TestSweep:
    @pytest.mark.asyncio
    async def test_overdue_pending_tasks_republished(self, scheduler, store, broker):
        overdue = await store.create_task(Task(type=TaskType.PAYMENT_REMINDER,
                                               scheduled_for=utcnow() - timedelta(minutes=5)))
        await store.create_task(Task(type=TaskType.PAYMENT_REMINDER,
                                     scheduled_for=utcnow() + timedelta(minutes=5)))
        await store.create_task(Task(type=TaskType.PAYMENT_REMINDER, status=TaskStatus.PAUSED,
                                     scheduled_for=utcnow() - timedelta(minutes=5)))

        assert await scheduler.sweep_overdue() == 1
        assert await broker.queue_length(SCHEDULED_TASKS_QUEUE) == 1
        assert (await store.get_task(overdue.id)).status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_abandoned_processing_task_released(self, scheduler, store, broker):
        ran = []

        async def handler(task):
            ran.append(task.attempts)

        scheduler.handlers.register(TaskType.PAYMENT_REMINDER, handler)
        abandoned = await store.create_task(Task(
            type=TaskType.PAYMENT_REMINDER, status=TaskStatus.PROCESSING, attempts=1,
            scheduled_for=utcnow() - timedelta(hours=2),
            last_attempt_at=utcnow() - timedelta(hours=1)))
        running_now = await store.create_task(Task(
            type=TaskType.PAYMENT_REMINDER, status=TaskStatus.PROCESSING, attempts=1,
            scheduled_for=utcnow() - timedelta(minutes=1), last_attempt_at=utcnow()))

        assert await scheduler.sweep_overdue() == 1
        released = await store.get_task(abandoned.id)
        assert released.status == TaskStatus.PENDING
        assert released.last_error == "processing timed out"
        assert (await store.get_task(running_now.id)).status == TaskStatus.PROCESSING

        await scheduler._handle_message(deliver(abandoned.id))
        done = await store.get_task(abandoned.id)
        assert done.status == TaskStatus.COMPLETED
        assert ran == [2]

    @pytest.mark.asyncio
    async def test_sweep_recovers_lost_message(self, running, store, eventually):
        ran = []

        async def handler(task):
            ran.append(task.id)

        running.handlers.register(TaskType.PAYMENT_REMINDER, handler)
        lost = await store.create_task(Task(type=TaskType.PAYMENT_REMINDER,
                                            scheduled_for=utcnow() - timedelta(seconds=1)))
        await eventually(lambda: _status_is(store, lost.id, TaskStatus.COMPLETED))
        assert ran == [lost.id]


class TestListing:
    @pytest.mark.asyncio
    async def test_list_tasks_filters(self, scheduler):
        await scheduler.schedule(TaskType.PAYMENT_REMINDER, {}, created_by="admin")
        await scheduler.schedule(TaskType.DATA_CLEANUP, {}, created_by="system")
        cancelled = await scheduler.schedule(TaskType.DATA_CLEANUP, {}, created_by="system")
        await scheduler.cancel(cancelled)

        tasks, total = await scheduler.list_tasks(task_type=TaskType.DATA_CLEANUP)
        assert total == 2
        tasks, total = await scheduler.list_tasks(status=TaskStatus.CANCELLED)
        assert [t.id for t in tasks] == [cancelled]
        tasks, total = await scheduler.list_tasks(created_by="admin")
        assert total == 1


async def _status_is(store, task_id, status):
    task = await store.get_task(task_id)
    return task if task and task.status == status else None
