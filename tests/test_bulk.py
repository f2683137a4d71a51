"""
Tests for the bulk notification dispatcher.

Covers:
  - enqueue validation and the persisted PENDING job
  - Paced chunking: chunk count, pauses between chunks, counters sum to total
  - Per-recipient failure isolation
  - Cancellation at a chunk boundary
  - Push fan-out over device tokens
  - Template jobs and per-recipient variables
  - Resume from the committed cursor, startup recovery, end-to-end via the broker
"""
from unittest.mock import AsyncMock

import pytest

from database.repositories import InMemoryRecipientRepository
from job_queue.broker import BrokerMessage, HandlerOutcome
from models.errors import ValidationError
from models.schemas import (
    BulkJob, BulkJobStatus, ChannelType, Recipient, RecipientFilter,
)
from notifications.bulk import BULK_QUEUE, BulkNotificationDispatcher
from conftest import make_recipients

TOKEN_A = "a" * 64
TOKEN_B = "b" * 64


@pytest.fixture
def make_dispatcher(store, broker, sender, device_tokens, settings):
    def build(recipients):
        dispatcher = BulkNotificationDispatcher(store, broker, sender, recipients,
                                                device_tokens=device_tokens, config=settings.bulk)
        dispatcher._pause_between_batches = AsyncMock()
        return dispatcher
    return build


@pytest.fixture
def dispatcher(make_dispatcher, recipients):
    return make_dispatcher(recipients)


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_persists_pending_job_and_publishes(self, dispatcher, store, broker):
        job_id = await dispatcher.enqueue_bulk_email("Sale", "<p>50% off</p>",
                                                     created_by="admin")
        job = await store.get_job(job_id)
        assert job.status == BulkJobStatus.PENDING
        assert job.channel == ChannelType.EMAIL
        assert job.subject == "Sale"
        assert job.created_by == "admin"
        assert await broker.queue_length(BULK_QUEUE) == 1

    @pytest.mark.asyncio
    async def test_unknown_channel_rejected(self, dispatcher):
        with pytest.raises(ValidationError):
            await dispatcher.enqueue("fax", "hello")

    @pytest.mark.asyncio
    async def test_content_or_template_required(self, dispatcher):
        with pytest.raises(ValidationError):
            await dispatcher.enqueue(ChannelType.EMAIL, "", subject="Hi")

    @pytest.mark.asyncio
    async def test_enqueue_with_broker_down_keeps_job_pending(self, dispatcher, store, broker):
        broker.available = False
        await broker.simulate_disconnect()
        job_id = await dispatcher.enqueue_bulk_sms("hello")
        assert (await store.get_job(job_id)).status == BulkJobStatus.PENDING


class TestProcessing:
    @pytest.mark.asyncio
    async def test_chunks_and_pauses(self, make_dispatcher, transports):
        dispatcher = make_dispatcher(InMemoryRecipientRepository(make_recipients(250)))
        job_id = await dispatcher.enqueue_bulk_email("Hi {{name}}", "<p>Hello {{name}}</p>")

        job = await dispatcher.process_job(job_id)

        assert job.status == BulkJobStatus.COMPLETED
        assert job.total_recipients == 250
        assert job.total_sent == 250
        assert job.total_failed == 0
        assert job.total_sent + job.total_failed == job.total_recipients
        assert job.cursor == 250
        assert job.started_at is not None and job.completed_at is not None
        assert dispatcher._pause_between_batches.await_count == 2
        sent = transports[ChannelType.EMAIL].sent
        assert len(sent) == 250
        assert sent[0].subject == "Hi User 0"
        assert sent[0].metadata["bulk_job_id"] == job_id

    @pytest.mark.asyncio
    async def test_single_chunk_never_pauses(self, dispatcher):
        job_id = await dispatcher.enqueue_bulk_sms("hello")
        job = await dispatcher.process_job(job_id)
        assert job.total_sent == 5
        dispatcher._pause_between_batches.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recipient_failures_are_isolated(self, make_dispatcher, transports):
        people = make_recipients(3) + [
            Recipient(id="u9001", email="not-an-email", is_verified=True),
            Recipient(id="u9002", email=None, is_verified=True),
        ]
        dispatcher = make_dispatcher(InMemoryRecipientRepository(people))
        job_id = await dispatcher.enqueue_bulk_email("Hi", "Body")

        job = await dispatcher.process_job(job_id)

        assert job.status == BulkJobStatus.COMPLETED
        assert job.total_sent == 3
        assert job.total_failed == 2
        assert len(transports[ChannelType.EMAIL].sent) == 3

    @pytest.mark.asyncio
    async def test_transport_exception_counts_as_failed(self, dispatcher, transports):
        transports[ChannelType.SMS].send = AsyncMock(side_effect=RuntimeError("provider down"))
        job_id = await dispatcher.enqueue_bulk_sms("hello")
        job = await dispatcher.process_job(job_id)
        assert job.status == BulkJobStatus.COMPLETED
        assert job.total_failed == 5

    @pytest.mark.asyncio
    async def test_filter_selects_population(self, make_dispatcher):
        people = make_recipients(4) + [
            Recipient(id="u9000", email="x@example.com", is_verified=False),
        ]
        dispatcher = make_dispatcher(InMemoryRecipientRepository(people))
        job_id = await dispatcher.enqueue_bulk_email(
            "Hi", "Body", RecipientFilter(specific_ids=["u0001", "u0003"]))
        job = await dispatcher.process_job(job_id)
        assert job.total_recipients == 2

        default_id = await dispatcher.enqueue_bulk_email("Hi", "Body")
        default_job = await dispatcher.process_job(default_id)
        assert default_job.total_recipients == 4

    @pytest.mark.asyncio
    async def test_cancel_at_chunk_boundary(self, make_dispatcher, transports):
        dispatcher = make_dispatcher(InMemoryRecipientRepository(make_recipients(250)))
        job_id = await dispatcher.enqueue_bulk_email("Hi", "Body")

        async def cancel_during_pause():
            await dispatcher.cancel_job(job_id)

        dispatcher._pause_between_batches = AsyncMock(side_effect=cancel_during_pause)
        job = await dispatcher.process_job(job_id)

        assert job.status == BulkJobStatus.CANCELLED
        assert job.total_sent == 100
        assert job.completed_at is not None
        assert len(transports[ChannelType.EMAIL].sent) == 100

    @pytest.mark.asyncio
    async def test_terminal_job_is_skipped(self, dispatcher, transports):
        job_id = await dispatcher.enqueue_bulk_sms("hello")
        assert await dispatcher.cancel_job(job_id) is True
        job = await dispatcher.process_job(job_id)
        assert job.status == BulkJobStatus.CANCELLED
        assert transports[ChannelType.SMS].sent == []
        assert await dispatcher.cancel_job(job_id) is False

    @pytest.mark.asyncio
    async def test_unknown_job_returns_none(self, dispatcher):
        assert await dispatcher.process_job("bulk_missing") is None
        assert await dispatcher.get_job_status("bulk_missing") is None

    @pytest.mark.asyncio
    async def test_message_without_id_rejected(self, dispatcher):
        outcome = await dispatcher._handle_message(BrokerMessage(body={"type": "email"}))
        assert outcome == HandlerOutcome.REJECT


class TestPush:
    @pytest.mark.asyncio
    async def test_push_fans_out_over_tokens(self, dispatcher, device_tokens, transports):
        device_tokens.register("u0000", TOKEN_A)
        device_tokens.register("u0000", TOKEN_B)
        device_tokens.register("u0001", "short-token")
        job_id = await dispatcher.enqueue_bulk_push("Sale", "<b>50%</b> off")

        job = await dispatcher.process_job(job_id)

        # u0000 delivered to both tokens; u0001's only token is invalid;
        # the rest have no tokens at all.
        assert job.total_sent == 1
        assert job.total_failed == 4
        pushed = transports[ChannelType.PUSH].sent
        assert sorted(m.address for m in pushed) == [TOKEN_A, TOKEN_B]
        assert pushed[0].content == "50% off"


class TestTemplates:
    @pytest.mark.asyncio
    async def test_template_job_renders_per_recipient(self, dispatcher, transports):
        job_id = await dispatcher.enqueue(ChannelType.EMAIL, "", template_name="welcome")
        job = await dispatcher.process_job(job_id)
        assert job.total_sent == 5
        first = transports[ChannelType.EMAIL].sent[0]
        assert first.subject == "Welcome User 0"
        assert "your id is u0000" in first.content
        assert first.metadata["template"] == "welcome"

    @pytest.mark.asyncio
    async def test_job_variables_override_recipient_defaults(self, dispatcher, transports):
        job_id = await dispatcher.enqueue(ChannelType.EMAIL, "", template_name="welcome",
                                          template_variables={"name": "Friend"})
        await dispatcher.process_job(job_id)
        assert transports[ChannelType.EMAIL].sent[0].subject == "Welcome Friend"

    @pytest.mark.asyncio
    async def test_missing_name_uses_default(self, make_dispatcher, transports):
        people = [Recipient(id="u1", email="u1@example.com", is_verified=True)]
        dispatcher = make_dispatcher(InMemoryRecipientRepository(people))
        job_id = await dispatcher.enqueue_bulk_email("Hi {{name}}", "Body")
        await dispatcher.process_job(job_id)
        assert transports[ChannelType.EMAIL].sent[0].subject == "Hi there"

    @pytest.mark.asyncio
    async def test_missing_template_fails_job(self, dispatcher):
        job_id = await dispatcher.enqueue(ChannelType.EMAIL, "", template_name="nope")
        job = await dispatcher.process_job(job_id)
        assert job.status == BulkJobStatus.FAILED
        assert "nope" in job.error


class TestRecovery:
    @pytest.mark.asyncio
    async def test_resume_from_committed_cursor(self, make_dispatcher, store, transports):
        dispatcher = make_dispatcher(InMemoryRecipientRepository(make_recipients(250)))
        job_id = await dispatcher.enqueue_bulk_email("Hi", "Body")
        await store.update_job(job_id, status=BulkJobStatus.PROCESSING, total_recipients=250,
                               total_sent=100, cursor=100, last_recipient_id="u0099")

        job = await dispatcher.process_job(job_id)

        assert job.status == BulkJobStatus.COMPLETED
        assert job.total_sent == 250
        assert job.last_recipient_id == "u0249"
        assert len(transports[ChannelType.EMAIL].sent) == 150
        assert transports[ChannelType.EMAIL].sent[0].address == "user100@example.com"

    @pytest.mark.asyncio
    async def test_resume_after_population_shrank(self, make_dispatcher, store, transports):
        dispatcher = make_dispatcher(InMemoryRecipientRepository(make_recipients(150)))
        job_id = await dispatcher.enqueue_bulk_email("Hi", "Body")
        await store.update_job(job_id, status=BulkJobStatus.PROCESSING, total_recipients=250,
                               total_sent=200, cursor=200, last_recipient_id="u0199")

        job = await dispatcher.process_job(job_id)

        assert job.status == BulkJobStatus.COMPLETED
        assert transports[ChannelType.EMAIL].sent == []
        assert job.total_sent + job.total_failed <= job.total_recipients
        assert job.total_recipients == 200

    @pytest.mark.asyncio
    async def test_resume_skips_recipients_inserted_before_resume_point(
            self, make_dispatcher, store, transports):
        population = make_recipients(6)
        repo = InMemoryRecipientRepository([r for r in population if r.id != "u0001"])
        dispatcher = make_dispatcher(repo)
        job_id = await dispatcher.enqueue_bulk_email("Hi", "Body")
        await store.update_job(job_id, status=BulkJobStatus.PROCESSING, total_recipients=5,
                               total_sent=2, cursor=2, last_recipient_id="u0002")
        repo.add(population[1])

        job = await dispatcher.process_job(job_id)

        addresses = [m.address for m in transports[ChannelType.EMAIL].sent]
        assert addresses == ["user3@example.com", "user4@example.com", "user5@example.com"]
        assert (job.total_sent, job.total_recipients) == (5, 5)

    @pytest.mark.asyncio
    async def test_recover_pending_jobs_republishes_open_jobs(self, dispatcher, store, broker):
        open_job = await store.create_job(BulkJob(channel=ChannelType.SMS, content="hi"))
        done = await store.create_job(BulkJob(channel=ChannelType.SMS, content="hi",
                                              status=BulkJobStatus.COMPLETED))
        assert await dispatcher.recover_pending_jobs() == 1
        assert await broker.queue_length(BULK_QUEUE) == 1
        active = await dispatcher.list_active_jobs()
        assert [p.job_id for p in active] == [open_job.id]
        assert done.id not in [p.job_id for p in active]

    @pytest.mark.asyncio
    async def test_worker_processes_queued_job(self, dispatcher, eventually):
        await dispatcher.start()
        try:
            job_id = await dispatcher.enqueue_bulk_sms("hello {{name}}")

            async def completed():
                progress = await dispatcher.get_job_status(job_id)
                return progress.status == BulkJobStatus.COMPLETED

            await eventually(completed)
            progress = await dispatcher.get_job_status(job_id)
            assert progress.total_sent == 5
        finally:
            await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_campaign_jobs_listed(self, dispatcher):
        first = await dispatcher.enqueue_bulk_sms("a", campaign_id="camp_1")
        await dispatcher.enqueue_bulk_sms("b", campaign_id="camp_2")
        jobs = await dispatcher.list_campaign_jobs("camp_1")
        assert [j.id for j in jobs] == [first]
