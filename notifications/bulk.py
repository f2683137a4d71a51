"""
BulkNotificationDispatcher - one job, many recipients, sent in paced chunks.

Job flow:
  enqueue()  → PENDING row + envelope on the "bulk_notifications" queue
  worker     → PROCESSING, resolve recipients (stable id order), then

      chunk 0 ─▶ commit counters ─▶ sleep ─▶ chunk 1 ─▶ ... ─▶ chunk N ─▶ COMPLETED

A chunk never starts before the previous one has been committed. Between
chunks the worker re-reads the job, so a cancellation takes effect at the
next chunk boundary. The id of the last processed recipient is committed with
the counters, so a redelivered job resumes after it even when recipients were
added or removed in between.

One recipient's failure (bad address, rate limit, transport error) is
counted and never aborts the job.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from channels.sender import NotificationChannelSender
from config.settings import BulkConfig
from database.repositories import DeviceTokenRepository, RecipientRepository
from database.store_base import BaseNotificationStore
from job_queue.broker import BrokerMessage, HandlerOutcome, MessageBroker
from models.errors import NotificationCoreError, RecipientDeliveryError, ValidationError
from models.schemas import (
    BulkJob, BulkJobStatus, ChannelType, JobProgress, NotificationPriority,
    NotificationTemplate, Recipient, RecipientFilter, utcnow,
)

logger = structlog.get_logger()

BULK_QUEUE = "bulk_notifications"

_OPEN_STATUSES = (BulkJobStatus.PENDING, BulkJobStatus.PROCESSING)


class BulkNotificationDispatcher:

    def __init__(
        self,
        store: BaseNotificationStore,
        broker: MessageBroker,
        sender: NotificationChannelSender,
        recipients: RecipientRepository,
        device_tokens: Optional[DeviceTokenRepository] = None,
        config: Optional[BulkConfig] = None,
    ):
        self.store = store
        self.broker = broker
        self.sender = sender
        self.recipients = recipients
        self.device_tokens = device_tokens
        self.config = config or BulkConfig()
        # Read-through cache of jobs seen in this process; the store wins.
        self._jobs: dict[str, BulkJob] = {}

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self):
        await self.broker.assert_queue(BULK_QUEUE)
        await self.recover_pending_jobs()
        await self.broker.consume(BULK_QUEUE, self._handle_message)
        logger.info("bulk_dispatcher_started", batch_size=self.config.batch_size,
                    batch_interval_ms=self.config.batch_interval_ms)

    async def stop(self):
        await self.broker.cancel_consumer(BULK_QUEUE)
        logger.info("bulk_dispatcher_stopped")

    async def recover_pending_jobs(self) -> int:
        """Re-publish every open job so work interrupted by a restart resumes."""
        jobs = await self.store.list_jobs(statuses=_OPEN_STATUSES, limit=1000)
        recovered = 0
        for job in jobs:
            if await self._publish(job):
                recovered += 1
        if jobs:
            logger.info("bulk_jobs_recovered", found=len(jobs), republished=recovered)
        return recovered

    # ── Enqueue ───────────────────────────────────────────────

    async def enqueue(
        self,
        channel: ChannelType | str,
        content: str,
        recipient_filter: Optional[RecipientFilter] = None,
        subject: Optional[str] = None,
        template_name: Optional[str] = None,
        template_variables: dict[str, Any] = None,
        campaign_id: Optional[str] = None,
        created_by: Optional[str] = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
    ) -> str:
        """
        Persist a PENDING job and hand it to the worker queue. Returns the
        job id. If the broker is down the job stays PENDING and is picked up
        by recover_pending_jobs() on the next start.
        """
        try:
            channel = ChannelType(channel)
        except ValueError:
            raise ValidationError(f"Unknown channel: {channel}", field="channel")
        if not content and not template_name:
            raise ValidationError("Either content or template_name is required", field="content")

        job = await self.store.create_job(BulkJob(
            channel=channel,
            subject=subject,
            content=content or "",
            template_name=template_name,
            template_variables=template_variables or {},
            recipient_filter=recipient_filter or RecipientFilter(),
            priority=NotificationPriority(priority),
            campaign_id=campaign_id,
            created_by=created_by,
        ))
        self._jobs[job.id] = job

        published = await self._publish(job)
        logger.info("bulk_job_enqueued", job_id=job.id, channel=channel.value,
                    campaign_id=campaign_id, published=published)
        return job.id

    async def enqueue_bulk_email(self, subject: str, content: str,
                                 recipient_filter: Optional[RecipientFilter] = None,
                                 **kwargs) -> str:
        return await self.enqueue(ChannelType.EMAIL, content, recipient_filter,
                                  subject=subject, **kwargs)

    async def enqueue_bulk_sms(self, content: str,
                               recipient_filter: Optional[RecipientFilter] = None,
                               **kwargs) -> str:
        return await self.enqueue(ChannelType.SMS, content, recipient_filter, **kwargs)

    async def enqueue_bulk_push(self, title: str, content: str,
                                recipient_filter: Optional[RecipientFilter] = None,
                                **kwargs) -> str:
        return await self.enqueue(ChannelType.PUSH, content, recipient_filter,
                                  subject=title, **kwargs)

    async def _publish(self, job: BulkJob) -> bool:
        envelope = {
            "id": job.id,
            "type": job.channel.value,
            "content": job.content,
            "status": job.status.value,
        }
        ok = await self.broker.send_to_queue(BULK_QUEUE, envelope)
        if not ok:
            logger.warning("bulk_job_publish_failed", job_id=job.id)
        return ok

    # ── Status ────────────────────────────────────────────────

    async def _load(self, job_id: str) -> Optional[BulkJob]:
        job = await self.store.get_job(job_id)
        if job is None:
            self._jobs.pop(job_id, None)
        else:
            self._jobs[job_id] = job
        return job

    async def get_job_status(self, job_id: str) -> Optional[JobProgress]:
        job = await self._load(job_id)
        return JobProgress.from_job(job) if job else None

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel an open job. A running worker stops at its next chunk boundary."""
        job = await self.store.transition_job(job_id, _OPEN_STATUSES, BulkJobStatus.CANCELLED,
                                              completed_at=utcnow())
        if job is None:
            return False
        self._jobs[job_id] = job
        logger.info("bulk_job_cancelled", job_id=job_id)
        return True

    async def list_active_jobs(self) -> list[JobProgress]:
        jobs = await self.store.list_jobs(statuses=_OPEN_STATUSES)
        for job in jobs:
            self._jobs[job.id] = job
        return [JobProgress.from_job(job) for job in jobs]

    async def list_campaign_jobs(self, campaign_id: str) -> list[BulkJob]:
        return await self.store.list_jobs(campaign_id=campaign_id, limit=1000)

    # ── Worker ────────────────────────────────────────────────

    async def _handle_message(self, message: BrokerMessage) -> HandlerOutcome:
        body = message.body if isinstance(message.body, dict) else {}
        job_id = body.get("id")
        if not job_id:
            logger.error("bulk_message_invalid", message_id=message.message_id)
            return HandlerOutcome.REJECT
        await self.process_job(job_id)
        return HandlerOutcome.ACK

    async def process_job(self, job_id: str) -> Optional[BulkJob]:
        job = await self._load(job_id)
        if job is None:
            logger.warning("bulk_job_not_found", job_id=job_id)
            return None
        if job.is_terminal:
            logger.info("bulk_job_skipped", job_id=job.id, status=job.status.value)
            return job

        if job.status == BulkJobStatus.PENDING:
            job = await self.store.transition_job(job.id, (BulkJobStatus.PENDING,),
                                                  BulkJobStatus.PROCESSING, started_at=utcnow())
            if job is None:
                return await self._load(job_id)
        else:
            logger.info("bulk_job_resumed", job_id=job.id, cursor=job.cursor)

        try:
            return await self._run(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("bulk_job_failed", job_id=job.id, error=str(e))
            failed = await self.store.transition_job(job.id, (BulkJobStatus.PROCESSING,),
                                                     BulkJobStatus.FAILED,
                                                     error=str(e), completed_at=utcnow())
            return failed or await self._load(job.id)

    async def _run(self, job: BulkJob) -> Optional[BulkJob]:
        template = await self.sender.get_template(job.template_name) if job.template_name else None
        recipients = await self.recipients.find_recipients(job.recipient_filter)
        if job.last_recipient_id is not None:
            recipients = [r for r in recipients if r.id > job.last_recipient_id]
        job_id = job.id
        # Already-processed recipients plus what is left, so the counters
        # never exceed the total even when the population changed.
        job = await self.store.transition_job(job_id, (BulkJobStatus.PROCESSING,),
                                              BulkJobStatus.PROCESSING,
                                              total_recipients=job.cursor + len(recipients))
        if job is None:
            return await self._load_and_log_stop(job_id)

        batch_size = max(self.config.batch_size, 1)
        chunks = [recipients[i:i + batch_size] for i in range(0, len(recipients), batch_size)]
        logger.info("bulk_job_processing", job_id=job.id, channel=job.channel.value,
                    recipients=len(recipients), chunks=len(chunks), cursor=job.cursor)

        for index, chunk in enumerate(chunks):
            if index > 0:
                await self._pause_between_batches()
                current = await self.store.get_job(job.id)
                if current is None or current.status != BulkJobStatus.PROCESSING:
                    logger.info("bulk_job_stopped", job_id=job.id,
                                status=current.status.value if current else None,
                                cursor=job.cursor)
                    return current

            sent, failed = await self._send_chunk(job, chunk, template)
            committed = await self.store.transition_job(
                job.id, (BulkJobStatus.PROCESSING,), BulkJobStatus.PROCESSING,
                total_sent=job.total_sent + sent,
                total_failed=job.total_failed + failed,
                cursor=job.cursor + len(chunk),
                last_recipient_id=chunk[-1].id,
            )
            if committed is None:
                # Cancelled while this chunk was in flight; its sends are not counted.
                current = await self._load(job.id)
                logger.info("bulk_job_stopped", job_id=job.id,
                            status=current.status.value if current else None,
                            cursor=job.cursor)
                return current
            job = committed
            self._jobs[job.id] = job
            logger.info("bulk_batch_processed", job_id=job.id, batch=index + 1,
                        sent=sent, failed=failed, cursor=job.cursor)

        done = await self.store.transition_job(job.id, (BulkJobStatus.PROCESSING,),
                                               BulkJobStatus.COMPLETED, completed_at=utcnow())
        final = done or await self._load(job.id)
        logger.info("bulk_job_completed", job_id=job.id,
                    total_sent=job.total_sent, total_failed=job.total_failed)
        return final

    async def _load_and_log_stop(self, job_id: str) -> Optional[BulkJob]:
        current = await self._load(job_id)
        logger.info("bulk_job_stopped", job_id=job_id,
                    status=current.status.value if current else None)
        return current

    async def _pause_between_batches(self):
        await asyncio.sleep(self.config.batch_interval_ms / 1000.0)

    async def _send_chunk(self, job: BulkJob, chunk: list[Recipient],
                          template: Optional[NotificationTemplate]) -> tuple[int, int]:
        sent = failed = 0
        for recipient in chunk:
            try:
                ok = await self._send_to_recipient(job, recipient, template)
            except RecipientDeliveryError as e:
                logger.info("bulk_recipient_skipped", job_id=job.id,
                            recipient_id=recipient.id, reason=e.reason)
                ok = False
            except NotificationCoreError as e:
                logger.warning("bulk_recipient_failed", job_id=job.id,
                               recipient_id=recipient.id, error=str(e))
                ok = False
            except Exception as e:
                logger.error("bulk_recipient_error", job_id=job.id,
                             recipient_id=recipient.id, error=str(e))
                ok = False
            if ok:
                sent += 1
            else:
                failed += 1
        return sent, failed

    def _variables(self, job: BulkJob, recipient: Recipient) -> dict[str, Any]:
        return {
            "name": recipient.name or self.config.default_recipient_name,
            "email": recipient.email or "",
            "id": recipient.id,
            **job.template_variables,
        }

    async def _send_to_recipient(self, job: BulkJob, recipient: Recipient,
                                 template: Optional[NotificationTemplate]) -> bool:
        subject = template.subject if template else job.subject
        content = template.content if template else job.content
        kwargs = dict(
            user_id=recipient.id,
            priority=job.priority,
            variables=self._variables(job, recipient),
            metadata={"bulk_job_id": job.id, "campaign_id": job.campaign_id,
                      "template": job.template_name},
        )

        if job.channel == ChannelType.EMAIL:
            if not recipient.email:
                raise RecipientDeliveryError(recipient.id, "no email address")
            return await self.sender.send(ChannelType.EMAIL, recipient.email, subject, content, **kwargs)

        if job.channel == ChannelType.SMS:
            if not recipient.phone_number:
                raise RecipientDeliveryError(recipient.id, "no phone number")
            return await self.sender.send(ChannelType.SMS, recipient.phone_number, None, content, **kwargs)

        tokens = await self.device_tokens.tokens_for_user(recipient.id) if self.device_tokens else []
        if not tokens:
            raise RecipientDeliveryError(recipient.id, "no device tokens")
        delivered = False
        for token in tokens:
            try:
                if await self.sender.send(ChannelType.PUSH, token, subject, content, **kwargs):
                    delivered = True
            except NotificationCoreError as e:
                logger.info("push_token_failed", job_id=job.id, recipient_id=recipient.id,
                            error=str(e))
        return delivered
