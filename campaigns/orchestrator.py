"""
CampaignOrchestrator - drives a campaign's lifecycle through the scheduler
and the bulk dispatcher.

  DRAFT ──(start_date in future)──▶ SCHEDULED ──activate_campaign task──▶ ACTIVE
  DRAFT / SCHEDULED / PAUSED ──activate()──▶ ACTIVE   (one bulk job per channel)
  ACTIVE ──pause()──▶ PAUSED
  any open state ──cancel()──▶ CANCELLED
  ACTIVE / PAUSED ──complete_campaign task or complete()──▶ COMPLETED

Start and end transitions fire from CUSTOM scheduler tasks, so they survive
restarts like any other task.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from database.store_base import BaseNotificationStore
from models.errors import ValidationError
from models.schemas import (
    BulkJobStatus, Campaign, CampaignAnalytics, CampaignQuery, CampaignStatus, CampaignType,
    ChannelType, RecipientFilter, TaskStatus, as_utc, utcnow,
)
from notifications.bulk import BulkNotificationDispatcher
from scheduler.service import DelayedTaskScheduler

logger = structlog.get_logger()

ACTIVATE_ACTION = "activate_campaign"
COMPLETE_ACTION = "complete_campaign"
NEWSLETTER_TEMPLATE = "newsletter_template"

_OPEN_JOB_STATUSES = (BulkJobStatus.PENDING, BulkJobStatus.PROCESSING)
_FINAL_CAMPAIGN_STATUSES = (CampaignStatus.CANCELLED, CampaignStatus.COMPLETED)

_SINGLE_CHANNEL = {
    CampaignType.EMAIL: ChannelType.EMAIL,
    CampaignType.SMS: ChannelType.SMS,
    CampaignType.PUSH: ChannelType.PUSH,
}

_EDITABLE_FIELDS = {
    "name", "description", "subject", "content", "template_name",
    "template_variables", "target_filter", "channels",
}


class CampaignOrchestrator:

    def __init__(
        self,
        store: BaseNotificationStore,
        scheduler: DelayedTaskScheduler,
        dispatcher: BulkNotificationDispatcher,
    ):
        self.store = store
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        scheduler.handlers.register_action(ACTIVATE_ACTION, self._activate_action)
        scheduler.handlers.register_action(COMPLETE_ACTION, self._complete_action)

    # ── Scheduled actions ─────────────────────────────────────

    async def _activate_action(self, params: dict[str, Any]):
        await self.activate(params["campaign_id"])

    async def _complete_action(self, params: dict[str, Any]):
        await self.complete(params["campaign_id"])

    async def _schedule_start(self, campaign: Campaign) -> Optional[str]:
        if not campaign.start_date or campaign.start_date <= utcnow():
            return None
        return await self.scheduler.schedule_custom_task(
            ACTIVATE_ACTION, {"campaign_id": campaign.id}, campaign.start_date,
            created_by=campaign.created_by,
        )

    async def _schedule_end(self, campaign: Campaign) -> Optional[str]:
        if not campaign.end_date:
            return None
        return await self.scheduler.schedule_custom_task(
            COMPLETE_ACTION, {"campaign_id": campaign.id}, campaign.end_date,
            created_by=campaign.created_by,
        )

    async def _cancel_task(self, task_id: Optional[str]):
        if task_id:
            await self.scheduler.cancel(task_id)

    # ── CRUD ──────────────────────────────────────────────────

    async def create_campaign(
        self,
        name: str,
        campaign_type: CampaignType | str,
        subject: Optional[str] = None,
        content: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        target_filter: Optional[RecipientFilter] = None,
        template_name: Optional[str] = None,
        template_variables: dict[str, Any] = None,
        channels: list[ChannelType] = None,
        description: str = "",
        created_by: Optional[str] = None,
    ) -> Campaign:
        """
        Create a DRAFT campaign. A future start date schedules activation and
        moves it to SCHEDULED; an end date schedules completion.
        """
        if not name:
            raise ValidationError("Campaign name is required", field="name")
        try:
            campaign_type = CampaignType(campaign_type)
        except ValueError:
            raise ValidationError(f"Unknown campaign type: {campaign_type}", field="type")
        start_date = as_utc(start_date) if start_date else None
        end_date = as_utc(end_date) if end_date else None
        if start_date and end_date and end_date <= start_date:
            raise ValidationError("end_date must be after start_date", field="end_date")

        campaign = await self.store.create_campaign(Campaign(
            name=name,
            description=description,
            type=campaign_type,
            start_date=start_date,
            end_date=end_date,
            target_filter=target_filter or RecipientFilter(),
            subject=subject,
            content=content,
            template_name=template_name,
            template_variables=template_variables or {},
            channels=[ChannelType(c) for c in channels or []],
            created_by=created_by,
        ))

        start_task_id = await self._schedule_start(campaign)
        end_task_id = await self._schedule_end(campaign)
        fields: dict[str, Any] = {"start_task_id": start_task_id, "end_task_id": end_task_id}
        if start_task_id:
            fields["status"] = CampaignStatus.SCHEDULED
        campaign = await self.store.update_campaign(campaign.id, **fields)

        logger.info("campaign_created", campaign_id=campaign.id, type=campaign.type.value,
                    status=campaign.status.value,
                    start_date=start_date.isoformat() if start_date else None,
                    end_date=end_date.isoformat() if end_date else None)
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return await self.store.get_campaign(campaign_id)

    async def list_campaigns(
        self,
        status: Optional[CampaignStatus] = None,
        campaign_type: Optional[CampaignType] = None,
        created_by: Optional[str] = None,
        search: Optional[str] = None,
        start_from: Optional[datetime] = None,
        start_to: Optional[datetime] = None,
        end_from: Optional[datetime] = None,
        end_to: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Campaign], int]:
        """Newest-first page of campaigns plus the total matching count."""
        query = CampaignQuery(
            status=status, type=campaign_type, created_by=created_by, search=search,
            start_from=as_utc(start_from) if start_from else None,
            start_to=as_utc(start_to) if start_to else None,
            end_from=as_utc(end_from) if end_from else None,
            end_to=as_utc(end_to) if end_to else None,
        )
        return await self.store.list_campaigns(query, limit=limit, offset=offset)

    async def _require(self, campaign_id: str) -> Campaign:
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None:
            raise ValidationError(f"Campaign {campaign_id} not found", field="campaign_id")
        return campaign

    async def update_campaign(self, campaign_id: str, **changes: Any) -> Campaign:
        """
        Edit content fields and dates. Changing a date cancels the old
        start/end task and schedules a new one. ``status`` is routed through
        activate / pause / cancel / complete.
        """
        campaign = await self._require(campaign_id)
        if campaign.status in _FINAL_CAMPAIGN_STATUSES:
            raise ValidationError(f"Campaign {campaign_id} is {campaign.status.value}",
                                  field="status")

        status = changes.pop("status", None)
        unknown = set(changes) - _EDITABLE_FIELDS - {"start_date", "end_date"}
        if unknown:
            raise ValidationError(f"Cannot update fields: {sorted(unknown)}", field=sorted(unknown)[0])

        fields = {k: v for k, v in changes.items() if k in _EDITABLE_FIELDS}
        if "channels" in fields:
            fields["channels"] = [ChannelType(c) for c in fields["channels"] or []]
        if "target_filter" in fields and fields["target_filter"] is None:
            fields["target_filter"] = RecipientFilter()

        if "start_date" in changes:
            start_date = as_utc(changes["start_date"]) if changes["start_date"] else None
            if start_date != campaign.start_date:
                await self._cancel_task(campaign.start_task_id)
                campaign.start_date = start_date
                fields["start_date"] = start_date
                fields["start_task_id"] = await self._schedule_start(campaign)
                if campaign.status in (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED):
                    fields["status"] = (CampaignStatus.SCHEDULED if fields["start_task_id"]
                                        else CampaignStatus.DRAFT)

        if "end_date" in changes:
            end_date = as_utc(changes["end_date"]) if changes["end_date"] else None
            if end_date != campaign.end_date:
                await self._cancel_task(campaign.end_task_id)
                campaign.end_date = end_date
                fields["end_date"] = end_date
                fields["end_task_id"] = await self._schedule_end(campaign)

        if fields:
            campaign = await self.store.update_campaign(campaign_id, **fields)
            logger.info("campaign_updated", campaign_id=campaign_id, fields=sorted(fields))

        if status is not None:
            campaign = await self._apply_status(campaign_id, CampaignStatus(status))
        return campaign

    async def _apply_status(self, campaign_id: str, status: CampaignStatus) -> Campaign:
        if status == CampaignStatus.ACTIVE:
            return await self.activate(campaign_id)
        if status == CampaignStatus.PAUSED:
            return await self.pause(campaign_id)
        if status == CampaignStatus.CANCELLED:
            return await self.cancel(campaign_id)
        if status == CampaignStatus.COMPLETED:
            return await self.complete(campaign_id)
        raise ValidationError(f"Cannot set status {status.value} directly", field="status")

    # ── Lifecycle ─────────────────────────────────────────────

    def channels_for(self, campaign: Campaign) -> list[ChannelType]:
        if campaign.type in _SINGLE_CHANNEL:
            return [_SINGLE_CHANNEL[campaign.type]]
        if campaign.type == CampaignType.MIXED:
            return [ChannelType.EMAIL, ChannelType.SMS, ChannelType.PUSH]
        if campaign.type == CampaignType.NEWSLETTER:
            return [ChannelType.EMAIL]
        # PROMO and EVENT only send when channels are given explicitly.
        return list(campaign.channels)

    async def activate(self, campaign_id: str) -> Campaign:
        """Move to ACTIVE and start one bulk job per concrete channel."""
        campaign = await self._require(campaign_id)
        if campaign.status == CampaignStatus.ACTIVE:
            logger.info("campaign_already_active", campaign_id=campaign_id)
            return campaign

        activated = await self.store.transition_campaign(
            campaign_id,
            (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.PAUSED),
            CampaignStatus.ACTIVE,
        )
        if activated is None:
            logger.info("campaign_not_activated", campaign_id=campaign_id,
                        status=campaign.status.value)
            return campaign

        job_ids = []
        for channel in self.channels_for(activated):
            job_ids.append(await self._start_job(activated, channel))
        logger.info("campaign_activated", campaign_id=campaign_id, jobs=job_ids)
        return activated

    async def _start_job(self, campaign: Campaign, channel: ChannelType) -> str:
        if campaign.type == CampaignType.NEWSLETTER:
            recipient_filter = campaign.target_filter
            if recipient_filter.is_empty():
                recipient_filter = RecipientFilter(newsletter_subscribed=True)
            return await self.dispatcher.enqueue(
                ChannelType.EMAIL,
                campaign.content or f"<h1>{campaign.name}</h1>",
                recipient_filter,
                subject=campaign.subject or f"{campaign.name} - News",
                template_name=campaign.template_name or NEWSLETTER_TEMPLATE,
                template_variables={
                    "campaignName": campaign.name,
                    "date": utcnow().date().isoformat(),
                    **campaign.template_variables,
                },
                campaign_id=campaign.id,
                created_by=campaign.created_by,
            )

        return await self.dispatcher.enqueue(
            channel,
            campaign.content or campaign.name,
            campaign.target_filter,
            subject=(campaign.subject or campaign.name) if channel != ChannelType.SMS else None,
            template_name=campaign.template_name,
            template_variables=campaign.template_variables,
            campaign_id=campaign.id,
            created_by=campaign.created_by,
        )

    async def _cancel_jobs(self, campaign_id: str) -> int:
        cancelled = 0
        for job in await self.dispatcher.list_campaign_jobs(campaign_id):
            if job.status not in _OPEN_JOB_STATUSES:
                continue
            try:
                if await self.dispatcher.cancel_job(job.id):
                    cancelled += 1
            except Exception as e:
                logger.error("campaign_job_cancel_failed", campaign_id=campaign_id,
                             job_id=job.id, error=str(e))
        return cancelled

    async def pause(self, campaign_id: str) -> Campaign:
        campaign = await self._require(campaign_id)
        if campaign.status != CampaignStatus.ACTIVE:
            logger.info("campaign_not_active", campaign_id=campaign_id,
                        status=campaign.status.value)
            return campaign
        cancelled = await self._cancel_jobs(campaign_id)
        paused = await self.store.transition_campaign(
            campaign_id, (CampaignStatus.ACTIVE,), CampaignStatus.PAUSED)
        logger.info("campaign_paused", campaign_id=campaign_id, jobs_cancelled=cancelled)
        return paused or await self._require(campaign_id)

    async def cancel(self, campaign_id: str) -> Campaign:
        campaign = await self._require(campaign_id)
        if campaign.status in _FINAL_CAMPAIGN_STATUSES:
            return campaign
        cancelled = await self._cancel_jobs(campaign_id)
        await self._cancel_task(campaign.start_task_id)
        await self._cancel_task(campaign.end_task_id)
        result = await self.store.transition_campaign(
            campaign_id,
            (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED,
             CampaignStatus.ACTIVE, CampaignStatus.PAUSED),
            CampaignStatus.CANCELLED,
        )
        logger.info("campaign_cancelled", campaign_id=campaign_id, jobs_cancelled=cancelled)
        return result or await self._require(campaign_id)

    async def complete(self, campaign_id: str) -> Campaign:
        """Close the campaign. Jobs already running finish on their own."""
        campaign = await self._require(campaign_id)
        completed = await self.store.transition_campaign(
            campaign_id, (CampaignStatus.ACTIVE, CampaignStatus.PAUSED), CampaignStatus.COMPLETED)
        if completed is None:
            logger.info("campaign_not_completed", campaign_id=campaign_id,
                        status=campaign.status.value)
            return campaign
        if campaign.start_task_id:
            task = await self.scheduler.get_task(campaign.start_task_id)
            if task and task.status in (TaskStatus.PENDING, TaskStatus.PAUSED):
                await self.scheduler.cancel(task.id)
        logger.info("campaign_completed", campaign_id=campaign_id)
        return completed

    # ── Analytics ─────────────────────────────────────────────

    async def get_analytics(self, campaign_id: str) -> CampaignAnalytics:
        campaign = await self._require(campaign_id)
        jobs = await self.dispatcher.list_campaign_jobs(campaign_id)
        total_sent = sum(j.total_sent for j in jobs)
        total_failed = sum(j.total_failed for j in jobs)
        return CampaignAnalytics(
            campaign_id=campaign_id,
            status=campaign.status,
            total_jobs=len(jobs),
            completed_jobs=sum(1 for j in jobs if j.status == BulkJobStatus.COMPLETED),
            total_sent=total_sent,
            total_failed=total_failed,
            delivery_rate=(total_sent - total_failed) / total_sent if total_sent else 0.0,
        )
