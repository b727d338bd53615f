"""
Phase two of webhook handling: persist one normalized event and fan it out.

The ``inbound_events`` insert-or-ignore is the replay guard. A duplicate stops
here, so a redelivered payload never bumps counters, re-runs rules or
triggers a second AI reply. Fan-out targets (SLA, automation, AI) are
isolated from each other: one failing never prevents the others.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from metahub.config.settings import Settings, get_settings
from metahub.persistence.models import (
    EventType,
    InboundEventRecord,
    Thread,
    ThreadStatus,
    TriggerType,
    now_utc,
)
from metahub.persistence.upsert import insert_ignore, upsert
from metahub.providers.registry import build_reply_provider
from metahub.services.ai_reply import AIReplyOrchestrator, ProviderFactory, ReplyOutcome
from metahub.services.automation_engine import TriggerEvent
from metahub.services.automation_executor import AutomationExecutor
from metahub.services.channel_sender import ChannelSender
from metahub.services.rate_limit_store import InMemoryRateLimitStore, RateLimitStore
from metahub.services.sla import SLAService
from metahub.services.threads import ThreadStore
from metahub.webhooks.events import InboundEvent

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    duplicate: bool = False
    thread_id: uuid.UUID | None = None
    reopened: bool = False
    rule_runs: int = 0
    ai: ReplyOutcome | None = None
    errors: list[str] = field(default_factory=list)


class InboundProcessor:
    def __init__(
        self,
        *,
        sender: ChannelSender | None = None,
        rate_limits: RateLimitStore | None = None,
        provider_factory: ProviderFactory = build_reply_provider,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.sender = sender
        self.rate_limits = rate_limits or InMemoryRateLimitStore()
        self.provider_factory = provider_factory
        self.settings = settings or get_settings()
        self.clock = clock

    def _existing_thread(self, db: Session, event: InboundEvent) -> Thread | None:
        return (
            db.query(Thread)
            .filter(
                Thread.workspace_id == event.workspace_id,
                Thread.channel == event.channel,
                Thread.external_id == event.thread_id,
            )
            .first()
        )

    def _thread_for(self, db: Session, event: InboundEvent) -> Thread:
        upsert(
            db,
            Thread,
            {
                "id": uuid.uuid4(),
                "workspace_id": event.workspace_id,
                "channel": event.channel,
                "external_id": event.thread_id,
                "account_id": event.account_id or None,
                "contact_name": event.contact_name,
                "status": ThreadStatus.open,
                "unread_count": 0,
            },
            ("workspace_id", "channel", "external_id"),
            lambda excluded: {"updated_at": now_utc()},
        )
        thread = self._existing_thread(db, event)
        if event.contact_name and thread.contact_name != event.contact_name:
            thread.contact_name = event.contact_name
        return thread

    def process(self, db: Session, event: InboundEvent) -> ProcessResult:
        result = ProcessResult()
        log_extra = {"workspace_id": event.workspace_id}

        if event.event_type == EventType.status:
            thread = self._existing_thread(db, event)
        else:
            thread = self._thread_for(db, event)
        result.thread_id = thread.id if thread is not None else None
        log_extra["thread_id"] = result.thread_id

        inserted = insert_ignore(
            db,
            InboundEventRecord,
            {
                "id": uuid.uuid4(),
                "workspace_id": event.workspace_id,
                "thread_id": result.thread_id,
                "provider": event.provider,
                "channel": event.channel,
                "event_type": event.event_type,
                "external_message_id": event.external_message_id,
                "dedup_key": event.dedup_key,
                "sender_id": event.sender_id,
                "text": event.text,
                "occurred_at": event.timestamp,
                "raw_payload": event.raw_payload,
            },
            ("workspace_id", "dedup_key"),
        )
        if not inserted:
            db.commit()
            logger.info("Duplicate delivery %s ignored", event.dedup_key, extra=log_extra)
            result.duplicate = True
            return result

        if event.event_type == EventType.status:
            db.commit()
            return result

        threads = ThreadStore(db)
        threads.record_customer_message(thread, event.timestamp)
        reopened = db.execute(
            update(Thread)
            .where(Thread.id == thread.id, Thread.status == ThreadStatus.solved)
            .values(status=ThreadStatus.open)
            .execution_options(synchronize_session=False)
        )
        result.reopened = reopened.rowcount == 1
        db.commit()
        db.refresh(thread)

        try:
            SLAService(db).recompute(thread, self.clock())
        except Exception as exc:
            db.rollback()
            logger.exception("SLA recompute failed", extra=log_extra)
            result.errors.append(f"sla: {exc}")

        try:
            executor = AutomationExecutor(
                db, sender=self.sender, settings=self.settings, clock=self.clock, rate_limits=self.rate_limits
            )
            triggers = [TriggerEvent.from_inbound(event, thread.id)]
            if result.reopened:
                triggers.append(
                    TriggerEvent(
                        trigger=TriggerType.status_changed,
                        workspace_id=event.workspace_id,
                        thread_id=thread.id,
                        occurred_at=event.timestamp,
                        channel=event.channel.value,
                        from_status=ThreadStatus.solved.value,
                        to_status=ThreadStatus.open.value,
                    )
                )
            for trigger in triggers:
                result.rule_runs += len(executor.handle(trigger))
        except Exception as exc:
            db.rollback()
            logger.exception("Automation failed", extra=log_extra)
            result.errors.append(f"automation: {exc}")

        try:
            orchestrator = AIReplyOrchestrator(
                db,
                sender=self.sender,
                rate_limits=self.rate_limits,
                provider_factory=self.provider_factory,
                settings=self.settings,
                clock=self.clock,
            )
            result.ai = orchestrator.maybe_reply(thread.id, event)
        except Exception as exc:
            db.rollback()
            logger.exception("AI auto-reply failed", extra=log_extra)
            result.errors.append(f"ai: {exc}")

        return result
