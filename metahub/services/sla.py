from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from metahub.config.settings import Settings, get_settings
from metahub.persistence.models import (
    ConversationEscalation,
    Priority,
    Thread,
    ThreadStatus,
    ensure_utc,
    now_utc,
)
from metahub.persistence.upsert import insert_ignore

logger = logging.getLogger(__name__)

BREACH_NEXT_RESPONSE = "next_response"
BREACH_RESOLUTION = "resolution"
_ACTIVE_STATUSES = (ThreadStatus.open, ThreadStatus.pending)


@dataclass(frozen=True)
class SlaPolicy:
    response_minutes: dict[Priority, int]
    resolution_minutes: dict[Priority, int]
    due_soon_minutes: int = 15

    @classmethod
    def from_settings(cls, settings: Settings) -> "SlaPolicy":
        return cls(
            response_minutes={
                Priority.urgent: settings.sla_response_minutes_urgent,
                Priority.high: settings.sla_response_minutes_high,
                Priority.med: settings.sla_response_minutes_med,
                Priority.low: settings.sla_response_minutes_low,
            },
            resolution_minutes={
                Priority.urgent: settings.sla_resolution_minutes_urgent,
                Priority.high: settings.sla_resolution_minutes_high,
                Priority.med: settings.sla_resolution_minutes_med,
                Priority.low: settings.sla_resolution_minutes_low,
            },
            due_soon_minutes=settings.sla_due_soon_minutes,
        )


DEFAULT_POLICY = SlaPolicy(
    response_minutes={Priority.urgent: 5, Priority.high: 15, Priority.med: 30, Priority.low: 60},
    resolution_minutes={
        Priority.urgent: 2 * 60,
        Priority.high: 4 * 60,
        Priority.med: 12 * 60,
        Priority.low: 24 * 60,
    },
)


@dataclass(frozen=True)
class Breach:
    breach_type: str
    due_at: datetime
    reason: str

    def key(self, thread_id: uuid.UUID) -> tuple[uuid.UUID, str, datetime]:
        return (thread_id, self.breach_type, self.due_at)


@dataclass(frozen=True)
class SlaResult:
    next_response_due_at: datetime | None
    resolution_due_at: datetime | None
    sla_status: str = "ok"
    breaches: tuple[Breach, ...] = ()

    @property
    def breached(self) -> bool:
        return bool(self.breaches)

    @property
    def breach_type(self) -> str | None:
        return self.breaches[0].breach_type if self.breaches else None


_NO_DEADLINE = SlaResult(next_response_due_at=None, resolution_due_at=None)


def compute_sla(
    priority: Priority | str | None,
    ticket_status: ThreadStatus | str | None,
    last_customer_message_at: datetime | None,
    now: datetime,
    policy: SlaPolicy = DEFAULT_POLICY,
) -> SlaResult:
    """Deadlines for a thread. Pure; ``now`` is passed in."""
    status = ThreadStatus(ticket_status or ThreadStatus.open)
    if status in (ThreadStatus.solved, ThreadStatus.spam):
        return _NO_DEADLINE
    last_customer_message_at = ensure_utc(last_customer_message_at)
    if last_customer_message_at is None:
        return _NO_DEADLINE

    try:
        tier = Priority(priority or Priority.low)
    except ValueError:
        tier = Priority.low
    now = ensure_utc(now)
    response_due = last_customer_message_at + timedelta(minutes=policy.response_minutes[tier])
    resolution_due = last_customer_message_at + timedelta(minutes=policy.resolution_minutes[tier])

    breaches = []
    if now > response_due:
        breaches.append(Breach(BREACH_NEXT_RESPONSE, response_due, "SLA breached: next response overdue"))
    if now > resolution_due:
        breaches.append(Breach(BREACH_RESOLUTION, resolution_due, "SLA breached: resolution overdue"))

    if now > response_due:
        sla_status = "breached"
    elif response_due - now <= timedelta(minutes=policy.due_soon_minutes):
        sla_status = "due_soon"
    else:
        sla_status = "ok"
    return SlaResult(response_due, resolution_due, sla_status, tuple(breaches))


def should_set_first_response_at(thread: Thread) -> bool:
    return thread.first_response_at is None and thread.last_customer_message_at is not None


def compute_first_response_at(
    first_response_at: datetime | None,
    last_customer_message_at: datetime | None,
    response_at: datetime,
) -> datetime | None:
    """Value ``first_response_at`` should hold once a response goes out at ``response_at``.

    Once set it is returned unchanged; without a customer message there is
    nothing to respond to.
    """
    if first_response_at is not None:
        return first_response_at
    if last_customer_message_at is None:
        return None
    return response_at


def escalation_keys(thread_id: uuid.UUID, result: SlaResult) -> set[tuple[uuid.UUID, str, datetime]]:
    return {breach.key(thread_id) for breach in result.breaches}


class SLAService:
    def __init__(self, db: Session, policy: SlaPolicy | None = None) -> None:
        self.db = db
        self.policy = policy or SlaPolicy.from_settings(get_settings())

    def recompute(self, thread: Thread, now: datetime | None = None) -> SlaResult:
        """Persist deadlines for one thread and record any new escalations."""
        now = now or now_utc()
        result = compute_sla(
            thread.priority,
            thread.status,
            thread.last_customer_message_at or thread.last_message_at,
            now,
            self.policy,
        )
        self.db.execute(
            update(Thread)
            .where(Thread.id == thread.id, Thread.workspace_id == thread.workspace_id)
            .values(
                next_response_due_at=result.next_response_due_at,
                resolution_due_at=result.resolution_due_at,
                sla_status=result.sla_status,
            )
        )
        if ThreadStatus(thread.status) in _ACTIVE_STATUSES:
            for breach in result.breaches:
                created = insert_ignore(
                    self.db,
                    ConversationEscalation,
                    {
                        "id": uuid.uuid4(),
                        "workspace_id": thread.workspace_id,
                        "thread_id": thread.id,
                        "breach_type": breach.breach_type,
                        "due_at": breach.due_at,
                        "reason": breach.reason,
                        "created_at": now,
                    },
                    ("thread_id", "breach_type", "due_at"),
                )
                if created:
                    logger.warning(
                        "SLA breach recorded: %s",
                        breach.breach_type,
                        extra={"workspace_id": thread.workspace_id, "thread_id": thread.id},
                    )
        self.db.commit()
        return result

    def mark_first_response(self, thread_id: uuid.UUID, workspace_id: uuid.UUID, response_at: datetime) -> bool:
        """Set ``first_response_at`` once. True only for the call that set it."""
        result = self.db.execute(
            update(Thread)
            .where(
                Thread.id == thread_id,
                Thread.workspace_id == workspace_id,
                Thread.first_response_at.is_(None),
                Thread.last_customer_message_at.is_not(None),
            )
            .values(first_response_at=response_at)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def sweep(self, now: datetime | None = None, limit: int = 500) -> int:
        """Re-check active threads whose deadlines may have passed. Returns escalations seen.

        Threads whose status is already settled and whose overdue deadlines
        already have an escalation row are left out, so a backlog of old
        breaches never crowds newer ones out of the batch.
        """
        now = now or now_utc()
        threads = self.db.scalars(
            select(Thread)
            .where(
                Thread.status.in_(_ACTIVE_STATUSES),
                Thread.last_customer_message_at.is_not(None),
                or_(
                    Thread.next_response_due_at.is_(None),
                    and_(
                        Thread.sla_status == "ok",
                        Thread.next_response_due_at <= now + timedelta(minutes=self.policy.due_soon_minutes),
                    ),
                    and_(
                        Thread.next_response_due_at < now,
                        ~_escalated(BREACH_NEXT_RESPONSE, Thread.next_response_due_at),
                    ),
                    and_(
                        Thread.resolution_due_at < now,
                        ~_escalated(BREACH_RESOLUTION, Thread.resolution_due_at),
                    ),
                ),
            )
            .order_by(Thread.next_response_due_at.asc().nulls_first(), Thread.id)
            .limit(limit)
        ).all()
        breached = 0
        for thread in threads:
            result = self.recompute(thread, now)
            breached += len(result.breaches)
        return breached


def _escalated(breach_type: str, due_at):
    return (
        select(ConversationEscalation.id)
        .where(
            ConversationEscalation.thread_id == Thread.id,
            ConversationEscalation.breach_type == breach_type,
            ConversationEscalation.due_at == due_at,
        )
        .exists()
    )
