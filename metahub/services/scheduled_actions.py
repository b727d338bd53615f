from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from metahub.config.settings import Settings, get_settings
from metahub.errors import RuleExecutionFailed
from metahub.monitoring.metrics import SCHEDULED_ACTIONS
from metahub.persistence.models import ScheduledAction, ScheduledActionStatus, Thread, now_utc
from metahub.services.automation_engine import ACTION_ALIASES, ACTION_TYPES, RuleDefinitionError
from metahub.services.automation_executor import ActionApplier
from metahub.services.backoff import BackoffPolicy, next_backoff_ms
from metahub.services.channel_sender import ChannelSender

logger = logging.getLogger(__name__)

LEASE_SECONDS = 300


@dataclass
class RunSummary:
    executed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0


def create_scheduled_action(
    db: Session,
    *,
    workspace_id: uuid.UUID,
    action_type: str,
    payload: dict,
    run_at: datetime,
    thread_id: uuid.UUID | None = None,
    max_attempts: int | None = None,
) -> ScheduledAction:
    action_type = ACTION_ALIASES.get(action_type, action_type)
    if action_type not in ACTION_TYPES or action_type == "send_scheduled_action":
        raise RuleDefinitionError(f"unknown action type {action_type!r}")
    item = ScheduledAction(
        workspace_id=workspace_id,
        thread_id=thread_id,
        action_type=action_type,
        payload=payload,
        run_at=run_at,
        status=ScheduledActionStatus.pending,
        max_attempts=max_attempts or get_settings().scheduled_action_max_attempts,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def cancel_scheduled_action(db: Session, workspace_id: uuid.UUID, action_id: uuid.UUID) -> bool:
    """Soft cancel. Only pending actions can be cancelled; the runner re-checks before executing."""
    result = db.execute(
        update(ScheduledAction)
        .where(
            ScheduledAction.id == action_id,
            ScheduledAction.workspace_id == workspace_id,
            ScheduledAction.status == ScheduledActionStatus.pending,
        )
        .values(status=ScheduledActionStatus.cancelled)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def status_summary(db: Session, workspace_id: uuid.UUID) -> dict[str, int]:
    rows = (
        db.query(ScheduledAction.status, func.count(ScheduledAction.id))
        .filter(ScheduledAction.workspace_id == workspace_id)
        .group_by(ScheduledAction.status)
        .all()
    )
    summary = {status.value: 0 for status in ScheduledActionStatus}
    for status, count in rows:
        summary[ScheduledActionStatus(status).value] = count
    return summary


class ScheduledActionRunner:
    """Claims due actions with a lease, runs them, retries with backoff."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        sender: ChannelSender | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._session_factory = session_factory
        self.sender = sender
        self.settings = settings or get_settings()
        self.clock = clock
        self.backoff = BackoffPolicy.from_settings(self.settings)

    def _claimable(self, now: datetime):
        lease_cutoff = now - timedelta(seconds=LEASE_SECONDS)
        return (
            ScheduledAction.status == ScheduledActionStatus.pending,
            ScheduledAction.run_at <= now,
            or_(ScheduledAction.claimed_at.is_(None), ScheduledAction.claimed_at < lease_cutoff),
        )

    def run_due(self, limit: int = 50) -> RunSummary:
        now = self.clock()
        with self._session_factory() as db:
            ids = [
                row.id
                for row in db.query(ScheduledAction.id)
                .filter(*self._claimable(now))
                .order_by(ScheduledAction.run_at)
                .limit(limit)
                .all()
            ]
        summary = RunSummary()
        for action_id in ids:
            outcome = self.run_one(action_id)
            setattr(summary, outcome, getattr(summary, outcome) + 1)
        if ids:
            logger.info(
                "Scheduled actions: executed=%d retried=%d failed=%d skipped=%d",
                summary.executed,
                summary.retried,
                summary.failed,
                summary.skipped,
            )
        return summary

    def run_one(self, action_id: uuid.UUID) -> str:
        now = self.clock()
        with self._session_factory() as db:
            claimed = db.execute(
                update(ScheduledAction)
                .where(ScheduledAction.id == action_id, *self._claimable(now))
                .values(claimed_at=now, attempt_count=ScheduledAction.attempt_count + 1)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if claimed.rowcount != 1:
                return "skipped"

            item = db.get(ScheduledAction, action_id)
            db.refresh(item)
            # Cancelled between claim and execution
            if item.status != ScheduledActionStatus.pending:
                SCHEDULED_ACTIONS.labels(status="skipped").inc()
                return "skipped"

            log_extra = {"workspace_id": item.workspace_id, "action_id": item.id, "thread_id": item.thread_id}
            try:
                thread = None
                if item.thread_id is not None:
                    thread = (
                        db.query(Thread)
                        .filter(Thread.id == item.thread_id, Thread.workspace_id == item.workspace_id)
                        .first()
                    )
                if thread is None:
                    raise RuleExecutionFailed(str(item.id), "scheduled action has no thread")
                outcome = ActionApplier(db, sender=self.sender, settings=self.settings, clock=self.clock).apply(
                    thread, item.action_type, dict(item.payload or {})
                )
            except Exception as exc:
                if isinstance(exc, SQLAlchemyError):
                    db.rollback()
                return self._failed(db, item, exc, log_extra)

            db.execute(
                update(ScheduledAction)
                .where(ScheduledAction.id == item.id, ScheduledAction.status == ScheduledActionStatus.pending)
                .values(
                    status=ScheduledActionStatus.executed,
                    executed_at=self.clock(),
                    claimed_at=None,
                    last_error=None,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            logger.info("Scheduled action %s executed: %s", item.action_type, outcome.detail, extra=log_extra)
            SCHEDULED_ACTIONS.labels(status="executed").inc()
            return "executed"

    def _failed(self, db: Session, item: ScheduledAction, exc: Exception, log_extra: dict) -> str:
        attempts = item.attempt_count or 1
        error = str(exc)[:1000]
        if attempts >= (item.max_attempts or 1):
            values = {"status": ScheduledActionStatus.failed, "claimed_at": None, "last_error": error}
            outcome = "failed"
            logger.error("Scheduled action gave up after %d attempts: %s", attempts, error, extra=log_extra)
        else:
            delay_ms = next_backoff_ms(attempts, self.backoff)
            values = {
                "run_at": self.clock() + timedelta(milliseconds=delay_ms),
                "claimed_at": None,
                "last_error": error,
            }
            outcome = "retried"
            logger.warning(
                "Scheduled action failed (attempt %d), retrying in %.1fs: %s",
                attempts,
                delay_ms / 1000,
                error,
                extra=log_extra,
            )
        db.execute(
            update(ScheduledAction)
            .where(ScheduledAction.id == item.id, ScheduledAction.status == ScheduledActionStatus.pending)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        SCHEDULED_ACTIONS.labels(status=outcome).inc()
        return outcome
