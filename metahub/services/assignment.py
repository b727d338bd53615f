from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from metahub.persistence.models import Thread, ThreadStatus, WorkspaceMember, ensure_utc, now_utc

logger = logging.getLogger(__name__)

ROUND_ROBIN = "round_robin"
LOAD_BASED = "load_based"


@dataclass
class AssignmentDecision:
    user_id: str | None
    reason: str


class AssignmentService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _eligible(self, workspace_id: uuid.UUID, candidates: list[str] | None) -> list[WorkspaceMember]:
        query = self.db.query(WorkspaceMember).filter(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.accepting_assignments.is_(True),
        )
        if candidates:
            query = query.filter(WorkspaceMember.user_id.in_(candidates))
        return query.all()

    def pick(
        self,
        workspace_id: uuid.UUID,
        *,
        strategy: str = ROUND_ROBIN,
        user_id: str | None = None,
        candidates: list[str] | None = None,
    ) -> AssignmentDecision:
        if user_id:
            member = (
                self.db.query(WorkspaceMember)
                .filter(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == user_id)
                .first()
            )
            if member is None:
                return AssignmentDecision(None, "not_a_member")
            return AssignmentDecision(member.user_id, "direct")

        members = self._eligible(workspace_id, candidates)
        if not members:
            return AssignmentDecision(None, "no_eligible_agent")

        if strategy == LOAD_BASED:
            loads = dict(
                self.db.query(Thread.assigned_to, func.count(Thread.id))
                .filter(
                    Thread.workspace_id == workspace_id,
                    Thread.status.in_((ThreadStatus.open, ThreadStatus.pending)),
                    Thread.assigned_to.in_([m.user_id for m in members]),
                )
                .group_by(Thread.assigned_to)
                .all()
            )
            chosen = min(members, key=lambda m: (loads.get(m.user_id, 0), m.user_id))
            return AssignmentDecision(chosen.user_id, LOAD_BASED)

        if strategy != ROUND_ROBIN:
            return AssignmentDecision(None, f"unknown_strategy:{strategy}")

        # Never-assigned members first, then the one assigned longest ago
        def _rr_key(member: WorkspaceMember):
            last = ensure_utc(member.last_assigned_at)
            return (last is not None, last.timestamp() if last else 0.0, member.user_id)

        chosen = min(members, key=_rr_key)
        return AssignmentDecision(chosen.user_id, ROUND_ROBIN)

    def assign(self, thread: Thread, user_id: str) -> None:
        now = now_utc()
        self.db.execute(
            update(Thread)
            .where(Thread.id == thread.id, Thread.workspace_id == thread.workspace_id)
            .values(assigned_to=user_id)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            update(WorkspaceMember)
            .where(WorkspaceMember.workspace_id == thread.workspace_id, WorkspaceMember.user_id == user_id)
            .values(last_assigned_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Thread assigned to %s",
            user_id,
            extra={"workspace_id": thread.workspace_id, "thread_id": thread.id},
        )
