from __future__ import annotations

import logging
import uuid

from sqlalchemy import update
from sqlalchemy.orm import Session

from metahub.persistence.models import ThreadAIState, now_utc
from metahub.persistence.upsert import insert_ignore

logger = logging.getLogger(__name__)


class HandoffService:
    """Per-thread AI state rows: handoff flag, counters and context window."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def state(self, workspace_id: uuid.UUID, thread_id: uuid.UUID) -> ThreadAIState:
        insert_ignore(
            self.db,
            ThreadAIState,
            {
                "id": uuid.uuid4(),
                "workspace_id": workspace_id,
                "thread_id": thread_id,
                "handed_off": False,
                "message_count": 0,
                "context_window": [],
            },
            ("workspace_id", "thread_id"),
        )
        state = (
            self.db.query(ThreadAIState)
            .filter(ThreadAIState.workspace_id == workspace_id, ThreadAIState.thread_id == thread_id)
            .one()
        )
        self.db.refresh(state)
        return state

    def handoff(self, workspace_id: uuid.UUID, thread_id: uuid.UUID, reason: str) -> bool:
        """Hand the thread to a human. True only for the call that flipped it."""
        self.state(workspace_id, thread_id)
        result = self.db.execute(
            update(ThreadAIState)
            .where(
                ThreadAIState.workspace_id == workspace_id,
                ThreadAIState.thread_id == thread_id,
                ThreadAIState.handed_off.is_(False),
            )
            .values(handed_off=True, handed_off_at=now_utc(), handed_off_reason=reason[:255])
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info(
                "Thread handed off: %s",
                reason,
                extra={"workspace_id": workspace_id, "thread_id": thread_id},
            )
        return result.rowcount == 1

    def reset(self, workspace_id: uuid.UUID, thread_id: uuid.UUID) -> None:
        self.state(workspace_id, thread_id)
        self.db.execute(
            update(ThreadAIState)
            .where(ThreadAIState.workspace_id == workspace_id, ThreadAIState.thread_id == thread_id)
            .values(
                handed_off=False,
                handed_off_at=None,
                handed_off_reason=None,
                message_count=0,
                context_window=[],
            )
            .execution_options(synchronize_session=False)
        )
