from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, or_, update
from sqlalchemy.orm import Session

from metahub.persistence.models import Thread, ThreadStatus, ThreadTag, ensure_utc
from metahub.persistence.upsert import insert_ignore


@dataclass(frozen=True)
class ThreadSnapshot:
    """Point-in-time view of a thread used for condition checks."""

    id: uuid.UUID
    workspace_id: uuid.UUID
    channel: str
    external_id: str
    status: str
    priority: str
    assigned_to: str | None
    ai_enabled: bool
    unread_count: int
    tags: frozenset[str]
    contact_name: str | None
    last_customer_message_at: datetime | None
    first_response_at: datetime | None
    created_at: datetime | None

    def field(self, name: str):
        if name in ("tag", "tags"):
            return self.tags
        return getattr(self, name, None)


class ThreadStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, workspace_id: uuid.UUID, thread_id: uuid.UUID) -> Thread | None:
        return (
            self.db.query(Thread)
            .filter(Thread.id == thread_id, Thread.workspace_id == workspace_id)
            .first()
        )

    def tags(self, thread_id: uuid.UUID) -> frozenset[str]:
        rows = self.db.query(ThreadTag.tag).filter(ThreadTag.thread_id == thread_id).all()
        return frozenset(row.tag for row in rows)

    def snapshot(self, workspace_id: uuid.UUID, thread_id: uuid.UUID) -> ThreadSnapshot | None:
        thread = self.get(workspace_id, thread_id)
        if thread is None:
            return None
        self.db.refresh(thread)
        return ThreadSnapshot(
            id=thread.id,
            workspace_id=thread.workspace_id,
            channel=_value(thread.channel),
            external_id=thread.external_id,
            status=_value(thread.status),
            priority=_value(thread.priority),
            assigned_to=thread.assigned_to,
            ai_enabled=bool(thread.ai_enabled),
            unread_count=thread.unread_count or 0,
            tags=self.tags(thread.id),
            contact_name=thread.contact_name,
            last_customer_message_at=ensure_utc(thread.last_customer_message_at),
            first_response_at=ensure_utc(thread.first_response_at),
            created_at=ensure_utc(thread.created_at),
        )

    def add_tag(self, thread: Thread, tag: str) -> bool:
        return insert_ignore(
            self.db,
            ThreadTag,
            {"id": uuid.uuid4(), "workspace_id": thread.workspace_id, "thread_id": thread.id, "tag": tag},
            ("thread_id", "tag"),
        )

    def remove_tag(self, thread: Thread, tag: str) -> bool:
        result = self.db.execute(
            delete(ThreadTag).where(ThreadTag.thread_id == thread.id, ThreadTag.tag == tag)
        )
        return result.rowcount > 0

    def set_status(self, thread: Thread, status: ThreadStatus) -> bool:
        """Change status. False when the thread already had it."""
        result = self.db.execute(
            update(Thread)
            .where(Thread.id == thread.id, Thread.status != status)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def record_customer_message(self, thread: Thread, at: datetime) -> None:
        """Advance ``last_customer_message_at`` forward only and bump unread."""
        self.db.execute(
            update(Thread)
            .where(
                Thread.id == thread.id,
                or_(Thread.last_customer_message_at.is_(None), Thread.last_customer_message_at < at),
            )
            .values(last_customer_message_at=at)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            update(Thread)
            .where(Thread.id == thread.id, or_(Thread.last_message_at.is_(None), Thread.last_message_at < at))
            .values(last_message_at=at)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            update(Thread)
            .where(Thread.id == thread.id)
            .values(unread_count=Thread.unread_count + 1)
            .execution_options(synchronize_session=False)
        )

    def record_outbound(self, thread_id: uuid.UUID, at: datetime) -> None:
        self.db.execute(
            update(Thread)
            .where(Thread.id == thread_id, or_(Thread.last_message_at.is_(None), Thread.last_message_at < at))
            .values(last_message_at=at)
            .execution_options(synchronize_session=False)
        )


def _value(item) -> str:
    return item.value if hasattr(item, "value") else str(item)
