import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from metahub.auth.deps import WorkspaceContext, get_workspace_context
from metahub.persistence.database import get_db
from metahub.persistence.models import ConversationEscalation, Priority, Thread, ThreadStatus, ensure_utc
from metahub.schemas.escalation import EscalationOut, ThreadSlaOut

router = APIRouter(tags=["sla"])


@router.get("/escalations", response_model=list[EscalationOut])
def list_escalations(
    breach_type: str | None = None,
    thread_id: uuid.UUID | None = None,
    since: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    query = db.query(ConversationEscalation).filter(ConversationEscalation.workspace_id == ctx.workspace_id)
    if breach_type:
        query = query.filter(ConversationEscalation.breach_type == breach_type)
    if thread_id is not None:
        query = query.filter(ConversationEscalation.thread_id == thread_id)
    if since is not None:
        query = query.filter(ConversationEscalation.created_at >= ensure_utc(since))
    return query.order_by(ConversationEscalation.created_at.desc()).limit(limit).all()


@router.get("/threads/{thread_id}/sla", response_model=ThreadSlaOut)
def thread_sla(
    thread_id: uuid.UUID,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    thread = db.query(Thread).filter(Thread.id == thread_id, Thread.workspace_id == ctx.workspace_id).first()
    if not thread:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
    return ThreadSlaOut(
        thread_id=thread.id,
        priority=Priority(thread.priority).value,
        status=ThreadStatus(thread.status).value,
        sla_status=thread.sla_status,
        first_response_at=ensure_utc(thread.first_response_at),
        next_response_due_at=ensure_utc(thread.next_response_due_at),
        resolution_due_at=ensure_utc(thread.resolution_due_at),
    )
