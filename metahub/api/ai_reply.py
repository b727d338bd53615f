import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from metahub.auth.deps import WorkspaceContext, get_workspace_context, require_admin
from metahub.persistence.database import get_db
from metahub.persistence.models import AIReplyLog, AIReplySettings, AIReplyStatus, Thread
from metahub.schemas.ai_reply import (
    AIReplyLogOut,
    AIReplySettingsIn,
    AIReplySettingsOut,
    AIReplyStats,
    HandoffRequest,
    ThreadAIStateOut,
    ThreadAIToggle,
)
from metahub.services.ai_reply import reply_stats
from metahub.services.audit import AuditRecorder
from metahub.services.handoff import HandoffService
from metahub.services.usage_tracker import usage_tracker

router = APIRouter(prefix="/ai-reply", tags=["ai-reply"])


def _thread(db: Session, ctx: WorkspaceContext, thread_id: uuid.UUID) -> Thread:
    thread = db.query(Thread).filter(Thread.id == thread_id, Thread.workspace_id == ctx.workspace_id).first()
    if not thread:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
    return thread


def _state_out(db: Session, thread: Thread) -> ThreadAIStateOut:
    state = HandoffService(db).state(thread.workspace_id, thread.id)
    return ThreadAIStateOut(
        thread_id=thread.id,
        ai_enabled=thread.ai_enabled,
        handed_off=state.handed_off,
        handed_off_reason=state.handed_off_reason,
        message_count=state.message_count,
        last_ai_reply_at=state.last_ai_reply_at,
    )


@router.get("/settings", response_model=AIReplySettingsOut)
def get_ai_settings(
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    row = db.query(AIReplySettings).filter(AIReplySettings.workspace_id == ctx.workspace_id).first()
    if row is None:
        return AIReplySettingsOut(workspace_id=ctx.workspace_id)
    return row


@router.put("/settings", response_model=AIReplySettingsOut)
def put_ai_settings(
    payload: AIReplySettingsIn,
    ctx: WorkspaceContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    row = db.query(AIReplySettings).filter(AIReplySettings.workspace_id == ctx.workspace_id).first()
    if row is None:
        row = AIReplySettings(workspace_id=ctx.workspace_id)
        db.add(row)
    for key, value in payload.model_dump().items():
        setattr(row, key, value)
    AuditRecorder(db).record(
        ctx.workspace_id,
        "ai_reply.settings_updated",
        actor=ctx.user_id,
        target_type="ai_reply_settings",
        detail={"enabled": payload.enabled, "provider_type": payload.provider_type.value, "model": payload.model},
    )
    db.commit()
    db.refresh(row)
    return row


@router.get("/stats", response_model=AIReplyStats)
def get_stats(
    days: int = Query(default=7, ge=1, le=90),
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    stats = reply_stats(db, ctx.workspace_id, days)
    return AIReplyStats(**stats, monthly_tokens=usage_tracker.monthly_tokens(db, ctx.workspace_id))


@router.get("/logs", response_model=list[AIReplyLogOut])
def get_logs(
    status_filter: AIReplyStatus | None = Query(default=None, alias="status"),
    thread_id: uuid.UUID | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    query = db.query(AIReplyLog).filter(AIReplyLog.workspace_id == ctx.workspace_id)
    if status_filter is not None:
        query = query.filter(AIReplyLog.status == status_filter)
    if thread_id is not None:
        query = query.filter(AIReplyLog.thread_id == thread_id)
    return query.order_by(AIReplyLog.created_at.desc()).limit(limit).all()


@router.get("/threads/{thread_id}", response_model=ThreadAIStateOut)
def get_thread_state(
    thread_id: uuid.UUID,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    thread = _thread(db, ctx, thread_id)
    out = _state_out(db, thread)
    db.commit()
    return out


@router.put("/threads/{thread_id}", response_model=ThreadAIStateOut)
def toggle_thread(
    thread_id: uuid.UUID,
    payload: ThreadAIToggle,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    thread = _thread(db, ctx, thread_id)
    thread.ai_enabled = payload.ai_enabled
    AuditRecorder(db).record(
        ctx.workspace_id,
        "ai_reply.thread_toggled",
        actor=ctx.user_id,
        target_type="thread",
        target_id=thread.id,
        detail={"ai_enabled": payload.ai_enabled},
    )
    db.commit()
    db.refresh(thread)
    out = _state_out(db, thread)
    db.commit()
    return out


@router.post("/threads/{thread_id}/handoff", response_model=ThreadAIStateOut)
def handoff_thread(
    thread_id: uuid.UUID,
    payload: HandoffRequest | None = None,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    thread = _thread(db, ctx, thread_id)
    reason = payload.reason if payload else "manual"
    HandoffService(db).handoff(ctx.workspace_id, thread.id, reason)
    AuditRecorder(db).record(
        ctx.workspace_id,
        "ai_reply.handoff",
        actor=ctx.user_id,
        target_type="thread",
        target_id=thread.id,
        detail={"reason": reason},
    )
    db.commit()
    out = _state_out(db, thread)
    db.commit()
    return out


@router.post("/threads/{thread_id}/reset", response_model=ThreadAIStateOut)
def reset_thread(
    thread_id: uuid.UUID,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    thread = _thread(db, ctx, thread_id)
    HandoffService(db).reset(ctx.workspace_id, thread.id)
    AuditRecorder(db).record(
        ctx.workspace_id,
        "ai_reply.reset",
        actor=ctx.user_id,
        target_type="thread",
        target_id=thread.id,
    )
    db.commit()
    out = _state_out(db, thread)
    db.commit()
    return out
