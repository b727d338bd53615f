import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from metahub.auth.deps import WorkspaceContext, get_workspace_context, require_admin
from metahub.persistence.database import get_db
from metahub.persistence.models import ScheduledAction, ScheduledActionStatus, Thread
from metahub.schemas.scheduled_action import ScheduledActionIn, ScheduledActionList, ScheduledActionOut
from metahub.services.audit import AuditRecorder
from metahub.services.automation_engine import RuleDefinitionError
from metahub.services.scheduled_actions import (
    cancel_scheduled_action,
    create_scheduled_action,
    status_summary,
)

router = APIRouter(prefix="/scheduled-actions", tags=["automation"])


@router.get("", response_model=ScheduledActionList)
def list_scheduled_actions(
    status_filter: ScheduledActionStatus | None = Query(default=None, alias="status"),
    thread_id: uuid.UUID | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    query = db.query(ScheduledAction).filter(ScheduledAction.workspace_id == ctx.workspace_id)
    if status_filter is not None:
        query = query.filter(ScheduledAction.status == status_filter)
    if thread_id is not None:
        query = query.filter(ScheduledAction.thread_id == thread_id)
    items = query.order_by(ScheduledAction.run_at).limit(limit).all()
    return ScheduledActionList(
        items=[ScheduledActionOut.model_validate(item) for item in items],
        summary=status_summary(db, ctx.workspace_id),
    )


@router.post("", response_model=ScheduledActionOut, status_code=201)
def create(
    payload: ScheduledActionIn,
    ctx: WorkspaceContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    thread = (
        db.query(Thread)
        .filter(Thread.id == payload.thread_id, Thread.workspace_id == ctx.workspace_id)
        .first()
    )
    if not thread:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
    try:
        item = create_scheduled_action(
            db,
            workspace_id=ctx.workspace_id,
            thread_id=thread.id,
            action_type=payload.action_type,
            payload=payload.payload,
            run_at=payload.run_at,
            max_attempts=payload.max_attempts,
        )
    except RuleDefinitionError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from None
    return item


@router.post("/{action_id}/cancel", response_model=ScheduledActionOut)
def cancel(
    action_id: uuid.UUID,
    ctx: WorkspaceContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    item = (
        db.query(ScheduledAction)
        .filter(ScheduledAction.id == action_id, ScheduledAction.workspace_id == ctx.workspace_id)
        .first()
    )
    if not item:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduled action not found")
    if not cancel_scheduled_action(db, ctx.workspace_id, action_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only pending actions can be cancelled (status: {ScheduledActionStatus(item.status).value})",
        )
    AuditRecorder(db).record(
        ctx.workspace_id,
        "scheduled_action.cancelled",
        actor=ctx.user_id,
        target_type="scheduled_action",
        target_id=action_id,
    )
    db.commit()
    db.refresh(item)
    return item
