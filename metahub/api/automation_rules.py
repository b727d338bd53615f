import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from metahub.auth.deps import WorkspaceContext, get_workspace_context, require_admin
from metahub.persistence.database import get_db
from metahub.persistence.models import AutomationExecution, AutomationRule, TriggerType
from metahub.schemas.automation import (
    AutomationExecutionOut,
    AutomationRuleIn,
    AutomationRuleOut,
    AutomationRuleUpdate,
)
from metahub.services.audit import AuditRecorder
from metahub.services.automation_engine import RuleDefinitionError, validate_rule

router = APIRouter(prefix="/automation-rules", tags=["automation"])


def _get_rule(db: Session, ctx: WorkspaceContext, rule_id: uuid.UUID) -> AutomationRule:
    rule = (
        db.query(AutomationRule)
        .filter(AutomationRule.id == rule_id, AutomationRule.workspace_id == ctx.workspace_id)
        .first()
    )
    if not rule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
    return rule


def _validate(trigger_type, trigger_config, conditions, actions) -> None:
    try:
        validate_rule(trigger_type, trigger_config, conditions, actions)
    except RuleDefinitionError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from None


@router.get("", response_model=list[AutomationRuleOut])
def list_rules(
    trigger_type: TriggerType | None = None,
    enabled: bool | None = None,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    query = db.query(AutomationRule).filter(AutomationRule.workspace_id == ctx.workspace_id)
    if trigger_type is not None:
        query = query.filter(AutomationRule.trigger_type == trigger_type)
    if enabled is not None:
        query = query.filter(AutomationRule.enabled.is_(enabled))
    return query.order_by(AutomationRule.priority.desc(), AutomationRule.created_at).all()


@router.get("/{rule_id}", response_model=AutomationRuleOut)
def get_rule(
    rule_id: uuid.UUID,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    return _get_rule(db, ctx, rule_id)


@router.get("/{rule_id}/executions", response_model=list[AutomationExecutionOut])
def list_executions(
    rule_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=500),
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: Session = Depends(get_db),
):
    _get_rule(db, ctx, rule_id)
    return (
        db.query(AutomationExecution)
        .filter(AutomationExecution.rule_id == rule_id, AutomationExecution.workspace_id == ctx.workspace_id)
        .order_by(AutomationExecution.created_at.desc())
        .limit(limit)
        .all()
    )


@router.post("", response_model=AutomationRuleOut, status_code=201)
def create_rule(
    payload: AutomationRuleIn,
    ctx: WorkspaceContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    _validate(payload.trigger_type, payload.trigger_config, payload.conditions, payload.actions)
    rule = AutomationRule(workspace_id=ctx.workspace_id, created_by=ctx.user_id, **payload.model_dump())
    db.add(rule)
    db.flush()
    AuditRecorder(db).record(
        ctx.workspace_id,
        "automation.rule_created",
        actor=ctx.user_id,
        target_type="automation_rule",
        target_id=rule.id,
        detail={"name": rule.name, "trigger_type": payload.trigger_type.value},
    )
    db.commit()
    db.refresh(rule)
    return rule


@router.patch("/{rule_id}", response_model=AutomationRuleOut)
def update_rule(
    rule_id: uuid.UUID,
    payload: AutomationRuleUpdate,
    ctx: WorkspaceContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    rule = _get_rule(db, ctx, rule_id)
    changes = payload.model_dump(exclude_unset=True)
    _validate(
        changes.get("trigger_type", rule.trigger_type),
        changes.get("trigger_config", rule.trigger_config),
        changes.get("conditions", rule.conditions),
        changes.get("actions", rule.actions),
    )
    for key, value in changes.items():
        setattr(rule, key, value)
    AuditRecorder(db).record(
        ctx.workspace_id,
        "automation.rule_updated",
        actor=ctx.user_id,
        target_type="automation_rule",
        target_id=rule.id,
        detail={"fields": sorted(changes)},
    )
    db.commit()
    db.refresh(rule)
    return rule


@router.delete("/{rule_id}", status_code=204)
def delete_rule(
    rule_id: uuid.UUID,
    ctx: WorkspaceContext = Depends(require_admin),
    db: Session = Depends(get_db),
):
    rule = _get_rule(db, ctx, rule_id)
    # Rules with execution history are disabled, not deleted
    has_history = db.query(AutomationExecution.id).filter(AutomationExecution.rule_id == rule.id).first()
    if has_history:
        rule.enabled = False
    else:
        db.delete(rule)
    AuditRecorder(db).record(
        ctx.workspace_id,
        "automation.rule_deleted",
        actor=ctx.user_id,
        target_type="automation_rule",
        target_id=rule_id,
        detail={"soft": bool(has_history)},
    )
    db.commit()
