from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from metahub.persistence.models import ExecutionStatus, TriggerType


class AutomationRuleIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = ""
    trigger_type: TriggerType
    trigger_config: dict[str, Any] = {}
    conditions: list[dict[str, Any]] = []
    actions: list[dict[str, Any]] = Field(min_length=1)
    enabled: bool = True
    priority: int = 0


class AutomationRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    trigger_type: TriggerType | None = None
    trigger_config: dict[str, Any] | None = None
    conditions: list[dict[str, Any]] | None = None
    actions: list[dict[str, Any]] | None = None
    enabled: bool | None = None
    priority: int | None = None


class AutomationRuleOut(AutomationRuleIn):
    id: UUID
    workspace_id: UUID
    execution_count: int
    last_executed_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AutomationExecutionOut(BaseModel):
    id: UUID
    rule_id: UUID
    thread_id: UUID
    trigger_type: TriggerType
    trigger_key: str | None = None
    status: ExecutionStatus
    actions_attempted: int
    actions_succeeded: int
    actions_skipped: int
    error_message: str | None = None
    duration_ms: int
    created_at: datetime

    class Config:
        from_attributes = True
