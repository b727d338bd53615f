from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from metahub.persistence.models import ScheduledActionStatus


class ScheduledActionIn(BaseModel):
    thread_id: UUID
    action_type: str
    payload: dict[str, Any] = {}
    run_at: datetime
    max_attempts: int | None = Field(default=None, ge=1, le=20)


class ScheduledActionOut(BaseModel):
    id: UUID
    thread_id: UUID | None = None
    rule_id: UUID | None = None
    action_type: str
    payload: dict[str, Any]
    run_at: datetime
    status: ScheduledActionStatus
    attempt_count: int
    max_attempts: int
    last_error: str | None = None
    executed_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class ScheduledActionList(BaseModel):
    items: list[ScheduledActionOut]
    summary: dict[str, int]
