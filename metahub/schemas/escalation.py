from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, field_validator

from metahub.persistence.models import ensure_utc


class EscalationOut(BaseModel):
    id: UUID
    thread_id: UUID
    breach_type: str
    due_at: datetime
    reason: str
    created_at: datetime

    @field_validator("due_at", "created_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    class Config:
        from_attributes = True


class ThreadSlaOut(BaseModel):
    thread_id: UUID
    priority: str
    status: str
    sla_status: str
    first_response_at: datetime | None = None
    next_response_due_at: datetime | None = None
    resolution_due_at: datetime | None = None
