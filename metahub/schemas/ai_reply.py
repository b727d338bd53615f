from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from metahub.persistence.models import AIReplyStatus, ProviderType

_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


class AIReplySettingsIn(BaseModel):
    enabled: bool = False
    provider_type: ProviderType = ProviderType.OpenAI
    model: str = "gpt-4o-mini"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=500, ge=1, le=8192)
    system_prompt: str | None = None
    monthly_token_cap: int | None = Field(default=None, ge=0)
    sandbox_enabled: bool = False
    sandbox_whitelist: list[str] = []
    active_hours_enabled: bool = False
    active_hours_start: str | None = Field(default=None, pattern=_HHMM)
    active_hours_end: str | None = Field(default=None, pattern=_HHMM)
    active_timezone: str = "UTC"
    cooldown_seconds: int = Field(default=5, ge=0)
    max_messages_per_thread: int | None = Field(default=None, ge=1)
    handoff_keywords: list[str] = []
    handoff_message: str | None = None

    @field_validator("active_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {value!r}") from None
        return value


class AIReplySettingsOut(AIReplySettingsIn):
    workspace_id: UUID
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class AIReplyStats(BaseModel):
    period_days: int
    total: int
    success: int
    failed: int
    handoffs: int
    skipped: int
    success_rate: float
    avg_latency_ms: int | None = None
    tokens: int
    monthly_tokens: int


class AIReplyLogOut(BaseModel):
    id: UUID
    thread_id: UUID
    external_message_id: str | None = None
    status: AIReplyStatus
    reason: str
    input_message: str | None = None
    ai_response: str | None = None
    provider: str | None = None
    model: str | None = None
    tokens_in: int
    tokens_out: int
    latency_ms: int | None = None
    error_message: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class ThreadAIToggle(BaseModel):
    ai_enabled: bool


class ThreadAIStateOut(BaseModel):
    thread_id: UUID
    ai_enabled: bool
    handed_off: bool
    handed_off_reason: str | None = None
    message_count: int
    last_ai_reply_at: datetime | None = None


class HandoffRequest(BaseModel):
    reason: str = "manual"
