from datetime import datetime

from pydantic import BaseModel


class ApiMessage(BaseModel):
    detail: str


class HealthResponse(BaseModel):
    status: str
    db: bool
    dispatcher: bool
    scheduler: bool
    timestamp: datetime


class WebhookAck(BaseModel):
    received: int
