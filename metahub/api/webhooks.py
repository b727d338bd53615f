"""
Meta webhook receiver, mounted at the app root (not under /api).

  GET  /webhooks/meta   subscription handshake, echoes ``hub.challenge``
  POST /webhooks/meta   signed delivery: verify, normalize, enqueue, 200

A delivery that passes verification is always acknowledged with 200, even
when processing later fails, so the provider does not redeliver forever.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from metahub.config.settings import get_settings
from metahub.monitoring.metrics import WEBHOOK_REJECTED
from metahub.persistence.database import get_db
from metahub.persistence.models import Channel, ChannelConnection
from metahub.schemas.common import WebhookAck
from metahub.services.dispatcher import InboundDispatcher
from metahub.services.inbound_processor import InboundProcessor
from metahub.webhooks.events import InboundEvent, WorkspaceResolver, normalize
from metahub.webhooks.signature import verify, verify_handshake

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks-public"])


def get_dispatcher(request: Request) -> InboundDispatcher | None:
    return getattr(request.app.state, "dispatcher", None)


def connection_resolver(db: Session) -> WorkspaceResolver:
    def resolve(channel: Channel, account_id: str):
        connection = (
            db.query(ChannelConnection)
            .filter(
                ChannelConnection.channel == channel,
                ChannelConnection.external_account_id == account_id,
                ChannelConnection.active.is_(True),
            )
            .first()
        )
        return connection.workspace_id if connection else None

    return resolve


def _process_inline(processor: InboundProcessor, db: Session, events: list[InboundEvent]) -> int:
    for event in events:
        try:
            processor.process(db, event)
        except Exception:
            logger.exception("Inline processing failed", extra={"workspace_id": event.workspace_id})
    return len(events)


@router.get("/meta", response_class=PlainTextResponse)
def handshake(
    mode: str | None = Query(default=None, alias="hub.mode"),
    verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    result = verify_handshake(mode, verify_token, challenge, get_settings().meta_webhook_verify_token)
    if result.status_code != 200:
        logger.warning("Webhook handshake refused (mode=%s)", mode)
    return PlainTextResponse(result.body, status_code=result.status_code)


@router.post("/meta", response_model=WebhookAck)
async def receive(
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: InboundDispatcher | None = Depends(get_dispatcher),
):
    raw_body = await request.body()
    verified = verify(raw_body, request.headers.get("x-hub-signature-256"), get_settings().meta_app_secret)
    if not verified.ok:
        WEBHOOK_REJECTED.labels(reason=verified.error.code).inc()
        logger.warning("Webhook rejected: %s", verified.error.code)
        raise HTTPException(status_code=403, detail="Forbidden")

    try:
        normalized = await run_in_threadpool(normalize, verified.payload, connection_resolver(db))
    except Exception:
        logger.exception("Webhook normalization failed")
        return WebhookAck(received=0)

    if normalized.skipped:
        logger.info("Webhook items skipped: %s", ", ".join(normalized.skipped))
    if not normalized.events:
        return WebhookAck(received=0)

    if dispatcher is None or not dispatcher.running:
        logger.warning("Dispatcher not running, processing %d events inline", len(normalized.events))
        processor = getattr(request.app.state, "processor", None) or InboundProcessor()
        received = await run_in_threadpool(_process_inline, processor, db, normalized.events)
    else:
        received = dispatcher.submit(normalized.events)
    return WebhookAck(received=received)
