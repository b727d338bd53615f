"""
Usage tracking: daily token and cost counters per workspace and provider.

Rows are only ever accumulated into, never rewritten or deleted.
"""
from __future__ import annotations

import logging
import math
import uuid
from datetime import date, datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session as DbSession

from metahub.persistence.models import UsageRecord, now_utc
from metahub.persistence.upsert import upsert

logger = logging.getLogger(__name__)


def estimate_tokens(text: str | None) -> int:
    """Fallback when a provider omits usage: roughly four characters per token."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def month_start(moment: datetime) -> date:
    return moment.date().replace(day=1)


def next_month_start(moment: datetime) -> date:
    return (month_start(moment).replace(day=28) + timedelta(days=4)).replace(day=1)


class UsageTracker:
    def record(
        self,
        db: DbSession,
        *,
        workspace_id: uuid.UUID,
        provider: str,
        tokens_in: int,
        tokens_out: int,
        cost_usd: float = 0.0,
        at: datetime | None = None,
    ) -> None:
        day = (at or now_utc()).date()
        upsert(
            db,
            UsageRecord,
            {
                "id": uuid.uuid4(),
                "workspace_id": workspace_id,
                "day": day,
                "provider": provider,
                "tokens_in": tokens_in,
                "tokens_out": tokens_out,
                "cost_usd": cost_usd,
                "requests": 1,
                "updated_at": now_utc(),
            },
            ("workspace_id", "day", "provider"),
            lambda excluded: {
                "tokens_in": UsageRecord.tokens_in + excluded.tokens_in,
                "tokens_out": UsageRecord.tokens_out + excluded.tokens_out,
                "cost_usd": UsageRecord.cost_usd + excluded.cost_usd,
                "requests": UsageRecord.requests + 1,
                "updated_at": excluded.updated_at,
            },
        )
        db.commit()
        logger.info(
            "Usage recorded provider=%s tokens_in=%s tokens_out=%s",
            provider,
            tokens_in,
            tokens_out,
            extra={"workspace_id": workspace_id},
        )

    def monthly_tokens(self, db: DbSession, workspace_id: uuid.UUID, now: datetime | None = None) -> int:
        now = now or now_utc()
        since, until = month_start(now), next_month_start(now)
        total = (
            db.query(func.coalesce(func.sum(UsageRecord.tokens_in + UsageRecord.tokens_out), 0))
            .filter(
                UsageRecord.workspace_id == workspace_id,
                UsageRecord.day >= since,
                UsageRecord.day < until,
            )
            .scalar()
        )
        return int(total or 0)

    def get_summary(self, db: DbSession, *, workspace_id: uuid.UUID, days: int = 30) -> dict:
        since = (now_utc() - timedelta(days=days)).date()
        row = (
            db.query(
                func.coalesce(func.sum(UsageRecord.requests), 0).label("requests"),
                func.coalesce(func.sum(UsageRecord.tokens_in), 0).label("tokens_in"),
                func.coalesce(func.sum(UsageRecord.tokens_out), 0).label("tokens_out"),
                func.coalesce(func.sum(UsageRecord.cost_usd), 0).label("cost_usd"),
            )
            .filter(UsageRecord.workspace_id == workspace_id, UsageRecord.day >= since)
            .one()
        )
        return {
            "period_days": days,
            "requests": int(row.requests),
            "tokens_in": int(row.tokens_in),
            "tokens_out": int(row.tokens_out),
            "cost_usd": round(float(row.cost_usd), 6),
        }

    def get_by_provider(self, db: DbSession, *, workspace_id: uuid.UUID, days: int = 30) -> list[dict]:
        since = (now_utc() - timedelta(days=days)).date()
        rows = (
            db.query(
                UsageRecord.provider,
                func.coalesce(func.sum(UsageRecord.tokens_in), 0).label("tokens_in"),
                func.coalesce(func.sum(UsageRecord.tokens_out), 0).label("tokens_out"),
                func.coalesce(func.sum(UsageRecord.cost_usd), 0).label("cost"),
            )
            .filter(UsageRecord.workspace_id == workspace_id, UsageRecord.day >= since)
            .group_by(UsageRecord.provider)
            .order_by(UsageRecord.provider)
            .all()
        )
        return [
            {
                "provider": r.provider,
                "tokens_in": int(r.tokens_in),
                "tokens_out": int(r.tokens_out),
                "cost_usd": round(float(r.cost), 6),
            }
            for r in rows
        ]


usage_tracker = UsageTracker()
