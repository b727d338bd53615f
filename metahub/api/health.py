from datetime import datetime, timezone

from fastapi import APIRouter, Request
from sqlalchemy import text

from metahub.monitoring.metrics import metrics_response
from metahub.persistence.database import engine
from metahub.schemas.common import HealthResponse

router = APIRouter(tags=["system"])


@router.get("/healthz", response_model=HealthResponse)
def healthz(request: Request) -> HealthResponse:
    db_ok = False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        db_ok = False
    dispatcher = getattr(request.app.state, "dispatcher", None)
    scheduler = getattr(request.app.state, "scheduler", None)
    return HealthResponse(
        status="ok" if db_ok else "degraded",
        db=db_ok,
        dispatcher=bool(dispatcher and dispatcher.running),
        scheduler=bool(scheduler and scheduler.running),
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/metrics")
def metrics():
    return metrics_response()
