import logging
from contextlib import asynccontextmanager
from os import getenv

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from metahub.api.router import api_router
from metahub.api.webhooks import router as webhooks_router
from metahub.config.settings import get_settings
from metahub.logging.setup import configure_logging
from metahub.middleware.rate_limit import RateLimitMiddleware
from metahub.middleware.request_context import RequestContextMiddleware
from metahub.persistence.database import SessionLocal
from metahub.persistence.migrations import run_migrations
from metahub.services.channel_sender import GraphChannelSender
from metahub.services.dispatcher import InboundDispatcher
from metahub.services.inbound_processor import InboundProcessor
from metahub.services.rate_limit_store import build_rate_limit_store
from metahub.services.scheduler import AutomationScheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    # Apply DB migrations (non-fatal)
    if settings.app_env != "test":
        try:
            run_migrations()
        except Exception as exc:  # pragma: no cover
            logger.error("DB migration failed, running in degraded mode: %s", exc, exc_info=True)

    rate_limits = build_rate_limit_store(settings.rate_limit_backend, SessionLocal)
    sender = GraphChannelSender(settings)
    processor = InboundProcessor(sender=sender, rate_limits=rate_limits, settings=settings)
    app.state.rate_limits = rate_limits
    app.state.processor = processor

    dispatcher = InboundDispatcher(
        SessionLocal,
        processor,
        workers=settings.dispatch_workers,
        queue_size=settings.dispatch_queue_size,
    )
    try:
        await dispatcher.start()
        app.state.dispatcher = dispatcher
    except Exception as exc:  # pragma: no cover
        logger.error("Inbound dispatcher failed to start: %s", exc, exc_info=True)

    scheduler = AutomationScheduler(SessionLocal, sender=sender, settings=settings, rate_limits=rate_limits)
    try:
        await scheduler.start()
        app.state.scheduler = scheduler
    except Exception as exc:  # pragma: no cover
        logger.error("Scheduler failed to start: %s", exc, exc_info=True)

    yield

    try:
        await scheduler.stop()
    except Exception as exc:  # pragma: no cover
        logger.warning("Scheduler stop error: %s", exc)

    try:
        await dispatcher.stop()
    except Exception as exc:  # pragma: no cover
        logger.warning("Dispatcher stop error: %s", exc)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

    # CORS: restrict in production via CORS_ORIGINS
    cors_env = getenv("CORS_ORIGINS", "").strip()
    if cors_env:
        allowed_origins = [o.strip() for o in cors_env.split(",") if o.strip()]
    else:
        allowed_origins = ["http://localhost:3000", "http://localhost:5173"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Workspace-ID", "X-Trace-ID"],
    )
    app.add_middleware(RateLimitMiddleware, requests_per_minute=settings.rate_limit_per_minute)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(api_router)
    app.include_router(webhooks_router)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("metahub.main:app", host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
