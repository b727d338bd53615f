import logging
import secrets
from dataclasses import dataclass
from functools import lru_cache
from os import getenv
from typing import Literal

logger = logging.getLogger(__name__)

_INSECURE_DEFAULTS = {"change-me", "change-me-too", ""}


@dataclass
class Settings:
    app_name: str = "Meta Hub Automation"
    app_env: Literal["dev", "test", "prod"] = "dev"
    app_version: str = "0.1.0"

    database_url: str = "sqlite:///./metahub.db"
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    access_token_ttl_minutes: int = 60

    meta_app_secret: str = ""
    meta_webhook_verify_token: str = ""
    whatsapp_token: str | None = None
    graph_api_base: str = "https://graph.facebook.com/v19.0"

    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    ai_provider_timeout_seconds: float = 30.0

    sla_response_minutes_urgent: int = 5
    sla_response_minutes_high: int = 15
    sla_response_minutes_med: int = 30
    sla_response_minutes_low: int = 60
    sla_resolution_minutes_urgent: int = 2 * 60
    sla_resolution_minutes_high: int = 4 * 60
    sla_resolution_minutes_med: int = 12 * 60
    sla_resolution_minutes_low: int = 24 * 60
    sla_due_soon_minutes: int = 15

    retry_base_minutes: float = 1.0
    retry_max_minutes: float = 60.0
    retry_jitter_ratio: float = 0.2
    scheduled_action_max_attempts: int = 3

    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = 30
    sla_sweep_interval_seconds: int = 60
    dispatch_workers: int = 4
    dispatch_queue_size: int = 1000

    rate_limit_per_minute: int = 120
    rate_limit_backend: Literal["memory", "database"] = "memory"

    host: str = "0.0.0.0"
    port: int = 8000


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    def _as_bool(value: str | None, default: bool = False) -> bool:
        if value is None:
            return default
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}

    app_env = getenv("APP_ENV", "dev")
    jwt_secret = getenv("JWT_SECRET", "")
    meta_app_secret = getenv("META_APP_SECRET", "")
    verify_token = getenv("META_WEBHOOK_VERIFY_TOKEN", "")

    # In production, refuse to start with insecure/missing secrets
    if app_env == "prod":
        if jwt_secret in _INSECURE_DEFAULTS:
            raise RuntimeError("JWT_SECRET is not set or uses an insecure default.")
        if not meta_app_secret:
            raise RuntimeError("META_APP_SECRET is required to verify webhook signatures.")
        if not verify_token:
            raise RuntimeError("META_WEBHOOK_VERIFY_TOKEN is required for the subscription handshake.")
    elif jwt_secret in _INSECURE_DEFAULTS:
        jwt_secret = secrets.token_hex(32)
        logger.warning("JWT_SECRET not set, using auto-generated value (not suitable for production)")

    return Settings(
        app_name=getenv("APP_NAME", "Meta Hub Automation"),
        app_env=app_env,
        app_version=getenv("APP_VERSION", "0.1.0"),
        database_url=getenv("DATABASE_URL", "sqlite:///./metahub.db"),
        jwt_secret=jwt_secret,
        jwt_algorithm=getenv("JWT_ALGORITHM", "HS256"),
        access_token_ttl_minutes=int(getenv("ACCESS_TOKEN_TTL_MINUTES", "60")),
        meta_app_secret=meta_app_secret,
        meta_webhook_verify_token=verify_token,
        whatsapp_token=getenv("WHATSAPP_TOKEN"),
        graph_api_base=getenv("GRAPH_API_BASE", "https://graph.facebook.com/v19.0"),
        openai_api_key=getenv("OPENAI_API_KEY"),
        anthropic_api_key=getenv("ANTHROPIC_API_KEY"),
        ai_provider_timeout_seconds=float(getenv("AI_PROVIDER_TIMEOUT_SECONDS", "30")),
        sla_response_minutes_urgent=int(getenv("SLA_RESPONSE_MINUTES_URGENT", "5")),
        sla_response_minutes_high=int(getenv("SLA_RESPONSE_MINUTES_HIGH", "15")),
        sla_response_minutes_med=int(getenv("SLA_RESPONSE_MINUTES_MED", "30")),
        sla_response_minutes_low=int(getenv("SLA_RESPONSE_MINUTES_LOW", "60")),
        sla_resolution_minutes_urgent=int(getenv("SLA_RESOLUTION_MINUTES_URGENT", str(2 * 60))),
        sla_resolution_minutes_high=int(getenv("SLA_RESOLUTION_MINUTES_HIGH", str(4 * 60))),
        sla_resolution_minutes_med=int(getenv("SLA_RESOLUTION_MINUTES_MED", str(12 * 60))),
        sla_resolution_minutes_low=int(getenv("SLA_RESOLUTION_MINUTES_LOW", str(24 * 60))),
        sla_due_soon_minutes=int(getenv("SLA_DUE_SOON_MINUTES", "15")),
        retry_base_minutes=float(getenv("RETRY_BASE_MINUTES", "1")),
        retry_max_minutes=float(getenv("RETRY_MAX_MINUTES", "60")),
        retry_jitter_ratio=float(getenv("RETRY_JITTER_RATIO", "0.2")),
        scheduled_action_max_attempts=int(getenv("SCHEDULED_ACTION_MAX_ATTEMPTS", "3")),
        scheduler_enabled=_as_bool(getenv("SCHEDULER_ENABLED"), True),
        scheduler_interval_seconds=int(getenv("SCHEDULER_INTERVAL_SECONDS", "30")),
        sla_sweep_interval_seconds=int(getenv("SLA_SWEEP_INTERVAL_SECONDS", "60")),
        dispatch_workers=int(getenv("DISPATCH_WORKERS", "4")),
        dispatch_queue_size=int(getenv("DISPATCH_QUEUE_SIZE", "1000")),
        rate_limit_per_minute=int(getenv("RATE_LIMIT_PER_MINUTE", "120")),
        rate_limit_backend=getenv("RATE_LIMIT_BACKEND", "memory"),
        host=getenv("HOST", "0.0.0.0"),
        port=int(getenv("PORT", "8000")),
    )
