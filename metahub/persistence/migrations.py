from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from metahub.config.settings import get_settings

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[2]


def alembic_config(database_url: str | None = None) -> Config:
    alembic_ini = _PROJECT_ROOT / "alembic.ini"
    script_location = _PROJECT_ROOT / "alembic"
    if not alembic_ini.exists():
        raise RuntimeError(f"Alembic config not found: {alembic_ini}")
    if not script_location.exists():
        raise RuntimeError(f"Alembic script location not found: {script_location}")

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", (database_url or get_settings().database_url).replace("%", "%%"))
    # Keep the JSON log handler: env.py skips fileConfig() without a file name
    config.config_file_name = None
    return config


def run_migrations(database_url: str | None = None) -> None:
    """Apply DB migrations up to head."""
    command.upgrade(alembic_config(database_url), "head")
    logger.info("Database schema at head")
