from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.orm import Session

from metahub.persistence.models import AuditLog

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Append-only audit sink. Callers own the commit."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def record(
        self,
        workspace_id: uuid.UUID,
        action: str,
        *,
        actor: str = "system",
        target_type: str | None = None,
        target_id: Any = None,
        detail: dict[str, Any] | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            workspace_id=workspace_id,
            actor=actor,
            action=action,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            detail=detail or {},
        )
        self.db.add(entry)
        logger.info(
            "audit %s %s:%s",
            action,
            target_type,
            target_id,
            extra={"workspace_id": workspace_id},
        )
        return entry
