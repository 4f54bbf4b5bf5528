"""Audit sink — records occurrence and moderation actions in the audit_logs table.

Entries are added to the caller's session and committed with the caller's
transaction, so an action and its audit record land together.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


class AuditSink:
    def __init__(self, db: Session) -> None:
        self.db = db

    def record(
        self,
        action: str,
        actor_id: int | None = None,
        details: dict[str, Any] | None = None,
        *,
        entity_type: str | None = None,
        entity_id: int | None = None,
        ip_address: str | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            action=action,
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
            ip_address=ip_address,
        )
        self.db.add(entry)
        logger.debug("audit %s actor=%s %s#%s", action, actor_id, entity_type, entity_id)
        return entry
