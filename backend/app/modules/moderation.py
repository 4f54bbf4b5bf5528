"""Moderation hand-off — flag suspicious occurrences for human review.

Detection heuristics are pluggable through ``ModerationChecker``; the default
checker flags nothing. Review itself happens outside this service.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from app.models.base import MODERATION_PRIORITY, ModerationReasonEnum, ModerationStatusEnum
from app.models.moderation_queue import ModerationQueue
from app.models.occurrence import Occurrence

logger = logging.getLogger(__name__)


class ModerationChecker:
    """Decides whether a new occurrence needs review. Override ``check`` to add rules."""

    def check(self, occurrence: Occurrence, db: Session) -> ModerationReasonEnum | None:
        return None


class ModerationService:
    def __init__(self, db: Session, checker: ModerationChecker | None = None) -> None:
        self.db = db
        self.checker = checker or ModerationChecker()

    def flag(
        self,
        occurrence: Occurrence,
        reason: ModerationReasonEnum | str,
        details: dict[str, Any] | None = None,
    ) -> ModerationQueue:
        reason = ModerationReasonEnum(reason)
        item = ModerationQueue(
            occurrence_id=occurrence.occurrence_id,
            reason=reason,
            priority=MODERATION_PRIORITY[reason],
            status=ModerationStatusEnum.PENDING,
            details=details,
        )
        self.db.add(item)
        logger.info(
            "Occurrence %s flagged for review (%s, priority %d)",
            occurrence.occurrence_id, reason.value, item.priority,
        )
        return item

    def review_if_needed(self, occurrence: Occurrence) -> ModerationQueue | None:
        reason = self.checker.check(occurrence, self.db)
        if reason is None:
            return None
        return self.flag(occurrence, reason)

