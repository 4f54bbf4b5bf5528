"""Occurrence lifecycle — time-based expiration and manual merge.

Occurrences are never deleted: expiry flips status to ``expired`` and a merge
marks the absorbed reports ``merged`` with a back-reference to the target.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NotFoundError, ValidationError
from app.models.base import (
    OccurrenceSourceEnum,
    OccurrenceStatusEnum,
    ValidationStatusEnum,
    ValidationTypeEnum,
)
from app.models.occurrence import Occurrence
from app.models.occurrence_validation import OccurrenceValidation
from app.modules.audit import AuditSink
from app.modules.ingest import COLLABORATIVE_MAX_CONFIDENCE, OFFICIAL_CONFIDENCE
from app.modules.job_queue import RISK_RECOMPUTE, JobQueue
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Corroborated reports survive expiry
PRESERVE_CONFIDENCE = 4


def _has_official_confirmation(db: Session, occurrence_id: int) -> bool:
    return db.query(OccurrenceValidation).filter(
        OccurrenceValidation.occurrence_id == occurrence_id,
        OccurrenceValidation.validation_type == ValidationTypeEnum.OFFICIAL_CONFIRMATION,
        OccurrenceValidation.status == ValidationStatusEnum.APPROVED,
    ).first() is not None


def should_preserve(db: Session, occurrence: Occurrence) -> bool:
    if occurrence.is_official:
        return True
    if occurrence.confidence_score >= PRESERVE_CONFIDENCE:
        return True
    return _has_official_confirmation(db, occurrence.occurrence_id)


def expire_occurrences(
    db: Session,
    now: datetime | None = None,
    batch_size: int = 100,
    jobs: JobQueue | None = None,
) -> dict:
    """Expire due collaborative reports, extending the ones worth keeping."""
    now = now or utcnow()
    extension = timedelta(days=settings.OCCURRENCE_EXPIRATION_DAYS)
    processed = expired = preserved = 0
    touched_regions: set[int] = set()
    last_id = 0
    while True:
        batch = (
            db.query(Occurrence)
            .filter(
                Occurrence.source == OccurrenceSourceEnum.COLLABORATIVE,
                Occurrence.status == OccurrenceStatusEnum.ACTIVE,
                Occurrence.expires_at.isnot(None),
                Occurrence.expires_at <= now,
                Occurrence.occurrence_id > last_id,
            )
            .order_by(Occurrence.occurrence_id)
            .limit(batch_size)
            .all()
        )
        if not batch:
            break
        for occurrence in batch:
            processed += 1
            if should_preserve(db, occurrence):
                occurrence.expires_at = now + extension
                preserved += 1
            else:
                occurrence.status = OccurrenceStatusEnum.EXPIRED
                expired += 1
                if occurrence.region_id is not None:
                    touched_regions.add(occurrence.region_id)
        last_id = batch[-1].occurrence_id
        db.commit()

    logger.info("Expiration sweep: %d processed, %d expired, %d preserved", processed, expired, preserved)
    if jobs is not None:
        for region_id in sorted(touched_regions):
            jobs.enqueue(RISK_RECOMPUTE, region_id=region_id)
    return {"processed": processed, "expired": expired, "preserved": preserved}


def merge_occurrences(
    db: Session,
    occurrence_ids: Iterable[int],
    target_id: int,
    actor_id: int | None = None,
    jobs: JobQueue | None = None,
) -> Occurrence:
    """Fold ``occurrence_ids`` into ``target_id``; the target gains their confidence."""
    ids = sorted({int(i) for i in occurrence_ids} - {target_id})
    if not ids:
        raise ValidationError("Nothing to merge: provide at least one id besides the target", field="occurrence_ids")

    target = db.get(Occurrence, target_id)
    if target is None:
        raise NotFoundError(f"Occurrence {target_id} not found", occurrence_id=target_id)
    if target.status == OccurrenceStatusEnum.MERGED:
        raise ValidationError(
            f"Occurrence {target_id} is already merged into {target.merged_into_id}", field="target_id"
        )

    others = db.query(Occurrence).filter(Occurrence.occurrence_id.in_(ids)).all()
    missing = sorted(set(ids) - {o.occurrence_id for o in others})
    if missing:
        raise NotFoundError(f"Occurrences not found: {missing}", occurrence_ids=missing)
    already = [o.occurrence_id for o in others if o.status == OccurrenceStatusEnum.MERGED]
    if already:
        raise ValidationError(f"Occurrences already merged: {already}", field="occurrence_ids")

    cap = OFFICIAL_CONFIDENCE if target.is_official else COLLABORATIVE_MAX_CONFIDENCE
    regions = {target.region_id}
    for occurrence in others:
        occurrence.status = OccurrenceStatusEnum.MERGED
        occurrence.merged_into_id = target.occurrence_id
        regions.add(occurrence.region_id)
    target.confidence_score = min(cap, target.confidence_score + len(others))

    AuditSink(db).record(
        "occurrence_merged",
        actor_id,
        {"merged_ids": ids, "target_id": target_id, "confidence_score": target.confidence_score},
        entity_type="occurrence",
        entity_id=target_id,
    )
    db.commit()
    logger.info("Merged occurrences %s into %s", ids, target_id)

    if jobs is not None:
        for region_id in sorted(r for r in regions if r is not None):
            jobs.enqueue(RISK_RECOMPUTE, region_id=region_id)
    return target
