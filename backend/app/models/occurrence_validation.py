"""OccurrenceValidation entity — corroboration links and official confirmations."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, DateTime, JSON, ForeignKey, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base, ValidationStatusEnum, ValidationTypeEnum


class OccurrenceValidation(Base):
    __tablename__ = "occurrence_validations"

    validation_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    occurrence_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("occurrences.occurrence_id"), nullable=False, index=True
    )
    validated_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    validation_type: Mapped[str] = mapped_column(SAEnum(ValidationTypeEnum), nullable=False)
    status: Mapped[str] = mapped_column(
        SAEnum(ValidationStatusEnum), nullable=False, default=ValidationStatusEnum.PENDING
    )
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
