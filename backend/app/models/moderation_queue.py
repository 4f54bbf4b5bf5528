"""ModerationQueue entity — occurrences flagged for human review."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, DateTime, JSON, Text, ForeignKey, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base, ModerationReasonEnum, ModerationStatusEnum


class ModerationQueue(Base):
    __tablename__ = "moderation_queue"

    moderation_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    occurrence_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("occurrences.occurrence_id"), nullable=False, index=True
    )
    reason: Mapped[str] = mapped_column(SAEnum(ModerationReasonEnum), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    status: Mapped[str] = mapped_column(
        SAEnum(ModerationStatusEnum), nullable=False, default=ModerationStatusEnum.PENDING
    )
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
