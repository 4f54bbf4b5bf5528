"""CrimeType entity — internal crime taxonomy."""
from __future__ import annotations

from typing import Optional

from sqlalchemy import Integer, String, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base


class CrimeType(Base):
    __tablename__ = "crime_types"

    crime_type_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("crime_types.crime_type_id"), nullable=True
    )
