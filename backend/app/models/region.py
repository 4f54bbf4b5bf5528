"""Region entity — polygon-bounded area in a city > district > neighborhood hierarchy."""
from __future__ import annotations

from typing import Optional

from shapely.geometry.base import BaseGeometry
from sqlalchemy import Integer, String, ForeignKey, Enum as SAEnum, event
from sqlalchemy.orm import Mapped, mapped_column, validates
from app.models.base import Base, RegionTypeEnum, geometry_column, gist_index
from app.utils.geo import load_geometry, to_ewkt


class Region(Base):
    __tablename__ = "regions"

    region_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, unique=True)
    region_type: Mapped[str] = mapped_column(
        SAEnum(RegionTypeEnum), nullable=False, default=RegionTypeEnum.NEIGHBORHOOD
    )
    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("regions.region_id"), nullable=True, index=True
    )
    boundary: Mapped[object] = mapped_column(geometry_column("POLYGON"), nullable=False)
    # Derived from ``boundary`` on flush; SQL prefilter where PostGIS is unavailable
    min_lat: Mapped[float] = mapped_column(nullable=False, index=True)
    max_lat: Mapped[float] = mapped_column(nullable=False)
    min_lon: Mapped[float] = mapped_column(nullable=False, index=True)
    max_lon: Mapped[float] = mapped_column(nullable=False)

    @validates("boundary")
    def _normalize_boundary(self, key, value):
        if isinstance(value, (str, BaseGeometry)):
            return to_ewkt(value)
        return value

    @property
    def shape(self):
        """Boundary as a shapely Polygon."""
        return load_geometry(self.boundary)


event.listen(Region.__table__, "after_create", gist_index("regions", "boundary"))


@event.listens_for(Region, "before_insert")
@event.listens_for(Region, "before_update")
def _sync_bounds(mapper, connection, target: Region) -> None:
    polygon = target.shape
    if polygon is None or polygon.geom_type != "Polygon":
        raise ValueError(f"Region boundary must be a POLYGON, got {getattr(polygon, 'geom_type', None)}")
    target.min_lon, target.min_lat, target.max_lon, target.max_lat = polygon.bounds
