"""Per-user alert preferences and the filter applied to navigation risk alerts.

A user without a stored preference gets every alert. Stored preferences can
switch alerts off, restrict them to the crime types the user cares about
(matched against a region's dominant crime type) and to a window of hours
and days evaluated in ``settings.ALERT_TIMEZONE``.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ValidationError
from app.models.alert_preference import AlertPreference
from app.models.crime_type import CrimeType
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

_HOUR_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_FIELDS = ("alerts_enabled", "enabled_crime_types", "active_hours_start", "active_hours_end", "active_days")


def default_preference(user_id: int) -> AlertPreference:
    return AlertPreference(
        user_id=user_id,
        alerts_enabled=True,
        enabled_crime_types=[],
        active_hours_start=None,
        active_hours_end=None,
        active_days=[],
    )


class AlertPreferenceService:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        tz: tzinfo | None = None,
    ) -> None:
        self.db = db
        self._clock = clock
        self._tz = tz

    @property
    def tz(self) -> tzinfo:
        if self._tz is None:
            self._tz = ZoneInfo(settings.ALERT_TIMEZONE)
        return self._tz

    def local_now(self) -> datetime:
        return self._clock().replace(tzinfo=timezone.utc).astimezone(self.tz)

    def get(self, user_id: int) -> AlertPreference | None:
        return self.db.query(AlertPreference).filter(AlertPreference.user_id == user_id).first()

    def get_or_default(self, user_id: int) -> AlertPreference:
        return self.get(user_id) or default_preference(user_id)

    def update(self, user_id: int, changes: dict[str, Any]) -> AlertPreference:
        """Upsert the user's preference with the given field changes."""
        unknown = set(changes) - set(_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown alert preference fields: {sorted(unknown)}", fields=sorted(unknown))
        self._validate(changes)

        preference = self.get(user_id)
        if preference is None:
            preference = default_preference(user_id)
            self.db.add(preference)
        for name, value in changes.items():
            if name in ("enabled_crime_types", "active_days"):
                value = sorted(set(value or []))
            setattr(preference, name, value)
        preference.updated_at = self._clock()
        self.db.commit()
        logger.info("Alert preferences updated for user %s: %s", user_id, sorted(changes))
        return preference

    def _validate(self, changes: dict[str, Any]) -> None:
        if "alerts_enabled" in changes and changes["alerts_enabled"] is None:
            raise ValidationError("alerts_enabled cannot be null", field="alerts_enabled")
        for name in ("active_hours_start", "active_hours_end"):
            value = changes.get(name)
            if value is not None and not _HOUR_PATTERN.match(value):
                raise ValidationError(f"{name} must be HH:MM", field=name)
        days = changes.get("active_days") or []
        bad_days = [d for d in days if not 0 <= d <= 6]
        if bad_days:
            raise ValidationError("active_days must be between 0 (Sunday) and 6 (Saturday)",
                                  field="active_days", invalid=bad_days)
        crime_type_ids = set(changes.get("enabled_crime_types") or [])
        if crime_type_ids:
            known = {
                cid for (cid,) in self.db.query(CrimeType.crime_type_id)
                .filter(CrimeType.crime_type_id.in_(crime_type_ids)).all()
            }
            missing = sorted(crime_type_ids - known)
            if missing:
                raise ValidationError("Unknown crime types in enabled_crime_types",
                                      field="enabled_crime_types", invalid=missing)

    def filter_alerts(self, user_id: int | None, alerts: Iterable[dict]) -> list[dict]:
        """Drop alerts the user's preference suppresses right now."""
        alerts = list(alerts)
        if user_id is None or not alerts:
            return alerts
        preference = self.get(user_id)
        if preference is None:
            return alerts
        now = self.local_now()
        kept = [a for a in alerts if preference.allows(a.get("dominant_crime_type_id"), now)]
        if len(kept) < len(alerts):
            logger.debug("Suppressed %d alerts for user %s", len(alerts) - len(kept), user_id)
        return kept
