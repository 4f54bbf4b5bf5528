"""Import all models to register them with SQLAlchemy metadata."""
from app.models.base import Base
from app.models.region import Region
from app.models.crime_type import CrimeType
from app.models.occurrence import Occurrence
from app.models.occurrence_validation import OccurrenceValidation
from app.models.risk_index import RiskIndex
from app.models.navigation_session import NavigationSession
from app.models.moderation_queue import ModerationQueue
from app.models.audit_log import AuditLog
from app.models.alert_preference import AlertPreference

__all__ = [
    "Base",
    "Region",
    "CrimeType",
    "Occurrence",
    "OccurrenceValidation",
    "RiskIndex",
    "NavigationSession",
    "ModerationQueue",
    "AuditLog",
    "AlertPreference",
]
