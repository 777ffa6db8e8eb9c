"""CareRoster Pydantic models for type-safe data validation.

Enums here are the single source of the string values persisted in the
database; SQL columns store ``.value``.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TemplateStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class OccurrenceStatus(str, Enum):
    """Status of a materialized schedule event."""

    DRAFT = "draft"
    PLANNED = "planned"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def is_final(self) -> bool:
        return self in (OccurrenceStatus.CANCELLED, OccurrenceStatus.COMPLETED)


class VisitStatus(str, Enum):
    """Derived lifecycle status of a service delivery (never stored)."""

    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CheckEventType(str, Enum):
    CHECK_IN = "check-in"
    CHECK_OUT = "check-out"


class CheckStatus(str, Enum):
    """Validation outcome stored on a check event."""

    OK = "OK"
    GPS_MISMATCH = "GPS_MISMATCH"
    TIME_VARIANCE = "TIME_VARIANCE"


class SourceType(str, Enum):
    """Origin of a ledger entry."""

    SERVICE_DELIVERY = "service_delivery"
    SCHEDULE_SHIFT = "schedule_shift"
    ADJUSTMENT = "adjustment"  # reversing entry, keyed on the reversed entry id


class ConflictType(str, Enum):
    PATIENT_CONFLICT = "PATIENT_CONFLICT"
    STAFF_CONFLICT = "STAFF_CONFLICT"


def naive_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC, the form every stored timestamp uses.

    Naive values are assumed to be UTC already and pass through unchanged.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class GeoPoint(BaseModel):
    """WGS84 coordinate pair with optional reported accuracy."""

    latitude: float
    longitude: float
    accuracy_m: float | None = Field(default=None, ge=0)

    @field_validator("latitude")
    @classmethod
    def validate_latitude(cls, v: float) -> float:
        if not -90.0 <= v <= 90.0:
            raise ValueError("Latitude must be between -90 and 90")
        return v

    @field_validator("longitude")
    @classmethod
    def validate_longitude(cls, v: float) -> float:
        if not -180.0 <= v <= 180.0:
            raise ValueError("Longitude must be between -180 and 180")
        return v

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"latitude": 40.7128, "longitude": -74.0060, "accuracy_m": 12.5}
        }
    )


class GeofenceResult(BaseModel):
    """Outcome of a geofence check. ``is_valid`` is None when no reference exists."""

    distance_m: float | None = None
    is_valid: bool | None = None
    threshold_m: float

    @property
    def is_unknown(self) -> bool:
        return self.is_valid is None


class LedgerEntry(BaseModel):
    """Immutable unit consumption posting."""

    id: UUID
    authorization_id: UUID
    source_type: SourceType
    source_id: UUID
    service_date: date
    units_used: Decimal
    recorded_at: datetime


class AuthorizationBalance(BaseModel):
    """Ledger-derived balance for one authorization."""

    authorization_id: UUID
    authorization_no: str
    max_units: Decimal
    total_used: Decimal
    total_missed: Decimal = Decimal("0")
    total_remaining: Decimal  # clamped at zero for reporting
    overdrawn_by: Decimal = Decimal("0")

    @property
    def is_overdrawn(self) -> bool:
        return self.overdrawn_by > 0


class ScheduleConflict(BaseModel):
    """Overlap between a proposed visit window and an existing occurrence."""

    conflict_type: ConflictType
    event_id: UUID
    event_date: date
    start_at: datetime
    end_at: datetime
    message: str


class GenerationFailure(BaseModel):
    event_date: date
    template_event_id: UUID
    reason: str


class GenerationSummary(BaseModel):
    """Result of one materializer run, for operator visibility."""

    patient_id: UUID
    template_id: UUID | None = None
    start_date: date | None = None
    end_date: date
    created: int = 0
    skipped_existing: int = 0
    failures: list[GenerationFailure] = Field(default_factory=list)
    over_authorized: list[UUID] = Field(default_factory=list)  # occurrence ids
    generated_through: date | None = None

    @property
    def is_noop(self) -> bool:
        return self.start_date is None
