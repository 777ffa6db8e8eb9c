"""Request models for the CareRoster JSON API.

Usage:
    from careroster.web.models import CheckRequest

    @router.post("/deliveries/{delivery_id}/check-in")
    async def check_in(delivery_id: UUID, request: CheckRequest):
        ...
"""

from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from careroster.models import GeoPoint, OccurrenceStatus, naive_utc


# ============================================================================
# Templates
# ============================================================================


class TemplateCreateRequest(BaseModel):
    patient_id: UUID
    name: str | None = None
    description: str | None = None
    effective_date: date | None = None
    office_id: UUID | None = None
    created_by: str | None = None


class WeekCreateRequest(BaseModel):
    week_index: int | None = Field(default=None, ge=0)


class TemplateEventCreateRequest(BaseModel):
    """One slot added on each of ``weekdays`` (0=Sunday..6=Saturday)."""

    weekdays: list[int] = Field(min_length=1)
    start_time: time
    end_time: time
    authorization_id: UUID | None = None
    staff_id: UUID | None = None
    planned_units: int = Field(default=0, ge=0)
    event_code: str | None = None
    comment: str | None = None


class TemplateEventUpdateRequest(BaseModel):
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    start_time: time | None = None
    end_time: time | None = None
    authorization_id: UUID | None = None
    staff_id: UUID | None = None
    planned_units: int | None = Field(default=None, ge=0)
    event_code: str | None = None
    comment: str | None = None


# ============================================================================
# Schedules
# ============================================================================


class GenerateRequest(BaseModel):
    end_date: date
    today: date | None = None  # start date for a template never generated before


class OccurrenceCreateRequest(BaseModel):
    patient_id: UUID
    start_at: datetime
    end_at: datetime
    authorization_id: UUID | None = None
    staff_id: UUID | None = None
    planned_units: int = Field(default=0, ge=0)
    event_code: str | None = None
    status: OccurrenceStatus = OccurrenceStatus.PLANNED
    comment: str | None = None
    created_by: str | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def to_naive_utc(cls, v: datetime) -> datetime:
        return naive_utc(v)


class ConflictCheckRequest(BaseModel):
    patient_id: UUID
    start_at: datetime
    end_at: datetime
    staff_id: UUID | None = None
    exclude_event_id: UUID | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def to_naive_utc(cls, v: datetime) -> datetime:
        return naive_utc(v)


class OccurrenceStatusRequest(BaseModel):
    status: OccurrenceStatus


# ============================================================================
# Deliveries
# ============================================================================


class DeliveryCreateRequest(BaseModel):
    schedule_event_id: UUID
    authorization_id: UUID | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    units: int | None = Field(default=None, ge=0)
    is_unscheduled: bool = False
    actual_staff_id: UUID | None = None
    unscheduled_reason: str | None = None
    created_by: str | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def to_naive_utc(cls, v: datetime | None) -> datetime | None:
        return naive_utc(v)


class CheckRequest(BaseModel):
    gps: GeoPoint
    occurred_at: datetime | None = None
    reference: GeoPoint | None = None  # defaults to the patient's main address
    staff_id: UUID | None = None

    @field_validator("occurred_at")
    @classmethod
    def to_naive_utc(cls, v: datetime | None) -> datetime | None:
        return naive_utc(v)


class CancelRequest(BaseModel):
    reason: str
    actor_staff_id: UUID | None = None


class ApprovalRequest(BaseModel):
    actor_id: str | None = None
    reason: str | None = None


# ============================================================================
# Authorizations
# ============================================================================


class AuthorizationCreateRequest(BaseModel):
    patient_id: UUID
    authorization_no: str
    max_units: Decimal = Field(ge=0)
    start_date: date
    end_date: date | None = None
    patient_payer_id: UUID | None = None
    patient_service_id: UUID | None = None
    event_code: str | None = None
    comments: str | None = None
