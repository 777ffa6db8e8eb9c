"""Read models for service deliveries and their check events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from careroster.models import ApprovalStatus, CheckEventType, CheckStatus, VisitStatus


def derive_status(is_cancelled: bool, has_check_in: bool, has_check_out: bool) -> VisitStatus:
    """Single source of a delivery's lifecycle status.

    Cancellation wins over check events; a cancelled delivery keeps whatever
    check-in it already had.
    """
    if is_cancelled:
        return VisitStatus.CANCELLED
    if has_check_in and has_check_out:
        return VisitStatus.COMPLETED
    if has_check_in:
        return VisitStatus.IN_PROGRESS
    return VisitStatus.NOT_STARTED


@dataclass(slots=True)
class CheckEventRecord:
    id: UUID
    service_delivery_id: UUID
    event_type: CheckEventType
    occurred_at: datetime
    latitude: float
    longitude: float
    accuracy_m: float | None
    distance_m: float | None
    geofence_valid: bool | None  # None when no reference address
    status: CheckStatus
    staff_id: UUID | None


@dataclass(slots=True)
class DeliveryRecord:
    id: UUID
    schedule_event_id: UUID
    authorization_id: UUID | None
    patient_id: UUID
    start_at: datetime
    end_at: datetime
    units: int
    total_hours: float | None
    scheduled_staff_id: UUID | None
    actual_staff_id: UUID | None
    is_unscheduled: bool
    unscheduled_reason: str | None
    approval_status: ApprovalStatus
    is_cancelled: bool
    cancel_reason: str | None
    cancelled_at: datetime | None
    cancelled_by_staff_id: UUID | None
    check_in: CheckEventRecord | None = None
    check_out: CheckEventRecord | None = None

    @property
    def status(self) -> VisitStatus:
        return derive_status(
            self.is_cancelled, self.check_in is not None, self.check_out is not None
        )

    @property
    def has_gps_mismatch(self) -> bool:
        return any(
            check is not None and check.status == CheckStatus.GPS_MISMATCH
            for check in (self.check_in, self.check_out)
        )

    @property
    def is_billable(self) -> bool:
        return self.status == VisitStatus.COMPLETED and self.approval_status == ApprovalStatus.APPROVED
