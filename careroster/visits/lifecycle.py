"""Visit lifecycle: deliveries, EVV check-in/check-out, cancellation, approval.

Delivery status is never stored. It is derived from the attached check events
and the cancellation flag by :func:`careroster.visits.models.derive_status`.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from careroster.config import get_config
from careroster.core.audit_logger import log_action
from careroster.core.errors import ConflictError, NotFoundError, ValidationError
from careroster.db.models import (
    AuthorizationModel,
    CheckEventModel,
    ScheduleEventModel,
    ServiceDeliveryModel,
)
from careroster.ledger.service import AuthorizationLedger
from careroster.models import (
    ApprovalStatus,
    CheckEventType,
    CheckStatus,
    GeofenceResult,
    GeoPoint,
    OccurrenceStatus,
    SourceType,
    VisitStatus,
    naive_utc,
)
from careroster.visits import geofence
from careroster.visits.models import DeliveryRecord, derive_status
from careroster.visits.repository import fetch_delivery

logger = logging.getLogger(__name__)


def units_for_duration(elapsed: timedelta, minutes_per_unit: int) -> int:
    """Billing units for an elapsed duration, rounded up to the next whole unit."""
    seconds = max(elapsed.total_seconds(), 0)
    return math.ceil(seconds / (minutes_per_unit * 60))


def check_status(
    result: GeofenceResult,
    occurred_at: datetime,
    planned_at: datetime,
    variance_minutes: int,
) -> CheckStatus:
    """GPS mismatch takes precedence over time variance."""
    if result.is_valid is False:
        return CheckStatus.GPS_MISMATCH
    if abs(occurred_at - planned_at) > timedelta(minutes=variance_minutes):
        return CheckStatus.TIME_VARIANCE
    return CheckStatus.OK


class VisitLifecycleManager:
    """State machine over service deliveries."""

    def __init__(self, session: AsyncSession, config=None):
        self.session = session
        self.config = config or get_config()
        self.ledger = AuthorizationLedger(session)

    async def create_delivery(
        self,
        schedule_event_id: UUID,
        authorization_id: UUID | None = None,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        units: int | None = None,
        *,
        is_unscheduled: bool = False,
        actual_staff_id: UUID | None = None,
        unscheduled_reason: str | None = None,
        created_by: str | None = None,
    ) -> ServiceDeliveryModel:
        """Create the delivery record for an occurrence.

        Timing, units and authorization default from the occurrence. An
        unscheduled (substituted) visit requires the replacement staff id;
        the originally scheduled staff is kept for reporting. A scheduled visit
        is always performed by the occurrence's staff.

        Raises:
            NotFoundError: If the occurrence or authorization does not exist
            ConflictError: If the occurrence already has a delivery
            ValidationError: On inverted times, negative units, a cancelled
                occurrence, a substitution without replacement staff, or
                substitution details on a scheduled visit
        """
        occurrence = await self.session.get(ScheduleEventModel, schedule_event_id)
        if occurrence is None:
            raise NotFoundError("Schedule event", schedule_event_id)
        if occurrence.status == OccurrenceStatus.CANCELLED.value:
            raise ValidationError("Cannot create a delivery for a cancelled occurrence")

        if await self._delivery_id_for_event(schedule_event_id) is not None:
            raise ConflictError(f"Service delivery already exists for event {schedule_event_id}")

        authorization_id = authorization_id or occurrence.authorization_id
        if authorization_id is not None:
            if await self.session.get(AuthorizationModel, authorization_id) is None:
                raise NotFoundError("Authorization", authorization_id)

        start_at = naive_utc(start_at) or occurrence.start_at
        end_at = naive_utc(end_at) or occurrence.end_at
        if end_at < start_at:
            raise ValidationError("end_at must not be before start_at")

        units = occurrence.planned_units if units is None else units
        if units < 0:
            raise ValidationError("units must be >= 0")

        if is_unscheduled:
            if actual_staff_id is None:
                raise ValidationError("actual_staff_id is required for an unscheduled visit")
        else:
            if actual_staff_id is not None and actual_staff_id != occurrence.staff_id:
                raise ValidationError(
                    "actual_staff_id differs from the scheduled staff; mark the visit unscheduled"
                )
            if unscheduled_reason:
                raise ValidationError("unscheduled_reason is only valid for an unscheduled visit")
            actual_staff_id = occurrence.staff_id

        delivery = ServiceDeliveryModel(
            schedule_event_id=schedule_event_id,
            authorization_id=authorization_id,
            patient_id=occurrence.patient_id,
            start_at=start_at,
            end_at=end_at,
            units=units,
            scheduled_staff_id=occurrence.staff_id,
            actual_staff_id=actual_staff_id,
            is_unscheduled=is_unscheduled,
            unscheduled_reason=unscheduled_reason,
            approval_status=ApprovalStatus.PENDING.value,
            created_by=created_by,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(delivery)
        except IntegrityError as exc:
            raise ConflictError(
                f"Service delivery already exists for event {schedule_event_id}"
            ) from exc

        logger.info(f"Created service delivery {delivery.id} for event {schedule_event_id}")
        return delivery

    async def get_delivery(self, delivery_id: UUID) -> DeliveryRecord:
        record = await fetch_delivery(self.session, delivery_id)
        if record is None:
            raise NotFoundError("Service delivery", delivery_id)
        return record

    async def status(self, delivery_id: UUID) -> VisitStatus:
        return (await self.get_delivery(delivery_id)).status

    async def record_check_in(
        self,
        delivery_id: UUID,
        gps: GeoPoint,
        occurred_at: datetime | None = None,
        reference: GeoPoint | None = None,
        staff_id: UUID | None = None,
    ) -> CheckEventModel:
        """Record arrival. Geofence is checked against ``reference`` or the
        patient's main address.

        Raises:
            ValidationError: If the delivery is cancelled
            ConflictError: If the delivery is already checked in
        """
        delivery = await self._get_model(delivery_id)
        if delivery.is_cancelled:
            raise ValidationError("Cannot check in to a cancelled visit")
        if await self._find_check(delivery_id, CheckEventType.CHECK_IN) is not None:
            raise ConflictError(f"Service delivery {delivery_id} is already checked in")

        occurred_at = naive_utc(occurred_at) or datetime.utcnow()
        return await self._record_check(
            delivery, CheckEventType.CHECK_IN, gps, occurred_at, reference, staff_id,
            planned_at=delivery.start_at,
        )

    async def record_check_out(
        self,
        delivery_id: UUID,
        gps: GeoPoint,
        occurred_at: datetime | None = None,
        reference: GeoPoint | None = None,
        staff_id: UUID | None = None,
    ) -> CheckEventModel:
        """Record departure and complete the visit.

        Stores elapsed hours on the delivery, marks the occurrence completed,
        posts the delivered units to the ledger and reverses any planned debit.

        Raises:
            ValidationError: If cancelled, not checked in, or earlier than check-in
            ConflictError: If the delivery is already checked out
        """
        delivery = await self._get_model(delivery_id)
        if delivery.is_cancelled:
            raise ValidationError("Cannot check out of a cancelled visit")

        check_in = await self._find_check(delivery_id, CheckEventType.CHECK_IN)
        if check_in is None:
            raise ValidationError("Cannot check out before checking in")
        if await self._find_check(delivery_id, CheckEventType.CHECK_OUT) is not None:
            raise ConflictError(f"Service delivery {delivery_id} is already checked out")

        occurred_at = naive_utc(occurred_at) or datetime.utcnow()
        if occurred_at < check_in.occurred_at:
            raise ValidationError("Check-out time cannot be before check-in time")

        check_out = await self._record_check(
            delivery, CheckEventType.CHECK_OUT, gps, occurred_at, reference, staff_id,
            planned_at=delivery.end_at,
        )

        elapsed = occurred_at - check_in.occurred_at
        delivery.total_hours = elapsed.total_seconds() / 3600
        if self.config.visits.recompute_units_on_checkout:
            delivery.units = units_for_duration(elapsed, self.config.visits.minutes_per_unit)

        occurrence = await self.session.get(ScheduleEventModel, delivery.schedule_event_id)
        occurrence.status = OccurrenceStatus.COMPLETED.value
        occurrence.actual_units = delivery.units

        if delivery.authorization_id is not None:
            await self.ledger.post_consumption(
                authorization_id=delivery.authorization_id,
                source_type=SourceType.SERVICE_DELIVERY,
                source_id=delivery.id,
                service_date=occurrence.event_date,
                units=delivery.units,
            )
            await self.ledger.reverse_source(SourceType.SCHEDULE_SHIFT, occurrence.id)

        await self.session.flush()
        logger.info(
            f"Completed service delivery {delivery.id}: {delivery.total_hours:.2f} h, "
            f"{delivery.units} units"
        )
        return check_out

    async def cancel(
        self, delivery_id: UUID, reason: str, actor_staff_id: UUID | None
    ) -> ServiceDeliveryModel:
        """Cancel a visit that is not started or in progress.

        Check events already recorded are kept.

        Raises:
            ValidationError: If the reason is blank, or the visit is already
                cancelled or completed
        """
        if not reason or not reason.strip():
            raise ValidationError("Cancellation reason is required")

        record = await self.get_delivery(delivery_id)
        if record.status == VisitStatus.CANCELLED:
            raise ValidationError("Service delivery is already cancelled")
        if record.status == VisitStatus.COMPLETED:
            raise ValidationError("Cannot cancel a completed service delivery")

        delivery = await self._get_model(delivery_id)
        delivery.is_cancelled = True
        delivery.cancel_reason = reason.strip()
        delivery.cancelled_at = datetime.utcnow()
        delivery.cancelled_by_staff_id = actor_staff_id

        occurrence = await self.session.get(ScheduleEventModel, delivery.schedule_event_id)
        if occurrence is not None and not OccurrenceStatus(occurrence.status).is_final:
            occurrence.status = OccurrenceStatus.CANCELLED.value
            await self.ledger.reverse_source(SourceType.SCHEDULE_SHIFT, occurrence.id)

        await log_action(
            self.session,
            action="DELIVERY_CANCEL",
            actor_id=actor_staff_id,
            resource_type="service_delivery",
            resource_id=delivery.id,
            details={"reason": delivery.cancel_reason, "status_before": record.status.value},
        )
        await self.session.flush()
        logger.info(f"Cancelled service delivery {delivery.id}: {delivery.cancel_reason}")
        return delivery

    async def approve(self, delivery_id: UUID, actor_id: str | UUID | None) -> ServiceDeliveryModel:
        return await self._set_approval(delivery_id, ApprovalStatus.APPROVED, actor_id)

    async def reject(
        self, delivery_id: UUID, actor_id: str | UUID | None, reason: str | None = None
    ) -> ServiceDeliveryModel:
        return await self._set_approval(delivery_id, ApprovalStatus.REJECTED, actor_id, reason)

    async def _set_approval(
        self,
        delivery_id: UUID,
        approval_status: ApprovalStatus,
        actor_id: str | UUID | None,
        reason: str | None = None,
    ) -> ServiceDeliveryModel:
        delivery = await self._get_model(delivery_id)
        previous = delivery.approval_status
        delivery.approval_status = approval_status.value
        delivery.approved_by = str(actor_id) if actor_id is not None else None
        delivery.approved_at = datetime.utcnow()

        details = {"from": previous, "to": approval_status.value}
        if reason:
            details["reason"] = reason
        await log_action(
            self.session,
            action=f"DELIVERY_{approval_status.name}",
            actor_id=actor_id,
            resource_type="service_delivery",
            resource_id=delivery.id,
            details=details,
        )
        await self.session.flush()
        return delivery

    async def _delivery_id_for_event(self, schedule_event_id: UUID) -> UUID | None:
        result = await self.session.execute(
            select(ServiceDeliveryModel.id).where(
                ServiceDeliveryModel.schedule_event_id == schedule_event_id
            )
        )
        return result.scalar_one_or_none()

    async def _get_model(self, delivery_id: UUID) -> ServiceDeliveryModel:
        delivery = await self.session.get(ServiceDeliveryModel, delivery_id)
        if delivery is None:
            raise NotFoundError("Service delivery", delivery_id)
        return delivery

    async def _find_check(
        self, delivery_id: UUID, event_type: CheckEventType
    ) -> CheckEventModel | None:
        result = await self.session.execute(
            select(CheckEventModel).where(
                and_(
                    CheckEventModel.service_delivery_id == delivery_id,
                    CheckEventModel.event_type == event_type.value,
                )
            )
        )
        return result.scalar_one_or_none()

    async def _record_check(
        self,
        delivery: ServiceDeliveryModel,
        event_type: CheckEventType,
        gps: GeoPoint,
        occurred_at: datetime,
        reference: GeoPoint | None,
        staff_id: UUID | None,
        planned_at: datetime,
    ) -> CheckEventModel:
        if reference is None:
            reference = await geofence.patient_reference_point(self.session, delivery.patient_id)
        result = geofence.validate(gps, reference, self.config.geofence.threshold_meters)
        status = check_status(
            result, occurred_at, planned_at, self.config.visits.time_variance_minutes
        )

        check = CheckEventModel(
            service_delivery_id=delivery.id,
            schedule_event_id=delivery.schedule_event_id,
            patient_id=delivery.patient_id,
            staff_id=staff_id or delivery.actual_staff_id,
            event_type=event_type.value,
            occurred_at=occurred_at,
            latitude=gps.latitude,
            longitude=gps.longitude,
            accuracy_m=gps.accuracy_m,
            distance_m=result.distance_m,
            geofence_valid=result.is_valid,
            status=status.value,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(check)
        except IntegrityError as exc:
            raise ConflictError(
                f"Service delivery {delivery.id} already has a {event_type.value} event"
            ) from exc

        if status == CheckStatus.GPS_MISMATCH:
            logger.warning(
                f"{event_type.value} for delivery {delivery.id} is "
                f"{geofence.format_distance(result.distance_m)} from the patient address"
            )
        return check
