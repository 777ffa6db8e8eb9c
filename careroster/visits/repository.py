"""Database queries for the visit read side."""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Sequence
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from careroster.db.models import CheckEventModel, ServiceDeliveryModel
from careroster.models import ApprovalStatus, CheckEventType, CheckStatus
from careroster.visits.models import CheckEventRecord, DeliveryRecord


async def fetch_delivery(session: AsyncSession, delivery_id: UUID) -> DeliveryRecord | None:
    delivery = await session.get(ServiceDeliveryModel, delivery_id)
    if delivery is None:
        return None
    records = await _with_checks(session, [delivery])
    return records[0]


async def fetch_delivery_for_event(
    session: AsyncSession, schedule_event_id: UUID
) -> DeliveryRecord | None:
    result = await session.execute(
        select(ServiceDeliveryModel).where(
            ServiceDeliveryModel.schedule_event_id == schedule_event_id
        )
    )
    delivery = result.scalar_one_or_none()
    if delivery is None:
        return None
    records = await _with_checks(session, [delivery])
    return records[0]


async def fetch_deliveries_for_staff(
    session: AsyncSession,
    staff_id: UUID,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[DeliveryRecord]:
    """Deliveries performed (or to be performed) by a staff member, in time order."""
    stmt = select(ServiceDeliveryModel).where(ServiceDeliveryModel.actual_staff_id == staff_id)
    if date_from is not None:
        stmt = stmt.where(ServiceDeliveryModel.start_at >= datetime.combine(date_from, time.min))
    if date_to is not None:
        stmt = stmt.where(
            ServiceDeliveryModel.start_at < datetime.combine(date_to + timedelta(days=1), time.min)
        )
    result = await session.execute(stmt.order_by(ServiceDeliveryModel.start_at))
    return await _with_checks(session, result.scalars().all())


async def fetch_incomplete_for_staff(session: AsyncSession, staff_id: UUID) -> list[DeliveryRecord]:
    """Checked in but not checked out, and not cancelled."""
    check_in = (
        select(CheckEventModel.id)
        .where(
            and_(
                CheckEventModel.service_delivery_id == ServiceDeliveryModel.id,
                CheckEventModel.event_type == CheckEventType.CHECK_IN.value,
            )
        )
        .correlate(ServiceDeliveryModel)
    )
    check_out = (
        select(CheckEventModel.id)
        .where(
            and_(
                CheckEventModel.service_delivery_id == ServiceDeliveryModel.id,
                CheckEventModel.event_type == CheckEventType.CHECK_OUT.value,
            )
        )
        .correlate(ServiceDeliveryModel)
    )
    stmt = (
        select(ServiceDeliveryModel)
        .where(
            and_(
                ServiceDeliveryModel.actual_staff_id == staff_id,
                ServiceDeliveryModel.is_cancelled.is_(False),
                check_in.exists(),
                ~check_out.exists(),
            )
        )
        .order_by(ServiceDeliveryModel.start_at)
    )
    result = await session.execute(stmt)
    return await _with_checks(session, result.scalars().all())


async def fetch_invalid_check_events(
    session: AsyncSession,
    since: datetime | None = None,
    staff_id: UUID | None = None,
) -> list[CheckEventRecord]:
    """Check events that failed geofence validation, newest first."""
    stmt = select(CheckEventModel).where(
        CheckEventModel.status == CheckStatus.GPS_MISMATCH.value
    )
    if since is not None:
        stmt = stmt.where(CheckEventModel.occurred_at >= since)
    if staff_id is not None:
        stmt = stmt.where(CheckEventModel.staff_id == staff_id)
    result = await session.execute(stmt.order_by(CheckEventModel.occurred_at.desc()))
    return [_to_check(row) for row in result.scalars().all()]


async def _with_checks(
    session: AsyncSession, deliveries: Sequence[ServiceDeliveryModel]
) -> list[DeliveryRecord]:
    if not deliveries:
        return []

    result = await session.execute(
        select(CheckEventModel).where(
            CheckEventModel.service_delivery_id.in_([d.id for d in deliveries])
        )
    )
    checks: dict[UUID, dict[str, CheckEventRecord]] = defaultdict(dict)
    for row in result.scalars().all():
        checks[row.service_delivery_id][row.event_type] = _to_check(row)

    records = []
    for delivery in deliveries:
        by_type = checks.get(delivery.id, {})
        records.append(
            _to_delivery(
                delivery,
                check_in=by_type.get(CheckEventType.CHECK_IN.value),
                check_out=by_type.get(CheckEventType.CHECK_OUT.value),
            )
        )
    return records


def _to_check(row: CheckEventModel) -> CheckEventRecord:
    return CheckEventRecord(
        id=row.id,
        service_delivery_id=row.service_delivery_id,
        event_type=CheckEventType(row.event_type),
        occurred_at=row.occurred_at,
        latitude=row.latitude,
        longitude=row.longitude,
        accuracy_m=row.accuracy_m,
        distance_m=row.distance_m,
        geofence_valid=row.geofence_valid,
        status=CheckStatus(row.status),
        staff_id=row.staff_id,
    )


def _to_delivery(
    row: ServiceDeliveryModel,
    check_in: CheckEventRecord | None,
    check_out: CheckEventRecord | None,
) -> DeliveryRecord:
    return DeliveryRecord(
        id=row.id,
        schedule_event_id=row.schedule_event_id,
        authorization_id=row.authorization_id,
        patient_id=row.patient_id,
        start_at=row.start_at,
        end_at=row.end_at,
        units=row.units,
        total_hours=row.total_hours,
        scheduled_staff_id=row.scheduled_staff_id,
        actual_staff_id=row.actual_staff_id,
        is_unscheduled=row.is_unscheduled,
        unscheduled_reason=row.unscheduled_reason,
        approval_status=ApprovalStatus(row.approval_status),
        is_cancelled=row.is_cancelled,
        cancel_reason=row.cancel_reason,
        cancelled_at=row.cancelled_at,
        cancelled_by_staff_id=row.cancelled_by_staff_id,
        check_in=check_in,
        check_out=check_out,
    )
