"""Service delivery (visit) routes.

Routes:
- POST /api/deliveries                          - Create the delivery for an occurrence
- GET  /api/deliveries/{delivery_id}            - Delivery with derived status
- POST /api/deliveries/{delivery_id}/check-in   - EVV arrival
- POST /api/deliveries/{delivery_id}/check-out  - EVV departure, completes the visit
- POST /api/deliveries/{delivery_id}/cancel     - Cancel with reason
- POST /api/deliveries/{delivery_id}/approve    - Mark billable
- POST /api/deliveries/{delivery_id}/reject     - Mark not billable
- GET  /api/deliveries/staff/{staff_id}         - Deliveries for a staff member
- GET  /api/deliveries/check-events/invalid     - Check events outside the geofence
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import date, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from careroster.db.connection import get_db
from careroster.visits import repository
from careroster.visits.geofence import format_distance
from careroster.visits.lifecycle import VisitLifecycleManager
from careroster.web.models import (
    ApprovalRequest,
    CancelRequest,
    CheckRequest,
    DeliveryCreateRequest,
)
from careroster.web.serializers import delivery_to_dict, row_to_dict

router = APIRouter(prefix="/api/deliveries", tags=["deliveries"])


def _check_to_dict(check) -> dict:
    data = row_to_dict(check)
    data["distance_display"] = format_distance(check.distance_m)
    return data


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_delivery(request: DeliveryCreateRequest, db: AsyncSession = Depends(get_db)):
    manager = VisitLifecycleManager(db)
    delivery = await manager.create_delivery(
        request.schedule_event_id,
        authorization_id=request.authorization_id,
        start_at=request.start_at,
        end_at=request.end_at,
        units=request.units,
        is_unscheduled=request.is_unscheduled,
        actual_staff_id=request.actual_staff_id,
        unscheduled_reason=request.unscheduled_reason,
        created_by=request.created_by,
    )
    record = await manager.get_delivery(delivery.id)
    await db.commit()
    return delivery_to_dict(record)


@router.get("/check-events/invalid")
async def list_invalid_check_events(
    since: datetime | None = None,
    staff_id: UUID | None = None,
    db: AsyncSession = Depends(get_db),
):
    checks = await repository.fetch_invalid_check_events(db, since=since, staff_id=staff_id)
    return [
        {**asdict(check), "distance_display": format_distance(check.distance_m)}
        for check in checks
    ]


@router.get("/staff/{staff_id}")
async def list_staff_deliveries(
    staff_id: UUID,
    incomplete: bool = Query(default=False, description="Only checked-in, not checked-out"),
    date_from: date | None = None,
    date_to: date | None = None,
    db: AsyncSession = Depends(get_db),
):
    if incomplete:
        records = await repository.fetch_incomplete_for_staff(db, staff_id)
    else:
        records = await repository.fetch_deliveries_for_staff(db, staff_id, date_from, date_to)
    return [delivery_to_dict(record) for record in records]


@router.get("/{delivery_id}")
async def get_delivery(delivery_id: UUID, db: AsyncSession = Depends(get_db)):
    record = await VisitLifecycleManager(db).get_delivery(delivery_id)
    return delivery_to_dict(record)


@router.post("/{delivery_id}/check-in", status_code=status.HTTP_201_CREATED)
async def check_in(delivery_id: UUID, request: CheckRequest, db: AsyncSession = Depends(get_db)):
    check = await VisitLifecycleManager(db).record_check_in(
        delivery_id,
        request.gps,
        occurred_at=request.occurred_at,
        reference=request.reference,
        staff_id=request.staff_id,
    )
    await db.commit()
    return _check_to_dict(check)


@router.post("/{delivery_id}/check-out", status_code=status.HTTP_201_CREATED)
async def check_out(delivery_id: UUID, request: CheckRequest, db: AsyncSession = Depends(get_db)):
    check = await VisitLifecycleManager(db).record_check_out(
        delivery_id,
        request.gps,
        occurred_at=request.occurred_at,
        reference=request.reference,
        staff_id=request.staff_id,
    )
    await db.commit()
    return _check_to_dict(check)


@router.post("/{delivery_id}/cancel")
async def cancel_delivery(
    delivery_id: UUID, request: CancelRequest, db: AsyncSession = Depends(get_db)
):
    manager = VisitLifecycleManager(db)
    await manager.cancel(delivery_id, request.reason, request.actor_staff_id)
    record = await manager.get_delivery(delivery_id)
    await db.commit()
    return delivery_to_dict(record)


@router.post("/{delivery_id}/approve")
async def approve_delivery(
    delivery_id: UUID, request: ApprovalRequest, db: AsyncSession = Depends(get_db)
):
    manager = VisitLifecycleManager(db)
    await manager.approve(delivery_id, request.actor_id)
    record = await manager.get_delivery(delivery_id)
    await db.commit()
    return delivery_to_dict(record)


@router.post("/{delivery_id}/reject")
async def reject_delivery(
    delivery_id: UUID, request: ApprovalRequest, db: AsyncSession = Depends(get_db)
):
    manager = VisitLifecycleManager(db)
    await manager.reject(delivery_id, request.actor_id, request.reason)
    record = await manager.get_delivery(delivery_id)
    await db.commit()
    return delivery_to_dict(record)
