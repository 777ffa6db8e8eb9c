"""Schedule generation and occurrence routes.

Routes:
- POST  /api/schedules/patients/{patient_id}/generate - Materialize through end_date
- POST  /api/schedules/generate-all                   - Materialize every active template
- GET   /api/schedules/patients/{patient_id}/events   - Occurrences for a patient
- GET   /api/schedules/staff/{staff_id}/events        - Occurrences for a staff member
- POST  /api/schedules/events                         - Ad-hoc occurrence
- POST  /api/schedules/conflicts                      - Detect patient/staff overlaps
- PATCH /api/schedules/events/{event_id}/status       - Change occurrence status
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from careroster.db.connection import get_db
from careroster.models import OccurrenceStatus
from careroster.scheduling.events import OccurrenceService
from careroster.scheduling.materializer import ScheduleMaterializer
from careroster.web.models import (
    ConflictCheckRequest,
    GenerateRequest,
    OccurrenceCreateRequest,
    OccurrenceStatusRequest,
)
from careroster.web.serializers import row_to_dict

router = APIRouter(prefix="/api/schedules", tags=["schedules"])


@router.post("/patients/{patient_id}/generate")
async def generate_schedule(
    patient_id: UUID, request: GenerateRequest, db: AsyncSession = Depends(get_db)
):
    """Materialize the patient's active template through ``end_date``."""
    summary = await ScheduleMaterializer(db).generate(patient_id, request.end_date, today=request.today)
    await db.commit()
    return summary.model_dump()


@router.post("/generate-all")
async def generate_all(request: GenerateRequest, db: AsyncSession = Depends(get_db)):
    summaries = await ScheduleMaterializer(db).generate_all(request.end_date, today=request.today)
    await db.commit()
    return {
        "patients": len(summaries),
        "created": sum(s.created for s in summaries),
        "summaries": [s.model_dump() for s in summaries],
    }


@router.get("/patients/{patient_id}/events")
async def list_patient_events(
    patient_id: UUID,
    date_from: date = Query(...),
    date_to: date = Query(...),
    status_filter: OccurrenceStatus | None = Query(default=None, alias="status"),
    db: AsyncSession = Depends(get_db),
):
    events = await OccurrenceService(db).list_events(patient_id, date_from, date_to, status_filter)
    return [row_to_dict(event) for event in events]


@router.get("/staff/{staff_id}/events")
async def list_staff_events(
    staff_id: UUID,
    date_from: date = Query(...),
    date_to: date = Query(...),
    db: AsyncSession = Depends(get_db),
):
    events = await OccurrenceService(db).list_events_for_staff(staff_id, date_from, date_to)
    return [row_to_dict(event) for event in events]


@router.post("/events", status_code=status.HTTP_201_CREATED)
async def create_occurrence(request: OccurrenceCreateRequest, db: AsyncSession = Depends(get_db)):
    event = await OccurrenceService(db).create_event(**request.model_dump())
    await db.commit()
    return row_to_dict(event)


@router.post("/conflicts")
async def detect_conflicts(request: ConflictCheckRequest, db: AsyncSession = Depends(get_db)):
    conflicts = await OccurrenceService(db).detect_conflicts(
        request.patient_id,
        request.start_at,
        request.end_at,
        staff_id=request.staff_id,
        exclude_event_id=request.exclude_event_id,
    )
    return {"has_conflicts": bool(conflicts), "conflicts": [c.model_dump() for c in conflicts]}


@router.patch("/events/{event_id}/status")
async def update_occurrence_status(
    event_id: UUID, request: OccurrenceStatusRequest, db: AsyncSession = Depends(get_db)
):
    event = await OccurrenceService(db).update_event_status(event_id, request.status)
    await db.commit()
    return row_to_dict(event)
