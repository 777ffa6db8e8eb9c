"""Schedule template routes.

Routes:
- POST   /api/templates                        - Create the patient's active template
- GET    /api/templates/patients/{patient_id}  - Active template with weeks and events
- POST   /api/templates/{template_id}/archive  - Archive (replace) a template
- DELETE /api/templates/{template_id}          - Delete template, weeks and events
- POST   /api/templates/{template_id}/weeks    - Add a week
- DELETE /api/templates/weeks/{week_id}        - Delete a week and its events
- POST   /api/templates/weeks/{week_id}/events - Add a slot on one or more weekdays
- PATCH  /api/templates/events/{event_id}      - Update a slot
- DELETE /api/templates/events/{event_id}      - Delete a slot
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from careroster.core.errors import NotFoundError
from careroster.db.connection import get_db
from careroster.scheduling.templates import TemplateStore
from careroster.web.models import (
    TemplateCreateRequest,
    TemplateEventCreateRequest,
    TemplateEventUpdateRequest,
    WeekCreateRequest,
)
from careroster.web.serializers import row_to_dict, template_view_to_dict

router = APIRouter(prefix="/api/templates", tags=["templates"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_template(request: TemplateCreateRequest, db: AsyncSession = Depends(get_db)):
    store = TemplateStore(db)
    template = await store.create_template(
        patient_id=request.patient_id,
        name=request.name,
        description=request.description,
        effective_date=request.effective_date,
        created_by=request.created_by,
        office_id=request.office_id,
    )
    view = await store.load_view(template)
    await db.commit()
    return template_view_to_dict(view)


@router.get("/patients/{patient_id}")
async def get_patient_template(patient_id: UUID, db: AsyncSession = Depends(get_db)):
    view = await TemplateStore(db).get_template_with_weeks(patient_id)
    if view is None:
        raise NotFoundError("Active schedule template for patient", patient_id)
    return template_view_to_dict(view)


@router.post("/{template_id}/archive")
async def archive_template(template_id: UUID, db: AsyncSession = Depends(get_db)):
    template = await TemplateStore(db).archive_template(template_id)
    await db.commit()
    return row_to_dict(template)


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(template_id: UUID, db: AsyncSession = Depends(get_db)):
    await TemplateStore(db).delete_template(template_id)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{template_id}/weeks", status_code=status.HTTP_201_CREATED)
async def add_week(
    template_id: UUID, request: WeekCreateRequest, db: AsyncSession = Depends(get_db)
):
    week = await TemplateStore(db).add_week(template_id, request.week_index)
    await db.commit()
    return row_to_dict(week)


@router.delete("/weeks/{week_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_week(week_id: UUID, db: AsyncSession = Depends(get_db)):
    await TemplateStore(db).delete_week(week_id)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/weeks/{week_id}/events", status_code=status.HTTP_201_CREATED)
async def add_events(
    week_id: UUID, request: TemplateEventCreateRequest, db: AsyncSession = Depends(get_db)
):
    events = await TemplateStore(db).add_events(
        week_id,
        request.weekdays,
        request.start_time,
        request.end_time,
        authorization_id=request.authorization_id,
        staff_id=request.staff_id,
        planned_units=request.planned_units,
        event_code=request.event_code,
        comment=request.comment,
    )
    await db.commit()
    return [row_to_dict(event) for event in events]


@router.patch("/events/{event_id}")
async def update_event(
    event_id: UUID, request: TemplateEventUpdateRequest, db: AsyncSession = Depends(get_db)
):
    event = await TemplateStore(db).update_event(event_id, **request.model_dump(exclude_unset=True))
    await db.commit()
    return row_to_dict(event)


@router.delete("/events/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_event(event_id: UUID, db: AsyncSession = Depends(get_db)):
    await TemplateStore(db).delete_event(event_id)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
