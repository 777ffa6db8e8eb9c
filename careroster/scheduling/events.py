"""Occurrence queries, ad-hoc occurrences and schedule conflict detection."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from careroster.core.errors import ConflictError, NotFoundError, ValidationError
from careroster.db.models import AuthorizationModel, ScheduleEventModel
from careroster.ledger.service import AuthorizationLedger
from careroster.models import (
    ConflictType,
    OccurrenceStatus,
    ScheduleConflict,
    SourceType,
    naive_utc,
)

logger = logging.getLogger(__name__)


def windows_overlap(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    return start1 < end2 and end1 > start2


class OccurrenceService:
    """Read and write access to materialized schedule events."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_event(self, event_id: UUID) -> ScheduleEventModel:
        event = await self.session.get(ScheduleEventModel, event_id)
        if event is None:
            raise NotFoundError("Schedule event", event_id)
        return event

    async def list_events(
        self,
        patient_id: UUID,
        date_from: date,
        date_to: date,
        status: OccurrenceStatus | None = None,
    ) -> list[ScheduleEventModel]:
        """Occurrences for a patient in ``[date_from, date_to]``, in time order."""
        stmt = select(ScheduleEventModel).where(
            and_(
                ScheduleEventModel.patient_id == patient_id,
                ScheduleEventModel.event_date >= date_from,
                ScheduleEventModel.event_date <= date_to,
            )
        )
        if status is not None:
            stmt = stmt.where(ScheduleEventModel.status == OccurrenceStatus(status).value)
        result = await self.session.execute(stmt.order_by(ScheduleEventModel.start_at))
        return list(result.scalars().all())

    async def list_events_for_staff(
        self, staff_id: UUID, date_from: date, date_to: date
    ) -> list[ScheduleEventModel]:
        result = await self.session.execute(
            select(ScheduleEventModel)
            .where(
                and_(
                    ScheduleEventModel.staff_id == staff_id,
                    ScheduleEventModel.event_date >= date_from,
                    ScheduleEventModel.event_date <= date_to,
                )
            )
            .order_by(ScheduleEventModel.start_at)
        )
        return list(result.scalars().all())

    async def detect_conflicts(
        self,
        patient_id: UUID,
        start_at: datetime,
        end_at: datetime,
        staff_id: UUID | None = None,
        exclude_event_id: UUID | None = None,
    ) -> list[ScheduleConflict]:
        """Find non-cancelled occurrences overlapping ``[start_at, end_at)``.

        Candidates are searched from the day before ``start_at`` to the day
        after ``end_at`` so visits crossing midnight are caught.
        """
        start_at, end_at = naive_utc(start_at), naive_utc(end_at)
        window_start = start_at.date() - timedelta(days=1)
        window_end = end_at.date() + timedelta(days=1)

        owner_filter = ScheduleEventModel.patient_id == patient_id
        if staff_id is not None:
            owner_filter = owner_filter | (ScheduleEventModel.staff_id == staff_id)

        stmt = select(ScheduleEventModel).where(
            and_(
                owner_filter,
                ScheduleEventModel.event_date >= window_start,
                ScheduleEventModel.event_date <= window_end,
                ScheduleEventModel.status != OccurrenceStatus.CANCELLED.value,
            )
        )
        if exclude_event_id is not None:
            stmt = stmt.where(ScheduleEventModel.id != exclude_event_id)

        result = await self.session.execute(stmt.order_by(ScheduleEventModel.start_at))

        conflicts = []
        for other in result.scalars().all():
            if not windows_overlap(start_at, end_at, other.start_at, other.end_at):
                continue
            if other.patient_id == patient_id:
                conflict_type = ConflictType.PATIENT_CONFLICT
                message = "Patient already has a visit at this time"
            else:
                conflict_type = ConflictType.STAFF_CONFLICT
                message = "Staff member is already scheduled at this time"
            conflicts.append(
                ScheduleConflict(
                    conflict_type=conflict_type,
                    event_id=other.id,
                    event_date=other.event_date,
                    start_at=other.start_at,
                    end_at=other.end_at,
                    message=f"{message} ({other.start_at:%Y-%m-%d %H:%M}-{other.end_at:%H:%M})",
                )
            )
        return conflicts

    async def create_event(
        self,
        patient_id: UUID,
        start_at: datetime,
        end_at: datetime,
        authorization_id: UUID | None = None,
        staff_id: UUID | None = None,
        planned_units: int = 0,
        event_code: str | None = None,
        status: OccurrenceStatus = OccurrenceStatus.PLANNED,
        comment: str | None = None,
        created_by: str | None = None,
        office_id: UUID | None = None,
    ) -> ScheduleEventModel:
        """Create a single ad-hoc occurrence.

        Raises:
            ValidationError: If the window is inverted or units are negative
            NotFoundError: If the authorization does not exist
            ConflictError: If the slot exists, the window overlaps another visit
                of the patient or staff member, or the authorization belongs
                to another patient
        """
        start_at, end_at = naive_utc(start_at), naive_utc(end_at)
        if end_at <= start_at:
            raise ValidationError("end_at must be after start_at")
        if planned_units < 0:
            raise ValidationError("planned_units must be >= 0")

        if authorization_id is not None:
            authorization = await self.session.get(AuthorizationModel, authorization_id)
            if authorization is None:
                raise NotFoundError("Authorization", authorization_id)
            if authorization.patient_id != patient_id:
                raise ConflictError(
                    f"Authorization {authorization.authorization_no} belongs to another patient"
                )

        conflicts = await self.detect_conflicts(patient_id, start_at, end_at, staff_id)
        if conflicts:
            raise ConflictError("; ".join(c.message for c in conflicts))

        event = ScheduleEventModel(
            patient_id=patient_id,
            office_id=office_id,
            event_date=start_at.date(),
            start_at=start_at,
            end_at=end_at,
            authorization_id=authorization_id,
            staff_id=staff_id,
            event_code=event_code,
            status=OccurrenceStatus(status).value,
            planned_units=planned_units,
            comment=comment,
            created_by=created_by,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(event)
        except IntegrityError as exc:
            raise ConflictError(
                f"Occurrence already exists for patient {patient_id} at {start_at}"
            ) from exc

        logger.info(f"Created ad-hoc occurrence {event.id} for patient {patient_id} at {start_at}")
        return event

    async def update_event_status(
        self, event_id: UUID, status: OccurrenceStatus
    ) -> ScheduleEventModel:
        """Move an occurrence to a new status. Cancelled and completed are final.

        Cancelling reverses any planned-debit ledger entry for the occurrence.
        """
        status = OccurrenceStatus(status)
        event = await self.get_event(event_id)
        current = OccurrenceStatus(event.status)
        if current.is_final and status != current:
            raise ValidationError(f"Occurrence is already {current.value}")

        event.status = status.value
        if status == OccurrenceStatus.CANCELLED:
            await AuthorizationLedger(self.session).reverse_source(
                SourceType.SCHEDULE_SHIFT, event.id
            )
        await self.session.flush()
        return event
