"""Recurring week-rotation templates.

A patient has at most one active template. A template owns weeks indexed
0..N-1; each week owns weekday/time-slot events. Slots on the same weekday of
the same week never overlap (half-open ``[start, end)`` intervals).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, time
from uuid import UUID

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from careroster.config import get_config
from careroster.core.errors import ConflictError, NotFoundError, ValidationError
from careroster.db.models import (
    AuthorizationModel,
    ScheduleEventModel,
    ScheduleTemplateModel,
    TemplateEventModel,
    TemplateWeekModel,
)
from careroster.models import TemplateStatus

logger = logging.getLogger(__name__)

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")

_UPDATABLE_EVENT_FIELDS = frozenset(
    {
        "day_of_week",
        "start_time",
        "end_time",
        "authorization_id",
        "staff_id",
        "planned_units",
        "event_code",
        "comment",
    }
)


def intervals_overlap(s1, e1, s2, e2) -> bool:
    """Half-open interval overlap: touching endpoints do not overlap."""
    return s1 < e2 and s2 < e1


def describe_slot(day_of_week: int, start: time, end: time) -> str:
    return f"{DAY_NAMES[day_of_week]} {start:%H:%M}-{end:%H:%M}"


@dataclass(slots=True)
class TemplateWeekView:
    week: TemplateWeekModel
    events: list[TemplateEventModel] = field(default_factory=list)


@dataclass(slots=True)
class TemplateView:
    """Active template with weeks ordered by index and events by (day, start)."""

    template: ScheduleTemplateModel
    weeks: list[TemplateWeekView] = field(default_factory=list)

    @property
    def week_count(self) -> int:
        return len(self.weeks)


class TemplateStore:
    """CRUD and invariants for schedule templates, weeks and template events."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def get_active_template(self, patient_id: UUID) -> ScheduleTemplateModel | None:
        result = await self.session.execute(
            select(ScheduleTemplateModel).where(
                and_(
                    ScheduleTemplateModel.patient_id == patient_id,
                    ScheduleTemplateModel.status == TemplateStatus.ACTIVE.value,
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_template(self, template_id: UUID) -> ScheduleTemplateModel:
        template = await self.session.get(ScheduleTemplateModel, template_id)
        if template is None:
            raise NotFoundError("Schedule template", template_id)
        return template

    async def create_template(
        self,
        patient_id: UUID,
        name: str | None = None,
        description: str | None = None,
        effective_date: date | None = None,
        created_by: str | None = None,
        office_id: UUID | None = None,
    ) -> ScheduleTemplateModel:
        """Create the patient's active template with an empty week 0.

        Args:
            patient_id: Patient the template schedules
            name: Display name (defaults to the configured template name)
            description: Free text
            effective_date: Rotation anchor; week 0 starts here (defaults to today)
            created_by: Acting staff/user id
            office_id: Owning office

        Raises:
            ConflictError: If the patient already has an active template
        """
        if await self.get_active_template(patient_id) is not None:
            raise ConflictError(
                f"Patient {patient_id} already has an active schedule template"
            )

        template = ScheduleTemplateModel(
            patient_id=patient_id,
            office_id=office_id,
            name=(name or "").strip() or get_config().scheduling.default_template_name,
            description=description,
            status=TemplateStatus.ACTIVE.value,
            effective_date=effective_date or date.today(),
            created_by=created_by,
        )
        self.session.add(template)
        await self.session.flush()

        self.session.add(TemplateWeekModel(template_id=template.id, week_index=0))
        await self.session.flush()

        logger.info(f"Created schedule template {template.id} for patient {patient_id}")
        return template

    async def archive_template(self, template_id: UUID) -> ScheduleTemplateModel:
        """Retire a template so a replacement can become active."""
        template = await self.get_template(template_id)
        template.status = TemplateStatus.ARCHIVED.value
        await self.session.flush()
        logger.info(f"Archived schedule template {template_id}")
        return template

    async def delete_template(self, template_id: UUID) -> None:
        """Delete a template with its weeks and events: events, then weeks, then template.

        Materialized occurrences are kept and lose their template reference.
        """
        template = await self.get_template(template_id)
        week_ids = select(TemplateWeekModel.id).where(
            TemplateWeekModel.template_id == template_id
        )

        await self.session.execute(
            delete(TemplateEventModel).where(TemplateEventModel.week_id.in_(week_ids))
        )
        await self.session.execute(
            delete(TemplateWeekModel).where(TemplateWeekModel.template_id == template_id)
        )
        await self.session.execute(
            update(ScheduleEventModel)
            .where(ScheduleEventModel.source_template_id == template_id)
            .values(source_template_id=None)
        )
        await self.session.delete(template)
        await self.session.flush()
        logger.info(f"Deleted schedule template {template_id}")

    async def get_template_with_weeks(self, patient_id: UUID) -> TemplateView | None:
        """Load the active template, its weeks and all their events in two queries."""
        template = await self.get_active_template(patient_id)
        if template is None:
            return None
        return await self.load_view(template)

    async def load_view(self, template: ScheduleTemplateModel) -> TemplateView:
        weeks_result = await self.session.execute(
            select(TemplateWeekModel)
            .where(TemplateWeekModel.template_id == template.id)
            .order_by(TemplateWeekModel.week_index.asc())
        )
        weeks = list(weeks_result.scalars().all())
        view = TemplateView(template=template, weeks=[TemplateWeekView(week=w) for w in weeks])
        if not weeks:
            return view

        by_week = {w.week.id: w for w in view.weeks}
        events_result = await self.session.execute(
            select(TemplateEventModel)
            .where(TemplateEventModel.week_id.in_(list(by_week)))
            .order_by(TemplateEventModel.day_of_week, TemplateEventModel.start_time)
        )
        for event in events_result.scalars().all():
            by_week[event.week_id].events.append(event)
        return view

    # ------------------------------------------------------------------
    # Weeks
    # ------------------------------------------------------------------

    async def get_week(self, week_id: UUID) -> TemplateWeekModel:
        week = await self.session.get(TemplateWeekModel, week_id)
        if week is None:
            raise NotFoundError("Template week", week_id)
        return week

    async def add_week(self, template_id: UUID, week_index: int | None = None) -> TemplateWeekModel:
        """Add a week to a template; ``week_index`` defaults to the next free index.

        Raises:
            NotFoundError: If the template does not exist
            ConflictError: If the index is already used in this template
        """
        await self.get_template(template_id)

        if week_index is None:
            result = await self.session.execute(
                select(func.max(TemplateWeekModel.week_index)).where(
                    TemplateWeekModel.template_id == template_id
                )
            )
            current_max = result.scalar_one_or_none()
            week_index = 0 if current_max is None else current_max + 1
        elif week_index < 0:
            raise ValidationError("week_index must be >= 0")

        existing = await self.session.execute(
            select(TemplateWeekModel.id).where(
                and_(
                    TemplateWeekModel.template_id == template_id,
                    TemplateWeekModel.week_index == week_index,
                )
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"Week {week_index} already exists in template {template_id}")

        week = TemplateWeekModel(template_id=template_id, week_index=week_index)
        self.session.add(week)
        await self.session.flush()
        return week

    async def delete_week(self, week_id: UUID) -> None:
        """Delete a week and all of its events in one batch."""
        week = await self.get_week(week_id)
        await self.session.execute(
            delete(TemplateEventModel).where(TemplateEventModel.week_id == week_id)
        )
        await self.session.delete(week)
        await self.session.flush()

    # ------------------------------------------------------------------
    # Template events
    # ------------------------------------------------------------------

    async def get_event(self, event_id: UUID) -> TemplateEventModel:
        event = await self.session.get(TemplateEventModel, event_id)
        if event is None:
            raise NotFoundError("Template event", event_id)
        return event

    async def list_week_events(self, week_id: UUID) -> list[TemplateEventModel]:
        await self.get_week(week_id)
        result = await self.session.execute(
            select(TemplateEventModel)
            .where(TemplateEventModel.week_id == week_id)
            .order_by(TemplateEventModel.day_of_week, TemplateEventModel.start_time)
        )
        return list(result.scalars().all())

    async def add_event(
        self,
        week_id: UUID,
        day_of_week: int,
        start_time: time,
        end_time: time,
        authorization_id: UUID | None = None,
        staff_id: UUID | None = None,
        planned_units: int = 0,
        event_code: str | None = None,
        comment: str | None = None,
    ) -> TemplateEventModel:
        """Add one weekday slot to a template week.

        Raises:
            NotFoundError: If the week or authorization does not exist
            ValidationError: On a bad weekday, inverted times or negative units
            ConflictError: If the slot overlaps an existing one on the same weekday,
                or the authorization belongs to another patient
        """
        events = await self.add_events(
            week_id,
            [day_of_week],
            start_time,
            end_time,
            authorization_id=authorization_id,
            staff_id=staff_id,
            planned_units=planned_units,
            event_code=event_code,
            comment=comment,
        )
        return events[0]

    async def add_events(
        self,
        week_id: UUID,
        weekdays: Iterable[int],
        start_time: time,
        end_time: time,
        authorization_id: UUID | None = None,
        staff_id: UUID | None = None,
        planned_units: int = 0,
        event_code: str | None = None,
        comment: str | None = None,
    ) -> list[TemplateEventModel]:
        """Add the same slot on several weekdays; nothing is inserted if any day conflicts."""
        weekdays = sorted(set(weekdays))
        if not weekdays:
            raise ValidationError("At least one weekday is required")
        for day in weekdays:
            _validate_day(day)
        _validate_times(start_time, end_time)
        _validate_units(planned_units)

        week = await self.get_week(week_id)
        if authorization_id is not None:
            await self._check_authorization(week, authorization_id)

        for day in weekdays:
            await self._check_overlap(week_id, day, start_time, end_time)

        events = [
            TemplateEventModel(
                week_id=week_id,
                day_of_week=day,
                start_time=start_time,
                end_time=end_time,
                authorization_id=authorization_id,
                staff_id=staff_id,
                planned_units=planned_units,
                event_code=event_code,
                comment=comment,
            )
            for day in weekdays
        ]
        self.session.add_all(events)
        await self.session.flush()
        return events

    async def update_event(self, event_id: UUID, **changes) -> TemplateEventModel:
        """Apply field changes to a template event, re-validating times and overlap.

        Raises:
            ValidationError: On unknown fields or invalid values
            ConflictError: If the new slot overlaps another event
        """
        unknown = set(changes) - _UPDATABLE_EVENT_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update template event fields: {sorted(unknown)}")

        event = await self.get_event(event_id)
        day = changes.get("day_of_week", event.day_of_week)
        start = changes.get("start_time", event.start_time)
        end = changes.get("end_time", event.end_time)

        _validate_day(day)
        _validate_times(start, end)
        if "planned_units" in changes:
            _validate_units(changes["planned_units"])

        week = await self.get_week(event.week_id)
        if changes.get("authorization_id") is not None:
            await self._check_authorization(week, changes["authorization_id"])

        await self._check_overlap(event.week_id, day, start, end, exclude_id=event.id)

        for key, value in changes.items():
            setattr(event, key, value)
        await self.session.flush()
        return event

    async def delete_event(self, event_id: UUID) -> None:
        event = await self.get_event(event_id)
        await self.session.delete(event)
        await self.session.flush()

    async def _check_overlap(
        self,
        week_id: UUID,
        day_of_week: int,
        start_time: time,
        end_time: time,
        exclude_id: UUID | None = None,
    ) -> None:
        stmt = select(TemplateEventModel).where(
            and_(
                TemplateEventModel.week_id == week_id,
                TemplateEventModel.day_of_week == day_of_week,
            )
        )
        if exclude_id is not None:
            stmt = stmt.where(TemplateEventModel.id != exclude_id)

        result = await self.session.execute(stmt)
        for other in result.scalars().all():
            if intervals_overlap(start_time, end_time, other.start_time, other.end_time):
                raise ConflictError(
                    f"{describe_slot(day_of_week, start_time, end_time)} overlaps existing "
                    f"slot {describe_slot(other.day_of_week, other.start_time, other.end_time)}"
                )

    async def _check_authorization(self, week: TemplateWeekModel, authorization_id: UUID) -> None:
        authorization = await self.session.get(AuthorizationModel, authorization_id)
        if authorization is None:
            raise NotFoundError("Authorization", authorization_id)
        template = await self.get_template(week.template_id)
        if authorization.patient_id != template.patient_id:
            raise ConflictError(
                f"Authorization {authorization.authorization_no} belongs to another patient"
            )


def _validate_day(day_of_week: int) -> None:
    if not 0 <= day_of_week <= 6:
        raise ValidationError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")


def _validate_times(start_time: time, end_time: time) -> None:
    if end_time <= start_time:
        raise ValidationError("end_time must be after start_time")


def _validate_units(planned_units: int) -> None:
    if planned_units < 0:
        raise ValidationError("planned_units must be >= 0")
