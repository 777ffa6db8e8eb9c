"""Schedule materialization: template rotation -> concrete calendar occurrences.

Runs are incremental and idempotent. Each run starts the day after the
template's ``generated_through`` watermark (or today), walks dates in ascending
order, and skips any slot already materialized for ``(patient, date, start)``.
Week rotation is anchored at the template's ``effective_date``, so splitting a
range across several runs selects the same week for every date as one run.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from careroster.config import get_config
from careroster.core.errors import CareRosterError, NotFoundError
from careroster.db.models import AuthorizationModel, ScheduleEventModel, ScheduleTemplateModel
from careroster.ledger.service import AuthorizationLedger, is_active_on
from careroster.models import (
    GenerationFailure,
    GenerationSummary,
    OccurrenceStatus,
    SourceType,
    TemplateStatus,
)
from careroster.scheduling.templates import TemplateStore, TemplateView

logger = logging.getLogger(__name__)


def iso_day_of_week(d: date) -> int:
    """0=Sunday .. 6=Saturday."""
    return d.isoweekday() % 7


def week_offset(anchor: date, d: date, week_count: int) -> int:
    """Position in the ordered week list that applies to ``d``."""
    return ((d - anchor).days // 7) % week_count


def date_range(start: date, end: date):
    """Inclusive ascending date range."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


class ScheduleMaterializer:
    """Turns a patient's active template into ``ScheduleEventModel`` rows."""

    def __init__(self, session: AsyncSession, config=None):
        self.session = session
        self.config = config or get_config()
        self.templates = TemplateStore(session)
        self.ledger = AuthorizationLedger(session)

    async def generate(
        self, patient_id: UUID, end_date: date, *, today: date | None = None
    ) -> GenerationSummary:
        """Materialize occurrences through ``end_date`` (inclusive).

        Safe to re-invoke with the same or a later ``end_date``. The watermark is
        advanced to ``end_date`` after the loop, and only when something was created.

        Args:
            patient_id: Patient whose active template is materialized
            end_date: Last date to generate
            today: Start date when the template has never been generated

        Returns:
            GenerationSummary with created count and per-date failures

        Raises:
            NotFoundError: If the patient has no active template
        """
        template = await self.templates.get_active_template(patient_id)
        if template is None:
            raise NotFoundError("Active schedule template for patient", patient_id)

        summary = GenerationSummary(
            patient_id=patient_id,
            template_id=template.id,
            end_date=end_date,
            generated_through=template.generated_through,
        )

        if template.generated_through is not None:
            start_date = template.generated_through + timedelta(days=1)
        else:
            start_date = today or date.today()
        start_date = max(start_date, template.effective_date)

        if start_date > end_date:
            logger.debug(
                f"Template {template.id} already generated through "
                f"{template.generated_through}; nothing to do for {end_date}"
            )
            return summary

        summary.start_date = start_date
        view = await self.templates.load_view(template)
        if view.week_count == 0:
            logger.warning(f"Template {template.id} has no weeks; nothing generated")
            return summary

        slots = _slots_by_week_and_day(view)
        authorizations = await self._load_authorizations(view)
        existing = await self._existing_slots(patient_id, start_date, end_date)
        generated_at = datetime.utcnow()

        for current in date_range(start_date, end_date):
            offset = week_offset(template.effective_date, current, view.week_count)
            for event in slots[offset].get(iso_day_of_week(current), []):
                start_at = datetime.combine(current, event.start_time)
                if (current, start_at) in existing:
                    summary.skipped_existing += 1
                    continue

                try:
                    occurrence = await self._materialize(
                        template, event, current, authorizations, generated_at, summary
                    )
                except CareRosterError as exc:
                    summary.failures.append(
                        GenerationFailure(
                            event_date=current, template_event_id=event.id, reason=str(exc)
                        )
                    )
                    continue

                existing.add((current, start_at))
                if occurrence is not None:
                    summary.created += 1

        if summary.created > 0:
            if template.generated_through is None or end_date > template.generated_through:
                template.generated_through = end_date
            await self.session.flush()

        summary.generated_through = template.generated_through
        logger.info(
            f"Generated {summary.created} occurrences for patient {patient_id} "
            f"({start_date}..{end_date}); {summary.skipped_existing} existing, "
            f"{len(summary.failures)} failed"
        )
        return summary

    async def generate_all(
        self, end_date: date, *, today: date | None = None
    ) -> list[GenerationSummary]:
        """Run :meth:`generate` for every patient with an active template."""
        result = await self.session.execute(
            select(ScheduleTemplateModel.patient_id)
            .where(ScheduleTemplateModel.status == TemplateStatus.ACTIVE.value)
            .order_by(ScheduleTemplateModel.created_at)
        )
        summaries = []
        for patient_id in result.scalars().all():
            summaries.append(await self.generate(patient_id, end_date, today=today))
        return summaries

    async def _materialize(
        self,
        template: ScheduleTemplateModel,
        event,
        current: date,
        authorizations: dict[UUID, AuthorizationModel],
        generated_at: datetime,
        summary: GenerationSummary,
    ) -> ScheduleEventModel | None:
        authorization = None
        if event.authorization_id is not None:
            authorization = authorizations.get(event.authorization_id)
            if authorization is None:
                raise NotFoundError("Authorization", event.authorization_id)
            if not is_active_on(authorization, current):
                raise CareRosterError(
                    f"Authorization {authorization.authorization_no} is not active on {current}"
                )
            if self.config.ledger.block_generation_when_exhausted:
                remaining = await self.ledger.remaining_units(authorization.id)
                if remaining <= 0:
                    raise CareRosterError(
                        f"Authorization {authorization.authorization_no} has no remaining units"
                    )

        occurrence = ScheduleEventModel(
            patient_id=template.patient_id,
            office_id=template.office_id,
            event_date=current,
            start_at=datetime.combine(current, event.start_time),
            end_at=datetime.combine(current, event.end_time),
            authorization_id=event.authorization_id,
            staff_id=event.staff_id,
            event_code=event.event_code,
            status=OccurrenceStatus.PLANNED.value,
            planned_units=event.planned_units,
            comment=event.comment,
            source_template_id=template.id,
            generated_at=generated_at,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(occurrence)
        except IntegrityError:
            # Slot created concurrently; uniqueness conflicts are expected no-ops
            summary.skipped_existing += 1
            return None

        if authorization is not None and self.config.ledger.debit_on_generate:
            posting = await self.ledger.post_consumption(
                authorization_id=authorization.id,
                source_type=SourceType.SCHEDULE_SHIFT,
                source_id=occurrence.id,
                service_date=current,
                units=occurrence.planned_units,
            )
            if posting.over_authorized:
                summary.over_authorized.append(occurrence.id)

        return occurrence

    async def _load_authorizations(self, view: TemplateView) -> dict[UUID, AuthorizationModel]:
        ids = {e.authorization_id for w in view.weeks for e in w.events if e.authorization_id}
        if not ids:
            return {}
        result = await self.session.execute(
            select(AuthorizationModel).where(AuthorizationModel.id.in_(ids))
        )
        return {a.id: a for a in result.scalars().all()}

    async def _existing_slots(
        self, patient_id: UUID, start_date: date, end_date: date
    ) -> set[tuple[date, datetime]]:
        result = await self.session.execute(
            select(ScheduleEventModel.event_date, ScheduleEventModel.start_at).where(
                and_(
                    ScheduleEventModel.patient_id == patient_id,
                    ScheduleEventModel.event_date >= start_date,
                    ScheduleEventModel.event_date <= end_date,
                )
            )
        )
        return {(row.event_date, row.start_at) for row in result.all()}


def _slots_by_week_and_day(view: TemplateView) -> list[dict[int, list]]:
    slots = []
    for week in view.weeks:
        by_day = defaultdict(list)
        for event in week.events:
            by_day[event.day_of_week].append(event)
        slots.append(by_day)
    return slots


def horizon_end(today: date | None = None, horizon_days: int | None = None) -> date:
    """Last date covered by the rolling generation horizon."""
    days = horizon_days if horizon_days is not None else get_config().scheduling.horizon_days
    return (today or date.today()) + timedelta(days=days)
