"""Integration tests for schedule materialization from week-rotation templates."""

from __future__ import annotations

from datetime import date, time
from uuid import uuid4

import pytest
from sqlalchemy import select

from careroster.config import reset_config
from careroster.core.errors import NotFoundError
from careroster.db.models import ScheduleEventModel
from careroster.ledger.service import AuthorizationLedger
from careroster.models import SourceType
from careroster.scheduling.materializer import ScheduleMaterializer
from careroster.scheduling.templates import TemplateStore

MONDAY = 1
JAN_6 = date(2025, 1, 6)  # a Monday
JAN_12 = date(2025, 1, 12)
JAN_26 = date(2025, 1, 26)


@pytest.fixture
def store(db_session) -> TemplateStore:
    return TemplateStore(db_session)


@pytest.fixture
def two_week_rotation(store):
    """Factory: week 0 Monday 09:00-10:00, week 1 Monday 13:00-14:00."""

    async def _make(patient_id, effective_date=JAN_6, authorization_id=None, planned_units=1):
        template = await store.create_template(patient_id, effective_date=effective_date)
        view = await store.get_template_with_weeks(patient_id)
        week1 = await store.add_week(template.id)
        await store.add_event(
            view.weeks[0].week.id,
            MONDAY,
            time(9),
            time(10),
            authorization_id=authorization_id,
            planned_units=planned_units,
        )
        await store.add_event(
            week1.id,
            MONDAY,
            time(13),
            time(14),
            authorization_id=authorization_id,
            planned_units=planned_units,
        )
        return template

    return _make


async def _occurrences(session, patient_id) -> list[ScheduleEventModel]:
    result = await session.execute(
        select(ScheduleEventModel)
        .where(ScheduleEventModel.patient_id == patient_id)
        .order_by(ScheduleEventModel.start_at)
    )
    return list(result.scalars().all())


def _slots(occurrences) -> list[tuple[date, time]]:
    return [(o.event_date, o.start_at.time()) for o in occurrences]


EXPECTED_ROTATION = [
    (date(2025, 1, 6), time(9)),
    (date(2025, 1, 13), time(13)),
    (date(2025, 1, 20), time(9)),
]


class TestRotation:
    @pytest.mark.asyncio
    async def test_weeks_alternate(self, db_session, patient_id, two_week_rotation):
        template = await two_week_rotation(patient_id)

        summary = await ScheduleMaterializer(db_session).generate(patient_id, JAN_26, today=JAN_6)

        assert summary.created == 3
        assert summary.start_date == JAN_6
        assert summary.generated_through == JAN_26
        occurrences = await _occurrences(db_session, patient_id)
        assert _slots(occurrences) == EXPECTED_ROTATION
        assert all(o.source_template_id == template.id for o in occurrences)
        assert all(o.status == "planned" for o in occurrences)

    @pytest.mark.asyncio
    async def test_split_runs_match_single_run(self, db_session, patient_id, two_week_rotation):
        await two_week_rotation(patient_id)
        materializer = ScheduleMaterializer(db_session)

        first = await materializer.generate(patient_id, JAN_12, today=JAN_6)
        second = await materializer.generate(patient_id, JAN_26, today=JAN_6)

        assert (first.created, second.created) == (1, 2)
        assert second.start_date == date(2025, 1, 13)
        assert _slots(await _occurrences(db_session, patient_id)) == EXPECTED_ROTATION

    @pytest.mark.asyncio
    async def test_rotation_anchored_at_effective_date(
        self, db_session, patient_id, two_week_rotation
    ):
        # Wednesday anchor: week 0 runs Jan 8-14, week 1 runs Jan 15-21
        await two_week_rotation(patient_id, effective_date=date(2025, 1, 8))

        await ScheduleMaterializer(db_session).generate(
            patient_id, date(2025, 1, 21), today=JAN_6
        )

        assert _slots(await _occurrences(db_session, patient_id)) == [
            (date(2025, 1, 13), time(9)),
            (date(2025, 1, 20), time(13)),
        ]

    @pytest.mark.asyncio
    async def test_start_clamped_to_effective_date(self, db_session, patient_id, two_week_rotation):
        await two_week_rotation(patient_id, effective_date=date(2025, 1, 13))

        summary = await ScheduleMaterializer(db_session).generate(patient_id, JAN_26, today=JAN_6)

        assert summary.start_date == date(2025, 1, 13)
        assert _slots(await _occurrences(db_session, patient_id)) == [
            (date(2025, 1, 13), time(9)),
            (date(2025, 1, 20), time(13)),
        ]

    @pytest.mark.asyncio
    async def test_missing_template(self, db_session):
        with pytest.raises(NotFoundError):
            await ScheduleMaterializer(db_session).generate(uuid4(), JAN_26, today=JAN_6)


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_rerun_creates_nothing(self, db_session, patient_id, two_week_rotation):
        await two_week_rotation(patient_id)
        materializer = ScheduleMaterializer(db_session)
        await materializer.generate(patient_id, JAN_26, today=JAN_6)

        again = await materializer.generate(patient_id, JAN_26, today=JAN_6)

        assert again.created == 0
        assert again.is_noop
        assert len(await _occurrences(db_session, patient_id)) == 3

    @pytest.mark.asyncio
    async def test_reset_watermark_skips_existing_slots(
        self, db_session, patient_id, two_week_rotation
    ):
        template = await two_week_rotation(patient_id)
        materializer = ScheduleMaterializer(db_session)
        await materializer.generate(patient_id, JAN_26, today=JAN_6)

        template.generated_through = None
        await db_session.flush()
        rerun = await materializer.generate(patient_id, JAN_26, today=JAN_6)

        assert rerun.created == 0
        assert rerun.skipped_existing == 3
        assert len(await _occurrences(db_session, patient_id)) == 3

    @pytest.mark.asyncio
    async def test_ad_hoc_occurrence_in_slot_is_kept(
        self, db_session, patient_id, two_week_rotation, make_occurrence
    ):
        await two_week_rotation(patient_id)
        manual = await make_occurrence(
            patient_id, None, on=JAN_6, start=time(9), end=time(10), planned_units=0
        )

        summary = await ScheduleMaterializer(db_session).generate(patient_id, JAN_26, today=JAN_6)

        assert summary.created == 2
        assert summary.skipped_existing == 1
        occurrences = await _occurrences(db_session, patient_id)
        assert occurrences[0].id == manual.id
        assert occurrences[0].source_template_id is None

    @pytest.mark.asyncio
    async def test_slot_taken_after_existing_scan_is_skipped(
        self, db_session, patient_id, two_week_rotation, make_occurrence, monkeypatch
    ):
        await two_week_rotation(patient_id)
        materializer = ScheduleMaterializer(db_session)
        existing_slots = materializer._existing_slots
        competing = {}

        async def scan_then_competing_insert(patient, start_date, end_date):
            slots = await existing_slots(patient, start_date, end_date)
            competing["occurrence"] = await make_occurrence(
                patient_id, None, on=JAN_6, start=time(9), end=time(10), planned_units=0
            )
            return slots

        monkeypatch.setattr(materializer, "_existing_slots", scan_then_competing_insert)

        summary = await materializer.generate(patient_id, JAN_26, today=JAN_6)

        assert summary.created == 2
        assert summary.skipped_existing == 1
        assert summary.failures == []
        assert summary.generated_through == JAN_26
        occurrences = await _occurrences(db_session, patient_id)
        assert _slots(occurrences) == EXPECTED_ROTATION
        assert occurrences[0].id == competing["occurrence"].id


class TestWatermark:
    @pytest.mark.asyncio
    async def test_not_advanced_when_nothing_created(self, db_session, store, patient_id):
        template = await store.create_template(patient_id, effective_date=JAN_6)

        summary = await ScheduleMaterializer(db_session).generate(patient_id, JAN_26, today=JAN_6)

        assert summary.created == 0
        assert not summary.is_noop
        assert template.generated_through is None

    @pytest.mark.asyncio
    async def test_never_moves_backwards(self, db_session, patient_id, two_week_rotation):
        template = await two_week_rotation(patient_id)
        materializer = ScheduleMaterializer(db_session)
        await materializer.generate(patient_id, JAN_26, today=JAN_6)

        earlier = await materializer.generate(patient_id, JAN_12, today=JAN_6)

        assert earlier.is_noop
        assert earlier.generated_through == JAN_26
        assert template.generated_through == JAN_26


class TestAuthorizations:
    @pytest.mark.asyncio
    async def test_dates_outside_authorization_are_failures(
        self, db_session, patient_id, two_week_rotation, make_authorization
    ):
        authorization = await make_authorization(
            patient_id, start_date=date(2025, 1, 15), end_date=None
        )
        await two_week_rotation(patient_id, authorization_id=authorization.id)

        summary = await ScheduleMaterializer(db_session).generate(patient_id, JAN_26, today=JAN_6)

        assert summary.created == 1
        assert [f.event_date for f in summary.failures] == [date(2025, 1, 6), date(2025, 1, 13)]
        assert "not active" in summary.failures[0].reason
        assert summary.generated_through == JAN_26

    @pytest.mark.asyncio
    async def test_authorization_end_date_is_exclusive(
        self, db_session, patient_id, two_week_rotation, make_authorization
    ):
        authorization = await make_authorization(
            patient_id, start_date=date(2025, 1, 1), end_date=date(2025, 1, 20)
        )
        await two_week_rotation(patient_id, authorization_id=authorization.id)

        summary = await ScheduleMaterializer(db_session).generate(patient_id, JAN_26, today=JAN_6)

        assert summary.created == 2
        assert [f.event_date for f in summary.failures] == [date(2025, 1, 20)]

    @pytest.mark.asyncio
    async def test_debit_on_generate_posts_planned_units(
        self, db_session, monkeypatch, patient_id, two_week_rotation, make_authorization
    ):
        monkeypatch.setenv("DEBIT_ON_GENERATE", "true")
        reset_config()
        authorization = await make_authorization(patient_id, max_units=2)
        await two_week_rotation(patient_id, authorization_id=authorization.id)

        summary = await ScheduleMaterializer(db_session).generate(patient_id, JAN_26, today=JAN_6)

        ledger = AuthorizationLedger(db_session)
        entries = await ledger.entries(authorization.id)
        occurrences = await _occurrences(db_session, patient_id)
        assert summary.created == 3
        assert [e.source_type for e in entries] == [SourceType.SCHEDULE_SHIFT] * 3
        assert await ledger.remaining_units(authorization.id) == -1
        assert summary.over_authorized == [occurrences[-1].id]

    @pytest.mark.asyncio
    async def test_exhausted_authorization_blocks_generation(
        self, db_session, monkeypatch, patient_id, two_week_rotation, make_authorization
    ):
        monkeypatch.setenv("DEBIT_ON_GENERATE", "true")
        monkeypatch.setenv("BLOCK_GENERATION_WHEN_EXHAUSTED", "true")
        reset_config()
        authorization = await make_authorization(patient_id, max_units=2)
        await two_week_rotation(patient_id, authorization_id=authorization.id)

        summary = await ScheduleMaterializer(db_session).generate(patient_id, JAN_26, today=JAN_6)

        assert summary.created == 2
        assert [f.event_date for f in summary.failures] == [date(2025, 1, 20)]
        assert "no remaining units" in summary.failures[0].reason
        assert summary.over_authorized == []

    @pytest.mark.asyncio
    async def test_no_debit_by_default(
        self, db_session, patient_id, two_week_rotation, make_authorization
    ):
        authorization = await make_authorization(patient_id, max_units=2)
        await two_week_rotation(patient_id, authorization_id=authorization.id)

        await ScheduleMaterializer(db_session).generate(patient_id, JAN_26, today=JAN_6)

        assert await AuthorizationLedger(db_session).entries(authorization.id) == []


class TestGenerateAll:
    @pytest.mark.asyncio
    async def test_generates_every_active_template(self, db_session, store, two_week_rotation):
        first, second, archived = uuid4(), uuid4(), uuid4()
        await two_week_rotation(first)
        await two_week_rotation(second)
        old = await two_week_rotation(archived)
        await store.archive_template(old.id)

        summaries = await ScheduleMaterializer(db_session).generate_all(JAN_26, today=JAN_6)

        assert {s.patient_id for s in summaries} == {first, second}
        assert all(s.created == 3 for s in summaries)
        assert await _occurrences(db_session, archived) == []
