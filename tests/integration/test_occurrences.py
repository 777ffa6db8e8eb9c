"""Integration tests for ad-hoc occurrences and conflict detection."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from uuid import uuid4

import pytest

from careroster.core.errors import ConflictError, NotFoundError, ValidationError
from careroster.ledger.service import AuthorizationLedger
from careroster.models import ConflictType, OccurrenceStatus, SourceType
from careroster.scheduling.events import OccurrenceService

WEDNESDAY = date(2025, 1, 8)


def _at(hour: int, minute: int = 0, on: date = WEDNESDAY) -> datetime:
    return datetime.combine(on, time(hour, minute))


@pytest.fixture
def service(db_session) -> OccurrenceService:
    return OccurrenceService(db_session)


class TestConflicts:
    @pytest.mark.asyncio
    async def test_patient_conflict(self, service, patient_id, make_occurrence):
        existing = await make_occurrence(patient_id, None)

        conflicts = await service.detect_conflicts(patient_id, _at(10), _at(12))

        assert [c.conflict_type for c in conflicts] == [ConflictType.PATIENT_CONFLICT]
        assert conflicts[0].event_id == existing.id

    @pytest.mark.asyncio
    async def test_staff_conflict_across_patients(
        self, service, patient_id, staff_id, make_occurrence
    ):
        await make_occurrence(patient_id, None, staff_id=staff_id)

        conflicts = await service.detect_conflicts(uuid4(), _at(10), _at(12), staff_id=staff_id)

        assert [c.conflict_type for c in conflicts] == [ConflictType.STAFF_CONFLICT]
        assert "Staff member" in conflicts[0].message

    @pytest.mark.asyncio
    async def test_touching_windows_do_not_conflict(self, service, patient_id, make_occurrence):
        await make_occurrence(patient_id, None)

        assert await service.detect_conflicts(patient_id, _at(11), _at(12)) == []
        assert await service.detect_conflicts(patient_id, _at(8), _at(9)) == []

    @pytest.mark.asyncio
    async def test_overnight_visit_is_found_from_next_day(self, service, patient_id):
        thursday = WEDNESDAY + timedelta(days=1)
        overnight = await service.create_event(patient_id, _at(23), _at(2, on=thursday))

        conflicts = await service.detect_conflicts(patient_id, _at(1, on=thursday), _at(3, on=thursday))

        assert [c.event_id for c in conflicts] == [overnight.id]

    @pytest.mark.asyncio
    async def test_cancelled_occurrences_are_ignored(self, service, patient_id, make_occurrence):
        existing = await make_occurrence(patient_id, None)
        await service.update_event_status(existing.id, OccurrenceStatus.CANCELLED)

        assert await service.detect_conflicts(patient_id, _at(9), _at(11)) == []

    @pytest.mark.asyncio
    async def test_exclude_event(self, service, patient_id, make_occurrence):
        existing = await make_occurrence(patient_id, None)

        conflicts = await service.detect_conflicts(
            patient_id, _at(9), _at(11), exclude_event_id=existing.id
        )

        assert conflicts == []


class TestCreateEvent:
    @pytest.mark.asyncio
    async def test_overlap_rejected(self, patient_id, make_occurrence):
        await make_occurrence(patient_id, None)

        with pytest.raises(ConflictError, match="Patient already has a visit"):
            await make_occurrence(patient_id, None, start=time(10), end=time(12))

    @pytest.mark.asyncio
    async def test_inverted_window(self, service, patient_id):
        with pytest.raises(ValidationError):
            await service.create_event(patient_id, _at(11), _at(9))

    @pytest.mark.asyncio
    async def test_authorization_of_another_patient(self, service, patient_id, make_authorization):
        authorization = await make_authorization(uuid4())

        with pytest.raises(ConflictError):
            await service.create_event(
                patient_id, _at(9), _at(10), authorization_id=authorization.id
            )

    @pytest.mark.asyncio
    async def test_unknown_authorization(self, service, patient_id):
        with pytest.raises(NotFoundError):
            await service.create_event(patient_id, _at(9), _at(10), authorization_id=uuid4())

    @pytest.mark.asyncio
    async def test_ad_hoc_occurrence_has_no_template(self, patient_id, make_occurrence):
        occurrence = await make_occurrence(patient_id, None)

        assert occurrence.source_template_id is None
        assert occurrence.event_date == WEDNESDAY
        assert occurrence.status == OccurrenceStatus.PLANNED.value

    @pytest.mark.asyncio
    async def test_aware_window_stored_as_naive_utc(self, service, patient_id):
        plus_one = timezone(timedelta(hours=1))

        occurrence = await service.create_event(
            patient_id,
            datetime(2025, 1, 8, 10, 0, tzinfo=plus_one),
            datetime(2025, 1, 8, 12, 0, tzinfo=plus_one),
        )

        assert occurrence.start_at == _at(9)
        assert occurrence.end_at == _at(11)
        conflicts = await service.detect_conflicts(
            patient_id, datetime(2025, 1, 8, 10, 30, tzinfo=timezone.utc), _at(12)
        )
        assert [c.event_id for c in conflicts] == [occurrence.id]

    @pytest.mark.asyncio
    async def test_slot_taken_after_conflict_check_is_conflict(
        self, db_session, service, patient_id, monkeypatch
    ):
        detect_conflicts = service.detect_conflicts
        winner = {}

        async def check_then_competing_insert(patient, start_at, end_at, staff_id=None):
            conflicts = await detect_conflicts(patient, start_at, end_at, staff_id)
            winner["event"] = await OccurrenceService(db_session).create_event(
                patient, start_at, end_at
            )
            return conflicts

        monkeypatch.setattr(service, "detect_conflicts", check_then_competing_insert)

        with pytest.raises(ConflictError):
            await service.create_event(patient_id, _at(9), _at(11))

        events = await service.list_events(patient_id, WEDNESDAY, WEDNESDAY)
        assert [e.id for e in events] == [winner["event"].id]


class TestStatus:
    @pytest.mark.asyncio
    async def test_planned_to_confirmed_to_completed(self, service, patient_id, make_occurrence):
        occurrence = await make_occurrence(patient_id, None)

        await service.update_event_status(occurrence.id, OccurrenceStatus.CONFIRMED)
        await service.update_event_status(occurrence.id, OccurrenceStatus.COMPLETED)

        assert occurrence.status == OccurrenceStatus.COMPLETED.value

    @pytest.mark.asyncio
    @pytest.mark.parametrize("final", [OccurrenceStatus.CANCELLED, OccurrenceStatus.COMPLETED])
    async def test_final_statuses_cannot_change(self, service, patient_id, make_occurrence, final):
        occurrence = await make_occurrence(patient_id, None)
        await service.update_event_status(occurrence.id, final)

        with pytest.raises(ValidationError):
            await service.update_event_status(occurrence.id, OccurrenceStatus.PLANNED)

    @pytest.mark.asyncio
    async def test_cancel_reverses_planned_debit(
        self, db_session, service, patient_id, make_authorization, make_occurrence
    ):
        authorization = await make_authorization(patient_id)
        occurrence = await make_occurrence(patient_id, authorization.id)
        ledger = AuthorizationLedger(db_session)
        await ledger.post_consumption(
            authorization.id, SourceType.SCHEDULE_SHIFT, occurrence.id, WEDNESDAY, 2
        )

        await service.update_event_status(occurrence.id, OccurrenceStatus.CANCELLED)

        assert await ledger.remaining_units(authorization.id) == 10


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_events_by_range_and_status(self, service, patient_id, make_occurrence):
        first = await make_occurrence(patient_id, None)
        second = await make_occurrence(patient_id, None, on=WEDNESDAY + timedelta(days=7))
        await make_occurrence(patient_id, None, on=WEDNESDAY + timedelta(days=14))
        await service.update_event_status(second.id, OccurrenceStatus.CANCELLED)

        in_range = await service.list_events(patient_id, WEDNESDAY, WEDNESDAY + timedelta(days=7))
        cancelled = await service.list_events(
            patient_id, WEDNESDAY, WEDNESDAY + timedelta(days=30), OccurrenceStatus.CANCELLED
        )

        assert [e.id for e in in_range] == [first.id, second.id]
        assert [e.id for e in cancelled] == [second.id]

    @pytest.mark.asyncio
    async def test_list_events_for_staff(self, service, staff_id, make_occurrence):
        mine = await make_occurrence(uuid4(), None, staff_id=staff_id)
        await make_occurrence(uuid4(), None, staff_id=uuid4())

        events = await service.list_events_for_staff(staff_id, WEDNESDAY, WEDNESDAY)

        assert [e.id for e in events] == [mine.id]
