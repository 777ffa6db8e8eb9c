"""End-to-end workflow: template -> materialized occurrences -> visits -> ledger."""

from __future__ import annotations

from datetime import date, time
from decimal import Decimal

import pytest

from careroster.ledger.service import AuthorizationLedger
from careroster.models import GeoPoint, OccurrenceStatus, VisitStatus
from careroster.scheduling.events import OccurrenceService
from careroster.scheduling.materializer import ScheduleMaterializer
from careroster.scheduling.templates import TemplateStore
from careroster.visits.lifecycle import VisitLifecycleManager

HOME = GeoPoint(latitude=40.7128, longitude=-74.0060, accuracy_m=8.0)
WEDNESDAY = 3
START = date(2025, 1, 6)
END = date(2025, 2, 2)


async def _weekly_visits(session, patient_id, staff_id, authorization_id) -> list:
    """Wednesday 09:00-11:00 for 2 units, materialized over four weeks."""
    store = TemplateStore(session)
    await store.create_template(patient_id, effective_date=START)
    week = (await store.get_template_with_weeks(patient_id)).weeks[0].week
    await store.add_event(
        week.id,
        WEDNESDAY,
        time(9),
        time(11),
        authorization_id=authorization_id,
        staff_id=staff_id,
        planned_units=2,
    )

    summary = await ScheduleMaterializer(session).generate(patient_id, END, today=START)
    assert summary.created == 4
    assert summary.failures == []

    return await OccurrenceService(session).list_events(patient_id, START, END)


async def _complete(manager: VisitLifecycleManager, occurrence) -> None:
    delivery = await manager.create_delivery(occurrence.id)
    await manager.record_check_in(
        delivery.id, HOME, occurred_at=occurrence.start_at, reference=HOME
    )
    await manager.record_check_out(delivery.id, HOME, occurred_at=occurrence.end_at, reference=HOME)
    assert await manager.status(delivery.id) == VisitStatus.COMPLETED


@pytest.mark.asyncio
async def test_four_completed_visits_consume_eight_units(
    db_session, patient_id, staff_id, make_authorization
):
    authorization = await make_authorization(patient_id, max_units=10)
    occurrences = await _weekly_visits(db_session, patient_id, staff_id, authorization.id)

    assert [o.event_date for o in occurrences] == [
        date(2025, 1, 8),
        date(2025, 1, 15),
        date(2025, 1, 22),
        date(2025, 1, 29),
    ]

    manager = VisitLifecycleManager(db_session)
    for occurrence in occurrences:
        await _complete(manager, occurrence)
    await db_session.commit()

    ledger = AuthorizationLedger(db_session)
    balance = await ledger.balance(authorization.id)
    assert await ledger.remaining_units(authorization.id) == Decimal("2")
    assert balance.total_used == Decimal("8")
    assert not balance.is_overdrawn
    assert authorization.total_used == Decimal("8")
    assert all(o.status == OccurrenceStatus.COMPLETED.value for o in occurrences)


@pytest.mark.asyncio
async def test_cancelled_visit_is_reported_as_missed(
    db_session, patient_id, staff_id, make_authorization
):
    authorization = await make_authorization(patient_id, max_units=10)
    first, second, *rest = await _weekly_visits(
        db_session, patient_id, staff_id, authorization.id
    )

    manager = VisitLifecycleManager(db_session)
    await _complete(manager, first)
    cancelled = await manager.create_delivery(second.id)
    await manager.cancel(cancelled.id, "Patient in hospital", staff_id)
    await db_session.commit()

    balance = await AuthorizationLedger(db_session).balance(authorization.id)
    assert balance.total_used == Decimal("2")
    assert balance.total_missed == Decimal("2")
    assert balance.total_remaining == Decimal("8")
    assert [o.status for o in rest] == [OccurrenceStatus.PLANNED.value] * 2
