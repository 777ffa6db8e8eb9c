"""Tests for careroster.web.routes.schedules."""

from uuid import uuid4

import pytest


@pytest.fixture
def weekly_patient(client):
    """Patient with a Wednesday 09:00-11:00 slot anchored on Monday 2025-01-06."""
    patient_id = str(uuid4())
    template = client.post(
        "/api/templates", json={"patient_id": patient_id, "effective_date": "2025-01-06"}
    ).json()
    client.post(
        f"/api/templates/weeks/{template['weeks'][0]['id']}/events",
        json={
            "weekdays": [3],
            "start_time": "09:00:00",
            "end_time": "11:00:00",
            "planned_units": 2,
        },
    )
    return patient_id


def test_generate_is_idempotent(client, weekly_patient):
    payload = {"end_date": "2025-02-02", "today": "2025-01-06"}

    first = client.post(f"/api/schedules/patients/{weekly_patient}/generate", json=payload)
    second = client.post(f"/api/schedules/patients/{weekly_patient}/generate", json=payload)

    assert first.status_code == 200
    assert first.json()["created"] == 4
    assert first.json()["generated_through"] == "2025-02-02"
    assert second.json()["created"] == 0
    events = client.get(
        f"/api/schedules/patients/{weekly_patient}/events",
        params={"date_from": "2025-01-06", "date_to": "2025-02-02"},
    ).json()
    assert [e["event_date"] for e in events] == [
        "2025-01-08",
        "2025-01-15",
        "2025-01-22",
        "2025-01-29",
    ]


def test_generate_without_template_is_not_found(client):
    response = client.post(
        f"/api/schedules/patients/{uuid4()}/generate", json={"end_date": "2025-02-02"}
    )

    assert response.status_code == 404


def test_generate_all(client, weekly_patient):
    response = client.post(
        "/api/schedules/generate-all", json={"end_date": "2025-01-12", "today": "2025-01-06"}
    )

    assert response.status_code == 200
    assert response.json()["patients"] == 1
    assert response.json()["created"] == 1


def test_ad_hoc_occurrence_conflicts_and_status(client):
    patient_id = str(uuid4())
    staff_id = str(uuid4())
    visit = {
        "patient_id": patient_id,
        "staff_id": staff_id,
        "start_at": "2025-01-08T09:00:00",
        "end_at": "2025-01-08T11:00:00",
    }

    created = client.post("/api/schedules/events", json=visit)
    clash = client.post(
        "/api/schedules/events",
        json={**visit, "patient_id": str(uuid4()), "start_at": "2025-01-08T10:00:00",
              "end_at": "2025-01-08T12:00:00"},
    )
    check = client.post(
        "/api/schedules/conflicts",
        json={"patient_id": str(uuid4()), "staff_id": staff_id,
              "start_at": "2025-01-08T11:00:00", "end_at": "2025-01-08T12:00:00"},
    )

    assert created.status_code == 201
    assert clash.status_code == 409
    assert check.json() == {"has_conflicts": False, "conflicts": []}

    event_id = created.json()["id"]
    cancelled = client.patch(f"/api/schedules/events/{event_id}/status", json={"status": "cancelled"})
    reopened = client.patch(f"/api/schedules/events/{event_id}/status", json={"status": "planned"})

    assert cancelled.json()["status"] == "cancelled"
    assert reopened.status_code == 422
    staff_events = client.get(
        f"/api/schedules/staff/{staff_id}/events",
        params={"date_from": "2025-01-08", "date_to": "2025-01-08"},
    ).json()
    assert [e["id"] for e in staff_events] == [event_id]


def test_unknown_status_rejected_by_request_validation(client):
    response = client.patch(f"/api/schedules/events/{uuid4()}/status", json={"status": "done"})

    assert response.status_code == 422


def test_ad_hoc_occurrence_with_offset_is_stored_as_utc(client):
    patient_id = str(uuid4())

    created = client.post(
        "/api/schedules/events",
        json={
            "patient_id": patient_id,
            "start_at": "2025-01-08T10:00:00+01:00",
            "end_at": "2025-01-08T12:00:00+01:00",
        },
    )
    clash = client.post(
        "/api/schedules/events",
        json={
            "patient_id": patient_id,
            "start_at": "2025-01-08T10:30:00",
            "end_at": "2025-01-08T11:30:00",
        },
    )

    assert created.status_code == 201
    assert created.json()["start_at"] == "2025-01-08T09:00:00"
    assert created.json()["end_at"] == "2025-01-08T11:00:00"
    assert clash.status_code == 409
