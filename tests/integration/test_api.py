"""HTTP surface, exercised in-process against the test database."""

import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from hospital_scheduling.core.config import settings
from hospital_scheduling.core.db import get_session
from hospital_scheduling.main import app

API = settings.API_PREFIX


@pytest_asyncio.fixture
async def client(session_factory):
    async def _session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def open_day(client, doctor_id, day):
    r = await client.post(f"{API}/availability/windows", json={
        "doctor_id": str(doctor_id), "day_of_week": 1, "start_time": "09:00", "end_time": "10:00", "slot_duration_minutes": 30,
    })
    assert r.status_code == 200, r.text
    r = await client.post(f"{API}/availability/slots/generate", json={"doctor_id": str(doctor_id), "slot_date": day.isoformat()})
    assert r.status_code == 200, r.text
    return r.json()


def booking(doctor_id, day, hhmm="09:00", minutes=30):
    return {"doctor_id": str(doctor_id), "patient_id": str(uuid.uuid4()), "start_at": f"{day.isoformat()}T{hhmm}:00", "duration_minutes": minutes}


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        r = await client.get(f"{API}/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok"}


class TestAvailabilityApi:
    @pytest.mark.asyncio
    async def test_generate_slots(self, client, doctor_id, monday):
        body = await open_day(client, doctor_id, monday)
        assert body["created"] == 2
        assert [s["start_time"] for s in body["slots"]] == ["09:00:00", "09:30:00"]

    @pytest.mark.asyncio
    async def test_invalid_window(self, client, doctor_id):
        r = await client.post(f"{API}/availability/windows", json={
            "doctor_id": str(doctor_id), "day_of_week": 1, "start_time": "10:00", "end_time": "09:00",
        })
        assert r.status_code == 422

    @pytest.mark.asyncio
    async def test_generate_without_window(self, client, doctor_id, monday):
        r = await client.post(f"{API}/availability/slots/generate", json={"doctor_id": str(doctor_id), "slot_date": monday.isoformat()})
        assert r.status_code == 404
        assert r.json()["code"] == "no_availability"


class TestReserveApi:
    @pytest.mark.asyncio
    async def test_reserve_then_conflict(self, client, doctor_id, monday):
        await open_day(client, doctor_id, monday)

        r = await client.post(f"{API}/scheduling/reserve", json=booking(doctor_id, monday))
        assert r.status_code == 201, r.text
        appointment_id = r.json()["appointment_id"]

        r = await client.post(f"{API}/scheduling/reserve", json=booking(doctor_id, monday))
        assert r.status_code == 409
        conflicts = r.json()["conflicts"]
        assert conflicts[0]["type"] == "doctor_unavailable"
        assert conflicts[0]["conflicting_appointment_id"] == appointment_id

        r = await client.post(f"{API}/scheduling/check", json=booking(doctor_id, monday, "09:30"))
        assert r.status_code == 200
        assert r.json() == {"conflicts": []}

    @pytest.mark.asyncio
    async def test_holiday(self, client, doctor_id, monday):
        await open_day(client, doctor_id, monday)
        r = await client.post(f"{API}/scheduling/closures", json={"closure_date": monday.isoformat(), "reason": "Public holiday"})
        assert r.status_code == 200

        r = await client.post(f"{API}/scheduling/reserve", json=booking(doctor_id, monday))
        assert r.status_code == 409
        assert [c["type"] for c in r.json()["conflicts"]] == ["holiday"]

    @pytest.mark.asyncio
    async def test_cancel_and_reschedule(self, client, doctor_id, monday):
        await open_day(client, doctor_id, monday)
        r = await client.post(f"{API}/scheduling/reserve", json=booking(doctor_id, monday))
        appointment_id = r.json()["appointment_id"]

        r = await client.post(f"{API}/appointments/{appointment_id}/reschedule", json={"start_at": f"{monday.isoformat()}T09:30:00"})
        assert r.status_code == 200, r.text
        moved_to = r.json()["appointment_id"]
        r = await client.get(f"{API}/appointments/{appointment_id}")
        assert r.json()["status"] == "rescheduled"

        r = await client.post(f"{API}/appointments/{moved_to}/cancel", json={"reason": "no longer needed"})
        assert r.status_code == 200
        assert r.json()["status"] == "cancelled"
        r = await client.post(f"{API}/appointments/{moved_to}/cancel", json={})
        assert r.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_appointment(self, client):
        r = await client.get(f"{API}/appointments/{uuid.uuid4()}")
        assert r.status_code == 404


class TestWaitlistApi:
    @pytest.mark.asyncio
    async def test_entries_listed_in_rank_order(self, client, doctor_id):
        for urgency in (2, 5, 3):
            r = await client.post(f"{API}/waitlist", json={"patient_id": str(uuid.uuid4()), "doctor_id": str(doctor_id), "urgency_level": urgency})
            assert r.status_code == 200, r.text

        r = await client.get(f"{API}/waitlist", params={"status": "active"})
        assert [e["urgency_level"] for e in r.json()] == [5, 3, 2]

    @pytest.mark.asyncio
    async def test_bad_preferred_time(self, client):
        r = await client.post(f"{API}/waitlist", json={"patient_id": str(uuid.uuid4()), "preferred_times": ["9am"]})
        assert r.status_code == 422

    @pytest.mark.asyncio
    async def test_confirm_unknown_entry(self, client):
        r = await client.post(f"{API}/waitlist/{uuid.uuid4()}/confirm")
        assert r.status_code == 404


class TestRecurringApi:
    @pytest.mark.asyncio
    async def test_create_and_expand(self, client, doctor_id, monday):
        await open_day(client, doctor_id, monday)
        r = await client.post(f"{API}/recurring", json={
            "patient_id": str(uuid.uuid4()),
            "doctor_id": str(doctor_id),
            "pattern_type": "weekly",
            "preferred_time": "09:00",
            "series_start_date": monday.isoformat(),
            "max_occurrences": 2,
        })
        assert r.status_code == 200, r.text
        series_id = r.json()["id"]
        assert r.json()["days_of_week"] == [1]

        r = await client.post(f"{API}/recurring/{series_id}/expand", json={})
        assert r.status_code == 200, r.text
        assert [d["status"] for d in r.json()] == ["booked", "booked"]

        r = await client.get(f"{API}/recurring/{series_id}")
        assert r.json()["status"] == "completed"
