"""Check-and-reserve: conflict collection, buffers, closures and concurrent bookings."""

import asyncio
import uuid
from datetime import datetime, time, timedelta

import pytest
from sqlalchemy import select

from hospital_scheduling.modules.appointments.repository import AppointmentRepository
from hospital_scheduling.modules.availability.repository import AvailabilityRepository
from hospital_scheduling.modules.events.outbox import OutboxRepository
from hospital_scheduling.modules.scheduling.models import SchedulingLedger
from hospital_scheduling.modules.scheduling.resolver import ConflictResolver
from hospital_scheduling.modules.scheduling.schemas import ClosureCreate
from hospital_scheduling.modules.scheduling.service import SchedulingService


def types(conflicts):
    return sorted(c.type for c in conflicts)


class TestReserve:
    @pytest.mark.asyncio
    async def test_books_slot_and_writes_event(self, clinic, session, hospital_id, doctor_id, monday):
        await clinic.open_day(doctor_id, monday)
        reservation, conflicts = await clinic.book(doctor_id, monday, "10:00")

        assert conflicts == []
        assert reservation.start_at == datetime.combine(monday, time(10, 0))
        appt = await AppointmentRepository(session).get(hospital_id, reservation.appointment_id)
        assert appt.status == "confirmed"

        slots = await AvailabilityRepository(session).slots_for_appointment(hospital_id, appt.id)
        assert [s.id for s in slots] == reservation.slot_ids
        assert all(s.state == "booked" for s in slots)

        events = await OutboxRepository(session).list_by_type(hospital_id, "APPT_BOOKED")
        assert [e.subject_id for e in events] == [str(appt.id)]

    @pytest.mark.asyncio
    async def test_multi_slot_booking_claims_every_covering_slot(self, clinic, doctor_id, monday):
        await clinic.open_day(doctor_id, monday)
        reservation, conflicts = await clinic.book(doctor_id, monday, "09:00", minutes=60)
        assert conflicts == []
        assert len(reservation.slot_ids) == 2

    @pytest.mark.asyncio
    async def test_booked_slot_is_a_conflict(self, clinic, doctor_id, monday):
        await clinic.open_day(doctor_id, monday)
        first, _ = await clinic.book(doctor_id, monday, "09:00")
        second, conflicts = await clinic.book(doctor_id, monday, "09:00")

        assert second is None
        assert types(conflicts) == ["doctor_unavailable"]
        assert conflicts[0].conflicting_appointment_id == first.appointment_id

    @pytest.mark.asyncio
    async def test_outside_availability(self, clinic, doctor_id, monday):
        await clinic.open_day(doctor_id, monday, "09:00", "10:00")
        _, conflicts = await clinic.book(doctor_id, monday, "09:30", minutes=60)
        assert types(conflicts) == ["doctor_unavailable"]

    @pytest.mark.asyncio
    async def test_no_slots_generated(self, clinic, doctor_id, monday):
        _, conflicts = await clinic.book(doctor_id, monday, "09:00")
        assert types(conflicts) == ["doctor_unavailable"]

    @pytest.mark.asyncio
    async def test_check_does_not_write(self, clinic, session, hospital_id, doctor_id, monday):
        await clinic.open_day(doctor_id, monday)
        conflicts = await ConflictResolver(session).check(hospital_id, clinic.request(doctor_id, monday, "09:00"))
        assert conflicts == []
        assert list(await AppointmentRepository(session).list(hospital_id, doctor_id=doctor_id)) == []


class TestBuffers:
    @pytest.mark.asyncio
    async def test_buffer_rejects_booking_too_close(self, clinic, doctor_id, monday):
        await clinic.open_day(doctor_id, monday, "09:00", "12:00", 5)
        await clinic.rule(doctor_id=doctor_id, buffer_before_minutes=10, buffer_after_minutes=10)

        first, conflicts = await clinic.book(doctor_id, monday, "10:00")
        assert conflicts == []
        _, conflicts = await clinic.book(doctor_id, monday, "10:35", minutes=25)

        assert types(conflicts) == ["buffer_violation"]
        assert conflicts[0].conflicting_appointment_id == first.appointment_id

    @pytest.mark.asyncio
    async def test_buffer_clear_booking_succeeds(self, clinic, doctor_id, monday):
        await clinic.open_day(doctor_id, monday, "09:00", "12:00", 5)
        await clinic.rule(doctor_id=doctor_id, buffer_before_minutes=10, buffer_after_minutes=10)
        await clinic.book(doctor_id, monday, "10:00")
        # padded ranges 09:50-10:40 and 10:40-11:30 only touch
        reservation, conflicts = await clinic.book(doctor_id, monday, "10:50")
        assert conflicts == []
        assert reservation.buffer_rule_id is not None

    @pytest.mark.asyncio
    async def test_back_to_back_allowed_without_rules(self, clinic, doctor_id, monday):
        await clinic.open_day(doctor_id, monday)
        await clinic.book(doctor_id, monday, "10:00")
        _, conflicts = await clinic.book(doctor_id, monday, "10:30")
        assert conflicts == []

    @pytest.mark.asyncio
    async def test_consecutive_limit(self, clinic, doctor_id, monday):
        await clinic.open_day(doctor_id, monday)
        await clinic.rule(doctor_id=doctor_id, max_consecutive_appointments=2)
        for hhmm in ("09:00", "09:30"):
            _, conflicts = await clinic.book(doctor_id, monday, hhmm)
            assert conflicts == []

        _, conflicts = await clinic.book(doctor_id, monday, "10:00")
        assert types(conflicts) == ["buffer_violation"]
        _, conflicts = await clinic.book(doctor_id, monday, "10:30")
        assert conflicts == []

    @pytest.mark.asyncio
    async def test_existing_appointment_keeps_its_buffer_snapshot(self, clinic, session, hospital_id, doctor_id, monday):
        await clinic.open_day(doctor_id, monday, "09:00", "12:00", 5)
        rule = await clinic.rule(doctor_id=doctor_id, buffer_after_minutes=30)
        await clinic.book(doctor_id, monday, "10:00")

        rule.is_active = False
        await session.commit()
        # the 10:00 booking still blocks until 11:00
        _, conflicts = await clinic.book(doctor_id, monday, "10:45", minutes=15)
        assert types(conflicts) == ["buffer_violation"]


class TestClosures:
    @pytest.mark.asyncio
    async def test_hospital_closure_blocks_every_doctor(self, clinic, session, hospital_id, doctor_id, monday):
        await clinic.open_day(doctor_id, monday)
        await SchedulingService(session).create_closure(hospital_id, ClosureCreate(closure_date=monday, reason="Founders day"))

        _, conflicts = await clinic.book(doctor_id, monday, "09:00")
        assert types(conflicts) == ["holiday"]
        assert "Founders day" in conflicts[0].description

    @pytest.mark.asyncio
    async def test_doctor_closure_only_blocks_that_doctor(self, clinic, session, hospital_id, doctor_id, monday):
        other = uuid.uuid4()
        await clinic.open_day(doctor_id, monday)
        await clinic.open_day(other, monday)
        await SchedulingService(session).create_closure(hospital_id, ClosureCreate(closure_date=monday, doctor_id=doctor_id))

        _, conflicts = await clinic.book(doctor_id, monday, "09:00")
        assert types(conflicts) == ["holiday"]
        _, conflicts = await clinic.book(other, monday, "09:00")
        assert conflicts == []

    @pytest.mark.asyncio
    async def test_all_conflicts_reported_together(self, clinic, session, hospital_id, doctor_id, monday):
        await clinic.open_day(doctor_id, monday)
        await clinic.book(doctor_id, monday, "09:00")
        await SchedulingService(session).create_closure(hospital_id, ClosureCreate(closure_date=monday))
        room = await clinic.resource(is_active=False)

        _, conflicts = await clinic.book(doctor_id, monday, "09:00", required_resources=[room.id])
        assert types(conflicts) == ["doctor_unavailable", "holiday", "resource_conflict"]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_only_one_of_many_concurrent_bookings_wins(self, clinic, session_factory, hospital_id, doctor_id, monday):
        await clinic.open_day(doctor_id, monday)

        async def attempt():
            async with session_factory() as s:
                return await ConflictResolver(s).check_and_reserve(hospital_id, clinic.request(doctor_id, monday, "11:00"))

        outcomes = await asyncio.gather(*[attempt() for _ in range(5)])

        winners = [r for r, conflicts in outcomes if r is not None]
        assert len(winners) == 1
        for r, conflicts in outcomes:
            if r is None:
                assert types(conflicts) == ["doctor_unavailable"]

        async with session_factory() as s:
            slots = await AvailabilityRepository(s).slots_for_appointment(hospital_id, winners[0].appointment_id)
            assert len(slots) == 1
            booked = await AppointmentRepository(s).list(hospital_id, doctor_id=doctor_id, status="confirmed")
            assert len(booked) == 1

    @pytest.mark.asyncio
    async def test_concurrent_bookings_for_shared_resource(self, clinic, session_factory, hospital_id, monday):
        doctors = [uuid.uuid4(), uuid.uuid4()]
        for d in doctors:
            await clinic.open_day(d, monday)
        room = await clinic.resource(name="Theatre A")

        async def attempt(d):
            async with session_factory() as s:
                req = clinic.request(d, monday, "09:00", required_resources=[room.id])
                return await ConflictResolver(s).check_and_reserve(hospital_id, req)

        outcomes = await asyncio.gather(*[attempt(d) for d in doctors])
        assert sum(1 for r, _ in outcomes if r is not None) == 1
        losing = [c for r, c in outcomes if r is None][0]
        assert types(losing) == ["resource_conflict"]

    @pytest.mark.asyncio
    async def test_buffer_past_midnight_claims_next_day(self, clinic, session, hospital_id, doctor_id, monday):
        await clinic.open_day(doctor_id, monday, "21:00", "23:30")
        await clinic.rule(doctor_id=doctor_id, buffer_after_minutes=60)

        async def doctor_versions():
            rows = await session.execute(select(SchedulingLedger.ledger_date, SchedulingLedger.version).where(
                SchedulingLedger.hospital_id == hospital_id,
                SchedulingLedger.scope == "doctor",
                SchedulingLedger.subject_id == doctor_id,
            ))
            return dict(rows.all())

        _, conflicts = await clinic.book(doctor_id, monday, "21:00")
        assert conflicts == []
        assert monday + timedelta(days=1) not in await doctor_versions()

        # padded to 00:30 tomorrow
        _, conflicts = await clinic.book(doctor_id, monday, "23:00")
        assert conflicts == []
        versions = await doctor_versions()
        assert versions[monday + timedelta(days=1)] == 2

    @pytest.mark.asyncio
    async def test_concurrent_bookings_either_side_of_midnight(self, clinic, session_factory, hospital_id, doctor_id, monday):
        tuesday = monday + timedelta(days=1)
        await clinic.open_day(doctor_id, monday, "22:00", "23:30")
        await clinic.open_day(doctor_id, tuesday, "00:00", "02:00")
        await clinic.rule(doctor_id=doctor_id, buffer_after_minutes=60)

        async def attempt(day, hhmm):
            async with session_factory() as s:
                return await ConflictResolver(s).check_and_reserve(hospital_id, clinic.request(doctor_id, day, hhmm))

        outcomes = await asyncio.gather(attempt(monday, "23:00"), attempt(tuesday, "00:00"))

        assert sum(1 for r, _ in outcomes if r is not None) == 1
        losing = [c for r, c in outcomes if r is None][0]
        assert types(losing) == ["buffer_violation"]
