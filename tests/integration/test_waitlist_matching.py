"""Offering freed and new slots to waitlisted patients."""

import uuid
from datetime import datetime, time, timedelta

import pytest
import pytest_asyncio

from hospital_scheduling.core.clock import as_aware, to_utc, utcnow
from hospital_scheduling.modules.appointments.service import AppointmentService
from hospital_scheduling.modules.availability.repository import AvailabilityRepository
from hospital_scheduling.modules.availability.service import SlotGenerator
from hospital_scheduling.modules.events.outbox import OutboxRepository
from hospital_scheduling.modules.waitlist.repository import WaitlistRepository
from hospital_scheduling.modules.waitlist.schemas import WaitlistCreate
from hospital_scheduling.modules.waitlist.service import WaitlistMatcher


async def enlist(session, hospital_id, doctor_id, **kw):
    kw.setdefault("patient_id", uuid.uuid4())
    return await WaitlistMatcher(session).create_entry(hospital_id, WaitlistCreate(doctor_id=doctor_id, **kw))


async def status_of(session, hospital_id, entry):
    return (await WaitlistRepository(session).get_entry(hospital_id, entry.id)).status


@pytest.fixture
def monday(monday):
    # far enough out that "a day later" is still before the slot starts
    return monday + timedelta(weeks=1)


@pytest_asyncio.fixture
async def booked(clinic, doctor_id, monday):
    """A 10:00 appointment whose cancellation frees one slot."""
    await clinic.open_day(doctor_id, monday)
    reservation, _ = await clinic.book(doctor_id, monday, "10:00")
    return reservation


class TestOfferOnCancellation:
    @pytest.mark.asyncio
    async def test_most_urgent_entry_gets_the_offer(self, session, hospital_id, doctor_id, booked):
        low = await enlist(session, hospital_id, doctor_id, urgency_level=2)
        top = await enlist(session, hospital_id, doctor_id, urgency_level=5)
        mid = await enlist(session, hospital_id, doctor_id, urgency_level=3, contact_method="sms")

        await AppointmentService(session).cancel(hospital_id, booked.appointment_id, "patient request")

        entry = await WaitlistRepository(session).get_entry(hospital_id, top.id)
        assert entry.status == "notified"
        assert entry.offered_slot_id == booked.slot_ids[0]
        assert await status_of(session, hospital_id, low) == "active"
        assert await status_of(session, hospital_id, mid) == "active"

        events = await OutboxRepository(session).list_by_type(hospital_id, "WAITLIST_OFFER")
        assert len(events) == 1
        payload = events[0].payload
        assert payload["waitlistEntryId"] == str(top.id)
        assert payload["slotId"] == str(booked.slot_ids[0])
        assert payload["contactMethod"] == "phone"
        assert "expiresAt" in payload

    @pytest.mark.asyncio
    async def test_offer_expiry_capped_by_notice(self, session, hospital_id, doctor_id, booked):
        entry = await enlist(session, hospital_id, doctor_id, max_notice_hours=2)
        before = utcnow()
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)

        entry = await WaitlistRepository(session).get_entry(hospital_id, entry.id)
        assert as_aware(entry.expires_at) <= before + timedelta(hours=2, minutes=1)

    @pytest.mark.asyncio
    async def test_one_outstanding_offer_per_slot(self, session, hospital_id, doctor_id, booked):
        first = await enlist(session, hospital_id, doctor_id)
        second = await enlist(session, hospital_id, doctor_id)
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)

        again = await WaitlistMatcher(session).on_slot_freed(hospital_id, booked.slot_ids[0])
        assert again is None
        assert await status_of(session, hospital_id, first) == "notified"
        assert await status_of(session, hospital_id, second) == "active"

    @pytest.mark.asyncio
    async def test_preferred_times_filter(self, session, hospital_id, doctor_id, booked):
        afternoon = await enlist(session, hospital_id, doctor_id, preferred_times=["14:00"])
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)

        assert await status_of(session, hospital_id, afternoon) == "active"
        slot = await AvailabilityRepository(session).get_slot(hospital_id, booked.slot_ids[0])
        assert slot.state == "free"

    @pytest.mark.asyncio
    async def test_other_doctor_entries_ignored(self, session, hospital_id, doctor_id, booked):
        elsewhere = await enlist(session, hospital_id, uuid.uuid4(), urgency_level=5)
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)
        assert await status_of(session, hospital_id, elsewhere) == "active"

    @pytest.mark.asyncio
    async def test_auto_book_within_notice(self, session, hospital_id, doctor_id, booked):
        entry = await enlist(session, hospital_id, doctor_id, auto_book=True, max_notice_hours=24 * 30)
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)

        entry = await WaitlistRepository(session).get_entry(hospital_id, entry.id)
        assert entry.status == "booked"
        slot = await AvailabilityRepository(session).get_slot(hospital_id, booked.slot_ids[0])
        assert slot.state == "booked"
        assert slot.appointment_id == entry.booked_appointment_id
        assert len(await OutboxRepository(session).list_by_type(hospital_id, "WAITLIST_BOOKED")) == 1


class TestOfferResponses:
    @pytest.mark.asyncio
    async def test_confirm_books_the_slot(self, session, hospital_id, doctor_id, booked):
        entry = await enlist(session, hospital_id, doctor_id)
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)

        reservation, conflicts, err = await WaitlistMatcher(session).confirm_offer(hospital_id, entry.id)
        assert err is None and conflicts == []
        assert reservation.slot_ids == booked.slot_ids

        entry = await WaitlistRepository(session).get_entry(hospital_id, entry.id)
        assert entry.status == "booked"
        assert entry.booked_appointment_id == reservation.appointment_id
        offers = await WaitlistRepository(session).offers_for_entry(hospital_id, entry.id)
        assert [o.status for o in offers] == ["accepted"]

    @pytest.mark.asyncio
    async def test_decline_moves_offer_down_the_queue(self, session, hospital_id, doctor_id, booked):
        top = await enlist(session, hospital_id, doctor_id, urgency_level=5)
        nxt = await enlist(session, hospital_id, doctor_id, urgency_level=4)
        matcher = WaitlistMatcher(session)
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)

        entry, err = await matcher.decline_offer(hospital_id, top.id)
        assert err is None
        assert entry.status == "active"
        assert await status_of(session, hospital_id, nxt) == "notified"

        # the slot is never offered back to an entry that already saw it
        await matcher.decline_offer(hospital_id, nxt.id)
        assert await status_of(session, hospital_id, top) == "active"
        assert await status_of(session, hospital_id, nxt) == "active"
        slot = await AvailabilityRepository(session).get_slot(hospital_id, booked.slot_ids[0])
        assert slot.state == "free"

    @pytest.mark.asyncio
    async def test_confirm_after_expiry(self, session, hospital_id, doctor_id, booked):
        first = await enlist(session, hospital_id, doctor_id, urgency_level=5)
        second = await enlist(session, hospital_id, doctor_id, urgency_level=1)
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)

        later = utcnow() + timedelta(hours=25)
        reservation, _, err = await WaitlistMatcher(session).confirm_offer(hospital_id, first.id, now=later)
        assert reservation is None
        assert err == "offer_expired"
        assert await status_of(session, hospital_id, first) == "expired"
        assert await status_of(session, hospital_id, second) == "notified"

    @pytest.mark.asyncio
    async def test_confirm_when_slot_taken(self, clinic, session, hospital_id, doctor_id, monday, booked):
        entry = await enlist(session, hospital_id, doctor_id)
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)
        # offers are not holds
        _, conflicts = await clinic.book(doctor_id, monday, "10:00")
        assert conflicts == []

        _, _, err = await WaitlistMatcher(session).confirm_offer(hospital_id, entry.id)
        assert err == "slot_unavailable"
        assert await status_of(session, hospital_id, entry) == "active"

    @pytest.mark.asyncio
    async def test_cancelling_notified_entry_reoffers(self, session, hospital_id, doctor_id, booked):
        first = await enlist(session, hospital_id, doctor_id, urgency_level=5)
        second = await enlist(session, hospital_id, doctor_id)
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)

        entry, err = await WaitlistMatcher(session).cancel_entry(hospital_id, first.id)
        assert err is None and entry.status == "cancelled"
        assert await status_of(session, hospital_id, second) == "notified"

    @pytest.mark.asyncio
    async def test_respond_without_offer(self, session, hospital_id, doctor_id):
        entry = await enlist(session, hospital_id, doctor_id)
        matcher = WaitlistMatcher(session)
        _, _, err = await matcher.confirm_offer(hospital_id, entry.id)
        assert err == "invalid_transition"
        _, err = await matcher.decline_offer(hospital_id, uuid.uuid4())
        assert err == "not_found"


class TestSweep:
    @pytest.mark.asyncio
    async def test_expired_offer_goes_to_next_entry(self, session, hospital_id, doctor_id, booked):
        first = await enlist(session, hospital_id, doctor_id, urgency_level=5)
        second = await enlist(session, hospital_id, doctor_id, urgency_level=2)
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)

        result = await WaitlistMatcher(session).sweep_expired(hospital_id, now=utcnow() + timedelta(hours=25))
        assert (result.expired_offers, result.reoffered) == (1, 1)
        assert await status_of(session, hospital_id, first) == "expired"
        assert await status_of(session, hospital_id, second) == "notified"
        assert len(await OutboxRepository(session).list_by_type(hospital_id, "WAITLIST_OFFER_EXPIRED")) == 1

    @pytest.mark.asyncio
    async def test_nothing_to_sweep(self, session, hospital_id, doctor_id, booked):
        await enlist(session, hospital_id, doctor_id)
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)
        result = await WaitlistMatcher(session).sweep_expired(hospital_id)
        assert result.expired_offers == 0

    @pytest.mark.asyncio
    async def test_lapsed_preferences_expire(self, session, hospital_id, doctor_id):
        today = utcnow().date()
        stale = await enlist(session, hospital_id, doctor_id, preferred_date_start=today - timedelta(days=5), preferred_date_end=today - timedelta(days=1))
        fresh = await enlist(session, hospital_id, doctor_id)

        result = await WaitlistMatcher(session).sweep_expired(hospital_id)
        assert result.expired_entries == 1
        assert await status_of(session, hospital_id, stale) == "expired"
        assert await status_of(session, hospital_id, fresh) == "active"


class TestNewSlots:
    @pytest.mark.asyncio
    async def test_generated_slots_are_offered(self, clinic, session, hospital_id, doctor_id, monday):
        entry = await enlist(session, hospital_id, doctor_id)
        await clinic.window(doctor_id, monday, "09:00", "10:00")
        result = await SlotGenerator(session).generate_slots(hospital_id, doctor_id, monday)

        entry = await WaitlistRepository(session).get_entry(hospital_id, entry.id)
        assert entry.status == "notified"
        assert entry.offered_slot_id == result.created_ids[0]


class TestOfferTiming:
    @pytest.mark.asyncio
    async def test_started_slot_is_not_offered(self, session, hospital_id, doctor_id, monday, booked):
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)
        entry = await enlist(session, hospital_id, doctor_id)
        slot_start = to_utc(datetime.combine(monday, time(10, 0)))

        match = await WaitlistMatcher(session).on_slot_freed(hospital_id, booked.slot_ids[0], now=slot_start + timedelta(minutes=5))

        assert match is None
        assert await status_of(session, hospital_id, entry) == "active"
        assert await OutboxRepository(session).list_by_type(hospital_id, "WAITLIST_OFFER") == []

    @pytest.mark.asyncio
    async def test_started_slot_is_not_auto_booked(self, session, hospital_id, doctor_id, monday, booked):
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)
        entry = await enlist(session, hospital_id, doctor_id, auto_book=True, max_notice_hours=24 * 30)
        slot_start = to_utc(datetime.combine(monday, time(10, 0)))

        assert await WaitlistMatcher(session).on_slot_freed(hospital_id, booked.slot_ids[0], now=slot_start) is None
        assert await status_of(session, hospital_id, entry) == "active"

    @pytest.mark.asyncio
    async def test_offer_expires_no_later_than_slot_start(self, session, hospital_id, doctor_id, monday, booked):
        await AppointmentService(session).cancel(hospital_id, booked.appointment_id)
        entry = await enlist(session, hospital_id, doctor_id, max_notice_hours=72)
        slot_start = to_utc(datetime.combine(monday, time(10, 0)))

        match = await WaitlistMatcher(session).on_slot_freed(hospital_id, booked.slot_ids[0], now=slot_start - timedelta(hours=1))

        assert match.outcome == "notified"
        assert match.expires_at == slot_start
        entry = await WaitlistRepository(session).get_entry(hospital_id, entry.id)
        assert as_aware(entry.expires_at) == slot_start
