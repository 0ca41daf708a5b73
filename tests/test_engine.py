"""End-to-end allocation, waitlist promotion and offer expiry through the engine."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from evbooking.errors import InvalidTransition, InvalidWindow, NotFound, OfferExpired, SlotConflict
from evbooking.events import (
    BookingConfirmed,
    OfferExpired as OfferExpiredEvent,
    SlotOffered,
    SlotReleased,
    WaitlistPositionChanged,
)
from evbooking.lifecycle import RequestState
from evbooking.schemas.allocation_schema import AllocationStatus
from evbooking.schemas.booking_schema import BookingStatus, SlotState
from evbooking.schemas.station_schema import ChargingLevel
from evbooking.schemas.waitlist_schema import WaitlistStatus
from tests.conftest import DAY, START, make_request


@pytest.fixture
def full_slot(engine):
    """S1-1 14:00-15:00 booked by driver-a, driver-b (soc 50) then driver-c (soc 5) waiting."""
    first = engine.request_slot(make_request("driver-a", soc=50))
    calm = engine.request_slot(make_request("driver-b", soc=50))
    urgent = engine.request_slot(make_request("driver-c", soc=5))
    return first.booking, calm.entry, urgent.entry


class TestRequestSlot:
    def test_free_slot_is_confirmed(self, engine, recorder):
        result = engine.request_slot(make_request())
        assert result.status == AllocationStatus.CONFIRMED
        assert result.booking.slot.slot_id == "S1-1"
        assert str(result.booking.slot.window) == "14:00-15:00"
        assert len(recorder.of_type(BookingConfirmed)) == 1

    def test_full_slot_is_waitlisted(self, engine):
        engine.request_slot(make_request("driver-a"))
        result = engine.request_slot(make_request("driver-b"))
        assert result.status == AllocationStatus.WAITLISTED
        assert result.booking is None
        assert result.position == 1
        assert result.entry.status == WaitlistStatus.WAITING

    def test_any_window_request_books_earliest(self, engine):
        request = make_request(station_id="S2", level=ChargingLevel.L2, window=None)
        result = engine.request_slot(request)
        assert str(result.booking.slot.window) == "08:00-09:00"

    def test_lifecycle_tracked(self, engine):
        request = make_request()
        engine.request_slot(request)
        assert engine.request_state(request.request_id) == RequestState.CONFIRMED

    def test_resubmitting_a_request_is_rejected(self, engine):
        request = make_request()
        engine.request_slot(request)
        with pytest.raises(InvalidTransition):
            engine.request_slot(request)

    def test_unknown_station(self, engine):
        with pytest.raises(NotFound):
            engine.request_slot(make_request(station_id="S404"))

    def test_level_not_offered_at_station(self, engine):
        with pytest.raises(NotFound, match="no L2 slots"):
            engine.request_slot(make_request(level=ChargingLevel.L2))

    def test_date_outside_calendar(self, engine):
        with pytest.raises(NotFound):
            engine.request_slot(make_request(day=DAY + timedelta(days=30)))

    def test_off_grid_window(self, engine):
        with pytest.raises(InvalidWindow):
            engine.request_slot(make_request(window=("14:10", "15:00")))

    def test_window_outside_hours(self, engine):
        with pytest.raises(InvalidWindow):
            engine.request_slot(make_request(window=("21:30", "22:30")))

    def test_reversed_window_rejected_at_construction(self):
        with pytest.raises(ValidationError):
            make_request(window=("15:00", "14:00"))

    def test_soc_out_of_range_rejected_at_construction(self):
        with pytest.raises(ValidationError):
            make_request(soc=101)

    def test_unknown_request_state(self, engine):
        with pytest.raises(NotFound):
            engine.request_state("RQ-UNKNOWN")


class TestWaitlistPriority:
    def test_urgent_request_jumps_ahead(self, engine, full_slot):
        _, calm, urgent = full_slot
        assert engine.get_entry(urgent.entry_id).position == 1
        assert engine.get_entry(calm.entry_id).position == 2

    def test_position_change_published_for_displaced_entry(self, engine, recorder):
        engine.request_slot(make_request("driver-a", soc=50))
        calm = engine.request_slot(make_request("driver-b", soc=50)).entry
        recorder.clear()
        engine.request_slot(make_request("driver-c", soc=5))
        changes = {e.entry_id: e for e in recorder.of_type(WaitlistPositionChanged)}
        assert changes[calm.entry_id].old_position == 1
        assert changes[calm.entry_id].new_position == 2

    def test_equal_soc_keeps_arrival_order(self, engine):
        engine.request_slot(make_request("driver-a"))
        first = engine.request_slot(make_request("first", soc=0)).entry
        second = engine.request_slot(make_request("second", soc=0)).entry
        assert engine.get_entry(first.entry_id).position == 1
        assert engine.get_entry(second.entry_id).position == 2

    def test_priority_level_label(self, engine, full_slot):
        _, calm, urgent = full_slot
        assert engine.get_entry(urgent.entry_id).priority_level == "critical"
        assert engine.get_entry(calm.entry_id).priority_level == "low"

    def test_waitlist_view_order(self, engine, full_slot):
        view = engine.waitlist_view("S1", DAY)
        assert [v.requester_id for v in view] == ["driver-c", "driver-b"]
        assert [v.position for v in view] == [1, 2]

    def test_list_entries_by_requester(self, engine, full_slot):
        entries = engine.list_entries("driver-b")
        assert len(entries) == 1
        assert entries[0].position == 2


class TestPromotion:
    def test_cancel_offers_slot_to_head(self, engine, full_slot, recorder):
        booking, calm, urgent = full_slot
        recorder.clear()
        engine.cancel_booking(booking.booking_id)
        offers = recorder.of_type(SlotOffered)
        assert [o.entry_id for o in offers] == [urgent.entry_id]
        assert offers[0].deadline == START + timedelta(minutes=15)
        assert engine.get_entry(urgent.entry_id).status == WaitlistStatus.NOTIFIED
        assert engine.get_entry(calm.entry_id).position == 1

    def test_release_never_auto_books(self, engine, full_slot):
        booking, _, _ = full_slot
        engine.cancel_booking(booking.booking_id)
        active = [b for b in engine.station_bookings("S1", DAY) if b.is_active]
        assert active == []

    def test_offered_slot_shows_as_held(self, engine, full_slot):
        booking, _, _ = full_slot
        engine.cancel_booking(booking.booking_id)
        states = {str(i.window): i.state for i in engine.availability("S1", DAY)}
        assert states["14:00-14:30"] == SlotState.HELD
        assert states["14:30-15:00"] == SlotState.HELD

    def test_held_slot_blocks_new_requests(self, engine, full_slot):
        booking, _, _ = full_slot
        engine.cancel_booking(booking.booking_id)
        result = engine.request_slot(make_request("driver-d", soc=1))
        assert result.status == AllocationStatus.WAITLISTED

    def test_confirm_offer_books(self, engine, full_slot):
        booking, _, urgent = full_slot
        engine.cancel_booking(booking.booking_id)
        result = engine.confirm_offer(urgent.entry_id)
        assert result.status == AllocationStatus.CONFIRMED
        assert result.booking.requester_id == "driver-c"
        assert result.entry.status == WaitlistStatus.CONVERTED
        assert result.entry.booking_id == result.booking.booking_id
        assert engine.request_state(urgent.request.request_id) == RequestState.CONFIRMED
        assert engine.request_state(booking.request.request_id) == RequestState.CANCELLED

    def test_confirm_twice_rejected(self, engine, full_slot):
        booking, _, urgent = full_slot
        engine.cancel_booking(booking.booking_id)
        engine.confirm_offer(urgent.entry_id)
        with pytest.raises(InvalidTransition):
            engine.confirm_offer(urgent.entry_id)

    def test_confirm_without_offer_rejected(self, engine, full_slot):
        _, calm, _ = full_slot
        with pytest.raises(InvalidTransition):
            engine.confirm_offer(calm.entry_id)

    def test_confirm_unknown_entry(self, engine):
        with pytest.raises(NotFound):
            engine.confirm_offer("WL-NOPE00")

    def test_level_mismatch_skipped(self, engine, recorder):
        for name in ("l2-a", "l2-b"):
            engine.request_slot(make_request(
                name, station_id="S2", level=ChargingLevel.L2, window=("08:00", "09:00")
            ))
        fast = engine.request_slot(make_request(
            "l3-a", station_id="S2", level=ChargingLevel.L3, window=("08:00", "09:00")
        )).booking
        slow_waiter = engine.request_slot(make_request(
            "l2-urgent", soc=2, station_id="S2", level=ChargingLevel.L2, window=("08:00", "09:00")
        )).entry
        fast_waiter = engine.request_slot(make_request(
            "l3-calm", soc=90, station_id="S2", level=ChargingLevel.L3, window=("08:00", "09:00")
        )).entry
        recorder.clear()
        engine.cancel_booking(fast.booking_id)
        assert [o.entry_id for o in recorder.of_type(SlotOffered)] == [fast_waiter.entry_id]
        assert engine.get_entry(slow_waiter.entry_id).status == WaitlistStatus.WAITING

    def test_partial_windows_offered_to_several_entries(self, engine, recorder):
        wide = engine.request_slot(make_request("driver-a", window=("14:00", "16:00"))).booking
        early = engine.request_slot(make_request("early", soc=30, window=("14:00", "15:00"))).entry
        late = engine.request_slot(make_request("late", soc=40, window=("15:00", "16:00"))).entry
        recorder.clear()
        engine.cancel_booking(wide.booking_id)
        offered = {o.entry_id: str(o.slot.window) for o in recorder.of_type(SlotOffered)}
        assert offered == {early.entry_id: "14:00-15:00", late.entry_id: "15:00-16:00"}

    def test_each_entry_gets_one_offer(self, engine, recorder):
        first = engine.request_slot(make_request("driver-a", window=("14:00", "15:00"))).booking
        second = engine.request_slot(make_request("driver-b", window=("16:00", "17:00"))).booking
        anytime = engine.request_slot(make_request("anytime", soc=10, window=None))
        assert anytime.status == AllocationStatus.CONFIRMED
        engine.request_slot(make_request("w1", soc=10, window=("14:00", "15:00")))
        engine.request_slot(make_request("w2", soc=20, window=("16:00", "17:00")))
        recorder.clear()
        engine.cancel_booking(first.booking_id)
        engine.cancel_booking(second.booking_id)
        offers = recorder.of_type(SlotOffered)
        assert len({o.entry_id for o in offers}) == len(offers) == 2

    def test_partial_release_offers_whole_wanted_window(self, engine, recorder):
        short = engine.request_slot(make_request("driver-a", window=("14:00", "14:30"))).booking
        waiter = engine.request_slot(make_request("waiter", soc=5, window=("14:00", "15:00"))).entry
        recorder.clear()
        engine.cancel_booking(short.booking_id)
        offers = recorder.of_type(SlotOffered)
        assert [o.entry_id for o in offers] == [waiter.entry_id]
        assert str(offers[0].slot.window) == "14:00-15:00"
        latecomer = engine.request_slot(make_request("latecomer", soc=99, window=("14:00", "15:00")))
        assert latecomer.status == AllocationStatus.WAITLISTED

    def test_entry_still_partly_blocked_is_not_offered(self, engine, recorder):
        engine.request_slot(make_request("driver-a", window=("14:30", "15:00")))
        short = engine.request_slot(make_request("driver-b", window=("14:00", "14:30"))).booking
        waiter = engine.request_slot(make_request("waiter", soc=5, window=("14:00", "15:00"))).entry
        recorder.clear()
        engine.cancel_booking(short.booking_id)
        assert recorder.of_type(SlotOffered) == []
        assert engine.get_entry(waiter.entry_id).status == WaitlistStatus.WAITING

    def test_release_with_empty_queue_offers_nothing(self, engine, recorder):
        booking = engine.request_slot(make_request()).booking
        engine.cancel_booking(booking.booking_id)
        assert recorder.of_type(SlotOffered) == []
        assert engine.catalog.is_free("S1", "S1-1", DAY, booking.slot.window)


class TestExpiry:
    def test_sweep_expires_and_cascades(self, engine, full_slot, clock, recorder):
        booking, calm, urgent = full_slot
        engine.cancel_booking(booking.booking_id)
        recorder.clear()
        clock.advance(minutes=16)
        expired = engine.sweep_expirations()
        assert [e.entry_id for e in expired] == [urgent.entry_id]
        assert [e.entry_id for e in recorder.of_type(OfferExpiredEvent)] == [urgent.entry_id]
        assert [o.entry_id for o in recorder.of_type(SlotOffered)] == [calm.entry_id]
        assert engine.get_entry(urgent.entry_id).status == WaitlistStatus.EXPIRED
        assert engine.request_state(urgent.request.request_id) == RequestState.EXPIRED

    def test_cascaded_offer_gets_fresh_deadline(self, engine, full_slot, clock, recorder):
        booking, calm, _ = full_slot
        engine.cancel_booking(booking.booking_id)
        clock.advance(minutes=16)
        engine.sweep_expirations()
        entry = engine.get_entry(calm.entry_id)
        assert entry.offer_deadline == clock() + timedelta(minutes=15)

    def test_sweep_before_deadline_is_noop(self, engine, full_slot, clock):
        booking, _, _ = full_slot
        engine.cancel_booking(booking.booking_id)
        clock.advance(minutes=14)
        assert engine.sweep_expirations() == []

    def test_late_confirmation_raises_offer_expired(self, engine, full_slot, clock):
        booking, calm, urgent = full_slot
        engine.cancel_booking(booking.booking_id)
        clock.advance(minutes=16)
        with pytest.raises(OfferExpired) as exc_info:
            engine.confirm_offer(urgent.entry_id)
        assert exc_info.value.entry_id == urgent.entry_id
        assert engine.get_entry(calm.entry_id).status == WaitlistStatus.NOTIFIED

    def test_confirmation_at_exact_deadline_is_late(self, engine, full_slot, clock):
        booking, _, urgent = full_slot
        engine.cancel_booking(booking.booking_id)
        clock.advance(minutes=15)
        with pytest.raises(OfferExpired):
            engine.confirm_offer(urgent.entry_id)

    def test_last_expiry_frees_slot(self, engine, full_slot, clock):
        booking, _, _ = full_slot
        engine.cancel_booking(booking.booking_id)
        clock.advance(minutes=16)
        engine.sweep_expirations()
        clock.advance(minutes=16)
        engine.sweep_expirations()
        assert engine.catalog.is_free("S1", "S1-1", DAY, booking.slot.window)
        assert engine.waitlist_view("S1", DAY) == []

    def test_decline_passes_offer_on(self, engine, full_slot, recorder):
        booking, calm, urgent = full_slot
        engine.cancel_booking(booking.booking_id)
        recorder.clear()
        declined = engine.decline_offer(urgent.entry_id)
        assert declined.status == WaitlistStatus.EXPIRED
        assert recorder.of_type(OfferExpiredEvent)[0].reason == "declined"
        assert [o.entry_id for o in recorder.of_type(SlotOffered)] == [calm.entry_id]

    def test_expired_entry_does_not_rejoin(self, engine, full_slot, clock):
        booking, _, urgent = full_slot
        engine.cancel_booking(booking.booking_id)
        clock.advance(minutes=16)
        engine.sweep_expirations()
        assert urgent.entry_id not in {v.entry_id for v in engine.waitlist_view("S1", DAY)}


class TestReclaimedOffers:
    def test_hold_conflict_stops_offering(self, engine, recorder, monkeypatch):
        booking = engine.request_slot(make_request("driver-a")).booking
        waiter = engine.request_slot(make_request("driver-b")).entry
        monkeypatch.setattr(engine.catalog, "is_free", lambda *args, **kwargs: True)
        recorder.clear()
        offered = engine.on_slot_released(SlotReleased(
            slot=booking.slot.with_state(SlotState.FREE),
            booking_id=booking.booking_id,
            requester_id="driver-a",
        ))
        assert offered == []
        assert recorder.of_type(SlotOffered) == []
        assert engine.get_entry(waiter.entry_id).status == WaitlistStatus.WAITING

    def test_lost_hold_expires_offer_and_reoffers(self, engine, full_slot, recorder):
        booking, calm, urgent = full_slot
        engine.cancel_booking(booking.booking_id)
        engine.ledger.release_hold(engine.get_entry(urgent.entry_id).offered_slot)
        recorder.clear()
        with pytest.raises(OfferExpired):
            engine.confirm_offer(urgent.entry_id)
        assert engine.get_entry(urgent.entry_id).status == WaitlistStatus.EXPIRED
        assert recorder.of_type(OfferExpiredEvent)[0].reason == "reclaimed"
        assert [o.entry_id for o in recorder.of_type(SlotOffered)] == [calm.entry_id]

    def test_foreign_hold_expires_offer(self, engine, full_slot, clock):
        booking, calm, urgent = full_slot
        engine.cancel_booking(booking.booking_id)
        offered_slot = engine.get_entry(urgent.entry_id).offered_slot
        engine.ledger.release_hold(offered_slot)
        engine.ledger.place_hold(offered_slot, "WL-OTHER1", clock() + timedelta(minutes=15))
        with pytest.raises(OfferExpired):
            engine.confirm_offer(urgent.entry_id)
        assert engine.ledger.hold_for(offered_slot).entry_id == "WL-OTHER1"
        assert engine.get_entry(calm.entry_id).status == WaitlistStatus.WAITING
        assert engine.request_state(urgent.request.request_id) == RequestState.EXPIRED

    def test_commit_conflict_expires_offer_and_reoffers(self, engine, full_slot, recorder, monkeypatch):
        booking, calm, urgent = full_slot
        engine.cancel_booking(booking.booking_id)

        def refuse(*args, **kwargs):
            raise SlotConflict("taken")

        monkeypatch.setattr(engine.ledger, "commit", refuse)
        recorder.clear()
        with pytest.raises(OfferExpired):
            engine.confirm_offer(urgent.entry_id)
        assert [o.entry_id for o in recorder.of_type(SlotOffered)] == [calm.entry_id]


class TestRoundTrip:
    def test_book_cancel_rebook(self, engine):
        first = engine.request_slot(make_request("driver-a")).booking
        engine.cancel_booking(first.booking_id)
        again = engine.request_slot(make_request("driver-b"))
        assert again.status == AllocationStatus.CONFIRMED
        assert again.booking.slot.key == first.slot.key

    def test_never_two_active_bookings_on_one_slot(self, engine, full_slot, clock):
        booking, calm, urgent = full_slot
        engine.cancel_booking(booking.booking_id)
        engine.request_slot(make_request("driver-d", window=("14:30", "15:30")))
        engine.confirm_offer(urgent.entry_id)
        active = [b for b in engine.station_bookings("S1", DAY) if b.is_active]
        for i, left in enumerate(active):
            for right in active[i + 1:]:
                assert not left.slot.window.overlaps(right.slot.window)

    def test_complete_and_missed(self, engine):
        first = engine.request_slot(make_request("driver-a")).booking
        second = engine.request_slot(make_request("driver-b", window=("16:00", "17:00"))).booking
        assert engine.complete_booking(first.booking_id).status == BookingStatus.COMPLETED
        assert engine.mark_missed(second.booking_id).status == BookingStatus.MISSED
        assert engine.request_state(first.request.request_id) == RequestState.COMPLETED
        assert engine.request_state(second.request.request_id) == RequestState.MISSED
        with pytest.raises(InvalidTransition):
            engine.complete_booking(second.booking_id)

    def test_list_bookings(self, engine):
        engine.request_slot(make_request("driver-a"))
        assert len(engine.list_bookings("driver-a")) == 1
        assert engine.list_bookings("nobody") == []
