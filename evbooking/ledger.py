"""
Reservation ledger: the authoritative record of bookings and offer holds.

``commit`` is the only operation in the system that needs true mutual
exclusion. It runs as a check-and-set under a lock per (station, slot, date)
so two racing commits for overlapping windows resolve to exactly one
booking. Events are published after the lock is released.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from evbooking.catalog import SlotCatalog
from evbooking.errors import InvalidTransition, NotFound, SlotConflict
from evbooking.events import BookingConfirmed, EventBus, SlotReleased
from evbooking.schemas.booking_schema import (
    Booking,
    BookingStatus,
    ChargeRequest,
    SlotInstance,
    SlotState,
    StatusChange,
)
from evbooking.store import EngineStore, Hold
from evbooking.utils import utc_now

logger = logging.getLogger(__name__)


class ReservationLedger:
    """Bookings and holds keyed by slot instance."""

    def __init__(
        self,
        store: EngineStore,
        catalog: SlotCatalog,
        bus: EventBus,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._bus = bus
        self._clock = clock

    def slot_lock(self, slot: SlotInstance):
        return self._store.lock_for("slot", slot.station_id, slot.slot_id, slot.date)

    # ------------------------------------------------------------------ #
    # Booking lifecycle
    # ------------------------------------------------------------------ #

    def commit(
        self,
        slot: SlotInstance,
        request: ChargeRequest,
        holder: Optional[str] = None,
    ) -> Booking:
        """Book ``slot`` for ``request`` if it is still free.

        ``holder`` is the waitlist entry that owns a hold on the slot; its
        hold is consumed instead of counting as a conflict.

        Raises:
            NotFound: unknown station or slot.
            InvalidWindow: the window is off the grid.
            SlotConflict: the window overlaps an active booking or another hold.
        """
        station = self._catalog.get_station(slot.station_id)
        definition = self._catalog.get_slot_definition(slot.station_id, slot.slot_id)
        self._catalog.validate_window(station, slot.date, slot.window)

        with self.slot_lock(slot):
            conflict = self._store.find_conflict(
                slot.station_id, slot.slot_id, slot.date, slot.window, holder
            )
            if conflict is not None:
                logger.info("Commit rejected for %s %s: %s", slot.slot_id, slot.window, conflict)
                raise SlotConflict(
                    f"Slot {slot.slot_id} {slot.window} on {slot.date.isoformat()} is {conflict}.",
                    slot_id=slot.slot_id,
                )
            if holder is not None:
                self._store.drop_holds_of(holder)

            now = self._clock()
            booking = Booking(
                request=request,
                slot=slot.model_copy(update={"level": definition.level, "state": SlotState.BOOKED}),
                created_at=now,
                updated_at=now,
                history=[StatusChange(status=BookingStatus.CONFIRMED.value, at=now)],
            )
            self._store.add_booking(booking)

        logger.info(
            "Booking created: %s for %s at %s/%s on %s %s",
            booking.booking_id, request.requester_id, slot.station_id,
            slot.slot_id, slot.date.isoformat(), slot.window,
        )
        snapshot = booking.model_copy(deep=True)
        self._bus.publish(BookingConfirmed(booking=snapshot))
        return snapshot

    def cancel(self, booking_id: str) -> Booking:
        """Cancel a confirmed booking and release its slot instance."""
        booking = self._store.get_booking(booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found.", booking_id=booking_id)
        with self.slot_lock(booking.slot):
            if not booking.is_active:
                raise NotFound(
                    f"Booking {booking_id} is already {booking.status.value}.",
                    booking_id=booking_id,
                )
            self._set_status(booking, BookingStatus.CANCELLED)

        logger.info("Booking cancelled: %s", booking_id)
        snapshot = booking.model_copy(deep=True)
        self._bus.publish(SlotReleased(
            slot=snapshot.slot.with_state(SlotState.FREE),
            booking_id=booking_id,
            requester_id=snapshot.requester_id,
        ))
        return snapshot

    def complete(self, booking_id: str) -> Booking:
        return self._finish(booking_id, BookingStatus.COMPLETED)

    def mark_missed(self, booking_id: str) -> Booking:
        return self._finish(booking_id, BookingStatus.MISSED)

    def _finish(self, booking_id: str, status: BookingStatus) -> Booking:
        booking = self._store.get_booking(booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found.", booking_id=booking_id)
        with self.slot_lock(booking.slot):
            if not booking.is_active:
                raise InvalidTransition(
                    f"Booking {booking_id} is {booking.status.value}, cannot mark {status.value}.",
                    booking_id=booking_id,
                )
            self._set_status(booking, status)
        logger.info("Booking %s marked %s", booking_id, status.value)
        return booking.model_copy(deep=True)

    def _set_status(self, booking: Booking, status: BookingStatus) -> None:
        now = self._clock()
        booking.status = status
        booking.updated_at = now
        booking.history.append(StatusChange(status=status.value, at=now))

    # ------------------------------------------------------------------ #
    # Holds
    # ------------------------------------------------------------------ #

    def place_hold(self, slot: SlotInstance, entry_id: str, deadline: datetime) -> Hold:
        """Reserve ``slot`` for a notified waitlist entry until ``deadline``."""
        with self.slot_lock(slot):
            conflict = self._store.find_conflict(
                slot.station_id, slot.slot_id, slot.date, slot.window
            )
            if conflict is not None:
                raise SlotConflict(
                    f"Cannot hold {slot.slot_id} {slot.window}: {conflict}.",
                    slot_id=slot.slot_id,
                )
            hold = Hold(slot=slot.with_state(SlotState.HELD), entry_id=entry_id, deadline=deadline)
            self._store.put_hold(hold)
        logger.debug("Hold placed on %s %s for %s until %s", slot.slot_id, slot.window, entry_id, deadline)
        return hold

    def hold_for(self, slot: SlotInstance) -> Optional[Hold]:
        return self._store.get_hold(slot.key)

    def release_hold(self, slot: SlotInstance, entry_id: Optional[str] = None) -> Optional[Hold]:
        """Drop the hold on ``slot``; when ``entry_id`` is given only if it owns it."""
        with self.slot_lock(slot):
            hold = self._store.pop_hold(slot.key, entry_id)
        if hold is None:
            return None
        logger.debug("Hold released on %s %s", slot.slot_id, slot.window)
        return hold

    # ------------------------------------------------------------------ #
    # Read-only projections
    # ------------------------------------------------------------------ #

    def get(self, booking_id: str) -> Booking:
        booking = self._store.get_booking(booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found.", booking_id=booking_id)
        return booking.model_copy(deep=True)

    def list_by_requester(self, requester_id: str) -> list[Booking]:
        return [
            booking.model_copy(deep=True)
            for booking in self._store.all_bookings()
            if booking.requester_id == requester_id
        ]

    def list_by_station(self, station_id: str, day) -> list[Booking]:
        bookings = [
            booking
            for booking in self._store.all_bookings()
            if booking.slot.station_id == station_id and booking.slot.date == day
        ]
        bookings.sort(key=lambda b: (b.slot.window.start_minutes, b.slot.slot_id))
        return [booking.model_copy(deep=True) for booking in bookings]
