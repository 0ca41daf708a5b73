"""
In-memory engine store.

One ``EngineStore`` is built per process and handed to the catalog, ledger,
waitlist queue, engine and notification emitter. It owns every mutable
record plus the lock registry; the components above it own the rules.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Hashable, Optional

from evbooking.lifecycle import RequestLifecycle
from evbooking.schemas.booking_schema import Booking, SlotInstance, SlotKey, TimeWindow
from evbooking.schemas.notification_schema import Notification
from evbooking.schemas.station_schema import Station
from evbooking.schemas.waitlist_schema import WaitlistEntry

logger = logging.getLogger(__name__)


@dataclass
class Hold:
    """A slot instance reserved for a notified waitlist entry until ``deadline``."""

    slot: SlotInstance
    entry_id: str
    deadline: datetime


class EngineStore:
    """Mutable state shared by the engine components."""

    def __init__(self) -> None:
        self.stations: dict[str, Station] = {}
        self.bookings: dict[str, Booking] = {}
        self.entries: dict[str, WaitlistEntry] = {}
        self.holds: dict[SlotKey, Hold] = {}
        self.notifications: dict[str, Notification] = {}
        self.lifecycles: dict[str, RequestLifecycle] = {}
        self._slot_bookings: dict[tuple[str, str, date], list[str]] = {}
        self._sequence = itertools.count(1)
        self._locks: dict[Hashable, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._records = threading.RLock()

    def next_sequence(self) -> int:
        with self._locks_guard:
            return next(self._sequence)

    def lock_for(self, *key: Hashable) -> threading.RLock:
        """Return the lock guarding ``key``, creating it on first use."""
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    # ------------------------------------------------------------------ #
    # Records
    #
    # Every read or write of the shared dicts goes through the record lock
    # and reads return snapshots. Callers never hold it across calls.
    # ------------------------------------------------------------------ #

    def add_booking(self, booking: Booking) -> None:
        slot = booking.slot
        with self._records:
            self.bookings[booking.booking_id] = booking
            self._slot_bookings.setdefault(
                (slot.station_id, slot.slot_id, slot.date), []
            ).append(booking.booking_id)

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._records:
            return self.bookings.get(booking_id)

    def all_bookings(self) -> list[Booking]:
        with self._records:
            return list(self.bookings.values())

    def bookings_on(self, station_id: str, slot_id: str, day: date) -> list[Booking]:
        with self._records:
            ids = list(self._slot_bookings.get((station_id, slot_id, day), []))
            return [self.bookings[booking_id] for booking_id in ids]

    def put_hold(self, hold: Hold) -> None:
        with self._records:
            self.holds[hold.slot.key] = hold

    def get_hold(self, key: SlotKey) -> Optional[Hold]:
        with self._records:
            return self.holds.get(key)

    def pop_hold(self, key: SlotKey, entry_id: Optional[str] = None) -> Optional[Hold]:
        """Remove the hold at ``key``; when ``entry_id`` is given only if it owns it."""
        with self._records:
            hold = self.holds.get(key)
            if hold is None or (entry_id is not None and hold.entry_id != entry_id):
                return None
            return self.holds.pop(key)

    def drop_holds_of(self, entry_id: str) -> list[Hold]:
        with self._records:
            keys = [k for k, hold in self.holds.items() if hold.entry_id == entry_id]
            return [self.holds.pop(key) for key in keys]

    def holds_on(self, station_id: str, slot_id: str, day: date) -> list[Hold]:
        with self._records:
            return [
                hold
                for key, hold in self.holds.items()
                if key[:3] == (station_id, slot_id, day)
            ]

    def add_notification(self, notification: Notification) -> None:
        with self._records:
            self.notifications[notification.notification_id] = notification

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        with self._records:
            return self.notifications.get(notification_id)

    def all_notifications(self) -> list[Notification]:
        with self._records:
            return list(self.notifications.values())

    def pop_notification(self, notification_id: str) -> Optional[Notification]:
        with self._records:
            return self.notifications.pop(notification_id, None)

    def find_conflict(
        self,
        station_id: str,
        slot_id: str,
        day: date,
        window: TimeWindow,
        holder: Optional[str] = None,
    ) -> Optional[str]:
        """Describe what occupies ``window`` on the slot, or None if it is free.

        Holds owned by ``holder`` do not count as conflicts.
        """
        for booking in self.bookings_on(station_id, slot_id, day):
            if booking.is_active and booking.slot.window.overlaps(window):
                return f"booked by {booking.booking_id}"
        for hold in self.holds_on(station_id, slot_id, day):
            if hold.entry_id != holder and hold.slot.window.overlaps(window):
                return f"held for {hold.entry_id}"
        return None

    def reset(self) -> None:
        """Clear all records. Used by test fixtures for isolation."""
        with self._records:
            self.stations.clear()
            self.bookings.clear()
            self.entries.clear()
            self.holds.clear()
            self.notifications.clear()
            self.lifecycles.clear()
            self._slot_bookings.clear()
            self._sequence = itertools.count(1)
        logger.debug("Engine store reset")
