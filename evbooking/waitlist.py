"""
Waitlist queue: pending charge requests per (station, date).

Order is recomputed on every read from (soc asc, created_at asc, arrival
sequence asc). Position is the 1-based rank among ``waiting`` entries and
is never persisted, so there is nothing to renumber when entries leave.

Status lifecycle:
    waiting -> notified -> converted
                        -> expired
"""

import logging
from datetime import date, datetime
from typing import Callable, Optional

from evbooking.errors import InvalidTransition, NotFound
from evbooking.priority import priority_key
from evbooking.schemas.booking_schema import ChargeRequest, SlotInstance
from evbooking.schemas.waitlist_schema import WaitlistEntry, WaitlistStatus
from evbooking.store import EngineStore
from evbooking.utils import utc_now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[WaitlistStatus, frozenset[WaitlistStatus]] = {
    WaitlistStatus.WAITING: frozenset({WaitlistStatus.NOTIFIED}),
    WaitlistStatus.NOTIFIED: frozenset({WaitlistStatus.CONVERTED, WaitlistStatus.EXPIRED}),
    WaitlistStatus.CONVERTED: frozenset(),
    WaitlistStatus.EXPIRED: frozenset(),
}


class WaitlistQueue:
    """Priority-ordered waitlist entries backed by the engine store."""

    def __init__(self, store: EngineStore, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock
        self._lock = store.lock_for("waitlist")

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #

    def enqueue(self, request: ChargeRequest) -> WaitlistEntry:
        with self._lock:
            entry = WaitlistEntry(
                request=request,
                station_id=request.station_id,
                date=request.date,
                created_at=self._clock(),
                sequence=self._store.next_sequence(),
            )
            self._store.entries[entry.entry_id] = entry
        logger.info(
            "Waitlisted %s for %s on %s (soc=%d)",
            entry.entry_id, request.station_id, request.date.isoformat(), request.soc,
        )
        return entry.model_copy(deep=True)

    def notify(self, entry_id: str, deadline: datetime, slot: SlotInstance) -> WaitlistEntry:
        """Move a waiting entry to ``notified`` with an offer on ``slot``."""
        with self._lock:
            entry = self._require(entry_id)
            self._transition(entry, WaitlistStatus.NOTIFIED)
            entry.notified_at = self._clock()
            entry.offer_deadline = deadline
            entry.offered_slot = slot
        logger.info("Entry %s notified, offer on %s %s until %s", entry_id, slot.slot_id, slot.window, deadline)
        return entry.model_copy(deep=True)

    def resolve(
        self,
        entry_id: str,
        outcome: WaitlistStatus,
        booking_id: Optional[str] = None,
    ) -> WaitlistEntry:
        """Terminal transition of a notified entry to converted or expired."""
        if outcome not in (WaitlistStatus.CONVERTED, WaitlistStatus.EXPIRED):
            raise ValueError(f"Resolve outcome must be converted or expired, got {outcome}")
        with self._lock:
            entry = self._require(entry_id)
            self._transition(entry, outcome)
            if booking_id is not None:
                entry.booking_id = booking_id
        logger.info("Entry %s resolved as %s", entry_id, outcome.value)
        return entry.model_copy(deep=True)

    def expire_overdue(
        self,
        now: datetime,
        station_id: Optional[str] = None,
        day: Optional[date] = None,
    ) -> list[WaitlistEntry]:
        """Force notified entries whose deadline has passed to ``expired``.

        ``station_id`` and ``day`` restrict the sweep to one queue.
        """
        expired = []
        with self._lock:
            for entry in self._store.entries.values():
                if station_id is not None and entry.station_id != station_id:
                    continue
                if day is not None and entry.date != day:
                    continue
                if (
                    entry.status == WaitlistStatus.NOTIFIED
                    and entry.offer_deadline is not None
                    and entry.offer_deadline <= now
                ):
                    self._transition(entry, WaitlistStatus.EXPIRED)
                    expired.append(entry.model_copy(deep=True))
        if expired:
            logger.info("Expired %d overdue offer(s)", len(expired))
        expired.sort(key=lambda e: (e.offer_deadline, e.sequence))
        return expired

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get(self, entry_id: str) -> WaitlistEntry:
        return self._require(entry_id).model_copy(deep=True)

    def list_entries(self, station_id: str, day: date) -> list[WaitlistEntry]:
        """All entries of one queue in priority order, whatever their status."""
        with self._lock:
            entries = [
                entry
                for entry in self._store.entries.values()
                if entry.station_id == station_id and entry.date == day
            ]
            entries.sort(key=priority_key)
            return [entry.model_copy(deep=True) for entry in entries]

    def list_waiting(self, station_id: str, day: date) -> list[WaitlistEntry]:
        return [
            entry
            for entry in self.list_entries(station_id, day)
            if entry.status == WaitlistStatus.WAITING
        ]

    def list_by_requester(self, requester_id: str) -> list[WaitlistEntry]:
        with self._lock:
            entries = [
                entry
                for entry in self._store.entries.values()
                if entry.requester_id == requester_id
            ]
            entries.sort(key=lambda e: (e.created_at, e.sequence))
            return [entry.model_copy(deep=True) for entry in entries]

    def peek_head(
        self,
        station_id: str,
        day: date,
        predicate: Optional[Callable[[WaitlistEntry], bool]] = None,
    ) -> Optional[WaitlistEntry]:
        """Highest-priority waiting entry, optionally the first one matching ``predicate``."""
        for entry in self.list_waiting(station_id, day):
            if predicate is None or predicate(entry):
                return entry
        return None

    def positions(self, station_id: str, day: date) -> dict[str, int]:
        return {
            entry.entry_id: rank
            for rank, entry in enumerate(self.list_waiting(station_id, day), start=1)
        }

    def position(self, entry_id: str) -> Optional[int]:
        """1-based rank of a waiting entry; None once it has left ``waiting``."""
        entry = self._require(entry_id)
        return self.positions(entry.station_id, entry.date).get(entry_id)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _require(self, entry_id: str) -> WaitlistEntry:
        entry = self._store.entries.get(entry_id)
        if entry is None:
            raise NotFound(f"Waitlist entry {entry_id} not found.", entry_id=entry_id)
        return entry

    @staticmethod
    def _transition(entry: WaitlistEntry, target: WaitlistStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[entry.status]:
            raise InvalidTransition(
                f"Waitlist entry {entry.entry_id} is {entry.status.value}; "
                f"cannot move to {target.value}.",
                entry_id=entry.entry_id,
            )
        entry.status = target
