"""
Allocation engine: the coordinator over catalog, ledger and waitlist.

Request flow:
    request_slot -> catalog lookup -> ledger.commit        -> confirmed
                                   -> waitlist.enqueue     -> waitlisted

Promotion flow:
    ledger.cancel -> SlotReleased -> on_slot_released -> hold + notify head
    confirm_offer -> ledger.commit (consumes hold)    -> converted
    deadline passes / decline -> expired -> offer goes to the next entry

Every public entry point sweeps overdue offers first, so expired holds are
purged before any new offer is made from the same queue.

Lock order is queue (station, date) -> waitlist -> slot.
"""

from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional

from evbooking.catalog import SlotCatalog
from evbooking.config import AppConfig, settings
from evbooking.errors import InvalidTransition, NotFound, OfferExpired, SlotConflict
from evbooking.events import (
    EventBus,
    OfferExpired as OfferExpiredEvent,
    SlotOffered,
    SlotReleased,
    WaitlistPositionChanged,
)
from evbooking.ledger import ReservationLedger
from evbooking.lifecycle import LifecycleTrigger, RequestLifecycle, RequestState
from evbooking.logging_context import get_request_logger
from evbooking.notifications import NotificationEmitter
from evbooking.priority import priority_level
from evbooking.schemas.allocation_schema import AllocationResult, AllocationStatus
from evbooking.schemas.booking_schema import (
    Booking,
    ChargeRequest,
    SlotInstance,
    SlotState,
)
from evbooking.schemas.station_schema import Station
from evbooking.schemas.waitlist_schema import WaitlistEntry, WaitlistEntryView, WaitlistStatus
from evbooking.stations import DEFAULT_STATIONS
from evbooking.store import EngineStore
from evbooking.utils import utc_now
from evbooking.waitlist import WaitlistQueue

logger = get_request_logger(__name__)


class AllocationEngine:
    """Owns every booking and waitlist transition.

    The store, event bus and clock are injected so one process-wide store
    can back several engine front-ends and tests can control time.
    """

    def __init__(
        self,
        store: Optional[EngineStore] = None,
        bus: Optional[EventBus] = None,
        config: AppConfig = settings,
        clock: Callable[[], datetime] = utc_now,
        stations: Optional[Iterable[Station]] = None,
    ) -> None:
        self.store = store if store is not None else EngineStore()
        self.bus = bus if bus is not None else EventBus()
        self.config = config
        self.clock = clock
        self.catalog = SlotCatalog(self.store, config.catalog, clock)
        for station in DEFAULT_STATIONS if stations is None else stations:
            self.catalog.register_station(station)
        self.ledger = ReservationLedger(self.store, self.catalog, self.bus, clock)
        self.waitlist = WaitlistQueue(self.store, clock)
        self.bus.subscribe(SlotReleased, self.on_slot_released)
        self.notifications = NotificationEmitter(self.bus, self.store, self.catalog, clock)

    def close(self) -> None:
        """Detach the engine and its notifier from the bus."""
        self.bus.unsubscribe(SlotReleased, self.on_slot_released)
        self.notifications.close()

    @property
    def hold_duration(self) -> timedelta:
        return timedelta(minutes=self.config.waitlist.offer_hold_minutes)

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    def request_slot(self, request: ChargeRequest) -> AllocationResult:
        """Book a matching slot, or waitlist the request when none is free.

        Raises:
            NotFound: unknown station, date outside the calendar, or no slot
                of the requested level at the station.
            InvalidWindow: requested window off the grid or outside hours.
        """
        self.sweep_expirations()
        station = self.catalog.get_station(request.station_id)
        self.catalog.check_date(request.date)
        if request.level not in station.levels:
            raise NotFound(
                f"Station {station.station_id} has no {request.level.value} slots.",
                station_id=station.station_id,
            )
        if request.window is not None:
            self.catalog.validate_window(station, request.date, request.window)

        lifecycle = self._track(request)
        attempts = 1 + self.config.waitlist.commit_retries
        for attempt in range(1, attempts + 1):
            slot = self.catalog.find_free_slot(request)
            if slot is None:
                break
            try:
                booking = self.ledger.commit(slot, request)
            except SlotConflict:
                logger.info(
                    "Lost commit race for %s %s (attempt %d/%d)",
                    slot.slot_id, slot.window, attempt, attempts,
                )
                continue
            lifecycle.transition(LifecycleTrigger.SLOT_COMMITTED)
            return AllocationResult(status=AllocationStatus.CONFIRMED, booking=booking)

        return self._enqueue(request, lifecycle)

    def _track(self, request: ChargeRequest) -> RequestLifecycle:
        if request.request_id in self.store.lifecycles:
            raise InvalidTransition(
                f"Request {request.request_id} was already submitted; create a new request.",
                request_id=request.request_id,
            )
        lifecycle = RequestLifecycle(request.request_id, self.clock)
        self.store.lifecycles[request.request_id] = lifecycle
        return lifecycle

    def _enqueue(self, request: ChargeRequest, lifecycle: RequestLifecycle) -> AllocationResult:
        with self._queue_lock(request.station_id, request.date):
            before = self.waitlist.positions(request.station_id, request.date)
            entry = self.waitlist.enqueue(request)
            lifecycle.transition(LifecycleTrigger.NO_CAPACITY)
            events = self._position_changes(request.station_id, request.date, before)
            position = self.waitlist.position(entry.entry_id)
        for event in events:
            self.bus.publish(event)
        return AllocationResult(
            status=AllocationStatus.WAITLISTED, entry=entry, position=position
        )

    # ------------------------------------------------------------------ #
    # Cancellation and promotion
    # ------------------------------------------------------------------ #

    def cancel_booking(self, booking_id: str) -> Booking:
        """Cancel a booking; the released slot is offered down the waitlist.

        The queue and slot locks stay held until the head entry has its hold,
        so a concurrent ``request_slot`` cannot take the window in between.
        """
        self.sweep_expirations()
        slot = self.ledger.get(booking_id).slot
        with self._queue_lock(slot.station_id, slot.date), self.ledger.slot_lock(slot):
            booking = self.ledger.cancel(booking_id)
        self._advance(booking.request.request_id, LifecycleTrigger.BOOKING_CANCELLED)
        return booking

    def on_slot_released(self, event: SlotReleased) -> list[WaitlistEntry]:
        """Offer a freed slot to the best compatible waiting entry. Never auto-books."""
        now = self.clock()
        slot = event.slot
        self.sweep_expirations(now, slot.station_id, slot.date)
        return self._offer_slot(slot, now)

    def _offer_slot(self, slot: SlotInstance, now: datetime) -> list[WaitlistEntry]:
        """Hold and offer ``slot`` head-first until no waiting entry fits.

        An entry fits when its window overlaps the released one and is free
        as a whole on this slot; it is offered exactly its own window. A
        waiting entry never has more than one offer.
        """
        offered: list[WaitlistEntry] = []
        events: list = []
        with self._queue_lock(slot.station_id, slot.date):
            before = self.waitlist.positions(slot.station_id, slot.date)
            while True:
                entry = self.waitlist.peek_head(
                    slot.station_id, slot.date, predicate=lambda e: self._fits(e, slot)
                )
                if entry is None:
                    break
                instance = self._offer_instance(entry, slot)
                deadline = now + self.hold_duration
                try:
                    self.ledger.place_hold(instance, entry.entry_id, deadline)
                except SlotConflict:
                    logger.info("Slot %s %s reclaimed before it could be offered", slot.slot_id, slot.window)
                    break
                entry = self.waitlist.notify(entry.entry_id, deadline, instance)
                self._advance(entry.request.request_id, LifecycleTrigger.OFFER_MADE)
                offered.append(entry)
                events.append(SlotOffered(
                    entry_id=entry.entry_id,
                    requester_id=entry.requester_id,
                    slot=instance,
                    deadline=deadline,
                ))
            events.extend(self._position_changes(slot.station_id, slot.date, before))

        if not offered:
            logger.debug("No waiting entry fits %s %s on %s", slot.slot_id, slot.window, slot.date)
        for event in events:
            self.bus.publish(event)
        return offered

    def _fits(self, entry: WaitlistEntry, slot: SlotInstance) -> bool:
        request = entry.request
        if request.level != slot.level:
            return False
        wanted = request.window or slot.window
        if not slot.window.overlaps(wanted):
            return False
        return self.catalog.is_free(slot.station_id, slot.slot_id, slot.date, wanted)

    @staticmethod
    def _offer_instance(entry: WaitlistEntry, slot: SlotInstance) -> SlotInstance:
        window = entry.request.window or slot.window
        return slot.model_copy(update={"window": window, "state": SlotState.HELD})

    # ------------------------------------------------------------------ #
    # Offers
    # ------------------------------------------------------------------ #

    def confirm_offer(self, entry_id: str) -> AllocationResult:
        """Turn a held offer into a booking.

        Raises:
            NotFound: unknown entry.
            OfferExpired: the deadline passed or the slot was reclaimed; the
                slot (if still free) has already been offered onwards.
            InvalidTransition: the entry has no outstanding offer.
        """
        now = self.clock()
        self.sweep_expirations(now)
        entry = self.waitlist.get(entry_id)
        with self._queue_lock(entry.station_id, entry.date), self._waitlist_lock:
            entry = self.waitlist.get(entry_id)
            self._require_offer(entry, now)
            slot = entry.offered_slot
            hold = self.ledger.hold_for(slot)
            if hold is None or hold.entry_id != entry_id:
                self._lapse(entry, "reclaimed", now)
                raise OfferExpired(f"The slot offered to {entry_id} was reclaimed.", entry_id=entry_id)
            try:
                booking = self.ledger.commit(
                    slot.with_state(SlotState.FREE), entry.request, holder=entry_id
                )
            except SlotConflict:
                self._lapse(entry, "reclaimed", now)
                raise OfferExpired(
                    f"The slot offered to {entry_id} is no longer free.", entry_id=entry_id
                ) from None
            converted = self.waitlist.resolve(entry_id, WaitlistStatus.CONVERTED, booking.booking_id)
            self._advance(entry.request.request_id, LifecycleTrigger.OFFER_ACCEPTED)
        logger.info("Offer %s converted to booking %s", entry_id, booking.booking_id)
        return AllocationResult(status=AllocationStatus.CONFIRMED, booking=booking, entry=converted)

    def decline_offer(self, entry_id: str) -> WaitlistEntry:
        """Requester turns the offer down; it moves on to the next entry."""
        now = self.clock()
        self.sweep_expirations(now)
        entry = self.waitlist.get(entry_id)
        with self._queue_lock(entry.station_id, entry.date), self._waitlist_lock:
            entry = self.waitlist.get(entry_id)
            self._require_offer(entry, now)
            return self._lapse(entry, "declined", now)

    def _require_offer(self, entry: WaitlistEntry, now: datetime) -> None:
        if entry.status == WaitlistStatus.EXPIRED:
            raise OfferExpired(f"The offer for {entry.entry_id} has expired.", entry_id=entry.entry_id)
        if entry.status != WaitlistStatus.NOTIFIED:
            raise InvalidTransition(
                f"Waitlist entry {entry.entry_id} is {entry.status.value} and has no open offer.",
                entry_id=entry.entry_id,
            )
        if entry.offer_deadline is not None and entry.offer_deadline <= now:
            self._lapse(entry, "deadline", now)
            raise OfferExpired(f"The offer for {entry.entry_id} has expired.", entry_id=entry.entry_id)

    def _lapse(self, entry: WaitlistEntry, reason: str, now: datetime) -> WaitlistEntry:
        expired = self.waitlist.resolve(entry.entry_id, WaitlistStatus.EXPIRED)
        self._after_expiry(expired, reason, now)
        return expired

    def _after_expiry(self, entry: WaitlistEntry, reason: str, now: datetime) -> None:
        slot = entry.offered_slot
        if slot is not None:
            self.ledger.release_hold(slot, entry.entry_id)
        self._advance(entry.request.request_id, LifecycleTrigger.OFFER_LAPSED)
        logger.info("Offer for %s expired (%s)", entry.entry_id, reason)
        self.bus.publish(OfferExpiredEvent(
            entry_id=entry.entry_id,
            requester_id=entry.requester_id,
            slot=slot,
            reason=reason,
        ))
        if slot is not None:
            self._offer_slot(slot.with_state(SlotState.FREE), now)

    def sweep_expirations(
        self,
        now: Optional[datetime] = None,
        station_id: Optional[str] = None,
        day: Optional[date] = None,
    ) -> list[WaitlistEntry]:
        """Expire overdue offers and cascade each freed hold to the next entry.

        With ``station_id`` and ``day`` only that queue is swept, which keeps
        a sweep running under one queue lock from taking another.
        """
        now = now or self.clock()
        expired = self.waitlist.expire_overdue(now, station_id, day)
        for entry in expired:
            self._after_expiry(entry, "deadline", now)
        return expired

    # ------------------------------------------------------------------ #
    # Booking status
    # ------------------------------------------------------------------ #

    def complete_booking(self, booking_id: str) -> Booking:
        booking = self.ledger.complete(booking_id)
        self._advance(booking.request.request_id, LifecycleTrigger.BOOKING_COMPLETED)
        return booking

    def mark_missed(self, booking_id: str) -> Booking:
        booking = self.ledger.mark_missed(booking_id)
        self._advance(booking.request.request_id, LifecycleTrigger.BOOKING_MISSED)
        return booking

    # ------------------------------------------------------------------ #
    # Read models
    # ------------------------------------------------------------------ #

    def availability(self, station_id: str, day: date) -> list[SlotInstance]:
        self.sweep_expirations()
        return self.catalog.list_instances(station_id, day)

    def waitlist_view(self, station_id: str, day: date) -> list[WaitlistEntryView]:
        """Open entries of one queue: outstanding offers first, then waiting by position."""
        self.sweep_expirations()
        self.catalog.get_station(station_id)
        entries = self.waitlist.list_entries(station_id, day)
        positions = self.waitlist.positions(station_id, day)
        notified = [e for e in entries if e.status == WaitlistStatus.NOTIFIED]
        waiting = [e for e in entries if e.status == WaitlistStatus.WAITING]
        return [self._view(e, positions) for e in notified + waiting]

    def get_entry(self, entry_id: str) -> WaitlistEntryView:
        entry = self.waitlist.get(entry_id)
        return self._view(entry, self.waitlist.positions(entry.station_id, entry.date))

    def list_entries(self, requester_id: str) -> list[WaitlistEntryView]:
        views = []
        for entry in self.waitlist.list_by_requester(requester_id):
            views.append(self._view(entry, self.waitlist.positions(entry.station_id, entry.date)))
        return views

    def get_booking(self, booking_id: str) -> Booking:
        return self.ledger.get(booking_id)

    def list_bookings(self, requester_id: str) -> list[Booking]:
        return self.ledger.list_by_requester(requester_id)

    def station_bookings(self, station_id: str, day: date) -> list[Booking]:
        self.catalog.get_station(station_id)
        return self.ledger.list_by_station(station_id, day)

    def request_state(self, request_id: str) -> RequestState:
        lifecycle = self.store.lifecycles.get(request_id)
        if lifecycle is None:
            raise NotFound(f"Request {request_id} not found.", request_id=request_id)
        return lifecycle.current_state

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    @property
    def _waitlist_lock(self):
        return self.store.lock_for("waitlist")

    def _queue_lock(self, station_id: str, day: date):
        return self.store.lock_for("queue", station_id, day)

    def _advance(self, request_id: str, trigger: LifecycleTrigger) -> None:
        lifecycle = self.store.lifecycles.get(request_id)
        if lifecycle is None:
            logger.warning("No lifecycle tracked for request %s", request_id)
            return
        lifecycle.transition(trigger)

    def _position_changes(
        self, station_id: str, day: date, before: dict[str, int]
    ) -> list[WaitlistPositionChanged]:
        events = []
        for rank, entry in enumerate(self.waitlist.list_waiting(station_id, day), start=1):
            old = before.get(entry.entry_id)
            if old != rank:
                events.append(WaitlistPositionChanged(
                    entry_id=entry.entry_id,
                    requester_id=entry.requester_id,
                    station_id=station_id,
                    date=day,
                    new_position=rank,
                    old_position=old,
                ))
        return events

    @staticmethod
    def _view(entry: WaitlistEntry, positions: dict[str, int]) -> WaitlistEntryView:
        return WaitlistEntryView(
            **dict(entry),
            position=positions.get(entry.entry_id),
            priority_level=priority_level(entry.soc).name,
        )
