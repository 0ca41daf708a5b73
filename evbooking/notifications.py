"""
Notification emitter: decides which notification fires for which event.

Pure translation from engine events to ``Notification`` records plus a
per-requester outbox. Delivery (sockets, push, email) is left to listeners
registered with ``add_listener``.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from evbooking.catalog import SlotCatalog
from evbooking.errors import NotFound
from evbooking.events import (
    BookingConfirmed,
    DomainEvent,
    EventBus,
    OfferExpired,
    SlotOffered,
    SlotReleased,
    WaitlistPositionChanged,
)
from evbooking.schemas.booking_schema import SlotInstance
from evbooking.schemas.notification_schema import Notification, NotificationType
from evbooking.store import EngineStore
from evbooking.utils import format_hhmm, utc_now

logger = logging.getLogger(__name__)

NotificationListener = Callable[[Notification], None]

NOTIFIED_EVENTS = (
    BookingConfirmed,
    SlotReleased,
    SlotOffered,
    OfferExpired,
    WaitlistPositionChanged,
)

class NotificationEmitter:
    """Subscribes to the event bus and keeps an outbox of notifications."""

    def __init__(
        self,
        bus: EventBus,
        store: EngineStore,
        catalog: Optional[SlotCatalog] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._clock = clock
        self._bus = bus
        self._listeners: list[NotificationListener] = []
        for event_type in NOTIFIED_EVENTS:
            bus.subscribe(event_type, self.handle)

    def close(self) -> None:
        """Stop translating events from the bus."""
        for event_type in NOTIFIED_EVENTS:
            self._bus.unsubscribe(event_type, self.handle)

    def add_listener(self, listener: NotificationListener) -> None:
        """Register a transport callback invoked for every new notification."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------ #
    # Translation
    # ------------------------------------------------------------------ #

    def handle(self, event: DomainEvent) -> Optional[Notification]:
        notification = self.translate(event)
        if notification is None:
            return None
        self._store.add_notification(notification)
        logger.debug(
            "Notification %s (%s) for %s",
            notification.notification_id, notification.type.value, notification.requester_id,
        )
        for listener in self._listeners:
            listener(notification.model_copy())
        return notification

    def translate(self, event: DomainEvent) -> Optional[Notification]:
        """Build the notification for ``event``; None when nothing should fire."""
        now = self._clock()
        if isinstance(event, BookingConfirmed):
            booking = event.booking
            return Notification(
                type=NotificationType.BOOKING_CONFIRMED,
                title="Booking Confirmed",
                message=(
                    f"Your {booking.slot.level.value} charging slot at "
                    f"{self._describe(booking.slot)} is confirmed. "
                    f"Reference: {booking.booking_id}."
                ),
                requester_id=booking.requester_id,
                created_at=now,
                payload={"bookingId": booking.booking_id},
            )
        if isinstance(event, SlotReleased):
            return Notification(
                type=NotificationType.BOOKING_CANCELLED,
                title="Booking Cancelled",
                message=f"Your booking {event.booking_id} at {self._describe(event.slot)} has been cancelled.",
                requester_id=event.requester_id,
                created_at=now,
                payload={"bookingId": event.booking_id},
            )
        if isinstance(event, SlotOffered):
            return Notification(
                type=NotificationType.SLOT_AVAILABLE,
                title="Slot Available",
                message=(
                    f"A charging slot is now available at {self._describe(event.slot)}. "
                    f"Confirm before {format_hhmm(event.deadline.time())} UTC to keep it."
                ),
                requester_id=event.requester_id,
                created_at=now,
                payload={"entryId": event.entry_id, "deadline": event.deadline.isoformat()},
            )
        if isinstance(event, OfferExpired):
            return Notification(
                type=NotificationType.OFFER_EXPIRED,
                title="Offer Expired",
                message=(
                    "Your slot offer has expired and was passed to the next driver in line. "
                    "Submit a new request to rejoin the waitlist."
                ),
                requester_id=event.requester_id,
                created_at=now,
                payload={"entryId": event.entry_id, "reason": event.reason},
            )
        if isinstance(event, WaitlistPositionChanged):
            return Notification(
                type=NotificationType.WAITLIST_POSITION,
                title="Waitlist Position Updated",
                message=f"You are now number {event.new_position} on the waitlist for {event.date.isoformat()}.",
                requester_id=event.requester_id,
                created_at=now,
                payload={"entryId": event.entry_id, "newPosition": event.new_position},
            )
        return None

    def _describe(self, slot: SlotInstance) -> str:
        name = slot.station_id
        if self._catalog is not None and slot.station_id in self._store.stations:
            name = self._catalog.get_station(slot.station_id).name
        return f"{name} on {slot.date.isoformat()} {slot.window}"

    # ------------------------------------------------------------------ #
    # Outbox
    # ------------------------------------------------------------------ #

    def list_for(self, requester_id: str, unread_only: bool = False) -> list[Notification]:
        """Notifications for one requester, newest first."""
        notifications = [
            n
            for n in self._store.all_notifications()
            if n.requester_id == requester_id and not (unread_only and n.read)
        ]
        return [n.model_copy() for n in reversed(notifications)]

    def mark_as_read(self, notification_id: str) -> Notification:
        notification = self._require(notification_id)
        notification.read = True
        return notification.model_copy()

    def mark_all_as_read(self, requester_id: str) -> int:
        count = 0
        for notification in self._store.all_notifications():
            if notification.requester_id == requester_id and not notification.read:
                notification.read = True
                count += 1
        return count

    def delete(self, notification_id: str) -> None:
        if self._store.pop_notification(notification_id) is None:
            raise NotFound(f"Notification {notification_id} not found.", notification_id=notification_id)

    def _require(self, notification_id: str) -> Notification:
        notification = self._store.get_notification(notification_id)
        if notification is None:
            raise NotFound(f"Notification {notification_id} not found.", notification_id=notification_id)
        return notification
