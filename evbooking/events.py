"""
Domain events and the in-process event bus.

The ledger publishes ``BookingConfirmed`` and ``SlotReleased``; the engine
publishes ``SlotOffered``, ``OfferExpired`` and ``WaitlistPositionChanged``.
Subscribers (the engine itself, the notification emitter, any transport
adapter) register per event type or for everything.

Usage:
    bus = EventBus()
    bus.subscribe(SlotReleased, engine.on_slot_released)
    bus.publish(SlotReleased(slot=..., booking_id="BK-1A2B3C", requester_id="u1"))
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from threading import Lock
from typing import Any, Callable, Optional

from evbooking.schemas.booking_schema import Booking, SlotInstance
from evbooking.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    occurred_at: datetime = field(default_factory=utc_now, kw_only=True)

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class BookingConfirmed(DomainEvent):
    booking: Booking


@dataclass(frozen=True)
class SlotReleased(DomainEvent):
    slot: SlotInstance
    booking_id: str
    requester_id: str


@dataclass(frozen=True)
class SlotOffered(DomainEvent):
    entry_id: str
    requester_id: str
    slot: SlotInstance
    deadline: datetime


@dataclass(frozen=True)
class OfferExpired(DomainEvent):
    entry_id: str
    requester_id: str
    slot: Optional[SlotInstance]
    reason: str = "deadline"


@dataclass(frozen=True)
class WaitlistPositionChanged(DomainEvent):
    entry_id: str
    requester_id: str
    station_id: str
    date: date
    new_position: int
    old_position: Optional[int] = None


EventHandler = Callable[[Any], None]


class EventBus:
    """Synchronous observer hub. Handlers run in subscription order.

    Handler exceptions propagate to the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[EventHandler]] = defaultdict(list)
        self._wildcard: list[EventHandler] = []
        self._lock = Lock()

    def subscribe(self, event_type: type, handler: EventHandler) -> None:
        with self._lock:
            self._subscribers[event_type].append(handler)
        logger.debug("Subscribed %s to %s", getattr(handler, "__qualname__", handler), event_type.__name__)

    def subscribe_all(self, handler: EventHandler) -> None:
        with self._lock:
            self._wildcard.append(handler)

    def unsubscribe(self, event_type: type, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._subscribers[event_type]:
                self._subscribers[event_type].remove(handler)

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            handlers = list(self._subscribers[type(event)]) + list(self._wildcard)
        logger.debug("Publishing %s to %d handler(s)", event.name, len(handlers))
        for handler in handlers:
            handler(event)
