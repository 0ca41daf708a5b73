from evbooking.engine import AllocationEngine
from evbooking.errors import EngineError, InvalidTransition, InvalidWindow, NotFound, OfferExpired, SlotConflict
from evbooking.events import EventBus
from evbooking.store import EngineStore

__all__ = [
    "AllocationEngine",
    "EngineStore",
    "EventBus",
    "EngineError",
    "InvalidWindow",
    "SlotConflict",
    "NotFound",
    "OfferExpired",
    "InvalidTransition",
]
