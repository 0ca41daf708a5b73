"""
Typed failures raised by the booking engine.

Every failure is per-request. ``SlotConflict`` is handled inside the engine
(retry once, then waitlist); the rest reach the caller unchanged and the
API layer maps them to HTTP status codes via ``http_status``.
"""

from typing import Any, Optional


class EngineError(Exception):
    """Base class for all engine failures."""

    code: str = "engine_error"
    http_status: int = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidWindow(EngineError):
    """Requested window is malformed, off the grid or outside operating hours."""

    code = "invalid_window"
    http_status = 400


class SlotConflict(EngineError):
    """A commit lost the race for a slot instance."""

    code = "slot_conflict"
    http_status = 409


class NotFound(EngineError):
    """Unknown station, date, booking or waitlist entry."""

    code = "not_found"
    http_status = 404


class OfferExpired(EngineError):
    """The waitlist offer lapsed or its slot was reclaimed before confirmation."""

    code = "offer_expired"
    http_status = 409

    def __init__(self, message: str, entry_id: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, entry_id=entry_id, **details)
        self.entry_id = entry_id


class InvalidTransition(EngineError):
    """A lifecycle or waitlist status change is not allowed from the current state."""

    code = "invalid_transition"
    http_status = 409
