"""Waitlist entry models."""

import datetime as dt
from enum import Enum
from typing import Optional

from pydantic import Field

from evbooking.schemas.base import CamelModel
from evbooking.schemas.booking_schema import ChargeRequest, SlotInstance, _new_id


class WaitlistStatus(str, Enum):
    WAITING = "waiting"
    NOTIFIED = "notified"
    EXPIRED = "expired"
    CONVERTED = "converted"


class WaitlistEntry(CamelModel):
    """A charge request waiting for capacity at one (station, date).

    ``sequence`` is the queue arrival counter and breaks ties between
    entries created at the same instant. Position is never stored.
    """

    entry_id: str = Field(default_factory=lambda: _new_id("WL"))
    request: ChargeRequest
    station_id: str
    date: dt.date
    status: WaitlistStatus = WaitlistStatus.WAITING
    created_at: dt.datetime
    sequence: int
    notified_at: Optional[dt.datetime] = None
    offer_deadline: Optional[dt.datetime] = None
    offered_slot: Optional[SlotInstance] = None
    booking_id: Optional[str] = None

    @property
    def requester_id(self) -> str:
        return self.request.requester_id

    @property
    def soc(self) -> int:
        return self.request.soc


class WaitlistEntryView(WaitlistEntry):
    """Read model: entry plus its current rank and urgency label."""

    position: Optional[int] = None
    priority_level: str = ""
