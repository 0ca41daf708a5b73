"""Allocation results and API request bodies."""

import datetime as dt
from enum import Enum
from typing import Optional

from pydantic import Field

from evbooking.schemas.base import CamelModel
from evbooking.schemas.booking_schema import Booking, TimeWindow
from evbooking.schemas.station_schema import ChargingLevel
from evbooking.schemas.waitlist_schema import WaitlistEntry


class AllocationStatus(str, Enum):
    CONFIRMED = "confirmed"
    WAITLISTED = "waitlisted"


class AllocationResult(CamelModel):
    """Outcome of ``request_slot`` or ``confirm_offer``."""

    status: AllocationStatus
    booking: Optional[Booking] = None
    entry: Optional[WaitlistEntry] = None
    position: Optional[int] = None


class RequestSlotBody(CamelModel):
    requester_id: str = Field(min_length=1)
    station_id: str = Field(min_length=1)
    date: dt.date
    window: Optional[TimeWindow] = None
    soc: int = Field(ge=0, le=100)
    estimated_range: float = Field(ge=0)
    level: ChargingLevel
    notes: Optional[str] = None


class CancelBookingBody(CamelModel):
    booking_id: str = Field(min_length=1)


class OfferBody(CamelModel):
    entry_id: str = Field(min_length=1)


class CancelBookingResponse(CamelModel):
    success: bool
    booking: Booking


class MarkAllReadBody(CamelModel):
    requester_id: str = Field(min_length=1)
