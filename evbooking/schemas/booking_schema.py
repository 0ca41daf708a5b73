"""Time window, slot instance, charge request and booking models."""

import datetime as dt
import uuid
from enum import Enum
from typing import Optional

from pydantic import ConfigDict, Field, field_serializer, field_validator, model_validator

from evbooking.schemas.base import CamelModel
from evbooking.schemas.station_schema import ChargingLevel
from evbooking.utils import format_hhmm, minutes_of, parse_hhmm, utc_now

SlotKey = tuple[str, str, dt.date, dt.time]


def _new_id(prefix: str, length: int = 6) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:length].upper()}"


class TimeWindow(CamelModel):
    """Half-open clock window ``[start, end)`` on a single day."""

    model_config = ConfigDict(frozen=True)

    start: dt.time
    end: dt.time

    @field_validator("start", "end", mode="before")
    @classmethod
    def _parse_clock(cls, value):
        if isinstance(value, str):
            return parse_hhmm(value)
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "TimeWindow":
        if minutes_of(self.end) <= minutes_of(self.start):
            raise ValueError(f"window end {self.end} must be after start {self.start}")
        return self

    @field_serializer("start", "end")
    def _format_clock(self, value: dt.time) -> str:
        return format_hhmm(value)

    @property
    def start_minutes(self) -> int:
        return minutes_of(self.start)

    @property
    def end_minutes(self) -> int:
        return minutes_of(self.end)

    @property
    def duration_minutes(self) -> int:
        return self.end_minutes - self.start_minutes

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start_minutes < other.end_minutes and other.start_minutes < self.end_minutes

    def contains(self, other: "TimeWindow") -> bool:
        return self.start_minutes <= other.start_minutes and other.end_minutes <= self.end_minutes

    def __str__(self) -> str:
        return f"{format_hhmm(self.start)}-{format_hhmm(self.end)}"


class SlotState(str, Enum):
    FREE = "free"
    HELD = "held"
    BOOKED = "booked"


class SlotInstance(CamelModel):
    """A slot bound to a date and time window: the bookable unit."""

    model_config = ConfigDict(frozen=True)

    station_id: str
    slot_id: str
    level: ChargingLevel
    date: dt.date
    window: TimeWindow
    state: SlotState = SlotState.FREE

    @property
    def key(self) -> SlotKey:
        return (self.station_id, self.slot_id, self.date, self.window.start)

    def with_state(self, state: SlotState) -> "SlotInstance":
        return self.model_copy(update={"state": state})


class ChargeRequest(CamelModel):
    """Immutable charge request. Lower ``soc`` means more urgent."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: _new_id("RQ", 8))
    requester_id: str = Field(min_length=1)
    station_id: str = Field(min_length=1)
    date: dt.date
    window: Optional[TimeWindow] = None
    soc: int = Field(ge=0, le=100)
    estimated_range: float = Field(ge=0)
    level: ChargingLevel
    notes: Optional[str] = None
    created_at: dt.datetime = Field(default_factory=utc_now)

    @property
    def priority(self) -> int:
        return 100 - self.soc


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    MISSED = "missed"


class StatusChange(CamelModel):
    model_config = ConfigDict(frozen=True)

    status: str
    at: dt.datetime


class Booking(CamelModel):
    """Confirmed reservation of a slot instance. Status only moves forward."""

    booking_id: str = Field(default_factory=lambda: _new_id("BK"))
    request: ChargeRequest
    slot: SlotInstance
    status: BookingStatus = BookingStatus.CONFIRMED
    created_at: dt.datetime
    updated_at: dt.datetime
    history: list[StatusChange] = Field(default_factory=list)

    @property
    def requester_id(self) -> str:
        return self.request.requester_id

    @property
    def is_active(self) -> bool:
        return self.status == BookingStatus.CONFIRMED
