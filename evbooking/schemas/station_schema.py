"""Station and slot definition models."""

from datetime import time
from enum import Enum
from typing import Optional

from pydantic import ConfigDict, Field, field_serializer, field_validator

from evbooking.schemas.base import CamelModel
from evbooking.utils import format_hhmm, parse_hhmm


class ChargingLevel(str, Enum):
    L1 = "L1"
    L2 = "L2"
    L3 = "L3"


class GeoPoint(CamelModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class SlotDefinition(CamelModel):
    """A physical charging point at a station."""

    model_config = ConfigDict(frozen=True)

    slot_id: str = Field(min_length=1)
    level: ChargingLevel
    power_kw: float = Field(gt=0)


class Station(CamelModel):
    """Charging station with its fixed slot inventory.

    ``open_time``/``close_time`` override the configured operating hours;
    ``closed_weekdays`` uses ``date.weekday()`` numbering (Monday is 0).
    """

    model_config = ConfigDict(frozen=True)

    station_id: str = Field(min_length=1)
    name: str
    address: str = ""
    location: Optional[GeoPoint] = None
    slots: tuple[SlotDefinition, ...] = ()
    open_time: Optional[time] = None
    close_time: Optional[time] = None
    closed_weekdays: frozenset[int] = frozenset()
    price_per_kwh: Optional[float] = None

    @field_validator("open_time", "close_time", mode="before")
    @classmethod
    def _parse_clock(cls, value):
        if isinstance(value, str):
            return parse_hhmm(value)
        return value

    @field_serializer("open_time", "close_time")
    def _format_clock(self, value: Optional[time]) -> Optional[str]:
        return format_hhmm(value) if value is not None else None

    @property
    def levels(self) -> set[ChargingLevel]:
        return {slot.level for slot in self.slots}

    def get_slot(self, slot_id: str) -> Optional[SlotDefinition]:
        for slot in self.slots:
            if slot.slot_id == slot_id:
                return slot
        return None
