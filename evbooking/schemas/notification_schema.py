"""Outbound notification records."""

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import Field

from evbooking.schemas.base import CamelModel
from evbooking.schemas.booking_schema import _new_id


class NotificationType(str, Enum):
    SLOT_AVAILABLE = "slot_available"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    WAITLIST_POSITION = "waitlist_position"
    OFFER_EXPIRED = "offer_expired"


class Notification(CamelModel):
    notification_id: str = Field(default_factory=lambda: _new_id("NT", 8))
    type: NotificationType
    title: str
    message: str
    requester_id: str
    created_at: dt.datetime
    read: bool = False
    payload: dict[str, Any] = Field(default_factory=dict)
