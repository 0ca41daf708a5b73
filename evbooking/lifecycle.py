"""
Finite state machine for a charge request's allocation lifecycle.

Every request follows an explicit path through the state graph:

    requested -> confirmed -> cancelled | completed | missed
              -> waitlisted -> notified -> confirmed
                                        -> expired

Usage:
    lifecycle = RequestLifecycle("RQ-1A2B3C4D")
    lifecycle.transition(LifecycleTrigger.NO_CAPACITY)
    assert lifecycle.current_state == RequestState.WAITLISTED
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from evbooking.errors import InvalidTransition
from evbooking.utils import utc_now

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    """All states a charge request can be in."""
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    WAITLISTED = "waitlisted"
    NOTIFIED = "notified"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    MISSED = "missed"


class LifecycleTrigger(str, Enum):
    """Events that move a request between states."""
    SLOT_COMMITTED = "slot_committed"
    NO_CAPACITY = "no_capacity"
    OFFER_MADE = "offer_made"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_LAPSED = "offer_lapsed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_MISSED = "booking_missed"


@dataclass
class Transition:
    """A single valid state transition."""
    from_state: RequestState
    to_state: RequestState
    trigger: LifecycleTrigger


@dataclass
class StateEntry:
    """Recorded history entry for a state visit."""
    state: RequestState
    entered_at: datetime
    trigger: Optional[LifecycleTrigger] = None


class RequestLifecycle:
    """Deterministic state machine for one charge request."""

    TRANSITIONS: list[Transition] = [
        # --- Direct allocation ---
        Transition(RequestState.REQUESTED, RequestState.CONFIRMED,
                   LifecycleTrigger.SLOT_COMMITTED),
        Transition(RequestState.REQUESTED, RequestState.WAITLISTED,
                   LifecycleTrigger.NO_CAPACITY),

        # --- Waitlist promotion ---
        Transition(RequestState.WAITLISTED, RequestState.NOTIFIED,
                   LifecycleTrigger.OFFER_MADE),
        Transition(RequestState.NOTIFIED, RequestState.CONFIRMED,
                   LifecycleTrigger.OFFER_ACCEPTED),
        Transition(RequestState.NOTIFIED, RequestState.EXPIRED,
                   LifecycleTrigger.OFFER_LAPSED),

        # --- Post-booking ---
        Transition(RequestState.CONFIRMED, RequestState.CANCELLED,
                   LifecycleTrigger.BOOKING_CANCELLED),
        Transition(RequestState.CONFIRMED, RequestState.COMPLETED,
                   LifecycleTrigger.BOOKING_COMPLETED),
        Transition(RequestState.CONFIRMED, RequestState.MISSED,
                   LifecycleTrigger.BOOKING_MISSED),
    ]

    TERMINAL_STATES = frozenset({
        RequestState.EXPIRED,
        RequestState.CANCELLED,
        RequestState.COMPLETED,
        RequestState.MISSED,
    })

    def __init__(self, request_id: str, clock: Callable[[], datetime] = utc_now) -> None:
        self.request_id = request_id
        self._clock = clock
        self._current_state = RequestState.REQUESTED
        self._history: list[StateEntry] = [
            StateEntry(state=RequestState.REQUESTED, entered_at=clock())
        ]

    @property
    def current_state(self) -> RequestState:
        return self._current_state

    def transition(self, trigger: LifecycleTrigger) -> RequestState:
        """
        Execute a state transition.

        Raises:
            InvalidTransition: If no valid transition exists.
        """
        for t in self.TRANSITIONS:
            if t.from_state == self._current_state and t.trigger == trigger:
                old_state = self._current_state
                self._current_state = t.to_state
                self._history.append(StateEntry(
                    state=self._current_state,
                    entered_at=self._clock(),
                    trigger=trigger,
                ))
                logger.debug(
                    "Request %s: %s -> %s (trigger: %s)",
                    self.request_id, old_state.value, self._current_state.value, trigger.value,
                )
                return self._current_state

        valid = [t.value for t in self.get_valid_triggers()]
        raise InvalidTransition(
            f"No valid transition from '{self._current_state.value}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}",
            request_id=self.request_id,
        )

    def get_valid_triggers(self) -> list[LifecycleTrigger]:
        return [t.trigger for t in self.TRANSITIONS if t.from_state == self._current_state]

    def get_history(self) -> list[StateEntry]:
        return list(self._history)

    def get_state_trace(self) -> list[str]:
        """Return ordered list of state names visited."""
        return [entry.state.value for entry in self._history]

    def is_terminal(self) -> bool:
        return self._current_state in self.TERMINAL_STATES
