"""
Waitlist urgency rules.

Urgency is derived from state of charge and never stored. Queue order is
(soc ascending, created_at ascending, arrival sequence ascending), so a
flatter battery always outranks a fuller one and equal urgency is FIFO.
"""

from dataclasses import dataclass

from evbooking.schemas.waitlist_schema import WaitlistEntry


@dataclass(frozen=True)
class PriorityLevel:
    """Display band for a range of state-of-charge values."""

    name: str
    min_soc: int
    max_soc: int
    label: str


PRIORITY_LEVELS: list[PriorityLevel] = [
    PriorityLevel("critical", 0, 10, "Critical"),
    PriorityLevel("high", 11, 20, "High"),
    PriorityLevel("medium", 21, 40, "Medium"),
    PriorityLevel("low", 41, 100, "Low"),
]


def priority_level(soc: int) -> PriorityLevel:
    """Return the band containing ``soc`` (0-100)."""
    for level in PRIORITY_LEVELS:
        if level.min_soc <= soc <= level.max_soc:
            return level
    raise ValueError(f"State of charge must be between 0 and 100, got {soc}")


def priority_key(entry: WaitlistEntry) -> tuple:
    """Sort key giving the total waitlist order."""
    return (entry.request.soc, entry.created_at, entry.sequence)
