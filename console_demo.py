"""
Offline console demo: walks the allocation and waitlist flow step by step.

Uses the real engine, ledger, waitlist and notification emitter against a
single-slot demo station and a simulated clock. No server, no network.

Usage:
    python console_demo.py
    python console_demo.py --scenario promotion
    python console_demo.py --scenario expiry
"""

import argparse
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from evbooking.config import settings
from evbooking.engine import AllocationEngine
from evbooking.errors import EngineError
from evbooking.schemas.booking_schema import ChargeRequest, TimeWindow
from evbooking.schemas.notification_schema import Notification
from evbooking.schemas.station_schema import ChargingLevel, SlotDefinition, Station

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

DEMO_STATION = Station(
    station_id="S1",
    name="Demo Fast Charger",
    slots=(SlotDefinition(slot_id="S1-1", level=ChargingLevel.L3, power_kw=150.0),),
)


class SimulatedClock:
    """Wall clock that only moves when the demo says so."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now += timedelta(minutes=minutes)


class ConsoleSession:
    """Runs scripted allocation scenarios and prints every notification."""

    SCENARIOS = ("booking", "promotion", "expiry")

    def __init__(self) -> None:
        self.clock = SimulatedClock(datetime.now(timezone.utc).replace(hour=8, minute=0, second=0, microsecond=0))
        self.engine = AllocationEngine(clock=self.clock, stations=[DEMO_STATION])
        self.engine.notifications.add_listener(self._on_notification)
        self.day: date = self.clock().date()
        self.window = TimeWindow(start="14:00", end="15:00")

    def say(self, text: str) -> None:
        print(f"{GREEN}{BOLD}[engine]{RESET} {GREEN}{text}{RESET}")

    def step(self, text: str) -> None:
        print(f"\n{BLUE}{BOLD}>> {text}{RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    def _on_notification(self, notification: Notification) -> None:
        print(
            f"{YELLOW}  [notify {notification.requester_id}] "
            f"{notification.title}: {notification.message}{RESET}"
        )

    def request(self, requester_id: str, soc: int) -> Optional[str]:
        request = ChargeRequest(
            requester_id=requester_id,
            station_id=DEMO_STATION.station_id,
            date=self.day,
            window=self.window,
            soc=soc,
            estimated_range=soc * 4.0,
            level=ChargingLevel.L3,
            created_at=self.clock(),
        )
        result = self.engine.request_slot(request)
        if result.booking is not None:
            self.say(f"{requester_id} (soc {soc}%) confirmed: {result.booking.booking_id}")
            return result.booking.booking_id
        self.say(f"{requester_id} (soc {soc}%) waitlisted at position {result.position}")
        return result.entry.entry_id

    def show_waitlist(self) -> None:
        for view in self.engine.waitlist_view(DEMO_STATION.station_id, self.day):
            position = view.position if view.position is not None else "-"
            self.system_log(
                f"{view.entry_id} {view.requester_id} soc={view.soc} "
                f"[{view.priority_level}] status={view.status.value} position={position}"
            )

    def run_scenario(self, scenario: str) -> None:
        print(f"{BOLD}{settings.app_name} - scenario '{scenario}'{RESET}")
        self.step(f"Book {DEMO_STATION.name} {self.window} for driver-a")
        booking_id = self.request("driver-a", soc=50)

        self.step("Second driver asks for the same window")
        self.request("driver-b", soc=50)
        if scenario == "booking":
            self.show_waitlist()
            return

        self.step("A nearly flat car joins the queue")
        self.request("driver-c", soc=5)
        self.show_waitlist()

        self.step("driver-a cancels")
        self.engine.cancel_booking(booking_id)
        self.show_waitlist()

        head = self.engine.waitlist_view(DEMO_STATION.station_id, self.day)[0]
        if scenario == "promotion":
            self.step(f"{head.requester_id} confirms the offer")
            result = self.engine.confirm_offer(head.entry_id)
            self.say(f"{head.requester_id} confirmed: {result.booking.booking_id}")
            return

        hold = settings.waitlist.offer_hold_minutes
        self.step(f"{hold + 1} minutes pass without a confirmation")
        self.clock.advance(hold + 1)
        self.engine.sweep_expirations()
        self.show_waitlist()

        self.step(f"{head.requester_id} tries to confirm too late")
        try:
            self.engine.confirm_offer(head.entry_id)
        except EngineError as exc:
            print(f"{RED}  {exc.code}: {exc.message}{RESET}")

    def run(self) -> None:
        for scenario in self.SCENARIOS:
            ConsoleSession().run_scenario(scenario)
            print()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Booking engine console demo")
    parser.add_argument("--scenario", choices=ConsoleSession.SCENARIOS, default=None)
    args = parser.parse_args(argv)
    session = ConsoleSession()
    if args.scenario:
        session.run_scenario(args.scenario)
    else:
        session.run()


if __name__ == "__main__":
    main()
