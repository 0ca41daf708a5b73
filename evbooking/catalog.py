"""
Slot catalog: station inventory and the bookable time grid.

Slot instances are implicit. Any grid-aligned window inside a station's
operating hours is bookable; only its state (free / held / booked) is
derived from the ledger records held in the store.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from evbooking.config import CatalogConfig, settings
from evbooking.errors import InvalidWindow, NotFound
from evbooking.schemas.booking_schema import ChargeRequest, SlotInstance, SlotState, TimeWindow
from evbooking.schemas.station_schema import ChargingLevel, SlotDefinition, Station
from evbooking.store import EngineStore
from evbooking.utils import format_hhmm, minutes_of, natural_key, time_from_minutes, utc_now

logger = logging.getLogger(__name__)


class SlotCatalog:
    """Per-station inventory of slot instances over a rolling date horizon."""

    def __init__(
        self,
        store: EngineStore,
        config: CatalogConfig = settings.catalog,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._config = config
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Stations
    # ------------------------------------------------------------------ #

    def register_station(self, station: Station) -> None:
        if station.station_id in self._store.stations:
            logger.warning("Replacing station definition for %s", station.station_id)
        self._store.stations[station.station_id] = station
        logger.debug("Station registered: %s (%d slots)", station.station_id, len(station.slots))

    def get_station(self, station_id: str) -> Station:
        station = self._store.stations.get(station_id)
        if station is None:
            raise NotFound(f"Station {station_id} not found.", station_id=station_id)
        return station

    def list_stations(self) -> list[Station]:
        return sorted(self._store.stations.values(), key=lambda s: natural_key(s.station_id))

    def get_slot_definition(self, station_id: str, slot_id: str) -> SlotDefinition:
        slot = self.get_station(station_id).get_slot(slot_id)
        if slot is None:
            raise NotFound(f"Slot {slot_id} not found at station {station_id}.", slot_id=slot_id)
        return slot

    def check_date(self, day: date) -> None:
        """Raise NotFound unless ``day`` lies within the bookable horizon."""
        today = self._clock().date()
        last = today + timedelta(days=self._config.horizon_days)
        if not today <= day <= last:
            raise NotFound(
                f"Date {day.isoformat()} is outside the booking calendar "
                f"({today.isoformat()} to {last.isoformat()}).",
                date=day.isoformat(),
            )

    # ------------------------------------------------------------------ #
    # Grid
    # ------------------------------------------------------------------ #

    def operating_minutes(self, station: Optional[Station], day: date) -> tuple[int, int]:
        """Return (open, close) in minutes since midnight; (0, 0) when closed."""
        if station is not None and day.weekday() in station.closed_weekdays:
            return 0, 0
        open_time = station.open_time if station and station.open_time else self._config.open_time
        close_time = station.close_time if station and station.close_time else self._config.close_time
        return minutes_of(open_time), minutes_of(close_time)

    def generate_windows(
        self,
        slot_definition: SlotDefinition,
        day: date,
        station: Optional[Station] = None,
    ) -> list[TimeWindow]:
        """Grid cells for one slot on one day. Pure: same input, same output."""
        if station is None:
            station = self._station_of(slot_definition)
        step = self._config.granularity_minutes
        return [
            TimeWindow(start=time_from_minutes(start), end=time_from_minutes(start + step))
            for start in self._grid_starts(station, day)
        ]

    def validate_window(self, station: Station, day: date, window: TimeWindow) -> None:
        """Raise InvalidWindow unless ``window`` snaps to the grid within hours."""
        step = self._config.granularity_minutes
        if window.start_minutes % step or window.end_minutes % step:
            raise InvalidWindow(
                f"Window {window} does not align to the {step}-minute grid.",
                window=str(window),
            )
        open_minutes, close_minutes = self.operating_minutes(station, day)
        if open_minutes == close_minutes:
            raise InvalidWindow(
                f"Station {station.station_id} is closed on {day.isoformat()}.",
                window=str(window),
            )
        if window.start_minutes < open_minutes or window.end_minutes > close_minutes:
            raise InvalidWindow(
                f"Window {window} is outside operating hours "
                f"{format_hhmm(time_from_minutes(open_minutes))}-{format_hhmm(time_from_minutes(close_minutes))}.",
                window=str(window),
            )

    # ------------------------------------------------------------------ #
    # Availability
    # ------------------------------------------------------------------ #

    def slot_state(
        self, station_id: str, slot_id: str, day: date, window: TimeWindow
    ) -> SlotState:
        for booking in self._store.bookings_on(station_id, slot_id, day):
            if booking.is_active and booking.slot.window.overlaps(window):
                return SlotState.BOOKED
        for hold in self._store.holds_on(station_id, slot_id, day):
            if hold.slot.window.overlaps(window):
                return SlotState.HELD
        return SlotState.FREE

    def is_free(
        self,
        station_id: str,
        slot_id: str,
        day: date,
        window: TimeWindow,
        holder: Optional[str] = None,
    ) -> bool:
        return self._store.find_conflict(station_id, slot_id, day, window, holder) is None

    def list_instances(
        self, station_id: str, day: date, level: Optional[ChargingLevel] = None
    ) -> list[SlotInstance]:
        """Every grid instance with its current state, ordered by (slot_id, start)."""
        station = self.get_station(station_id)
        self.check_date(day)
        instances = []
        for slot in self._slots_of(station, level):
            for window in self.generate_windows(slot, day, station):
                instances.append(SlotInstance(
                    station_id=station_id,
                    slot_id=slot.slot_id,
                    level=slot.level,
                    date=day,
                    window=window,
                    state=self.slot_state(station_id, slot.slot_id, day, window),
                ))
        return instances

    def list_available(
        self, station_id: str, day: date, level: Optional[ChargingLevel] = None
    ) -> list[SlotInstance]:
        return [
            instance
            for instance in self.list_instances(station_id, day, level)
            if instance.state == SlotState.FREE
        ]

    def find_free_slot(self, request: ChargeRequest) -> Optional[SlotInstance]:
        """First free instance matching the request.

        With a window: the first slot of the requested level free for exactly
        that window. Without one: first fit of ``default_window_minutes``
        (clipped at closing time) ordered by earliest start, then slot id.
        """
        station = self.get_station(request.station_id)
        slots = self._slots_of(station, request.level)
        if request.window is not None:
            candidates = [request.window]
        else:
            candidates = self._default_windows(station, request.date)

        for window in candidates:
            for slot in slots:
                if self.is_free(station.station_id, slot.slot_id, request.date, window):
                    return SlotInstance(
                        station_id=station.station_id,
                        slot_id=slot.slot_id,
                        level=slot.level,
                        date=request.date,
                        window=window,
                    )
        return None

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _grid_starts(self, station: Optional[Station], day: date) -> range:
        open_minutes, close_minutes = self.operating_minutes(station, day)
        step = self._config.granularity_minutes
        first = -(-open_minutes // step) * step
        return range(first, close_minutes - step + 1, step)

    def _default_windows(self, station: Station, day: date) -> list[TimeWindow]:
        _, close_minutes = self.operating_minutes(station, day)
        length = self._config.default_window_minutes
        return [
            TimeWindow(
                start=time_from_minutes(start),
                end=time_from_minutes(min(start + length, close_minutes)),
            )
            for start in self._grid_starts(station, day)
        ]

    @staticmethod
    def _slots_of(station: Station, level: Optional[ChargingLevel]) -> list[SlotDefinition]:
        slots = [s for s in station.slots if level is None or s.level == level]
        return sorted(slots, key=lambda s: natural_key(s.slot_id))

    def _station_of(self, slot_definition: SlotDefinition) -> Optional[Station]:
        for station in self._store.stations.values():
            if slot_definition in station.slots:
                return station
        return None

