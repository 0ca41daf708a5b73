"""Default station inventory with slot levels, power ratings and hours."""

from evbooking.schemas.station_schema import ChargingLevel, GeoPoint, SlotDefinition, Station


def _slots(prefix: str, mix: list[tuple[ChargingLevel, float, int]]) -> tuple[SlotDefinition, ...]:
    """Expand ``(level, power_kw, count)`` groups into numbered slot definitions."""
    slots = []
    number = 1
    for level, power_kw, count in mix:
        for _ in range(count):
            slots.append(SlotDefinition(slot_id=f"{prefix}-{number}", level=level, power_kw=power_kw))
            number += 1
    return tuple(slots)


DEFAULT_STATIONS: list[Station] = [
    Station(
        station_id="station-1",
        name="Downtown Charging Hub",
        address="123 Main St, City Center",
        location=GeoPoint(lat=40.7128, lng=-74.0060),
        slots=_slots("s1", [
            (ChargingLevel.L2, 7.2, 3),
            (ChargingLevel.L3, 50.0, 4),
            (ChargingLevel.L3, 150.0, 3),
        ]),
        open_time="00:00",
        close_time="24:00",
        price_per_kwh=0.25,
    ),
    Station(
        station_id="station-2",
        name="Westside EV Station",
        address="456 West Ave, Westside",
        location=GeoPoint(lat=40.7138, lng=-74.0170),
        slots=_slots("s2", [(ChargingLevel.L2, 7.2, 5)]),
        open_time="06:00",
        close_time="22:00",
        price_per_kwh=0.20,
    ),
    Station(
        station_id="station-3",
        name="Eastside Supercharger",
        address="789 East Blvd, Eastside",
        location=GeoPoint(lat=40.7200, lng=-73.9950),
        slots=_slots("s3", [
            (ChargingLevel.L1, 1.9, 2),
            (ChargingLevel.L2, 11.0, 3),
            (ChargingLevel.L3, 150.0, 3),
        ]),
        open_time="00:00",
        close_time="24:00",
        price_per_kwh=0.30,
    ),
    Station(
        station_id="station-4",
        name="North Shopping Mall",
        address="101 North Mall, Shopping District",
        location=GeoPoint(lat=40.7350, lng=-74.0080),
        slots=_slots("s4", [
            (ChargingLevel.L2, 7.2, 4),
            (ChargingLevel.L3, 50.0, 2),
        ]),
        open_time="08:00",
        close_time="21:00",
        price_per_kwh=0.28,
    ),
    Station(
        station_id="station-5",
        name="South Park Charging",
        address="202 South Park, Green Area",
        location=GeoPoint(lat=40.7080, lng=-74.0150),
        slots=_slots("s5", [(ChargingLevel.L2, 7.2, 6)]),
        open_time="07:00",
        close_time="20:00",
        closed_weekdays=frozenset({6}),
        price_per_kwh=0.22,
    ),
]
