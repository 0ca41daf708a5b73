"""Tests for import chains and module integrity.

Ensures all public modules can be imported without errors and
that re-exports from __init__.py files work correctly.
"""


class TestPackageImports:
    def test_top_level_exports(self):
        from evbooking import AllocationEngine, EngineStore, EventBus, NotFound, OfferExpired
        assert issubclass(NotFound, Exception)
        assert callable(AllocationEngine)
        assert EngineStore is not None and EventBus is not None
        assert OfferExpired.http_status == 409

    def test_error_codes(self):
        from evbooking.errors import InvalidTransition, InvalidWindow, NotFound, SlotConflict
        assert InvalidWindow.http_status == 400
        assert NotFound.http_status == 404
        assert SlotConflict("taken").to_dict() == {"error": "slot_conflict", "message": "taken"}
        assert InvalidTransition("no", entry_id="WL-1").to_dict()["details"] == {"entry_id": "WL-1"}


class TestSchemaImports:
    def test_import_station_schema(self):
        from evbooking.schemas.station_schema import ChargingLevel, Station
        assert ChargingLevel.L3 == "L3"
        assert Station(station_id="X", name="X").levels == set()

    def test_camel_case_aliases(self):
        from evbooking.schemas.booking_schema import TimeWindow
        from tests.conftest import make_request
        dumped = make_request(window=("14:00", "24:00")).model_dump(by_alias=True, mode="json")
        assert dumped["requesterId"] == "driver-1"
        assert dumped["window"] == {"start": "14:00", "end": "24:00"}
        assert TimeWindow(start="23:30", end="24:00").duration_minutes == 30


class TestDefaultStations:
    def test_default_stations(self):
        from evbooking.stations import DEFAULT_STATIONS
        assert [s.station_id for s in DEFAULT_STATIONS] == [
            "station-1", "station-2", "station-3", "station-4", "station-5",
        ]

    def test_default_engine_registers_stations(self):
        from evbooking.engine import AllocationEngine
        engine = AllocationEngine()
        assert len(engine.catalog.list_stations()) == 5


class TestPriorityLevels:
    def test_bands(self):
        from evbooking.priority import priority_level
        assert priority_level(0).name == "critical"
        assert priority_level(10).name == "critical"
        assert priority_level(11).name == "high"
        assert priority_level(40).name == "medium"
        assert priority_level(100).name == "low"


class TestConsoleDemo:
    def test_promotion_scenario_runs(self, capsys):
        from console_demo import ConsoleSession
        ConsoleSession().run_scenario("promotion")
        out = capsys.readouterr().out
        assert "waitlisted at position" in out
        assert "Slot Available" in out

    def test_expiry_scenario_runs(self, capsys):
        from console_demo import ConsoleSession
        ConsoleSession().run_scenario("expiry")
        assert "offer_expired" in capsys.readouterr().out
