"""
Pytest configuration and fixtures.

Each test gets its own SQLite file and report tree under tmp_path, and a
controllable clock so durations are exact.
"""

from datetime import datetime, timedelta, timezone

import pytest

from dfm.db import connect, init_db
from dfm.lifecycle import FlightTracker
from dfm.registry import register_aircraft, register_pilot
from dfm.reports import ReportService
from dfm.schemas import AircraftIn, PilotIn, PreFlightIn

# PNG 1x1
SIGNATURE = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)

T0 = datetime(2026, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


# =============================================================================
# Infrastructure
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "dfm.sqlite"
    init_db(path)
    return path


@pytest.fixture
def con(db_path):
    with connect(db_path) as c:
        yield c


@pytest.fixture
def reports(tmp_path):
    return ReportService(tmp_path / "DFM", timeout=20)


@pytest.fixture
def tracker(db_path, reports, clock):
    return FlightTracker(db_path, reports, clock=clock)


# =============================================================================
# Registered data
# =============================================================================

@pytest.fixture
def aircraft_form():
    return AircraftIn(
        name="Dragom X1",
        code="DX1",
        part_num="P-100",
        serial_num="S-200",
        motors=[{"code": "M1", "hours": "00:00"}, {"code": "M2", "hours": "00:00"}],
        batteriesMain=[{"code": "B1", "cycles": "3"}],
        batteriesSpare=[{"code": "B2"}],
        cameras=[{"code": "C1", "description": "RGB"}],
    )


@pytest.fixture
def aircraft(con, aircraft_form):
    return register_aircraft(con, aircraft_form)


@pytest.fixture
def pilots(con):
    internal = register_pilot(con, PilotIn(
        name="Ana Ruiz", cc="1001", licenseNum="L-1", licenseType="UAS", licenseExpiry="2030-01-01",
    ))
    external = register_pilot(con, PilotIn(
        name="Luis Gómez", cc="1002", licenseNum="L-2", licenseType="UAS", licenseExpiry="2030-01-01",
    ))
    return internal, external


@pytest.fixture
def preflight(aircraft, pilots):
    def make(**overrides):
        data = {
            "pilotInternal": pilots[0]["id"],
            "pilotExternal": pilots[1]["id"],
            "batteries": [aircraft["batteries_main"][0]["id"]],
            "camera": aircraft["cameras"][0]["id"],
            "purpose": "Inspección de línea",
            "estimatedTime": "20",
            "location": "Base Norte",
        }
        data.update(overrides)
        return PreFlightIn(**data)
    return make


@pytest.fixture
def signatures():
    return {"Internal Pilot": SIGNATURE, "External Pilot": SIGNATURE}
