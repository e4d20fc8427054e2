"""
Flight lifecycle tests.

State machine, usage accumulation, payload release, phases, abort and the
startup sweep.
"""

from pathlib import Path

import pytest

from dfm.exceptions import FlightStateError, FormValidationError, FlightNotFoundError, PersistenceError
from dfm.lifecycle import FlightTracker, accumulate_usage, required_signature_roles
from dfm.registry import get_aircraft
from dfm.schemas import PostFlightIn
from dfm.utils import parse_iso


def _ledger_actions(con, flight_id):
    rows = con.execute(
        "SELECT action FROM data_ledger WHERE table_name='flights' AND row_id=? ORDER BY id", (flight_id,)
    ).fetchall()
    return [r["action"] for r in rows]


# =============================================================================
# Pre-flight and start
# =============================================================================

class TestPreflightAndStart:

    def test_preflight_creates_scheduled_flight(self, tracker, preflight, clock):
        flight = tracker.submit_preflight("Operativo", preflight())

        assert flight["status"] == "Programado"
        assert flight["start_time"] is None
        assert parse_iso(flight["date"]) == clock()
        assert flight["crew"]["missionLeader"] is None
        assert flight["prevuelo"]["location"] == "Base Norte"
        assert flight["report_pending"] is False

    def test_preflight_rejects_expired_license(self, tracker, preflight, con):
        from dfm.registry import register_pilot
        from dfm.schemas import PilotIn

        expired = register_pilot(con, PilotIn(
            name="Old", cc="9", licenseNum="X", licenseType="UAS", licenseExpiry="2026-05-01",
        ))
        with pytest.raises(FormValidationError) as exc:
            tracker.submit_preflight("Operativo", preflight(missionLeader=expired["id"]))
        assert exc.value.details["field"] == "missionLeader"

    def test_preflight_rejects_unknown_battery(self, tracker, preflight):
        with pytest.raises(FormValidationError):
            tracker.submit_preflight("Operativo", preflight(batteries=["nope"]))

    def test_preflight_rejects_bad_type(self, tracker, preflight):
        with pytest.raises(FormValidationError):
            tracker.submit_preflight("Recreativo", preflight())

    def test_start_sets_in_progress(self, tracker, preflight, clock):
        flight = tracker.submit_preflight("Operativo", preflight())
        clock.advance(10)
        started = tracker.start(flight["id"], has_payload=True, weight="2.5")

        assert started["status"] == "EnCurso"
        assert parse_iso(started["start_time"]) == clock()
        assert started["end_time"] is None
        assert started["carga"] == {"hasPayload": True, "weight": "2.5", "released": False}

    def test_start_requires_numeric_weight_with_payload(self, tracker, preflight):
        flight = tracker.submit_preflight("Operativo", preflight())
        with pytest.raises(FormValidationError):
            tracker.start(flight["id"], has_payload=True, weight="abc")
        assert tracker.get_flight(flight["id"])["status"] == "Programado"

    def test_start_refuses_second_in_progress(self, tracker, preflight):
        first = tracker.submit_preflight("Operativo", preflight())
        second = tracker.submit_preflight("Operativo", preflight())
        tracker.start(first["id"])

        with pytest.raises(FlightStateError) as exc:
            tracker.start(second["id"])
        assert exc.value.details["active_flight_id"] == first["id"]
        assert len(tracker.list_flights(status="EnCurso")) == 1

    def test_start_twice_is_rejected(self, tracker, preflight):
        flight = tracker.submit_preflight("Operativo", preflight())
        tracker.start(flight["id"])
        with pytest.raises(FlightStateError):
            tracker.start(flight["id"])

    def test_unknown_flight(self, tracker):
        with pytest.raises(FlightNotFoundError):
            tracker.get_flight(999)


# =============================================================================
# Finish and usage accumulation
# =============================================================================

class TestFinish:

    def test_duration_and_accumulation(self, tracker, preflight, clock, con):
        flight = tracker.submit_preflight("Operativo", preflight())
        tracker.start(flight["id"])
        clock.advance(125)
        done = tracker.finish(flight["id"])

        assert done["status"] == "Finalizado"
        assert done["duration"] == 125
        assert parse_iso(done["end_time"]) == clock()
        assert done["report_pending"] is True
        ac = get_aircraft(con)
        assert ac["total_hours"] == 2
        assert [m["hours"] for m in ac["motors"]] == [2, 2]
        assert _ledger_actions(con, flight["id"]) == ["INSERT", "START", "FINISH"]

    def test_accumulates_across_flights(self, tracker, preflight, clock, con):
        for seconds in (3600, 59, 61):
            f = tracker.submit_preflight("Operativo", preflight())
            tracker.start(f["id"])
            clock.advance(seconds)
            tracker.finish(f["id"])

        ac = get_aircraft(con)
        assert ac["total_hours"] == 61
        assert all(m["hours"] == 61 for m in ac["motors"])

    def test_finish_requires_in_progress(self, tracker, preflight):
        flight = tracker.submit_preflight("Operativo", preflight())
        with pytest.raises(FlightStateError):
            tracker.finish(flight["id"])

    def test_finish_without_aircraft(self, db_path, reports, clock, con, pilots):
        from dfm.schemas import PreFlightIn

        tracker = FlightTracker(db_path, reports, clock=clock)
        flight = tracker.submit_preflight("Operativo", PreFlightIn(
            pilotInternal=pilots[0]["id"], pilotExternal=pilots[1]["id"], batteries=["b"],
            purpose="p", estimatedTime="5", location="l",
        ))
        tracker.start(flight["id"])
        clock.advance(300)
        assert tracker.finish(flight["id"])["duration"] == 300

    def test_unreadable_motor_usage_is_a_persistence_error(self, tracker, preflight, clock, con, aircraft):
        flight = tracker.submit_preflight("Operativo", preflight())
        tracker.start(flight["id"])
        con.execute("""UPDATE aircraft SET motors='[{"id": "a", "code": "M1", "hours": "abc"}]'""")
        con.commit()
        clock.advance(120)

        with pytest.raises(PersistenceError) as exc:
            tracker.finish(flight["id"])

        assert exc.value.details["motor"] == "M1"
        assert tracker.get_flight(flight["id"])["status"] == "EnCurso"
        assert tracker.abort(flight["id"])["status"] == "Abortado"

    def test_accumulate_usage_decodes_legacy_hhmm(self):
        aircraft = {"total_hours": 10, "motors": [{"code": "M1", "hours": "10:30"}, {"code": "M2", "hours": 5}]}

        out = accumulate_usage(aircraft, 2)

        assert out["total_hours"] == 12
        assert [m["hours"] for m in out["motors"]] == [632, 7]
        assert aircraft["motors"][0]["hours"] == "10:30"

    def test_accumulate_usage_rejects_negative(self):
        with pytest.raises(ValueError):
            accumulate_usage({"total_hours": 0, "motors": []}, -1)


# =============================================================================
# Payload and phases
# =============================================================================

class TestPayloadAndPhases:

    def test_release_twice_keeps_first_time(self, tracker, preflight, clock):
        flight = tracker.submit_preflight("Operativo", preflight())
        tracker.start(flight["id"], has_payload=True, weight="1")
        clock.advance(40)
        first = tracker.release_payload(flight["id"])["carga"]
        clock.advance(20)
        second = tracker.release_payload(flight["id"])["carga"]

        assert first["released"] is True
        assert first["releaseOffset"] == 40
        assert second["releaseTime"] == first["releaseTime"]

    def test_release_without_payload_is_noop(self, tracker, preflight):
        flight = tracker.submit_preflight("Operativo", preflight())
        tracker.start(flight["id"])
        carga = tracker.release_payload(flight["id"])["carga"]
        assert carga["released"] is False
        assert "releaseTime" not in carga

    def test_release_requires_in_progress(self, tracker, preflight):
        flight = tracker.submit_preflight("Operativo", preflight())
        with pytest.raises(FlightStateError):
            tracker.release_payload(flight["id"])

    def test_phases_open_phase_stays_open_at_finish(self, tracker, preflight, clock):
        flight = tracker.submit_preflight("Ensayo", preflight())
        tracker.start(flight["id"])
        tracker.mark_phase(flight["id"], "Ascenso")
        clock.advance(30)
        tracker.mark_phase(flight["id"], "Hover")
        clock.advance(20)
        done = tracker.finish(flight["id"])

        phases = done["fases"]
        assert [p["name"] for p in phases] == ["Ascenso", "Hover"]
        assert phases[0]["duration"] == 30
        assert phases[0]["endTime"] - phases[0]["startTime"] == 30000
        assert "endTime" not in phases[1]
        assert "duration" not in phases[1]
        assert done["duration"] == 50

    def test_phase_persisted_immediately(self, tracker, preflight):
        flight = tracker.submit_preflight("Ensayo", preflight())
        tracker.start(flight["id"])
        tracker.mark_phase(flight["id"], "Ascenso")
        assert tracker.get_flight(flight["id"])["fases"][0]["name"] == "Ascenso"

    def test_phase_only_for_test_flights(self, tracker, preflight):
        flight = tracker.submit_preflight("Operativo", preflight())
        tracker.start(flight["id"])
        with pytest.raises(FlightStateError):
            tracker.mark_phase(flight["id"], "Hover")

    def test_unknown_phase_name(self, tracker, preflight):
        flight = tracker.submit_preflight("Ensayo", preflight())
        tracker.start(flight["id"])
        with pytest.raises(FormValidationError):
            tracker.mark_phase(flight["id"], "Loop")


# =============================================================================
# Abort and sweep
# =============================================================================

class TestAbort:

    def test_abort_in_progress(self, tracker, preflight, clock, con):
        flight = tracker.submit_preflight("Operativo", preflight())
        tracker.start(flight["id"])
        clock.advance(90)
        aborted = tracker.abort(flight["id"], "Viento")

        assert aborted["status"] == "Abortado"
        assert aborted["end_time"] is not None
        assert aborted["duration"] == 90
        assert aborted["cronometro"] == {"abortReason": "Viento"}
        assert Path(aborted["pdf_path"]).name == f"Flight_{flight['id']}_ABORTADO.pdf"
        assert Path(aborted["pdf_path"]).parent.name == "Operativo"
        assert get_aircraft(con)["total_hours"] == 0

    def test_abort_scheduled(self, tracker, preflight):
        flight = tracker.submit_preflight("Ensayo", preflight())
        aborted = tracker.abort(flight["id"])
        assert aborted["status"] == "Abortado"
        assert aborted["duration"] == 0

    def test_abort_is_idempotent(self, tracker, preflight, con):
        flight = tracker.submit_preflight("Operativo", preflight())
        tracker.start(flight["id"])
        first = tracker.abort(flight["id"])
        again = tracker.abort(flight["id"], "otra")

        assert again["pdf_path"] == first["pdf_path"]
        assert again["end_time"] == first["end_time"]
        assert _ledger_actions(con, flight["id"]).count("ABORT") == 1

    def test_abort_finished_flight_is_noop(self, tracker, preflight):
        flight = tracker.submit_preflight("Operativo", preflight())
        tracker.start(flight["id"])
        done = tracker.finish(flight["id"])
        assert tracker.abort(flight["id"]) == done

    def test_sweep_aborts_stale_flights(self, db_path, reports, preflight, clock):
        before = FlightTracker(db_path, reports, clock=clock)
        flight = before.submit_preflight("Operativo", preflight())
        before.start(flight["id"])
        clock.advance(600)

        after_restart = FlightTracker(db_path, reports, clock=clock)
        assert after_restart.sweep_stale_flights() == [flight["id"]]

        swept = after_restart.get_flight(flight["id"])
        assert swept["status"] == "Abortado"
        assert swept["cronometro"]["abortReason"] == "FALLA"
        assert swept["pdf_path"] is not None
        assert after_restart.list_flights(status="EnCurso") == []

    def test_sweep_continues_after_failure(self, tracker, preflight, con, monkeypatch):
        ids = []
        for _ in range(2):
            f = tracker.submit_preflight("Operativo", preflight())
            ids.append(f["id"])
        # Dos vuelos EnCurso solo pueden venir de una base anterior
        con.execute("UPDATE flights SET status='EnCurso', start_time=date")
        con.commit()

        real = tracker.abort

        def flaky(flight_id, reason=None):
            if flight_id == ids[0]:
                raise FlightStateError("boom")
            return real(flight_id, reason)

        monkeypatch.setattr(tracker, "abort", flaky)
        assert tracker.sweep_stale_flights() == [ids[1]]

    def test_sweep_with_nothing_to_do(self, tracker):
        assert tracker.sweep_stale_flights() == []


# =============================================================================
# Post-flight
# =============================================================================

class TestPostflight:

    def _finished(self, tracker, preflight, clock, **kw):
        flight = tracker.submit_preflight("Operativo", preflight(**kw))
        tracker.start(flight["id"])
        clock.advance(65)
        return tracker.finish(flight["id"])

    def test_postflight_generates_report(self, tracker, preflight, clock, signatures):
        flight = self._finished(tracker, preflight, clock)
        done = tracker.submit_postflight(flight["id"], PostFlightIn(
            status="Sin novedad", notes="ok", pdfName="vuelo_1", signatures=signatures,
        ))

        path = Path(done["pdf_path"])
        assert path.name == "vuelo_1.pdf"
        assert path.read_bytes().startswith(b"%PDF")
        assert done["postvuelo"] == {"status": "Sin novedad", "notes": "ok"}
        assert done["report_pending"] is False

    def test_postflight_requires_assigned_roles(self, tracker, preflight, clock, signatures, pilots):
        flight = self._finished(tracker, preflight, clock, missionLeader=pilots[0]["id"])
        with pytest.raises(FormValidationError) as exc:
            tracker.submit_postflight(flight["id"], PostFlightIn(status="ok", signatures=signatures))
        assert exc.value.details["missing"] == ["Mission Leader"]

    def test_postflight_rejects_invalid_signature(self, tracker, preflight, clock):
        flight = self._finished(tracker, preflight, clock)
        with pytest.raises(FormValidationError):
            tracker.submit_postflight(flight["id"], PostFlightIn(
                status="ok", signatures={"Internal Pilot": "garbage", "External Pilot": "data:image/png;base64,@@"},
            ))

    def test_postflight_only_once(self, tracker, preflight, clock, signatures):
        flight = self._finished(tracker, preflight, clock)
        tracker.submit_postflight(flight["id"], PostFlightIn(status="ok", signatures=signatures))
        with pytest.raises(FlightStateError):
            tracker.submit_postflight(flight["id"], PostFlightIn(status="ok", signatures=signatures))

    def test_postflight_requires_finished(self, tracker, preflight, signatures):
        flight = tracker.submit_preflight("Operativo", preflight())
        with pytest.raises(FlightStateError):
            tracker.submit_postflight(flight["id"], PostFlightIn(status="ok", signatures=signatures))

    def test_required_signature_roles(self):
        assert required_signature_roles({"pilotInternal": 1, "pilotExternal": 2}) == [
            "Internal Pilot", "External Pilot",
        ]
        assert required_signature_roles({"flightEngineer": 3}) == [
            "Internal Pilot", "External Pilot", "Flight Engineer",
        ]
