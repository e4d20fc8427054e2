"""Application state: timer views opened from concurrent requests."""

import threading
import time

import dfm.state as state_mod
from dfm.state import AppState
from dfm.timer import TimerView


def _tick_threads(flight_id):
    return [t for t in threading.enumerate() if t.name == f"dfm-tick-{flight_id}" and t.is_alive()]


class TestTimerViews:

    def _state(self, db_path, tmp_path, clock):
        return AppState(db_path=db_path, reports_root=tmp_path / "DFM", tick_seconds=0.01, clock=clock)

    def test_concurrent_open_leaves_no_ticker_after_shutdown(
        self, db_path, tmp_path, clock, tracker, preflight, monkeypatch
    ):
        flight = tracker.submit_preflight("Operativo", preflight())
        tracker.start(flight["id"])

        class SlowView(TimerView):
            def __init__(self, *args, **kwargs):
                time.sleep(0.05)
                super().__init__(*args, **kwargs)

        monkeypatch.setattr(state_mod, "TimerView", SlowView)
        state = self._state(db_path, tmp_path, clock)
        views = []
        workers = [threading.Thread(target=lambda: views.append(state.open_view(flight["id"]))) for _ in range(4)]
        for w in workers:
            w.start()
        for w in workers:
            w.join()

        assert len({id(v) for v in views}) == 1
        assert len(state.views) == 1

        state.shutdown()

        assert state.views == {}
        assert _tick_threads(flight["id"]) == []

    def test_terminal_flight_view_is_released(self, db_path, tmp_path, clock, tracker, preflight):
        flight = tracker.submit_preflight("Operativo", preflight())
        tracker.start(flight["id"])
        state = self._state(db_path, tmp_path, clock)

        view = state.open_view(flight["id"])
        assert view.ticking is True

        clock.advance(30)
        tracker.finish(flight["id"])
        state.refresh_view(flight["id"])

        assert flight["id"] not in state.views
        assert view.ticking is False
        assert _tick_threads(flight["id"]) == []

        snapshot = state.open_view(flight["id"]).snapshot()
        assert snapshot["status"] == "Finalizado"
        assert snapshot["elapsed"] == 30
        assert flight["id"] not in state.views
