import os
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, List, Callable

from .db import connect, init_db, db_path_from_env
from .lifecycle import FlightTracker, TERMINAL
from .registry import MOTOR_ALERT_MINUTES
from .reports import ReportService, REPORT_TIMEOUT_SECONDS
from .timer import TimerView, TICK_SECONDS
from .utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """Estado de la aplicación durante su vida: rutas, servicios y cronómetros abiertos."""

    db_path: Path
    reports_root: Path
    report_timeout: float = REPORT_TIMEOUT_SECONDS
    sweep_timeout: float = 30.0
    tick_seconds: float = TICK_SECONDS
    alert_minutes: int = MOTOR_ALERT_MINUTES
    clock: Callable[[], datetime] = utc_now
    current_flight_id: Optional[int] = None
    views: Dict[int, TimerView] = field(default_factory=dict)
    _views_lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def __post_init__(self):
        self.reports = ReportService(self.reports_root, timeout=self.report_timeout)
        self.tracker = FlightTracker(self.db_path, self.reports, clock=self.clock)

    @classmethod
    def from_env(cls, clock: Callable[[], datetime] = utc_now) -> "AppState":
        db_path = db_path_from_env()
        reports_root = Path(os.getenv("REPORTS_DIR") or db_path.parent / "DFM")
        return cls(
            db_path=db_path,
            reports_root=reports_root,
            report_timeout=float(os.getenv("REPORT_TIMEOUT_SECONDS", str(REPORT_TIMEOUT_SECONDS))),
            sweep_timeout=float(os.getenv("SWEEP_TIMEOUT_SECONDS", "30")),
            tick_seconds=float(os.getenv("TICK_SECONDS", str(TICK_SECONDS))),
            alert_minutes=int(os.getenv("MOTOR_ALERT_MINUTES", str(MOTOR_ALERT_MINUTES))),
            clock=clock,
        )

    def connect(self):
        return connect(self.db_path)

    def start(self) -> List[int]:
        """Inicializa la base y ejecuta el barrido de vuelos interrumpidos.

        El barrido corre en un hilo con espera acotada; si se excede, la app
        arranca igual y el hilo termina en segundo plano.
        """
        init_db(self.db_path)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dfm-sweep")
        future = executor.submit(self.tracker.sweep_stale_flights)
        try:
            aborted = future.result(timeout=self.sweep_timeout)
        except FutureTimeout:
            logger.error("Barrido de arranque excedió %ss; continúa en segundo plano", self.sweep_timeout)
            aborted = []
        finally:
            executor.shutdown(wait=False)
        logger.info("DFM listo: db=%s reportes=%s", self.db_path, self.reports_root)
        return aborted

    # ---------------------- Cronómetros ----------------------

    def open_view(self, flight_id: int) -> TimerView:
        """Vista del cronómetro; solo se conserva mientras el vuelo no es terminal."""
        with self._views_lock:
            view = self.views.get(flight_id)
            if view is None:
                view = TimerView(self.db_path, flight_id, clock=self.clock, tick_seconds=self.tick_seconds)
                self.views[flight_id] = view
            else:
                view.refresh()
            self.current_flight_id = flight_id
            self._release_if_terminal(flight_id, view)
            return view

    def refresh_view(self, flight_id: int) -> None:
        with self._views_lock:
            view = self.views.get(flight_id)
            if view is not None:
                view.refresh()
                self._release_if_terminal(flight_id, view)

    def _release_if_terminal(self, flight_id: int, view: TimerView) -> None:
        if view.state.status in TERMINAL:
            self.views.pop(flight_id, None)
            view.close()

    def close_view(self, flight_id: int) -> None:
        with self._views_lock:
            view = self.views.pop(flight_id, None)
            if view is not None:
                view.close()
            if self.current_flight_id == flight_id:
                self.current_flight_id = None

    def shutdown(self) -> None:
        with self._views_lock:
            for flight_id in list(self.views):
                self.close_view(flight_id)
            self.current_flight_id = None
