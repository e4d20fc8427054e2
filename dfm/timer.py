"""
Vista del cronómetro de un vuelo.

La vista se reconstruye siempre desde la base (reanudación tras cerrar la
app) y mantiene un tick en segundo plano que recalcula el tiempo
transcurrido mientras el vuelo está EnCurso.
"""

import logging
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any, Callable

from .db import connect
from .utils import json_loads_or, parse_iso, utc_now, format_clock

logger = logging.getLogger(__name__)

TICK_SECONDS = 1.0


@dataclass
class TimerState:
    flight_id: int
    flight_type: Optional[str] = None
    status: str = "Programado"
    start_time: Optional[str] = None
    elapsed: int = 0
    has_payload: bool = False
    payload_weight: str = ""
    payload_released: bool = False
    payload_release_time: Optional[str] = None
    phases: List[Dict[str, Any]] = field(default_factory=list)
    current_phase: Optional[str] = None
    loaded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["elapsed_text"] = format_clock(self.elapsed)
        return d


def _elapsed(status: str, start_time: Optional[str], duration: int, now: datetime) -> int:
    if status == "EnCurso":
        start = parse_iso(start_time)
        return max(0, int((now - start).total_seconds())) if start else 0
    return int(duration or 0)


def load_timer_state(db_path: Path, flight_id: int, clock: Callable[[], datetime] = utc_now) -> TimerState:
    """Estado del cronómetro desde la fila persistida.

    Cualquier error de lectura o decodificación deja la vista por defecto
    (Programado, sin tiempo) en lugar de fallar.
    """
    try:
        with connect(db_path) as con:
            row = con.execute("SELECT * FROM flights WHERE id=?", (flight_id,)).fetchone()
        if row is None:
            logger.warning("Cronómetro: vuelo %s no existe", flight_id)
            return TimerState(flight_id=flight_id)
        carga = json_loads_or(row["carga"], {}) or {}
        phases = json_loads_or(row["fases"], []) or []
        open_phase = phases[-1]["name"] if phases and phases[-1].get("endTime") is None else None
        return TimerState(
            flight_id=flight_id,
            flight_type=row["type"],
            status=row["status"],
            start_time=row["start_time"],
            elapsed=_elapsed(row["status"], row["start_time"], row["duration"], clock()),
            has_payload=bool(carga.get("hasPayload")),
            payload_weight=carga.get("weight") or "",
            payload_released=bool(carga.get("released")),
            payload_release_time=carga.get("releaseTime"),
            phases=phases,
            current_phase=open_phase,
            loaded=True,
        )
    except Exception as ex:
        logger.warning("Cronómetro: no se pudo cargar el vuelo %s: %s", flight_id, ex)
        return TimerState(flight_id=flight_id)


class Ticker:
    """Hilo daemon que llama `callback` cada `interval` segundos hasta `stop()`."""

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "dfm-tick"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception:
                logger.exception("Error en el tick %s", self.name)

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        t, self._thread = self._thread, None
        if t is not None and t is not threading.current_thread():
            t.join(timeout=self.interval + 1)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()


class TimerView:
    def __init__(
        self,
        db_path: Path,
        flight_id: int,
        clock: Callable[[], datetime] = utc_now,
        tick_seconds: float = TICK_SECONDS,
    ):
        self.db_path = db_path
        self.flight_id = flight_id
        self.clock = clock
        self._lock = threading.Lock()
        self._ticker = Ticker(tick_seconds, self._tick, name=f"dfm-tick-{flight_id}")
        self._closed = False
        self.state = TimerState(flight_id=flight_id)
        self.refresh()

    def _tick(self):
        with self._lock:
            s = self.state
            if s.status != "EnCurso":
                return
            s.elapsed = _elapsed(s.status, s.start_time, s.elapsed, self.clock())

    def refresh(self) -> TimerState:
        """Recarga el estado y arranca o detiene el tick según el estado."""
        state = load_timer_state(self.db_path, self.flight_id, self.clock)
        with self._lock:
            self.state = state
        if state.status == "EnCurso" and not self._closed:
            self._ticker.start()
        else:
            self._ticker.stop()
        return state

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            d = self.state.to_dict()
        d["ticking"] = self.ticking
        return d

    @property
    def ticking(self) -> bool:
        return self._ticker.running

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._ticker.stop()
        logger.debug("Cronómetro del vuelo %s cerrado", self.flight_id)
