"""
Ciclo de vida del vuelo.

Programado -> EnCurso -> Finalizado | Abortado. Finalizado y Abortado son
terminales. Al finalizar, la duración (minutos enteros) se acumula en el
tiempo total de la aeronave y en cada motor. Al arrancar la aplicación,
cualquier vuelo que siga EnCurso viene de una sesión interrumpida y se
aborta.
"""

import copy
import logging
import sqlite3
import functools
from datetime import datetime, date
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable

from .db import connect, transaction, log_ledger
from .exceptions import (
    DFMError,
    FlightNotFoundError,
    FlightStateError,
    FormValidationError,
    PersistenceError,
    ReportError,
)
from .registry import decode_aircraft, get_aircraft, battery_ids, camera_ids, license_valid_on
from .reports import ReportService
from .schemas import PreFlightIn, PostFlightIn
from .utils import (
    json_dumps,
    json_loads_or,
    utc_now,
    to_iso,
    parse_iso,
    epoch_ms,
    hhmm_to_minutes,
    sanitize_signature,
)

logger = logging.getLogger(__name__)

PROGRAMADO = "Programado"
EN_CURSO = "EnCurso"
FINALIZADO = "Finalizado"
ABORTADO = "Abortado"
TERMINAL = (FINALIZADO, ABORTADO)

OPERATIVO = "Operativo"
ENSAYO = "Ensayo"
FLIGHT_TYPES = (OPERATIVO, ENSAYO)

PHASE_NAMES = ("Ascenso", "Descenso", "Desplazamiento", "Ascenso+Desp", "Descenso+Desp", "Hover")

SWEEP_REASON = "FALLA"

JSON_COLUMNS = ("crew", "equipment", "prevuelo", "postvuelo", "cronometro", "carga", "fases", "signatures")

# Rol de firma -> clave de tripulación (None = siempre requerido)
SIGNATURE_ROLES = (
    ("Internal Pilot", "pilotInternal", True),
    ("External Pilot", "pilotExternal", True),
    ("Mission Leader", "missionLeader", False),
    ("Flight Engineer", "flightEngineer", False),
)


def _persistent(fn):
    """Convierte errores de SQLite fuera de una transacción en PersistenceError."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except sqlite3.Error as ex:
            logger.error("Error de base de datos en %s: %s", fn.__name__, ex, exc_info=True)
            raise PersistenceError(details={"error": str(ex)}) from ex
    return wrapper


def decode_flight(row) -> Dict[str, Any]:
    f = dict(row)
    for col in JSON_COLUMNS:
        f[col] = json_loads_or(f.get(col))
    f["duration"] = int(f.get("duration") or 0)
    f["report_pending"] = f["status"] in TERMINAL and not f.get("pdf_path")
    return f


def accumulate_usage(aircraft: Dict[str, Any], minutes: int) -> Dict[str, Any]:
    """Suma `minutes` al total de la aeronave y, uniformemente, a cada motor.

    Devuelve una copia; el uso de motor en formato "HH:MM" se decodifica y
    queda almacenado como minutos enteros.
    """
    if minutes < 0:
        raise ValueError("minutes must be >= 0")
    out = copy.deepcopy(aircraft)
    out["total_hours"] = int(out.get("total_hours") or 0) + minutes
    for m in out.get("motors", []):
        m["hours"] = hhmm_to_minutes(m.get("hours")) + minutes
    return out


def required_signature_roles(crew: Optional[Dict[str, Any]]) -> List[str]:
    crew = crew or {}
    return [role for role, key, always in SIGNATURE_ROLES if always or crew.get(key)]


def _is_number(value) -> bool:
    try:
        float(str(value).replace(",", "."))
    except (TypeError, ValueError):
        return False
    return str(value).strip() != ""


class FlightTracker:
    """Dueño del estado de cada vuelo y de la acumulación de uso."""

    def __init__(self, db_path: Path, reports: ReportService, clock: Callable[[], datetime] = utc_now):
        self.db_path = db_path
        self.reports = reports
        self.clock = clock

    def _connect(self):
        return connect(self.db_path)

    def _load(self, con: sqlite3.Connection, flight_id: int) -> Dict[str, Any]:
        row = con.execute("SELECT * FROM flights WHERE id=?", (flight_id,)).fetchone()
        if not row:
            raise FlightNotFoundError(flight_id)
        return decode_flight(row)

    @staticmethod
    def _transition(cur, flight_id: int, from_status, sets: Dict[str, Any]) -> None:
        """UPDATE condicionado al estado de origen; falla si otro cambio ganó."""
        if isinstance(from_status, str):
            from_status = (from_status,)
        cols = ", ".join(f"{k}=?" for k in sets)
        marks = ",".join("?" for _ in from_status)
        cur.execute(
            f"UPDATE flights SET {cols} WHERE id=? AND status IN ({marks})",
            (*sets.values(), flight_id, *from_status),
        )
        if cur.rowcount != 1:
            raise FlightStateError("El vuelo cambió de estado durante la operación", details={"flight_id": flight_id})

    # ---------------------- Consultas ----------------------

    @_persistent
    def get_flight(self, flight_id: int) -> Dict[str, Any]:
        with self._connect() as con:
            return self._load(con, flight_id)

    @_persistent
    def list_flights(
        self,
        status: Optional[str] = None,
        flight_type: Optional[str] = None,
        with_report: bool = False,
    ) -> List[Dict[str, Any]]:
        where, params = [], []
        if status:
            where.append("status=?")
            params.append(status)
        if flight_type:
            where.append("type=?")
            params.append(flight_type)
        if with_report:
            where.append("pdf_path IS NOT NULL")
        sql = "SELECT * FROM flights"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY date DESC, id DESC"
        with self._connect() as con:
            return [decode_flight(r) for r in con.execute(sql, params).fetchall()]

    # ---------------------- Transiciones ----------------------

    @_persistent
    def submit_preflight(self, flight_type: str, form: PreFlightIn) -> Dict[str, Any]:
        """Crea el vuelo en estado Programado a partir del formulario de prevuelo."""
        if flight_type not in FLIGHT_TYPES:
            raise FormValidationError(f"Tipo de vuelo inválido: {flight_type}", field="type")
        now = self.clock()
        with self._connect() as con:
            self._validate_crew(con, form, now.date())
            aircraft = get_aircraft(con)
            if aircraft is not None:
                unknown = set(form.batteries) - battery_ids(aircraft)
                if unknown:
                    raise FormValidationError("Batería no registrada en la aeronave", field="batteries",
                                              details={"unknown": sorted(unknown)})
                if form.camera and form.camera not in camera_ids(aircraft):
                    raise FormValidationError("Cámara no registrada en la aeronave", field="camera")
            with transaction(con) as cur:
                cur.execute(
                    "INSERT INTO flights (type, status, date, crew, equipment, prevuelo) VALUES (?,?,?,?,?,?)",
                    (
                        flight_type,
                        PROGRAMADO,
                        to_iso(now),
                        json_dumps(form.crew()),
                        json_dumps(form.equipment()),
                        json_dumps(form.prevuelo()),
                    ),
                )
                flight_id = cur.lastrowid
                log_ledger(cur, "flights", "INSERT", flight_id, {"type": flight_type, "status": PROGRAMADO})
            logger.info("Vuelo %s programado (%s)", flight_id, flight_type)
            return self._load(con, flight_id)

    def _validate_crew(self, con: sqlite3.Connection, form: PreFlightIn, on_date: date) -> None:
        for key, pilot_id in form.crew().items():
            if pilot_id is None:
                continue
            row = con.execute("SELECT * FROM pilots WHERE id=?", (pilot_id,)).fetchone()
            if not row:
                raise FormValidationError("Piloto no registrado", field=key, details={"pilot_id": pilot_id})
            if not license_valid_on(dict(row), on_date):
                raise FormValidationError("Licencia vencida para la fecha del vuelo", field=key,
                                          details={"pilot_id": pilot_id})

    @_persistent
    def start(self, flight_id: int, has_payload: bool = False, weight: str = "") -> Dict[str, Any]:
        with self._connect() as con:
            flight = self._load(con, flight_id)
            if flight["status"] != PROGRAMADO:
                raise FlightStateError("Solo un vuelo programado puede iniciar", current_status=flight["status"])
            if has_payload and not _is_number(weight):
                raise FormValidationError("Ingrese un peso de carga válido", field="weight")
            now = self.clock()
            with transaction(con) as cur:
                other = cur.execute(
                    "SELECT id FROM flights WHERE status=? AND id<>? LIMIT 1", (EN_CURSO, flight_id)
                ).fetchone()
                if other:
                    raise FlightStateError("Ya hay un vuelo en curso", details={"active_flight_id": other["id"]})
                carga = {"hasPayload": bool(has_payload), "weight": weight or "", "released": False}
                self._transition(cur, flight_id, PROGRAMADO, {
                    "status": EN_CURSO,
                    "start_time": to_iso(now),
                    "end_time": None,
                    "carga": json_dumps(carga),
                })
                log_ledger(cur, "flights", "START", flight_id, carga)
            logger.info("Vuelo %s en curso", flight_id)
            return self._load(con, flight_id)

    @_persistent
    def release_payload(self, flight_id: int) -> Dict[str, Any]:
        """Registra la liberación de carga; solo la primera llamada escribe."""
        with self._connect() as con:
            flight = self._load(con, flight_id)
            if flight["status"] != EN_CURSO:
                raise FlightStateError("La carga solo se libera en vuelo", current_status=flight["status"])
            carga = dict(flight["carga"] or {})
            if not carga.get("hasPayload"):
                logger.info("Vuelo %s sin carga; liberación ignorada", flight_id)
                return flight
            if carga.get("released"):
                return flight
            now = self.clock()
            start = parse_iso(flight["start_time"])
            carga.update({
                "released": True,
                "releaseTime": to_iso(now),
                "releaseOffset": int((now - start).total_seconds()) if start else None,
            })
            with transaction(con) as cur:
                self._transition(cur, flight_id, EN_CURSO, {"carga": json_dumps(carga)})
                log_ledger(cur, "flights", "RELEASE", flight_id, carga)
            logger.info("Vuelo %s: carga liberada", flight_id)
            return self._load(con, flight_id)

    @_persistent
    def mark_phase(self, flight_id: int, name: str) -> Dict[str, Any]:
        if name not in PHASE_NAMES:
            raise FormValidationError(f"Fase inválida: {name}", field="name")
        with self._connect() as con:
            flight = self._load(con, flight_id)
            if flight["status"] != EN_CURSO:
                raise FlightStateError("Las fases se marcan en vuelo", current_status=flight["status"])
            if flight["type"] != ENSAYO:
                raise FlightStateError("Las fases solo aplican a vuelos de ensayo", details={"type": flight["type"]})
            now_ms = epoch_ms(self.clock())
            phases = [dict(p) for p in (flight["fases"] or [])]
            if phases and phases[-1].get("endTime") is None:
                last = phases[-1]
                last["endTime"] = now_ms
                last["duration"] = (now_ms - last["startTime"]) / 1000
            phases.append({"name": name, "startTime": now_ms})
            with transaction(con) as cur:
                self._transition(cur, flight_id, EN_CURSO, {"fases": json_dumps(phases)})
                log_ledger(cur, "flights", "PHASE", flight_id, {"name": name})
            return self._load(con, flight_id)

    @_persistent
    def finish(self, flight_id: int) -> Dict[str, Any]:
        """EnCurso -> Finalizado y acumulación de uso.

        Una fase abierta al finalizar queda sin endTime ni duración.
        """
        with self._connect() as con:
            flight = self._load(con, flight_id)
            if flight["status"] != EN_CURSO:
                raise FlightStateError("Solo un vuelo en curso puede finalizar", current_status=flight["status"])
            now = self.clock()
            start = parse_iso(flight["start_time"])
            if start is None:
                logger.warning("Vuelo %s sin hora de inicio legible; duración 0", flight_id)
                start = now
            duration = max(0, int((now - start).total_seconds()))
            minutes = duration // 60
            with transaction(con) as cur:
                self._transition(cur, flight_id, EN_CURSO, {
                    "status": FINALIZADO,
                    "end_time": to_iso(now),
                    "duration": duration,
                    "fases": json_dumps(flight["fases"] or []),
                })
                log_ledger(cur, "flights", "FINISH", flight_id, {"duration": duration})
                row = cur.execute("SELECT * FROM aircraft ORDER BY id LIMIT 1").fetchone()
                if row is None:
                    logger.warning("Vuelo %s finalizado sin aeronave registrada; no se acumula uso", flight_id)
                else:
                    updated = accumulate_usage(decode_aircraft(row), minutes)
                    cur.execute(
                        "UPDATE aircraft SET total_hours=?, motors=? WHERE id=?",
                        (updated["total_hours"], json_dumps(updated["motors"]), updated["id"]),
                    )
                    log_ledger(cur, "aircraft", "ACCUMULATE", updated["id"],
                               {"flight_id": flight_id, "minutes": minutes, "total_hours": updated["total_hours"]})
            logger.info("Vuelo %s finalizado: %ss (%s min acumulados)", flight_id, duration, minutes)
            return self._load(con, flight_id)

    @_persistent
    def abort(self, flight_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
        """Aborta el vuelo y genera el reporte ABORTADO.

        Sobre un vuelo ya terminal no hace nada, salvo completar el reporte
        de un vuelo abortado que quedó sin él.
        """
        with self._connect() as con:
            flight = self._load(con, flight_id)
            if flight["status"] == FINALIZADO or (flight["status"] == ABORTADO and flight["pdf_path"]):
                logger.info("Vuelo %s ya terminal (%s); aborto ignorado", flight_id, flight["status"])
                return flight
            if flight["status"] == ABORTADO:
                reason = (flight["cronometro"] or {}).get("abortReason", reason)
                when = parse_iso(flight["end_time"]) or self.clock()
            else:
                when = self.clock()
                start = parse_iso(flight["start_time"])
                duration = max(0, int((when - start).total_seconds())) if start else 0
                with transaction(con) as cur:
                    self._transition(cur, flight_id, (PROGRAMADO, EN_CURSO), {
                        "status": ABORTADO,
                        "end_time": to_iso(when),
                        "duration": duration,
                        "cronometro": json_dumps({"abortReason": reason}),
                    })
                    log_ledger(cur, "flights", "ABORT", flight_id, {"reason": reason, "from": flight["status"]})
                logger.info("Vuelo %s abortado%s", flight_id, f" ({reason})" if reason else "")
                flight = self._load(con, flight_id)

            try:
                path = self.reports.abort_report(flight, reason, when)
            except ReportError as ex:
                ex.details.setdefault("flight_id", flight_id)
                ex.details["status"] = ABORTADO
                raise
            with transaction(con) as cur:
                cur.execute("UPDATE flights SET pdf_path=? WHERE id=?", (str(path), flight_id))
                log_ledger(cur, "flights", "REPORT", flight_id, {"pdf_path": str(path)})
            return self._load(con, flight_id)

    @_persistent
    def submit_postflight(self, flight_id: int, form: PostFlightIn) -> Dict[str, Any]:
        """Guarda el postvuelo y las firmas y genera el reporte del vuelo."""
        with self._connect() as con:
            flight = self._load(con, flight_id)
            if flight["status"] != FINALIZADO:
                raise FlightStateError("El postvuelo requiere un vuelo finalizado", current_status=flight["status"])
            if flight["pdf_path"]:
                raise FlightStateError("El reporte de este vuelo ya fue generado", details={"pdf_path": flight["pdf_path"]})
            signatures = {}
            for role, sig in form.signatures.items():
                clean = sanitize_signature(sig)
                if clean:
                    signatures[role] = clean
            missing = [r for r in required_signature_roles(flight["crew"]) if r not in signatures]
            if missing:
                raise FormValidationError("Faltan firmas requeridas: " + ", ".join(missing), field="signatures",
                                          details={"missing": missing})
            with transaction(con) as cur:
                cur.execute(
                    "UPDATE flights SET postvuelo=?, signatures=? WHERE id=?",
                    (json_dumps({"status": form.status, "notes": form.notes or ""}), json_dumps(signatures), flight_id),
                )
                log_ledger(cur, "flights", "POSTFLIGHT", flight_id, {"roles": sorted(signatures)})
            flight = self._load(con, flight_id)

            try:
                path = self.reports.flight_report(self._report_context(con, flight), form.pdfName or f"Flight_{flight_id}")
            except ReportError as ex:
                ex.details.setdefault("flight_id", flight_id)
                ex.details["status"] = FINALIZADO
                raise
            with transaction(con) as cur:
                cur.execute("UPDATE flights SET pdf_path=? WHERE id=?", (str(path), flight_id))
                log_ledger(cur, "flights", "REPORT", flight_id, {"pdf_path": str(path)})
            logger.info("Reporte del vuelo %s: %s", flight_id, path)
            return self._load(con, flight_id)

    def _report_context(self, con: sqlite3.Connection, flight: Dict[str, Any]) -> Dict[str, Any]:
        aircraft = get_aircraft(con) or {}
        crew = flight["crew"] or {}
        crew_names = {}
        for role, key, _ in SIGNATURE_ROLES:
            pilot_id = crew.get(key)
            if pilot_id:
                row = con.execute("SELECT name FROM pilots WHERE id=?", (pilot_id,)).fetchone()
                crew_names[role] = row["name"] if row else f"#{pilot_id}"
        equipment = flight["equipment"] or {}
        batteries = {b["id"]: b["code"] for b in aircraft.get("batteries_main", []) + aircraft.get("batteries_spare", [])}
        cameras = {c["id"]: c["code"] for c in aircraft.get("cameras", [])}
        return {
            "flight": flight,
            "aircraft": aircraft,
            "crew_names": crew_names,
            "battery_codes": [batteries.get(b, b) for b in equipment.get("batteries", [])],
            "camera_code": cameras.get(equipment.get("camera"), equipment.get("camera")),
        }

    # ---------------------- Barrido de arranque ----------------------

    def sweep_stale_flights(self) -> List[int]:
        """Aborta cada vuelo que quedó EnCurso de una sesión anterior.

        Un fallo en un vuelo se registra y no impide procesar los demás.
        """
        try:
            with self._connect() as con:
                ids = [r["id"] for r in con.execute(
                    "SELECT id FROM flights WHERE status=? ORDER BY id", (EN_CURSO,)
                ).fetchall()]
        except sqlite3.Error as ex:
            logger.error("Barrido de arranque: no se pudo leer vuelos: %s", ex, exc_info=True)
            return []
        aborted = []
        for flight_id in ids:
            try:
                self.abort(flight_id, reason=SWEEP_REASON)
            except DFMError as ex:
                logger.warning("Barrido de arranque: vuelo %s: %s", flight_id, ex.message, exc_info=True)
                if isinstance(ex, ReportError):
                    aborted.append(flight_id)
                continue
            aborted.append(flight_id)
        if aborted:
            logger.warning("Barrido de arranque: vuelos abortados por falla: %s", aborted)
        return aborted
