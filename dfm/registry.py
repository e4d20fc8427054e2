import os
import uuid
import sqlite3
import logging
from datetime import date
from typing import Optional, Dict, Any, List

from .db import transaction, log_ledger
from .exceptions import FormValidationError, AircraftNotFoundError, NotFoundError, PersistenceError
from .schemas import AircraftIn, OwnerIn, PilotIn
from .utils import (
    json_dumps,
    json_loads_or,
    hhmm_to_minutes,
    format_hours,
    minutes_to_hhmm,
    diff_rows,
    to_date_iso,
)

logger = logging.getLogger(__name__)

# 180 horas
MOTOR_ALERT_MINUTES = int(os.getenv("MOTOR_ALERT_MINUTES", "10800"))


# ---------------------- Aeronave ----------------------

def _with_ids(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    for it in items:
        it = dict(it)
        if not it.get("id"):
            it["id"] = uuid.uuid4().hex
        out.append(it)
    return out


def decode_aircraft(row) -> Dict[str, Any]:
    """Fila de `aircraft` a dict con listas decodificadas y uso en minutos."""
    ac = dict(row)
    motors = json_loads_or(ac.pop("motors"), [])
    for m in motors:
        try:
            m["hours"] = hhmm_to_minutes(m.get("hours"))
        except ValueError as ex:
            logger.error("Uso de motor ilegible en la aeronave %s: %r", ac.get("id"), m)
            raise PersistenceError(
                "Uso de motor ilegible en la base de datos",
                details={"aircraft_id": ac.get("id"), "motor": m.get("code"), "hours": m.get("hours")},
            ) from ex
    ac["motors"] = motors
    ac["batteries_main"] = json_loads_or(ac.get("batteries_main"), [])
    ac["batteries_spare"] = json_loads_or(ac.get("batteries_spare"), [])
    ac["cameras"] = json_loads_or(ac.get("cameras"), [])
    ac["total_hours"] = int(ac.get("total_hours") or 0)
    return ac


def get_aircraft(con: sqlite3.Connection) -> Optional[Dict[str, Any]]:
    row = con.execute("SELECT * FROM aircraft ORDER BY id LIMIT 1").fetchone()
    return decode_aircraft(row) if row else None


def require_aircraft(con: sqlite3.Connection) -> Dict[str, Any]:
    ac = get_aircraft(con)
    if ac is None:
        raise AircraftNotFoundError()
    return ac


def register_aircraft(con: sqlite3.Connection, form: AircraftIn) -> Dict[str, Any]:
    if get_aircraft(con) is not None:
        raise FormValidationError("Ya existe una aeronave registrada; use la edición", field="code")
    motors = _with_ids([m.model_dump() for m in form.motors])
    try:
        with transaction(con) as cur:
            cur.execute(
                """
                INSERT INTO aircraft (name, code, part_num, serial_num, motors, batteries_main, batteries_spare, cameras)
                VALUES (?,?,?,?,?,?,?,?)
                """,
                (
                    form.name,
                    form.code,
                    form.part_num,
                    form.serial_num,
                    json_dumps(motors),
                    json_dumps(_with_ids([b.model_dump() for b in form.batteries_main])),
                    json_dumps(_with_ids([b.model_dump() for b in form.batteries_spare])),
                    json_dumps(_with_ids([c.model_dump() for c in form.cameras])),
                ),
            )
            aircraft_id = cur.lastrowid
            log_ledger(cur, "aircraft", "INSERT", aircraft_id, {"name": form.name, "code": form.code})
    except sqlite3.IntegrityError as ex:
        raise FormValidationError("Código de aeronave duplicado", field="code") from ex
    logger.info("Aeronave registrada: id=%s code=%s", aircraft_id, form.code)
    return require_aircraft(con)


def update_aircraft(con: sqlite3.Connection, form: AircraftIn) -> Dict[str, Any]:
    """Edita la aeronave registrada.

    Los contadores de uso no se editan: motores existentes (mismo id) conservan
    su uso acumulado y `total_hours` no cambia. Solo los motores nuevos toman
    el uso inicial indicado.
    """
    current = require_aircraft(con)
    known = {m["id"]: m for m in current["motors"]}
    motors = []
    for m in _with_ids([m.model_dump() for m in form.motors]):
        if m["id"] in known:
            m["hours"] = known[m["id"]]["hours"]
        motors.append(m)
    after = {
        "name": form.name,
        "code": form.code,
        "part_num": form.part_num,
        "serial_num": form.serial_num,
        "motors": motors,
        "batteries_main": _with_ids([b.model_dump() for b in form.batteries_main]),
        "batteries_spare": _with_ids([b.model_dump() for b in form.batteries_spare]),
        "cameras": _with_ids([c.model_dump() for c in form.cameras]),
    }
    before = {k: current.get(k) for k in after}
    try:
        with transaction(con) as cur:
            cur.execute(
                """
                UPDATE aircraft SET name=?, code=?, part_num=?, serial_num=?,
                    motors=?, batteries_main=?, batteries_spare=?, cameras=?
                WHERE id=?
                """,
                (
                    after["name"], after["code"], after["part_num"], after["serial_num"],
                    json_dumps(after["motors"]), json_dumps(after["batteries_main"]),
                    json_dumps(after["batteries_spare"]), json_dumps(after["cameras"]),
                    current["id"],
                ),
            )
            log_ledger(cur, "aircraft", "UPDATE", current["id"], diff_rows(before, after))
    except sqlite3.IntegrityError as ex:
        raise FormValidationError("Código de aeronave duplicado", field="code") from ex
    return require_aircraft(con)


def battery_ids(aircraft: Dict[str, Any]) -> set:
    return {b["id"] for b in aircraft["batteries_main"] + aircraft["batteries_spare"]}


def camera_ids(aircraft: Dict[str, Any]) -> set:
    return {c["id"] for c in aircraft["cameras"]}


def maintenance_alerts(aircraft: Optional[Dict[str, Any]], threshold: int = MOTOR_ALERT_MINUTES) -> List[str]:
    if not aircraft:
        return []
    return [
        f"Motor {m['code']} superó {threshold // 60} horas ({minutes_to_hhmm(m['hours'])})"
        for m in aircraft["motors"]
        if m["hours"] >= threshold
    ]


# ---------------------- Propietario ----------------------

def register_owner(con: sqlite3.Connection, form: OwnerIn) -> Dict[str, Any]:
    with transaction(con) as cur:
        cur.execute(
            "INSERT INTO owners (name, id_type, id_num) VALUES (?,?,?)",
            (form.name, form.id_type, form.id_num),
        )
        owner_id = cur.lastrowid
        log_ledger(cur, "owners", "INSERT", owner_id, {"name": form.name})
    return dict(con.execute("SELECT * FROM owners WHERE id=?", (owner_id,)).fetchone())


# ---------------------- Pilotos ----------------------

def register_pilot(con: sqlite3.Connection, form: PilotIn) -> Dict[str, Any]:
    try:
        with transaction(con) as cur:
            cur.execute(
                "INSERT INTO pilots (name, cc, license_num, license_type, license_expiry) VALUES (?,?,?,?,?)",
                (form.name, form.cc, form.license_num, form.license_type, form.license_expiry.isoformat()),
            )
            pilot_id = cur.lastrowid
            log_ledger(cur, "pilots", "INSERT", pilot_id, {"name": form.name, "cc": form.cc})
    except sqlite3.IntegrityError as ex:
        raise FormValidationError("Ya existe un piloto con esa cédula", field="cc") from ex
    logger.info("Piloto registrado: id=%s", pilot_id)
    return get_pilot(con, pilot_id)


def list_pilots(con: sqlite3.Connection) -> List[Dict[str, Any]]:
    return [dict(r) for r in con.execute("SELECT * FROM pilots ORDER BY name").fetchall()]


def get_pilot(con: sqlite3.Connection, pilot_id: int) -> Dict[str, Any]:
    row = con.execute("SELECT * FROM pilots WHERE id=?", (pilot_id,)).fetchone()
    if not row:
        raise NotFoundError(f"Piloto no encontrado: {pilot_id}", code="PILOT_NOT_FOUND", details={"pilot_id": pilot_id})
    return dict(row)


def license_valid_on(pilot: Dict[str, Any], on_date: date) -> bool:
    """La licencia debe vencer después de la fecha del vuelo."""
    expiry = to_date_iso(pilot.get("license_expiry"))
    return expiry is not None and expiry > on_date.isoformat()


def eligible_pilots(con: sqlite3.Connection, on_date: date) -> List[Dict[str, Any]]:
    return [p for p in list_pilots(con) if license_valid_on(p, on_date)]


# ---------------------- Dashboard ----------------------

def dashboard(con: sqlite3.Connection, threshold: int = MOTOR_ALERT_MINUTES) -> Dict[str, Any]:
    aircraft = get_aircraft(con)
    active = con.execute("SELECT id, type, start_time FROM flights WHERE status='EnCurso' ORDER BY id LIMIT 1").fetchone()
    return {
        "aircraft": None if aircraft is None else {
            "id": aircraft["id"],
            "name": aircraft["name"],
            "code": aircraft["code"],
            "total_hours": aircraft["total_hours"],
            "total_hours_text": format_hours(aircraft["total_hours"]),
            "motors": len(aircraft["motors"]),
        },
        "active_flight": dict(active) if active else None,
        "alerts": maintenance_alerts(aircraft, threshold),
        "needs_setup": aircraft is None,
    }
