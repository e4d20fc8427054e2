import os
import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Dict, Any, List
from datetime import date

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .checklists import checklist, CHECKLISTS
from .db import db_path_from_env
from .exceptions import DFMError
from .exports import logbook, export_operational_zip, export_flight_book_csv, export_flight_book_pdf
from .lifecycle import FLIGHT_TYPES
from .registry import (
    dashboard,
    get_aircraft,
    register_aircraft,
    update_aircraft,
    register_owner,
    register_pilot,
    list_pilots,
    eligible_pilots,
)
from .schemas import AircraftIn, OwnerIn, PilotIn, PreFlightIn, StartIn, PhaseIn, AbortIn, PostFlightIn
from .state import AppState

logger = logging.getLogger("dfm")


def setup_logging() -> None:
    if logger.handlers:
        return
    log_dir = Path(os.getenv("LOG_DIR") or db_path_from_env().parent)
    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')
    file_handler = RotatingFileHandler(
        log_dir / "dfm.log", maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())


app = FastAPI(title="DFM")

# CORS configurable por variables de entorno
def _parse_csv_env(s: str) -> list[str]:
    parts = [p.strip() for p in (s or "").split(",")]
    return [p for p in parts if p]

_origins_env = os.getenv("ALLOWED_ORIGINS", "*")
_methods_env = os.getenv("CORS_ALLOW_METHODS", "*")
_headers_env = os.getenv("CORS_ALLOW_HEADERS", "*")
_creds_env = os.getenv("CORS_ALLOW_CREDENTIALS", "true").lower() in ("1", "true", "yes")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if _origins_env.strip() == "*" else _parse_csv_env(_origins_env),
    allow_credentials=_creds_env,
    allow_methods=["*"] if _methods_env.strip() == "*" else _parse_csv_env(_methods_env),
    allow_headers=["*"] if _headers_env.strip() == "*" else _parse_csv_env(_headers_env),
)


@app.on_event("startup")
def startup():
    setup_logging()
    state = AppState.from_env()
    aborted = state.start()
    if aborted:
        logger.warning("Vuelos abortados al iniciar: %s", aborted)
    app.state.dfm = state


@app.on_event("shutdown")
def shutdown():
    state = getattr(app.state, "dfm", None)
    if state is not None:
        state.shutdown()


def get_state(request: Request) -> AppState:
    return request.app.state.dfm


@app.exception_handler(DFMError)
def dfm_error_handler(request: Request, exc: DFMError):
    if exc.status_code >= 500:
        logger.error("%s %s: %s %s", request.method, request.url.path, exc.code, exc.details)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
def form_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e.get("loc", ())[1:]), "message": e.get("msg")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": "VALIDATION_ERROR", "message": "Formulario inválido", "details": {"errors": errors}},
    )


def _flight_type(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in FLIGHT_TYPES:
        raise HTTPException(status_code=400, detail="type debe ser Operativo o Ensayo")
    return value


# ---------------------- Dashboard y registro ----------------------

@app.get("/")
def index(state: AppState = Depends(get_state)):
    with state.connect() as con:
        return dashboard(con, state.alert_minutes)


@app.get("/aircraft")
def read_aircraft(state: AppState = Depends(get_state)):
    with state.connect() as con:
        ac = get_aircraft(con)
    if ac is None:
        raise HTTPException(status_code=404, detail="No hay aeronave registrada")
    return ac


@app.post("/aircraft", status_code=201)
def create_aircraft(payload: AircraftIn, state: AppState = Depends(get_state)):
    with state.connect() as con:
        return register_aircraft(con, payload)


@app.put("/aircraft")
def edit_aircraft(payload: AircraftIn, state: AppState = Depends(get_state)):
    with state.connect() as con:
        return update_aircraft(con, payload)


@app.post("/owners", status_code=201)
def create_owner(payload: OwnerIn, state: AppState = Depends(get_state)):
    with state.connect() as con:
        return register_owner(con, payload)


@app.get("/pilots")
def read_pilots(state: AppState = Depends(get_state)):
    with state.connect() as con:
        return list_pilots(con)


@app.post("/pilots", status_code=201)
def create_pilot(payload: PilotIn, state: AppState = Depends(get_state)):
    with state.connect() as con:
        return register_pilot(con, payload)


@app.get("/pilots/eligible")
def read_eligible_pilots(on: Optional[date] = Query(None, alias="date"), state: AppState = Depends(get_state)):
    """Pilotos con licencia vigente en la fecha indicada (hoy por defecto)."""
    with state.connect() as con:
        return eligible_pilots(con, on or state.clock().date())


@app.get("/checklists/{stage}")
def read_checklist(stage: str, flight_id: Optional[int] = None, state: AppState = Depends(get_state)):
    if stage not in CHECKLISTS:
        raise HTTPException(status_code=404, detail=f"Checklist desconocido: {stage}")
    flight = state.tracker.get_flight(flight_id) if flight_id else None
    return checklist(stage, flight)


# ---------------------- Vuelos ----------------------

@app.post("/flights", status_code=201)
def create_flight(
    payload: PreFlightIn,
    flight_type: str = Query(..., alias="type"),
    state: AppState = Depends(get_state),
):
    flight = state.tracker.submit_preflight(_flight_type(flight_type), payload)
    state.current_flight_id = flight["id"]
    return flight


@app.get("/flights")
def read_flights(
    status: Optional[str] = None,
    flight_type: Optional[str] = Query(None, alias="type"),
    state: AppState = Depends(get_state),
):
    return state.tracker.list_flights(status=status, flight_type=_flight_type(flight_type))


@app.get("/flights/{flight_id}")
def read_flight(flight_id: int, state: AppState = Depends(get_state)):
    return state.tracker.get_flight(flight_id)


@app.get("/flights/{flight_id}/timer")
def read_timer(flight_id: int, state: AppState = Depends(get_state)):
    state.tracker.get_flight(flight_id)
    return state.open_view(flight_id).snapshot()


@app.delete("/flights/{flight_id}/timer", status_code=204)
def close_timer(flight_id: int, state: AppState = Depends(get_state)):
    state.close_view(flight_id)


@app.post("/flights/{flight_id}/start")
def start_flight(flight_id: int, payload: Optional[StartIn] = None, state: AppState = Depends(get_state)):
    payload = payload or StartIn()
    flight = state.tracker.start(flight_id, payload.hasPayload, payload.weight or "")
    state.refresh_view(flight_id)
    return flight


@app.post("/flights/{flight_id}/payload/release")
def release_payload(flight_id: int, state: AppState = Depends(get_state)):
    flight = state.tracker.release_payload(flight_id)
    state.refresh_view(flight_id)
    return flight


@app.post("/flights/{flight_id}/phases")
def mark_phase(flight_id: int, payload: PhaseIn, state: AppState = Depends(get_state)):
    flight = state.tracker.mark_phase(flight_id, payload.name)
    state.refresh_view(flight_id)
    return flight


@app.post("/flights/{flight_id}/finish")
def finish_flight(flight_id: int, state: AppState = Depends(get_state)):
    flight = state.tracker.finish(flight_id)
    state.refresh_view(flight_id)
    return flight


@app.post("/flights/{flight_id}/abort")
def abort_flight(flight_id: int, payload: Optional[AbortIn] = None, state: AppState = Depends(get_state)):
    try:
        return state.tracker.abort(flight_id, (payload or AbortIn()).reason)
    finally:
        state.refresh_view(flight_id)


@app.post("/flights/{flight_id}/postflight")
def submit_postflight(flight_id: int, payload: PostFlightIn, state: AppState = Depends(get_state)):
    flight = state.tracker.submit_postflight(flight_id, payload)
    state.close_view(flight_id)
    return flight


# ---------------------- Bitácoras ----------------------

@app.get("/logbook")
def read_logbook(flight_type: Optional[str] = Query(None, alias="type"), state: AppState = Depends(get_state)):
    return logbook(state.tracker, _flight_type(flight_type))


@app.post("/logbook/operational/export")
def export_operational(state: AppState = Depends(get_state)):
    path = export_operational_zip(state.tracker, state.reports)
    return {"path": str(path)}


@app.get("/flight-book.pdf")
def flight_book_pdf(state: AppState = Depends(get_state)):
    path = export_flight_book_pdf(state.tracker, state.reports)
    return FileResponse(path, media_type="application/pdf", filename=path.name)


@app.get("/flight-book.csv")
def flight_book_csv(state: AppState = Depends(get_state)):
    path = export_flight_book_csv(state.tracker, state.reports)
    return FileResponse(path, media_type="text/csv", filename=path.name)


@app.get("/ledger")
def read_ledger(
    limit: int = 50,
    offset: int = 0,
    table_name: Optional[str] = None,
    state: AppState = Depends(get_state),
) -> List[Dict[str, Any]]:
    """Eventos del ledger, más recientes primero."""
    q = "SELECT id, ts, table_name, action, row_id, details FROM data_ledger"
    params: Dict[str, Any] = {"limit": limit, "offset": offset}
    if table_name:
        q += " WHERE table_name = :table_name"
        params["table_name"] = table_name
    q += " ORDER BY id DESC LIMIT :limit OFFSET :offset"
    with state.connect() as con:
        rows = con.execute(q, params).fetchall()
    out = []
    for r in rows:
        d = dict(r)
        try:
            d["details"] = json.loads(d["details"]) if d["details"] else {}
        except ValueError:
            d["details"] = {"raw": d["details"]}
        out.append(d)
    return out
