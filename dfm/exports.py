"""Bitácoras y exportaciones: ZIP operativo, libro de vuelos en PDF y CSV."""

import logging
import zipfile
from pathlib import Path
from typing import Optional, Dict, Any, List

import pandas as pd

from .exceptions import NotFoundError, ReportError
from .lifecycle import FlightTracker, OPERATIVO
from .reports import ReportService

logger = logging.getLogger(__name__)

ZIP_NAME = "bitacora_operativa.zip"
CSV_NAME = "Libro_Vuelos.csv"
CSV_COLUMNS = ["id", "date", "type", "status", "start_time", "end_time", "duration", "pdf_path"]


def logbook(tracker: FlightTracker, flight_type: Optional[str] = None) -> List[Dict[str, Any]]:
    """Vuelos con reporte, más recientes primero."""
    return tracker.list_flights(flight_type=flight_type, with_report=True)


def export_operational_zip(tracker: FlightTracker, reports: ReportService) -> Path:
    files = [
        (f"flight_{f['id']}.pdf", Path(f["pdf_path"]))
        for f in logbook(tracker, OPERATIVO)
        if Path(f["pdf_path"]).is_file()
    ]
    if not files:
        raise NotFoundError("No hay reportes para exportar", code="NO_REPORTS")
    out = reports.root / "Export" / "BitacoraOperativa" / ZIP_NAME
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(out, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for name, path in files:
                zf.write(path, arcname=name)
    except OSError as ex:
        raise ReportError("No se pudo exportar el ZIP", details={"path": str(out), "error": str(ex)}) from ex
    logger.info("Bitácora operativa exportada: %s (%d reportes)", out, len(files))
    return out


def flight_book_frame(flights: List[Dict[str, Any]]) -> pd.DataFrame:
    df = pd.DataFrame(flights, columns=CSV_COLUMNS)
    df["date"] = pd.to_datetime(df["date"], errors="coerce", utc=True)
    df["duration_min"] = (df["duration"].fillna(0).astype(int) // 60)
    return df.sort_values("date", ascending=False)


def export_flight_book_csv(tracker: FlightTracker, reports: ReportService) -> Path:
    df = flight_book_frame(tracker.list_flights())
    out = reports.root / CSV_NAME
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(out, index=False, encoding="utf-8")
    except OSError as ex:
        raise ReportError("No se pudo exportar el libro de vuelos", details={"path": str(out)}) from ex
    return out


def export_flight_book_pdf(tracker: FlightTracker, reports: ReportService) -> Path:
    return reports.flight_book(tracker.list_flights())
