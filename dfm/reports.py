"""
Generación de reportes PDF de vuelo.

Los documentos se arman con reportlab (platypus). Cada intento corre en un
hilo con tiempo límite; si el reporte completo falla se intenta uno mínimo
antes de reportar el error al operador. La ubicación del archivo sigue el
árbol por tipo de vuelo y, si no se puede escribir allí, la ruta plana
heredada de versiones anteriores.
"""

import io
import os
import base64
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import cm
from reportlab.lib.utils import ImageReader
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle, Image

from .exceptions import ReportError
from .utils import format_duration, format_hours, minutes_to_hhmm, from_epoch_ms, parse_iso, SIGNATURE_RE

logger = logging.getLogger(__name__)

REPORT_TIMEOUT_SECONDS = float(os.getenv("REPORT_TIMEOUT_SECONDS", "20"))
REPORT_TITLE = "DRAGOM FLIGHT MANAGER - REPORTE DE VUELO"
FLIGHT_BOOK_NAME = "Libro_Vuelos.pdf"

_GRID = TableStyle([
    ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#838383")),
    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
    ("FONTSIZE", (0, 0), (-1, -1), 9),
    ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
])


def _styles():
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name="Body", fontSize=10, spaceAfter=4, leading=13))
    return styles


def _document(buf: io.BytesIO, title: str) -> SimpleDocTemplate:
    return SimpleDocTemplate(
        buf,
        pagesize=A4,
        rightMargin=1.5 * cm,
        leftMargin=1.5 * cm,
        topMargin=1.5 * cm,
        bottomMargin=1.5 * cm,
        title=title,
    )


def _fmt_ts(value: Optional[str]) -> str:
    dt = parse_iso(value)
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC") if dt else "-"


def _kv_table(rows: List[List[str]]) -> Table:
    t = Table([["Campo", "Valor"]] + [[k, "" if v is None else str(v)] for k, v in rows], colWidths=[5 * cm, 12 * cm])
    t.setStyle(_GRID)
    return t


def _signature_image(data_uri: str) -> Optional[Image]:
    m = SIGNATURE_RE.match(data_uri or "")
    if not m:
        return None
    raw = base64.b64decode(m.group(1), validate=False)
    # Si la imagen no es legible ImageReader lanza y el reporte cae al mínimo
    ImageReader(io.BytesIO(raw))
    return Image(io.BytesIO(raw), width=5 * cm, height=2.5 * cm, kind="proportional")


# ---------------------- Documentos ----------------------

def render_full_report(ctx: Dict[str, Any]) -> bytes:
    """Reporte completo: vuelo, aeronave, tripulación, carga, fases, postvuelo y firmas."""
    flight = ctx["flight"]
    aircraft = ctx.get("aircraft") or {}
    styles = _styles()
    buf = io.BytesIO()
    story = [
        Paragraph(REPORT_TITLE, styles["Title"]),
        Paragraph(f"Vuelo #{flight['id']} - {flight['type']} - {flight['status']}", styles["Heading2"]),
        Spacer(1, 0.3 * cm),
    ]

    story.append(Paragraph("Datos del vuelo", styles["Heading3"]))
    prevuelo = flight.get("prevuelo") or {}
    story.append(_kv_table([
        ["Fecha", _fmt_ts(flight.get("date"))],
        ["Inicio", _fmt_ts(flight.get("start_time"))],
        ["Fin", _fmt_ts(flight.get("end_time"))],
        ["Duración", format_duration(flight.get("duration"))],
        ["Propósito", prevuelo.get("purpose")],
        ["Tiempo estimado (min)", prevuelo.get("estimatedTime")],
        ["Ubicación", prevuelo.get("location")],
    ]))

    if aircraft:
        story.append(Paragraph("Aeronave", styles["Heading3"]))
        rows = [
            ["Nombre", aircraft.get("name")],
            ["Código", aircraft.get("code")],
            ["Parte / Serie", f"{aircraft.get('part_num') or '-'} / {aircraft.get('serial_num') or '-'}"],
            ["Tiempo total", format_hours(aircraft.get("total_hours"))],
        ]
        rows += [[f"Motor {m['code']}", minutes_to_hhmm(m["hours"])] for m in aircraft.get("motors", [])]
        story.append(_kv_table(rows))

    story.append(Paragraph("Tripulación y equipo", styles["Heading3"]))
    crew_rows = [[role, name] for role, name in (ctx.get("crew_names") or {}).items()]
    crew_rows.append(["Baterías", ", ".join(ctx.get("battery_codes") or []) or "-"])
    crew_rows.append(["Cámara", ctx.get("camera_code") or "-"])
    story.append(_kv_table(crew_rows))

    carga = flight.get("carga") or {}
    if carga.get("hasPayload"):
        story.append(Paragraph("Carga", styles["Heading3"]))
        story.append(_kv_table([
            ["Peso (kg)", carga.get("weight")],
            ["Liberada", "SÍ" if carga.get("released") else "NO"],
            ["Hora de liberación", _fmt_ts(carga.get("releaseTime"))],
            ["Segundos desde inicio", carga.get("releaseOffset")],
        ]))

    phases = flight.get("fases") or []
    if phases:
        story.append(Paragraph("Fases del ensayo", styles["Heading3"]))
        rows = [["Fase", "Inicio", "Fin", "Duración (s)"]]
        for p in phases:
            end = p.get("endTime")
            rows.append([
                p.get("name"),
                from_epoch_ms(p["startTime"]).strftime("%H:%M:%S"),
                from_epoch_ms(end).strftime("%H:%M:%S") if end is not None else "-",
                f"{p['duration']:.0f}" if p.get("duration") is not None else "-",
            ])
        closed = sum(p["duration"] for p in phases if p.get("endTime") is not None and p.get("duration") is not None)
        rows.append(["Total fases cerradas", "", "", f"{closed:.0f}"])
        t = Table(rows)
        t.setStyle(_GRID)
        story.append(t)

    postvuelo = flight.get("postvuelo") or {}
    story.append(Paragraph("Postvuelo", styles["Heading3"]))
    story.append(_kv_table([
        ["Estado", postvuelo.get("status")],
        ["Notas", postvuelo.get("notes")],
    ]))

    signatures = flight.get("signatures") or {}
    if signatures:
        story.append(Paragraph("Firmas", styles["Heading3"]))
        row_labels, row_images = [], []
        for role, sig in signatures.items():
            row_labels.append(role)
            row_images.append(_signature_image(sig) or "(sin firma)")
        t = Table([row_images, row_labels])
        t.setStyle(TableStyle([("GRID", (0, 0), (-1, -1), 0.5, colors.grey), ("ALIGN", (0, 0), (-1, -1), "CENTER")]))
        story.append(t)

    _document(buf, f"Vuelo {flight['id']}").build(story)
    return buf.getvalue()


def render_minimal_report(ctx: Dict[str, Any]) -> bytes:
    flight = ctx["flight"]
    postvuelo = flight.get("postvuelo") or {}
    styles = _styles()
    buf = io.BytesIO()
    story = [
        Paragraph(REPORT_TITLE, styles["Title"]),
        Paragraph(f"Vuelo #{flight['id']} ({flight['type']})", styles["Heading2"]),
        Paragraph(f"Fecha: {_fmt_ts(flight.get('date'))}", styles["Body"]),
        Paragraph(f"Duración: {format_duration(flight.get('duration'))}", styles["Body"]),
        Paragraph(f"Estado: {flight['status']}", styles["Body"]),
        Paragraph(f"Estado postvuelo: {escape(postvuelo.get('status') or '-')}", styles["Body"]),
    ]
    _document(buf, f"Vuelo {flight['id']}").build(story)
    return buf.getvalue()


def render_abort_report(flight_id: int, reason: Optional[str], when: datetime) -> bytes:
    styles = _styles()
    buf = io.BytesIO()
    status = "ESTADO DEL VUELO: ABORTADO" + (f" - {escape(reason)}" if reason else "")
    story = [
        Paragraph(REPORT_TITLE, styles["Title"]),
        Paragraph(status, styles["Heading2"]),
        Paragraph(f"Vuelo #{flight_id}", styles["Body"]),
        Paragraph(f"Fecha: {when.strftime('%Y-%m-%d %H:%M:%S UTC')}", styles["Body"]),
    ]
    _document(buf, f"Vuelo {flight_id} abortado").build(story)
    return buf.getvalue()


def render_flight_book(flights: List[Dict[str, Any]]) -> bytes:
    styles = _styles()
    buf = io.BytesIO()
    rows = [["ID", "Fecha", "Tipo", "Estado", "Duración"]]
    for f in flights:
        rows.append([str(f["id"]), _fmt_ts(f.get("date")), f["type"], f["status"], format_duration(f.get("duration"))])
    t = Table(rows, repeatRows=1)
    t.setStyle(_GRID)
    _document(buf, "Libro de Vuelos").build([Paragraph("Libro de Vuelos", styles["Title"]), t])
    return buf.getvalue()


# ---------------------- Servicio ----------------------

class ReportService:
    def __init__(self, root: Path, timeout: float = REPORT_TIMEOUT_SECONDS):
        self.root = Path(root)
        self.timeout = timeout

    def typed_dir(self, flight_type: str) -> Path:
        return self.root / "Bitacora" / flight_type

    def place(self, content: bytes, flight_type: str, file_name: str) -> Path:
        """Escribe el PDF en el árbol por tipo; si falla, en la ruta plana heredada."""
        target = self.typed_dir(flight_type) / file_name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
            return target
        except OSError as ex:
            logger.warning("No se pudo ubicar %s (%s); usando ruta heredada", target, ex)
        legacy = self.root / file_name
        try:
            legacy.parent.mkdir(parents=True, exist_ok=True)
            legacy.write_bytes(content)
        except OSError as ex:
            raise ReportError("No se pudo guardar el reporte", details={"path": str(legacy), "error": str(ex)}) from ex
        return legacy

    def _render(self, fn: Callable[..., bytes], *args) -> bytes:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dfm-report")
        future = executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as ex:
            raise ReportError("Tiempo de generación del reporte agotado", details={"timeout": self.timeout}) from ex
        finally:
            executor.shutdown(wait=False)

    def flight_report(self, ctx: Dict[str, Any], file_name: str) -> Path:
        flight = ctx["flight"]
        try:
            content = self._render(render_full_report, ctx)
        except Exception as ex:
            logger.warning("Reporte completo del vuelo %s falló (%s); generando reporte mínimo", flight["id"], ex)
            try:
                content = self._render(render_minimal_report, ctx)
            except Exception as ex2:
                logger.error("Reporte mínimo del vuelo %s falló: %s", flight["id"], ex2, exc_info=True)
                raise ReportError(details={"flight_id": flight["id"], "error": str(ex2)}) from ex2
        return self.place(content, flight["type"], f"{file_name}.pdf")

    def abort_report(self, flight: Dict[str, Any], reason: Optional[str], when: datetime) -> Path:
        try:
            content = self._render(render_abort_report, flight["id"], reason, when)
        except ReportError:
            raise
        except Exception as ex:
            logger.error("Reporte de aborto del vuelo %s falló: %s", flight["id"], ex, exc_info=True)
            raise ReportError(details={"flight_id": flight["id"], "error": str(ex)}) from ex
        return self.place(content, flight["type"], f"Flight_{flight['id']}_ABORTADO.pdf")

    def flight_book(self, flights: List[Dict[str, Any]]) -> Path:
        try:
            content = self._render(render_flight_book, flights)
        except ReportError:
            raise
        except Exception as ex:
            raise ReportError("No se pudo exportar el libro de vuelos", details={"error": str(ex)}) from ex
        path = self.root / FLIGHT_BOOK_NAME
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as ex:
            raise ReportError("No se pudo guardar el libro de vuelos", details={"path": str(path)}) from ex
        return path
