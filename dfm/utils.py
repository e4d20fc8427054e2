import json
import re
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

HHMM_RE = re.compile(r"^\s*(\d+):(\d{2})\s*$")
SIGNATURE_RE = re.compile(r"^data:image/[^;]+;base64,(.+)$", re.DOTALL)
BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
# ~375KB de imagen
SIGNATURE_MAX_B64 = 500000
SIGNATURE_TRUNCATE_AT = 100000


def to_int_or_none(x):
    if x is None or x == "":
        return None
    try:
        if isinstance(x, str):
            x = x.replace(",", "")
        return int(float(x))
    except (TypeError, ValueError):
        return None


def to_date_iso(x: Optional[str]):
    if x is None or str(x).strip() == "":
        return None
    import pandas as pd
    ts = pd.to_datetime(x, errors="coerce")
    if pd.isna(ts):
        return None
    return ts.date().isoformat()


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


def json_loads_or(raw: Optional[str], default=None):
    """Decodifica una columna JSON; NULL o texto vacío devuelven `default`."""
    if raw is None or raw == "":
        return default
    return json.loads(raw)


# ---------------------- Tiempo ----------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Formato ISO 8601 en UTC con milisegundos y sufijo Z."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(str(s).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def from_epoch_ms(ms) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


# ---------------------- Horas de motor ----------------------

def hhmm_to_minutes(value) -> int:
    """Convierte uso de motor a minutos enteros.

    Acepta el formato reloj "HH:MM" (h*60+m) de instalaciones antiguas o un
    número ya expresado en minutos. Valores vacíos cuentan como 0.
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"Uso de motor inválido: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Uso de motor negativo: {value!r}")
        return int(value)
    m = HHMM_RE.match(str(value))
    if m:
        minutes = int(m.group(2))
        if minutes >= 60:
            raise ValueError(f"Minutos fuera de rango: {value!r}")
        return int(m.group(1)) * 60 + minutes
    n = to_int_or_none(value)
    if n is None or n < 0:
        raise ValueError(f"Uso de motor inválido: {value!r}")
    return n


def minutes_to_hhmm(minutes: int) -> str:
    minutes = int(minutes or 0)
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def format_hours(minutes: int) -> str:
    minutes = int(minutes or 0)
    return f"{minutes // 60}h {minutes % 60}m"


def format_duration(seconds: int) -> str:
    seconds = int(seconds or 0)
    return f"{seconds // 60}m {seconds % 60}s"


def format_clock(seconds: float) -> str:
    total = int(seconds or 0)
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


# ---------------------- Firmas ----------------------

def sanitize_signature(signature: Optional[str]) -> Optional[str]:
    """Valida una firma como data URI base64; None si no es utilizable."""
    if not signature or not isinstance(signature, str):
        return None
    m = SIGNATURE_RE.match(signature)
    if not m:
        return None
    data = m.group(1)
    if not BASE64_RE.match(data):
        return None
    if len(data) > SIGNATURE_MAX_B64:
        logger.warning("Firma demasiado grande (%d), se trunca", len(data))
        return signature[:SIGNATURE_TRUNCATE_AT]
    return signature


def diff_rows(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    changed = {}
    keys = set(before.keys()) | set(after.keys())
    for k in keys:
        if before.get(k) != after.get(k):
            changed[k] = {"from": before.get(k), "to": after.get(k)}
    return changed
