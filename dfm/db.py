import os
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Union

from .schema_sql import SCHEMA_SQL
from .exceptions import PersistenceError
from .utils import json_dumps

logger = logging.getLogger(__name__)


def db_path_from_env() -> Path:
    return Path(os.getenv("DB_DIR", "./data")) / os.getenv("DB_FILE", "dfm.sqlite")


# Columnas agregadas después de la primera versión (instalaciones antiguas)
_MIGRATIONS = {
    "aircraft": {
        "part_num": "TEXT",
        "serial_num": "TEXT",
    },
    "flights": {
        "cronometro": "TEXT",
        "pdf_path": "TEXT",
    },
}


def get_connection(path: Optional[Union[str, Path]] = None):
    target = Path(path) if path else db_path_from_env()
    target.parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(target, check_same_thread=False)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys = ON;")
    return con


@contextmanager
def connect(path: Optional[Union[str, Path]] = None):
    con = get_connection(path)
    try:
        yield con
    finally:
        con.close()


def init_db(path: Optional[Union[str, Path]] = None) -> None:
    """Crea el esquema y aplica las migraciones idempotentes."""
    with connect(path) as con:
        cur = con.cursor()
        cur.executescript(SCHEMA_SQL)
        for table, columns in _MIGRATIONS.items():
            cur.execute(f"PRAGMA table_info({table})")
            existing = {r[1] for r in cur.fetchall()}
            for name, decl in columns.items():
                if name not in existing:
                    cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
                    logger.info("Migración: columna %s.%s agregada", table, name)
        con.commit()


def log_ledger(cur, table_name: str, action: str, row_id: Optional[int], details: Optional[dict] = None) -> None:
    cur.execute(
        "INSERT INTO data_ledger(table_name, action, row_id, details) VALUES (?,?,?,?)",
        (table_name, action, row_id, json_dumps(details or {})),
    )


@contextmanager
def transaction(con: sqlite3.Connection):
    """Cursor dentro de una transacción: commit al salir, rollback ante cualquier error.

    Los errores de SQLite distintos de IntegrityError se convierten en
    PersistenceError; IntegrityError se propaga para que el llamador lo
    traduzca (p. ej. código duplicado).
    """
    cur = con.cursor()
    try:
        yield cur
        con.commit()
    except sqlite3.IntegrityError:
        con.rollback()
        raise
    except sqlite3.Error as ex:
        con.rollback()
        logger.error("Error de persistencia: %s", ex, exc_info=True)
        raise PersistenceError(details={"error": str(ex)}) from ex
    except Exception:
        con.rollback()
        raise
