# app/db.py
import sqlite3
import json
from contextlib import contextmanager
from pathlib import Path
from datetime import datetime, timezone

from app.config import settings

DB_PATH = settings.db_path

TECHNICIANS_TABLE = "tecnicalmails"
LOGS_TABLE = "logschatbot"


# ---------------- utils ----------------

def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def connect():
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    try:
        yield conn
    finally:
        conn.close()


def _normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


# ---------------- bootstrap ----------------

def _ensure_technicians_table(cur: sqlite3.Cursor):
    cur.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {TECHNICIANS_TABLE} (
            id     INTEGER PRIMARY KEY AUTOINCREMENT,
            email  TEXT NOT NULL,
            fecha  TEXT NOT NULL,
            activo INTEGER NOT NULL DEFAULT 1
        );
        """
    )
    cur.execute(f"CREATE INDEX IF NOT EXISTS idx_tecnicalmails_email ON {TECHNICIANS_TABLE}(email);")


def _ensure_logs_table(cur: sqlite3.Cursor):
    cur.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {LOGS_TABLE} (
            id    INTEGER PRIMARY KEY AUTOINCREMENT,
            fecha TEXT NOT NULL,
            txt   TEXT
        );
        """
    )


def init_db():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(DB_PATH) as conn:
        cur = conn.cursor()
        _ensure_technicians_table(cur)
        _ensure_logs_table(cur)
        conn.commit()


def db_health() -> bool:
    with connect() as conn:
        cur = conn.cursor()
        cur.execute("SELECT 1;")
        return cur.fetchone()[0] == 1


# ---------------- técnicos ----------------

def _technician_row_to_dict(row: tuple | None) -> dict | None:
    if not row:
        return None
    return {"id": row[0], "email": row[1], "fecha": row[2], "activo": bool(row[3])}


def technicians() -> list[dict]:
    with connect() as conn:
        cur = conn.cursor()
        cur.execute(
            f"SELECT id, email, fecha, activo FROM {TECHNICIANS_TABLE} WHERE activo=1 ORDER BY id;"
        )
        return [_technician_row_to_dict(r) for r in cur.fetchall()]


def technician(technician_id: int) -> dict | None:
    with connect() as conn:
        cur = conn.cursor()
        cur.execute(
            f"SELECT id, email, fecha, activo FROM {TECHNICIANS_TABLE} WHERE id=? AND activo=1;",
            (technician_id,),
        )
        return _technician_row_to_dict(cur.fetchone())


def technician_by_email(email: str | None) -> dict | None:
    normalized = _normalize_email(email)
    if not normalized:
        return None
    with connect() as conn:
        cur = conn.cursor()
        cur.execute(
            f"SELECT id, email, fecha, activo FROM {TECHNICIANS_TABLE} WHERE lower(email)=? AND activo=1 LIMIT 1;",
            (normalized,),
        )
        return _technician_row_to_dict(cur.fetchone())


def _technician_any_state(cur: sqlite3.Cursor, technician_id: int) -> dict | None:
    cur.execute(
        f"SELECT id, email, fecha, activo FROM {TECHNICIANS_TABLE} WHERE id=?;",
        (technician_id,),
    )
    return _technician_row_to_dict(cur.fetchone())


def create_technician(email: str) -> dict:
    with connect() as conn:
        cur = conn.cursor()
        cur.execute(
            f"INSERT INTO {TECHNICIANS_TABLE} (email, fecha, activo) VALUES (?, ?, 1);",
            (email.strip(), _utc_now()),
        )
        conn.commit()
        return _technician_any_state(cur, cur.lastrowid)


def update_technician(technician_id: int | None, email: str | None = None, activo: bool | None = None) -> dict | None:
    if technician_id is None:
        raise ValueError("Technician id is required")

    sets = []
    params: list = []
    if email is not None:
        sets.append("email=?")
        params.append(email.strip())
    if activo is not None:
        sets.append("activo=?")
        params.append(1 if activo else 0)

    with connect() as conn:
        cur = conn.cursor()
        if sets:
            cur.execute(
                f"UPDATE {TECHNICIANS_TABLE} SET {', '.join(sets)} WHERE id=?;",
                (*params, technician_id),
            )
            conn.commit()
        return _technician_any_state(cur, technician_id)


def delete_technician(technician_id: int) -> int:
    with connect() as conn:
        cur = conn.cursor()
        cur.execute(f"DELETE FROM {TECHNICIANS_TABLE} WHERE id=?;", (technician_id,))
        conn.commit()
        return cur.rowcount


# ---------------- logs ----------------

def _decode_txt(raw: str | None):
    if not raw:
        return raw
    try:
        return json.loads(raw)
    except Exception:
        return raw


def logs() -> list[dict]:
    with connect() as conn:
        cur = conn.cursor()
        cur.execute(f"SELECT id, fecha, txt FROM {LOGS_TABLE} ORDER BY id;")
        return [{"id": r[0], "fecha": r[1], "txt": _decode_txt(r[2])} for r in cur.fetchall()]


def create_log(message: str) -> dict:
    fecha = _utc_now()
    with connect() as conn:
        cur = conn.cursor()
        cur.execute(f"INSERT INTO {LOGS_TABLE} (fecha, txt) VALUES (?, ?);", (fecha, message))
        conn.commit()
        return {"id": cur.lastrowid, "fecha": fecha, "txt": _decode_txt(message)}
