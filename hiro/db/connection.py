"""
Database connection utilities.
Centralizes DB_PATH, get_db(), get_db_conn() context manager, and gen_id().
"""

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from hiro.config import DB_PATH as _CONFIG_DB_PATH

logger = logging.getLogger("hiro.db")

DB_PATH = _CONFIG_DB_PATH


def get_db():
    """Get a database connection with row_factory for dict-like access."""
    conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    journal_mode = os.environ.get("HIRO_JOURNAL_MODE", "WAL")
    conn.execute(f"PRAGMA journal_mode={journal_mode}")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def get_db_conn():
    """Context manager for database connections. Ensures connections are always closed."""
    conn = get_db()
    try:
        yield conn
    finally:
        conn.close()


def gen_id(prefix=""):
    """Generate a prefixed UUID."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}_{short}" if prefix else short


def utcnow() -> str:
    """Current UTC time as a naive ISO string (the format stored in every table)."""
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat()


def row_to_dict(row, json_fields=()) -> Optional[dict]:
    """Convert a sqlite3.Row to a dict, decoding the named JSON columns."""
    if row is None:
        return None
    d = dict(row)
    for field in json_fields:
        value = d.get(field)
        if isinstance(value, str):
            try:
                d[field] = json.loads(value)
            except json.JSONDecodeError:
                logger.warning("Column %s holds invalid JSON, leaving as text", field)
    return d


def _safe_update(table: str, record_id: str, data: dict, allowed_fields: set, id_column: str = "id") -> Optional[dict]:
    """Generic safe update that whitelists field names to prevent SQL injection."""
    safe_data = {k: v for k, v in data.items() if k in allowed_fields}
    if not safe_data:
        return None
    fields = ", ".join(f"{k}=?" for k in safe_data.keys())
    values = list(safe_data.values()) + [record_id]
    with get_db_conn() as conn:
        conn.execute(f"UPDATE {table} SET {fields} WHERE {id_column}=?", values)
        conn.commit()
        row = conn.execute(f"SELECT * FROM {table} WHERE {id_column}=?", (record_id,)).fetchone()
        return dict(row) if row else None
