"""
Numbered schema migrations for the Hiro database.

init_db() creates the base schema and then calls run_migrations(), so a
fresh install and an upgraded one end on the same version set. Each file in
hiro/db/migrations/ is named NNN_description.py and defines up(conn).
Applied versions are recorded in schema_versions.

    python -m hiro.db.migration_runner            # apply pending
    python -m hiro.db.migration_runner --status   # list applied/pending
"""

import argparse
import importlib.util
import logging
import os
import sqlite3
import sys
from glob import glob

from hiro.db.connection import utcnow
from hiro.logging_config import log_context, setup_logging

MIGRATIONS_DIR = os.path.join(os.path.dirname(__file__), "migrations")

logger = logging.getLogger("hiro.db.migrations")


def _ensure_schema_versions(conn: sqlite3.Connection):
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_versions (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
    """)
    conn.commit()


def get_applied_versions(conn: sqlite3.Connection) -> set:
    _ensure_schema_versions(conn)
    return {row[0] for row in conn.execute("SELECT version FROM schema_versions")}


def discover_migrations() -> list:
    """(version, name, path) for every NNN_name.py in MIGRATIONS_DIR, by version."""
    found = []
    for path in glob(os.path.join(MIGRATIONS_DIR, "[0-9]*.py")):
        prefix, _, rest = os.path.basename(path).partition("_")
        if not rest or not prefix.isdigit():
            continue
        found.append((int(prefix), os.path.splitext(rest)[0], path))
    return sorted(found)


def apply_migration(conn: sqlite3.Connection, version: int, name: str, path: str) -> bool:
    """Run one migration's up() and record it. Rolls back and returns False on error."""
    spec = importlib.util.spec_from_file_location(f"hiro_migration_{version}", path)
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
        module.up(conn)
        conn.execute("INSERT INTO schema_versions (version, name, applied_at) VALUES (?, ?, ?)",
                     (version, name, utcnow()))
        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.error("Migration %03d_%s failed: %s", version, name, e)
        return False
    return True


def run_migrations(db_path: str = None, verbose: bool = True) -> dict:
    """Apply pending migrations in order, stopping at the first failure.

    Returns {"applied", "skipped", "failed", "errors"} where skipped counts
    versions already recorded and errors lists "<version>_<name>".
    """
    from hiro.db import connection
    path = db_path or connection.DB_PATH
    level = logging.INFO if verbose else logging.DEBUG

    conn = sqlite3.connect(path)
    try:
        applied = get_applied_versions(conn)
        pending = [m for m in discover_migrations() if m[0] not in applied]
        result = {"applied": 0, "skipped": len(applied), "failed": 0, "errors": []}

        with log_context(phase="migration", component="db.migration_runner"):
            if not pending:
                logger.log(level, "Schema up to date (%d migrations applied)", len(applied))
                return result
            for version, name, migration_path in pending:
                if not apply_migration(conn, version, name, migration_path):
                    result["failed"] += 1
                    result["errors"].append(f"{version}_{name}")
                    break
                logger.log(level, "Applied migration %03d_%s", version, name)
                result["applied"] += 1
        return result
    finally:
        conn.close()


def show_status(db_path: str = None):
    from hiro.db import connection
    path = db_path or connection.DB_PATH
    if not os.path.exists(path):
        print(f"No database at {path}")
        return

    conn = sqlite3.connect(path)
    try:
        applied = get_applied_versions(conn)
    finally:
        conn.close()
    print(f"Database: {path}")
    for version, name, _ in discover_migrations():
        state = "applied" if version in applied else "PENDING"
        print(f"  {version:03d}_{name}  {state}")


def main():
    parser = argparse.ArgumentParser(description="Apply Hiro schema migrations")
    parser.add_argument("--status", action="store_true", help="List applied and pending migrations")
    parser.add_argument("--db", help="Database path (default: HIRO_DB_PATH)")
    args = parser.parse_args()

    if args.status:
        show_status(args.db)
        return
    setup_logging()
    if run_migrations(args.db)["failed"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
