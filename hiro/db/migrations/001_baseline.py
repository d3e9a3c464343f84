"""
Migration 001: Baseline schema.

No-op for databases created by init_db.py. Establishes the baseline version
so later migrations have something to build on.
"""


def up(conn):
    """Baseline migration - verify core tables exist."""
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
    )
    tables = {row[0] for row in cursor.fetchall()}

    required = {"organizations", "facebook_pages", "contacts", "pipelines",
                "pipeline_stages", "campaigns", "messages", "sync_jobs", "api_keys"}
    missing = required - tables

    if missing:
        raise RuntimeError(
            f"Baseline migration requires existing schema. Missing tables: {missing}. "
            f"Run 'python -m hiro.db.init_db' first."
        )
