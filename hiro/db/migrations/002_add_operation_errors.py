"""
Migration 002: Add operation_errors table for non-fatal job errors.

Sync runs, batch analysis and campaign sends record per-item failures here
so a partially successful job can be inspected afterwards.
"""


def up(conn):
    conn.execute("""
        CREATE TABLE IF NOT EXISTS operation_errors (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT,
            contact_id TEXT,
            campaign_id TEXT,
            phase TEXT NOT NULL,
            component TEXT,
            error_type TEXT,
            error_message TEXT,
            context TEXT DEFAULT '{}',
            severity TEXT DEFAULT 'warning',
            resolved INTEGER DEFAULT 0,
            created_at TEXT DEFAULT (datetime('now'))
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_operation_errors_job
        ON operation_errors(job_id)
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_operation_errors_severity
        ON operation_errors(severity, resolved)
    """)
