"""
Operation Error Handler - Captures and logs non-fatal job errors.

Long-running operations (contact sync, batch analysis, campaign sends) must
keep going when a single contact fails. Instead of silently catching the
exception they call log_operation_error(), which writes to the logger and
to the operation_errors table.

Usage:
    from hiro.error_handler import log_operation_error, safe_execute

    try:
        summary = gateway.summarize_conversation(messages)
    except Exception as e:
        log_operation_error(phase="sync", error=e, contact_id=cid, job_id=job_id)
        summary = None

    summary = safe_execute(
        gateway.summarize_conversation, args=(messages,),
        phase="sync", job_id=job_id, fallback=None,
    )
"""

import json
import logging
import traceback
from typing import Any, Callable

from hiro.db.connection import get_db_conn

logger = logging.getLogger("hiro.error_handler")


def log_operation_error(
    phase: str,
    error: Exception = None,
    error_message: str = None,
    job_id: str = None,
    contact_id: str = None,
    campaign_id: str = None,
    component: str = None,
    context: dict = None,
    severity: str = "warning",
):
    """Log a non-fatal error to the database and logger.

    Args:
        phase: Operation phase (sync, analysis, campaign_send, ...)
        error: The exception object (optional if error_message provided)
        error_message: Human-readable error description
        job_id: Associated sync job ID
        contact_id: Associated contact ID
        campaign_id: Associated campaign ID
        component: Module that hit the error
        context: Additional context dict
        severity: "warning", "error", or "critical"
    """
    msg = error_message or (str(error) if error else "Unknown error")
    error_type = type(error).__name__ if error else "UnknownError"

    log_extra = {
        "phase": phase,
        "component": component or "",
        "contact_id": contact_id or "",
        "job_id": job_id or "",
        "campaign_id": campaign_id or "",
    }

    if severity == "critical":
        logger.critical("Operation error in %s: %s", phase, msg, extra=log_extra)
    elif severity == "error":
        logger.error("Operation error in %s: %s", phase, msg, extra=log_extra)
    else:
        logger.warning("Operation error in %s: %s", phase, msg, extra=log_extra)

    try:
        with get_db_conn() as conn:
            conn.execute("""
                INSERT INTO operation_errors
                    (job_id, contact_id, campaign_id, phase, component, error_type,
                     error_message, context, severity)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job_id, contact_id, campaign_id, phase, component,
                error_type, msg, json.dumps(context or {}), severity,
            ))
            conn.commit()
    except Exception as db_err:
        # The ledger is best effort; the logger line above already went out
        logger.error("Failed to log operation error to DB: %s", db_err)


def safe_execute(
    fn: Callable,
    args: tuple = (),
    kwargs: dict = None,
    phase: str = "unknown",
    component: str = None,
    job_id: str = None,
    contact_id: str = None,
    campaign_id: str = None,
    fallback: Any = None,
    severity: str = "warning",
) -> Any:
    """Execute a function with automatic error capture.

    If the function raises, the error is logged and the fallback value is returned.

    Returns:
        The function's return value, or fallback if it raised.
    """
    kwargs = kwargs or {}
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        log_operation_error(
            phase=phase,
            error=e,
            job_id=job_id,
            contact_id=contact_id,
            campaign_id=campaign_id,
            component=component,
            context={"function": getattr(fn, "__name__", repr(fn)),
                     "traceback": traceback.format_exc()[-500:]},
            severity=severity,
        )
        return fallback


def get_errors(job_id: str = None, campaign_id: str = None, severity: str = None,
               unresolved_only: bool = True) -> list:
    """Get operation errors, optionally filtered. Newest first."""
    query = "SELECT * FROM operation_errors WHERE 1=1"
    params = []

    if job_id:
        query += " AND job_id=?"
        params.append(job_id)
    if campaign_id:
        query += " AND campaign_id=?"
        params.append(campaign_id)
    if severity:
        query += " AND severity=?"
        params.append(severity)
    if unresolved_only:
        query += " AND resolved=0"

    query += " ORDER BY created_at DESC, id DESC"
    with get_db_conn() as conn:
        rows = conn.execute(query, params).fetchall()
    return [dict(r) for r in rows]


def resolve_error(error_id: int) -> bool:
    """Mark an operation error as resolved."""
    with get_db_conn() as conn:
        cur = conn.execute("UPDATE operation_errors SET resolved=1 WHERE id=?", (error_id,))
        conn.commit()
    return cur.rowcount > 0
