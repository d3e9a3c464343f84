"""
Unit tests for the operation error ledger.
"""

import json

from hiro.error_handler import get_errors, log_operation_error, resolve_error, safe_execute


def test_log_operation_error_persists(test_db):
    log_operation_error(phase="sync", error=ValueError("bad participant"),
                        job_id="job_1", contact_id="con_1", component="facebook.sync",
                        context={"participant": "P1"})

    errors = get_errors(job_id="job_1")
    assert len(errors) == 1
    row = errors[0]
    assert row["phase"] == "sync"
    assert row["error_type"] == "ValueError"
    assert row["error_message"] == "bad participant"
    assert row["severity"] == "warning"
    assert json.loads(row["context"]) == {"participant": "P1"}


def test_message_without_exception(test_db):
    log_operation_error(phase="campaign_send", error_message="Recipient missing",
                        campaign_id="cmp_1", severity="error")
    row = get_errors(campaign_id="cmp_1", severity="error")[0]
    assert row["error_type"] == "UnknownError"
    assert row["error_message"] == "Recipient missing"


def test_safe_execute_returns_value_or_fallback(test_db):
    assert safe_execute(lambda a, b: a + b, args=(1, 2)) == 3

    def explode():
        raise RuntimeError("model offline")

    assert safe_execute(explode, phase="analysis", job_id="job_2", fallback="n/a") == "n/a"
    row = get_errors(job_id="job_2")[0]
    assert row["error_type"] == "RuntimeError"
    assert json.loads(row["context"])["function"] == "explode"


def test_resolve_error(test_db):
    log_operation_error(phase="sync", error_message="x", job_id="job_3")
    error_id = get_errors(job_id="job_3")[0]["id"]

    assert resolve_error(error_id) is True
    assert get_errors(job_id="job_3") == []
    assert len(get_errors(job_id="job_3", unresolved_only=False)) == 1
    assert resolve_error(999999) is False


def test_db_failure_does_not_raise(tmp_path, monkeypatch):
    from hiro.db import connection
    # Directory path: sqlite cannot open it as a database
    monkeypatch.setattr(connection, "DB_PATH", str(tmp_path))
    log_operation_error(phase="sync", error_message="still logged")
