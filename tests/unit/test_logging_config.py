"""
Unit tests for log context binding and formatters.
"""

import io
import json
import logging

import pytest

from hiro.logging_config import build_handler, current_context, log_context


@pytest.fixture
def capture():
    """Logger wired to an in-memory handler; returns (logger, read_lines)."""
    def _make(fmt="json"):
        stream = io.StringIO()
        handler = build_handler(stream, fmt=fmt)
        logger = logging.getLogger(f"hiro.tests.{fmt}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        logger.addHandler(handler)
        created.append((logger, handler))
        return logger, lambda: stream.getvalue().splitlines()

    created = []
    yield _make
    for logger, handler in created:
        logger.removeHandler(handler)


def test_context_fields_reach_json_lines(capture):
    logger, lines = capture("json")

    with log_context(job_id="sync_1", component="facebook.sync"):
        logger.info("Syncing 3 Messenger conversations")
    logger.info("outside")

    inside, outside = [json.loads(line) for line in lines()]
    assert inside["message"] == "Syncing 3 Messenger conversations"
    assert inside["job_id"] == "sync_1"
    assert inside["component"] == "facebook.sync"
    assert "job_id" not in outside


def test_nested_context_and_explicit_extra(capture):
    logger, lines = capture("json")

    with log_context(campaign_id="cmp_1"):
        with log_context(contact_id="con_1", job_id=None):
            logger.info("sent")
            assert current_context() == {"campaign_id": "cmp_1", "contact_id": "con_1"}
        logger.info("batch done", extra={"campaign_id": "cmp_override"})
    assert current_context() == {}

    sent, batch = [json.loads(line) for line in lines()]
    assert (sent["campaign_id"], sent["contact_id"]) == ("cmp_1", "con_1")
    assert "job_id" not in sent
    assert batch["campaign_id"] == "cmp_override"
    assert "contact_id" not in batch


def test_text_format_appends_context(capture):
    logger, lines = capture("text")

    with log_context(job_id="sync_9"):
        logger.warning("Sync job %s cancelled, stopping", "sync_9")
    logger.warning("plain")

    first, second = lines()
    assert "[hiro.tests.text] WARNING: Sync job sync_9 cancelled, stopping" in first
    assert first.endswith("(job_id=sync_9)")
    assert second.endswith("WARNING: plain")

