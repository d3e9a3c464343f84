"""
Shared pytest fixtures for the Hiro test suite.
"""

import time

import pytest

from hiro.db import connection
from hiro.db import models
from hiro.db.init_db import init_db

TEST_ENCRYPTION_KEY = "ab" * 32


@pytest.fixture
def test_db(tmp_path, monkeypatch):
    """Fresh sqlite database with the schema and migrations applied."""
    db_path = str(tmp_path / "test.db")
    monkeypatch.setenv("HIRO_JOURNAL_MODE", "DELETE")
    monkeypatch.setattr(connection, "DB_PATH", db_path)

    # Singletons cache state between tests
    import hiro.ai.api_key_manager as key_manager
    import hiro.ai.llm_gateway as llm_gateway
    monkeypatch.setattr(key_manager, "_manager_instance", None)
    monkeypatch.setattr(llm_gateway, "_gateway_instance", None)

    init_db(db_path)
    yield db_path


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    import hiro.crypto.encryption as encryption
    monkeypatch.setattr(encryption, "ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    return TEST_ENCRYPTION_KEY


@pytest.fixture
def no_sleep(monkeypatch):
    """Replace time.sleep; returns the list of requested delays."""
    calls = []
    monkeypatch.setattr(time, "sleep", lambda seconds: calls.append(seconds))
    return calls


@pytest.fixture
def org(test_db):
    return models.create_organization({"name": "Acme Boutique"})


@pytest.fixture
def other_org(test_db):
    return models.create_organization({"name": "Rival Shop"})


@pytest.fixture
def page(org):
    return models.create_facebook_page({
        "organization_id": org["id"],
        "page_id": "PAGE1",
        "page_name": "Acme Boutique",
        "page_access_token": "page-token",
        "instagram_account_id": "IG1",
    })


@pytest.fixture
def pipeline(org):
    from hiro.pipelines.templates import create_pipeline_from_template
    return create_pipeline_from_template(org["id"], "SALES")


@pytest.fixture
def make_contact(org, page):
    """Factory: make_contact(first_name="Ana", messenger_psid="P1", ...)."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        data = {
            "organization_id": org["id"],
            "facebook_page_id": page["id"],
            "first_name": f"Contact{counter['n']}",
            "messenger_psid": f"PSID{counter['n']}",
            "has_messenger": True,
        }
        data.update(overrides)
        return models.create_contact(data)

    return _make


# ─── FAKES ───────────────────────────────────────────────────

class FakeGraphClient:
    """Stands in for GraphClient: canned conversations, recorded sends."""

    def __init__(self, messenger=None, instagram=None, fail_for=(), send_error=None):
        self.messenger = messenger or []
        self.instagram = instagram or []
        self.fail_for = set(fail_for)
        self.send_error = send_error
        self.sent = []

    def get_messenger_conversations(self, page_id, limit=100):
        return list(self.messenger)

    def get_instagram_conversations(self, ig_account_id, limit=100):
        return list(self.instagram)

    def _send(self, recipient_id, message, **kwargs):
        self.sent.append({"recipient_id": recipient_id, "message": message, **kwargs})
        if recipient_id in self.fail_for:
            return {"success": False, "error": self.send_error or "FACEBOOK_API_ERROR",
                    "message": "send failed"}
        return {"success": True, "data": {"message_id": f"mid.{recipient_id}"}}

    def send_messenger_message(self, recipient_id, message, message_tag=None,
                               notification_type="REGULAR"):
        return self._send(recipient_id, message, message_tag=message_tag)

    def send_instagram_message(self, recipient_id, message):
        return self._send(recipient_id, message)


class FakeGateway:
    """Stands in for LLMGateway with fixed answers."""

    def __init__(self, summary="Customer asked about prices.", analysis=None, error=None):
        self.summary = summary
        self.analysis = analysis
        self.error = error
        self.summarize_calls = []
        self.recommend_calls = []

    def summarize_conversation(self, messages, retries=2):
        self.summarize_calls.append(messages)
        if self.error:
            raise self.error
        return self.summary

    def recommend_stage(self, messages, stages, retries=2):
        self.recommend_calls.append((messages, stages))
        if self.error:
            raise self.error
        return self.analysis


def conversation(participant_id, name, texts, page_id="PAGE1", page_name="Acme Boutique",
                 updated_time="2024-05-01T10:00:00+0000", username=None):
    """Graph-shaped conversation: alternating participant/page messages."""
    sender = {"id": participant_id}
    if name:
        sender["name"] = name
    if username:
        sender["username"] = username
    messages = []
    for i, text in enumerate(texts):
        from_page = i % 2 == 1
        messages.append({
            "id": f"m_{participant_id}_{i}",
            "message": text,
            "created_time": f"2024-05-01T09:{i:02d}:00+0000",
            "from": {"id": page_id, "name": page_name} if from_page else sender,
        })
    return {
        "id": f"t_{participant_id}",
        "updated_time": updated_time,
        "participants": {"data": [sender, {"id": page_id, "name": page_name}]},
        "messages": {"data": messages},
    }


@pytest.fixture
def fake_graph():
    return FakeGraphClient


@pytest.fixture
def fake_gateway():
    return FakeGateway


@pytest.fixture
def make_conversation():
    return conversation
