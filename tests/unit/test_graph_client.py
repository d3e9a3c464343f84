"""
Unit tests for the Graph API client with a fake requests session.
"""

import json

import pytest
import requests

from hiro.facebook.client import FacebookApiError, GraphClient
from hiro.facebook.message_tags import get_all_message_tags, get_message_tag_info, is_valid_tag


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body if body is not None else {}
        self.text = json.dumps(self._body) if not isinstance(self._body, str) else self._body

    def json(self):
        if isinstance(self._body, str):
            raise ValueError("not json")
        return self._body

    def raise_for_status(self):
        raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Returns queued GET responses in order; POSTs return a single response."""

    def __init__(self, gets=(), post=None):
        self.gets = list(gets)
        self.post_response = post
        self.get_calls = []
        self.post_calls = []

    def get(self, url, params=None, timeout=None):
        self.get_calls.append((url, params))
        outcome = self.gets.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def post(self, url, params=None, json=None, timeout=None):
        self.post_calls.append((url, params, json))
        return self.post_response


def _client(session):
    return GraphClient("page-token", base_url="https://graph.test/v19.0", session=session,
                       page_delay=0)


def _error(code, message="failed", status=400):
    return FakeResponse(status, {"error": {"code": code, "type": "OAuthException",
                                           "message": message}})


# ─── PAGINATION ──────────────────────────────────────────────

def test_follows_paging_next():
    session = FakeSession(gets=[
        FakeResponse(body={"data": [{"id": "t1"}], "paging": {"next": "https://graph.test/p2"}}),
        FakeResponse(body={"data": [{"id": "t2"}], "paging": {"next": "https://graph.test/p3"}}),
        FakeResponse(body={"data": [{"id": "t3"}]}),
    ])
    convos = _client(session).get_messenger_conversations("PAGE1")

    assert [c["id"] for c in convos] == ["t1", "t2", "t3"]
    first_url, first_params = session.get_calls[0]
    assert first_url == "https://graph.test/v19.0/PAGE1/conversations"
    assert first_params["access_token"] == "page-token"
    assert "messages{" in first_params["fields"]
    assert session.get_calls[1] == ("https://graph.test/p2", None)


def test_empty_page_stops_pagination():
    session = FakeSession(gets=[
        FakeResponse(body={"data": [{"id": "t1"}], "paging": {"next": "https://graph.test/p2"}}),
        FakeResponse(body={"data": [], "paging": {"next": "https://graph.test/p3"}}),
    ])
    assert len(_client(session).get_instagram_conversations("IG1")) == 1
    assert len(session.get_calls) == 2


def test_rate_limit_during_pagination_raises():
    session = FakeSession(gets=[
        FakeResponse(body={"data": [{"id": "t1"}], "paging": {"next": "https://graph.test/p2"}}),
        _error(4, "Application request limit reached"),
    ])
    with pytest.raises(FacebookApiError) as exc:
        _client(session).get_messenger_conversations("PAGE1")
    assert exc.value.is_rate_limited
    assert "paginating" in exc.value.context


def test_other_pagination_error_keeps_collected():
    session = FakeSession(gets=[
        FakeResponse(body={"data": [{"id": "t1"}], "paging": {"next": "https://graph.test/p2"}}),
        _error(1, "Unknown error", status=500),
    ])
    assert [c["id"] for c in _client(session).get_messenger_conversations("PAGE1")] == ["t1"]


def test_first_page_error_carries_code():
    session = FakeSession(gets=[_error(190, "Error validating access token")])
    with pytest.raises(FacebookApiError) as exc:
        _client(session).get_messenger_conversations("PAGE1")
    assert exc.value.is_token_expired
    assert exc.value.to_dict()["context"] == "Failed to fetch Messenger conversations for ID: PAGE1"


def test_non_json_error_uses_http_status():
    session = FakeSession(gets=[FakeResponse(502, "Bad Gateway")])
    with pytest.raises(FacebookApiError) as exc:
        _client(session).get_messenger_profile("PSID1")
    assert exc.value.code == 502
    assert exc.value.message == "HTTP 502"


def test_network_error_is_wrapped():
    session = FakeSession(gets=[requests.ConnectionError("reset")])
    with pytest.raises(FacebookApiError) as exc:
        _client(session).get_instagram_profile("IGU1")
    assert exc.value.type == "NetworkError"


def test_error_classification():
    assert FacebookApiError(10, "x", "m").is_permission_error
    assert FacebookApiError(100, "x", "m").is_invalid_parameter
    assert FacebookApiError(613, "x", "m").is_rate_limited
    assert not FacebookApiError(190, "x", "m").is_rate_limited


# ─── SENDING ─────────────────────────────────────────────────

def test_messenger_send_without_tag_is_response():
    session = FakeSession(post=FakeResponse(body={"recipient_id": "PSID1", "message_id": "mid.1"}))
    result = _client(session).send_messenger_message("PSID1", "Hello")

    assert result == {"success": True, "data": {"recipient_id": "PSID1", "message_id": "mid.1"}}
    url, params, payload = session.post_calls[0]
    assert url == "https://graph.test/v19.0/me/messages"
    assert params == {"access_token": "page-token"}
    assert payload["messaging_type"] == "RESPONSE"
    assert "tag" not in payload


def test_messenger_send_with_tag():
    session = FakeSession(post=FakeResponse(body={"message_id": "mid.2"}))
    _client(session).send_messenger_message("PSID1", "Order shipped", message_tag="POST_PURCHASE_UPDATE")
    payload = session.post_calls[0][2]
    assert payload["messaging_type"] == "MESSAGE_TAG"
    assert payload["tag"] == "POST_PURCHASE_UPDATE"


@pytest.mark.parametrize("code,expected", [
    (10903, "OUTSIDE_24HR_WINDOW"),
    (200, "INVALID_TAG_USAGE"),
    (100, "FACEBOOK_API_ERROR"),
])
def test_messenger_send_error_codes(code, expected):
    session = FakeSession(post=_error(code))
    result = _client(session).send_messenger_message("PSID1", "Hi")
    assert result["success"] is False
    assert result["error"] == expected


def test_instagram_send_error_message():
    session = FakeSession(post=_error(10, "Permission denied"))
    result = _client(session).send_instagram_message("IGU1", "Hi")
    assert result == {"success": False, "error": "FACEBOOK_API_ERROR",
                      "message": "Facebook API Error (10): Permission denied"}


def test_send_without_graph_error_body_raises():
    session = FakeSession(post=FakeResponse(503, "Service Unavailable"))
    with pytest.raises(requests.HTTPError):
        _client(session).send_instagram_message("IGU1", "Hi")


# ─── MESSAGE TAGS ────────────────────────────────────────────

def test_message_tags():
    assert is_valid_tag("HUMAN_AGENT")
    assert not is_valid_tag("PROMOTION")
    assert not is_valid_tag(None)
    assert get_message_tag_info("ACCOUNT_UPDATE")["label"] == "Account Update"
    assert len(get_all_message_tags()) == 4
