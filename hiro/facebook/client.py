"""
Facebook Graph API client (Messenger + Instagram messaging).

Thin requests wrapper: conversation listing with pagination, profile
lookups and message sends. Graph error bodies are turned into
FacebookApiError so callers can branch on token expiry or rate limits.
"""

import logging
import time
from typing import Optional

import requests

from hiro.config import FB_GRAPH_URL

logger = logging.getLogger("hiro.facebook.client")

PAGE_DELAY = 0.1  # seconds between pagination requests
REQUEST_TIMEOUT = 30

MESSENGER_CONVERSATION_FIELDS = "participants,updated_time,message_count,messages{id,from,message,created_time}"
INSTAGRAM_CONVERSATION_FIELDS = "participants,updated_time,messages{id,from,message,created_time}"

RATE_LIMIT_CODES = (4, 17, 613)


class FacebookApiError(Exception):
    """Error returned by the Graph API."""

    def __init__(self, code: Optional[int], error_type: str, message: str, context: str = None):
        super().__init__(message)
        self.code = code
        self.type = error_type
        self.message = message
        self.context = context

    @property
    def is_token_expired(self) -> bool:
        return self.code == 190

    @property
    def is_rate_limited(self) -> bool:
        return self.code in RATE_LIMIT_CODES

    @property
    def is_permission_error(self) -> bool:
        return self.code in (10, 200)

    @property
    def is_invalid_parameter(self) -> bool:
        return self.code == 100

    def to_dict(self) -> dict:
        return {"code": self.code, "type": self.type, "message": self.message,
                "context": self.context}


def _graph_error(resp: requests.Response) -> Optional[dict]:
    """The `error` object of a Graph error response, if there is one."""
    try:
        body = resp.json()
    except ValueError:
        return None
    error = body.get("error") if isinstance(body, dict) else None
    return error if isinstance(error, dict) else None


class GraphClient:
    """Page-token scoped Graph API client.

    Usage:
        client = GraphClient(page["page_access_token"])
        convos = client.get_messenger_conversations(page["page_id"])
    """

    def __init__(self, access_token: str, base_url: str = None,
                 session: requests.Session = None, page_delay: float = PAGE_DELAY):
        self.access_token = access_token
        self.base_url = (base_url or FB_GRAPH_URL).rstrip("/")
        self.session = session or requests.Session()
        self.page_delay = page_delay

    # ─── low level ────────────────────────────────────────────

    def _get(self, url: str, params: dict = None, context: str = None) -> dict:
        try:
            resp = self.session.get(url, params=params, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise FacebookApiError(None, "NetworkError", str(e), context)
        if resp.status_code >= 400:
            error = _graph_error(resp) or {}
            raise FacebookApiError(
                error.get("code", resp.status_code),
                error.get("type", "OAuthException"),
                error.get("message", f"HTTP {resp.status_code}"),
                context,
            )
        return resp.json()

    def _post_message(self, payload: dict) -> tuple:
        """POST /me/messages. Returns (data, graph_error_or_None)."""
        resp = self.session.post(
            f"{self.base_url}/me/messages",
            params={"access_token": self.access_token},
            json=payload,
            timeout=REQUEST_TIMEOUT,
        )
        if resp.status_code >= 400:
            error = _graph_error(resp)
            if error is None:
                resp.raise_for_status()
            return None, error
        return resp.json(), None

    def _paginate(self, first_url: str, params: dict, label: str, owner_id: str) -> list:
        context = f"Failed to fetch {label} conversations for ID: {owner_id}"
        first = self._get(first_url, params=params, context=context)
        conversations = list(first.get("data") or [])
        next_url = (first.get("paging") or {}).get("next")

        while next_url:
            try:
                page = self._get(next_url, context=f"Rate limited while paginating {label} "
                                                   f"conversations for ID: {owner_id}")
            except FacebookApiError as e:
                if e.is_rate_limited:
                    raise
                logger.warning("Failed to fetch next %s page (%s), continuing with %d "
                               "conversations already fetched", label, e, len(conversations))
                break

            data = page.get("data") or []
            conversations.extend(data)
            next_url = (page.get("paging") or {}).get("next")
            if not data:
                break
            if next_url:
                time.sleep(self.page_delay)

        logger.info("Fetched %d %s conversations", len(conversations), label)
        return conversations

    # ─── conversations ────────────────────────────────────────

    def get_messenger_conversations(self, page_id: str, limit: int = 100) -> list:
        """All Messenger conversations for a page, following paging.next."""
        return self._paginate(
            f"{self.base_url}/{page_id}/conversations",
            {"access_token": self.access_token, "fields": MESSENGER_CONVERSATION_FIELDS,
             "limit": limit},
            "Messenger", page_id,
        )

    def get_instagram_conversations(self, ig_account_id: str, limit: int = 100) -> list:
        """All Instagram conversations for a business account, following paging.next."""
        return self._paginate(
            f"{self.base_url}/{ig_account_id}/conversations",
            {"access_token": self.access_token, "fields": INSTAGRAM_CONVERSATION_FIELDS,
             "limit": limit},
            "Instagram", ig_account_id,
        )

    # ─── profiles ─────────────────────────────────────────────

    def get_messenger_profile(self, psid: str) -> dict:
        return self._get(
            f"{self.base_url}/{psid}",
            params={"access_token": self.access_token,
                    "fields": "first_name,last_name,profile_pic,locale,timezone"},
            context=f"Failed to get profile for PSID: {psid}",
        )

    def get_instagram_profile(self, ig_user_id: str) -> dict:
        return self._get(
            f"{self.base_url}/{ig_user_id}",
            params={"access_token": self.access_token,
                    "fields": "name,username,profile_picture_url"},
            context=f"Failed to get Instagram profile for User ID: {ig_user_id}",
        )

    # ─── sending ──────────────────────────────────────────────

    def send_messenger_message(self, recipient_id: str, message: str, message_tag: str = None,
                               notification_type: str = "REGULAR") -> dict:
        """Send a Messenger text.

        Returns:
            {"success": True, "data": {...}} or
            {"success": False, "error": CODE, "message": str}
        """
        payload = {
            "recipient": {"id": recipient_id},
            "message": {"text": message},
            "notification_type": notification_type,
        }
        if message_tag:
            payload["messaging_type"] = "MESSAGE_TAG"
            payload["tag"] = message_tag
        else:
            payload["messaging_type"] = "RESPONSE"

        data, error = self._post_message(payload)
        if error is None:
            return {"success": True, "data": data}

        if error.get("code") == 10903:
            return {"success": False, "error": "OUTSIDE_24HR_WINDOW",
                    "message": "Cannot send message outside 24-hour window without "
                               "appropriate message tag"}
        if error.get("code") == 200:
            return {"success": False, "error": "INVALID_TAG_USAGE",
                    "message": "Message tag usage does not match message content"}
        return {"success": False, "error": "FACEBOOK_API_ERROR",
                "message": error.get("message", "Unknown Facebook error")}

    def send_instagram_message(self, recipient_id: str, message: str) -> dict:
        data, error = self._post_message({
            "recipient": {"id": recipient_id},
            "message": {"text": message},
        })
        if error is None:
            return {"success": True, "data": data}
        return {"success": False, "error": "FACEBOOK_API_ERROR",
                "message": f"Facebook API Error ({error.get('code')}): {error.get('message')}"}
