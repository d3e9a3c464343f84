"""
Contact Sync - pulls Messenger and Instagram conversations into contacts.

sync_contacts() walks every conversation of a page (then of its linked
Instagram account), upserts one contact per participant, stores the
conversation messages and an AI summary, and tolerates per-contact
failures. When it runs as a sync job, progress is written to the job row
and a CANCELLED status set from outside stops the run before the next
conversation.

Background jobs run in a daemon thread:
    result = start_background_sync(page_db_id)
    get_sync_job_status(result["job_id"])
"""

import logging
import re
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

from hiro.ai.llm_gateway import LLMGateway, get_gateway
from hiro.config import SYNC_PROGRESS_INTERVAL
from hiro.db import models
from hiro.db.connection import utcnow
from hiro.error_handler import log_operation_error, safe_execute
from hiro.facebook.client import FacebookApiError, GraphClient
from hiro.logging_config import log_context

logger = logging.getLogger("hiro.facebook.sync")

ACTIVE_JOB_STATUSES = ("PENDING", "IN_PROGRESS")

_TZ_NO_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


@dataclass
class SyncResult:
    success: bool = True
    synced: int = 0
    failed: int = 0
    errors: list = field(default_factory=list)
    token_expired: bool = False
    cancelled: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


# ─── CONVERSATION PARSING ─────────────────────────────────────

def split_name(full_name: str) -> tuple:
    """'Jane Mary Doe' -> ('Jane', 'Mary Doe'); single word -> (word, None)."""
    parts = (full_name or "").strip().split()
    if not parts:
        return None, None
    return parts[0], (" ".join(parts[1:]) or None)


def participant_name(convo: dict, participant_id: str, platform: str) -> tuple:
    """(first_name, last_name) for a participant, taken from their first message."""
    prefix = "IG User" if platform == "Instagram" else "User"
    first, last = f"{prefix} {participant_id[-6:]}", None

    for msg in (convo.get("messages") or {}).get("data") or []:
        sender = msg.get("from") or {}
        if sender.get("id") != participant_id:
            continue
        if sender.get("name"):
            name_first, name_last = split_name(sender["name"])
            first = name_first or first
            last = name_last
        elif platform == "Instagram" and sender.get("username"):
            first = sender["username"]
        break
    return first, last


def conversation_messages(convo: dict) -> list:
    """Messages with text as [{"from", "text"}]."""
    out = []
    for msg in (convo.get("messages") or {}).get("data") or []:
        if not msg.get("message"):
            continue
        sender = msg.get("from") or {}
        out.append({
            "from": sender.get("name") or sender.get("username") or sender.get("id") or "Unknown",
            "text": msg["message"],
        })
    return out


def graph_time(value: Optional[str]) -> Optional[str]:
    """Graph timestamp ('2024-05-01T10:00:00+0000') as a naive UTC ISO string."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(_TZ_NO_COLON.sub(r"\1:\2", value.replace("Z", "+00:00")))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.isoformat()


def _participants(convo: dict) -> list:
    return (convo.get("participants") or {}).get("data") or []


# ─── SYNC RUN ─────────────────────────────────────────────────

class _SyncRun:
    """Counters and job bookkeeping for one sync pass."""

    def __init__(self, page: dict, client, gateway: Optional[LLMGateway], job_id: str = None):
        self.page = page
        self.client = client
        self.gateway = gateway
        self.job_id = job_id
        self.result = SyncResult()

    # job control

    def is_cancelled(self) -> bool:
        if not self.job_id:
            return False
        if models.get_sync_job_status_value(self.job_id) == "CANCELLED":
            logger.info("Sync job %s cancelled, stopping", self.job_id)
            self.result.cancelled = True
        return self.result.cancelled

    def write_progress(self):
        if self.job_id:
            models.update_sync_job(self.job_id, {
                "synced_contacts": self.result.synced,
                "failed_contacts": self.result.failed,
            })

    def record_error(self, platform: str, item_id: str, error: Exception, count: bool = True):
        code = error.code if isinstance(error, FacebookApiError) else None
        if isinstance(error, FacebookApiError) and error.is_token_expired:
            self.result.token_expired = True
        if count:
            self.result.failed += 1
        self.result.errors.append({"platform": platform, "id": item_id,
                                   "error": str(error) or type(error).__name__, "code": code})
        log_operation_error(phase="sync", error=error, job_id=self.job_id,
                            component="facebook.sync",
                            context={"platform": platform, "id": item_id, "code": code})

    # per contact

    def summarize(self, convo: dict, participant_id: str) -> Optional[str]:
        if self.gateway is None:
            return None
        messages = conversation_messages(convo)
        if not messages:
            return None
        return safe_execute(self.gateway.summarize_conversation, args=(messages,),
                            phase="sync_summary", component="facebook.sync",
                            job_id=self.job_id, fallback=None,
                            severity="warning")

    def store_messages(self, contact: dict, convo: dict, business_id: str, platform: str):
        for msg in (convo.get("messages") or {}).get("data") or []:
            fb_id = msg.get("id")
            if not fb_id or not msg.get("message") or models.message_exists(fb_id):
                continue
            sender = msg.get("from") or {}
            from_business = sender.get("id") == business_id
            models.create_message({
                "contact_id": contact["id"],
                "content": msg["message"],
                "platform": platform.upper(),
                "status": "SENT" if from_business else "RECEIVED",
                "facebook_message_id": fb_id,
                "sender_name": sender.get("name") or sender.get("username"),
                "is_from_business": from_business,
                "created_at": graph_time(msg.get("created_time")) or utcnow(),
            })

    def contact_synced(self):
        self.result.synced += 1
        if self.result.synced % SYNC_PROGRESS_INTERVAL == 0:
            self.write_progress()

    def sync_messenger_participant(self, convo: dict, participant_id: str):
        page = self.page
        first, last = participant_name(convo, participant_id, "Messenger")
        data = {
            "first_name": first,
            "last_name": last,
            "has_messenger": True,
            "last_interaction": graph_time(convo.get("updated_time")),
        }
        ai_context = self.summarize(convo, participant_id)
        if ai_context:
            data.update({"ai_context": ai_context, "ai_context_updated_at": utcnow()})

        contact = models.upsert_messenger_contact(page["id"], page["organization_id"],
                                                  participant_id, data)
        self.store_messages(contact, convo, page["page_id"], "Messenger")

    def sync_instagram_participant(self, convo: dict, participant_id: str):
        page = self.page
        first, last = participant_name(convo, participant_id, "Instagram")
        data = {
            "instagram_sid": participant_id,
            "first_name": first,
            "last_name": last,
            "has_instagram": True,
            "last_interaction": graph_time(convo.get("updated_time")),
        }
        ai_context = self.summarize(convo, participant_id)
        if ai_context:
            data.update({"ai_context": ai_context, "ai_context_updated_at": utcnow()})

        existing = models.find_contact_by_instagram(page["id"], participant_id)
        if existing:
            contact = models.update_contact(existing["id"], data)
        else:
            contact = models.create_contact({
                **data,
                "organization_id": page["organization_id"],
                "facebook_page_id": page["id"],
            })
        self.store_messages(contact, convo, page["instagram_account_id"], "Instagram")

    # per platform

    def sync_platform(self, platform: str, owner_id: str, fetch, sync_participant):
        try:
            convos = fetch(owner_id)
        except Exception as e:
            logger.error("Failed to fetch %s conversations: %s", platform, e)
            self.record_error(platform, "conversations", e, count=False)
            return

        logger.info("Syncing %d %s conversations", len(convos), platform)
        for convo in convos:
            if self.is_cancelled():
                return
            for participant in _participants(convo):
                pid = participant.get("id")
                if not pid or pid == owner_id:
                    continue
                try:
                    sync_participant(convo, pid)
                    self.contact_synced()
                except Exception as e:
                    logger.error("Failed to sync %s contact %s: %s", platform, pid, e)
                    self.record_error(platform, pid, e)

    def run(self) -> SyncResult:
        page = self.page
        logger.info("Starting contact sync for page %s", page["page_id"])

        self.sync_platform("Messenger", page["page_id"], self.client.get_messenger_conversations,
                           self.sync_messenger_participant)

        if page.get("instagram_account_id") and not self.result.cancelled:
            self.sync_platform("Instagram", page["instagram_account_id"],
                               self.client.get_instagram_conversations,
                               self.sync_instagram_participant)

        if self.result.synced > 0 or not self.result.token_expired:
            models.update_facebook_page(page["id"], {"last_synced_at": utcnow()})

        logger.info("Sync finished: %d synced, %d failed%s%s", self.result.synced,
                    self.result.failed,
                    " (token expired)" if self.result.token_expired else "",
                    " (cancelled)" if self.result.cancelled else "")
        return self.result


def sync_contacts(facebook_page_id: str, client=None, gateway: LLMGateway = None,
                  job_id: str = None, analyze: bool = True) -> SyncResult:
    """Sync all contacts of a connected page.

    Args:
        facebook_page_id: facebook_pages.id (not the Graph page id).
        client: Object with the GraphClient conversation methods.
        gateway: LLM gateway used for conversation summaries.
        job_id: Sync job to report progress to and poll for cancellation.
        analyze: Set False to skip AI summaries.

    Raises:
        LookupError: Unknown page.
    """
    page = models.get_facebook_page(facebook_page_id)
    if not page:
        raise LookupError("Facebook page not found")

    client = client or GraphClient(page["page_access_token"])
    if analyze:
        gateway = gateway or get_gateway()
    else:
        gateway = None
    with log_context(job_id=job_id, component="facebook.sync"):
        return _SyncRun(page, client, gateway, job_id=job_id).run()


# ─── BACKGROUND JOBS ──────────────────────────────────────────

def run_sync_job(job_id: str, facebook_page_id: str, client=None,
                 gateway: LLMGateway = None) -> Optional[SyncResult]:
    """Execute a sync job and record its final state."""
    with log_context(job_id=job_id, component="facebook.sync"):
        return _run_sync_job(job_id, facebook_page_id, client, gateway)


def _run_sync_job(job_id: str, facebook_page_id: str, client, gateway) -> Optional[SyncResult]:
    if models.get_sync_job_status_value(job_id) == "CANCELLED":
        logger.info("Sync job %s cancelled before it started", job_id)
        return None
    # A cancel can land at any point after the check above, so no status
    # write from here on may replace CANCELLED.
    models.update_sync_job(job_id, {"status": "IN_PROGRESS", "started_at": utcnow()},
                           keep_cancelled=True)
    try:
        result = sync_contacts(facebook_page_id, client=client, gateway=gateway, job_id=job_id)
    except Exception as e:
        logger.exception("Sync job %s failed", job_id)
        models.update_sync_job(job_id, {
            "status": "FAILED",
            "errors": [{"error": str(e)}],
            "completed_at": utcnow(),
        }, keep_cancelled=True)
        return None

    if result.cancelled:
        status = "CANCELLED"
    elif result.token_expired:
        status = "FAILED"
    else:
        status = "COMPLETED"

    job = models.update_sync_job(job_id, {
        "status": status,
        "synced_contacts": result.synced,
        "failed_contacts": result.failed,
        "total_contacts": result.synced + result.failed,
        "errors": result.errors or None,
        "token_expired": result.token_expired,
        "completed_at": utcnow(),
    }, keep_cancelled=True)
    if job and job["status"] == "CANCELLED":
        result.cancelled = True
        status = "CANCELLED"
    logger.info("Sync job %s %s", job_id, status.lower())
    return result


def start_background_sync(facebook_page_id: str, client=None, gateway: LLMGateway = None,
                          background: bool = True) -> dict:
    """Start (or report) the sync job for a page.

    Returns:
        {"success": True, "job_id": str, "message": str}
    """
    if not models.get_facebook_page(facebook_page_id):
        raise LookupError("Facebook page not found")

    existing = models.find_active_sync_job(facebook_page_id)
    if existing:
        return {"success": True, "job_id": existing["id"], "message": "Sync already in progress"}

    job = models.create_sync_job(facebook_page_id)
    if background:
        thread = threading.Thread(
            target=run_sync_job,
            args=(job["id"], facebook_page_id),
            kwargs={"client": client, "gateway": gateway},
            name=f"sync-{job['id']}",
            daemon=True,
        )
        thread.start()
    else:
        run_sync_job(job["id"], facebook_page_id, client=client, gateway=gateway)

    return {"success": True, "job_id": job["id"], "message": "Sync started"}


def cancel_sync_job(job_id: str) -> dict:
    """Flag a PENDING/IN_PROGRESS job as CANCELLED; the running sync stops at its next check.

    Raises:
        LookupError: Unknown job.
        ValueError: Job already finished.
    """
    job = models.get_sync_job(job_id)
    if not job:
        raise LookupError("Sync job not found")
    if job["status"] not in ACTIVE_JOB_STATUSES:
        raise ValueError(f"Cannot cancel sync job with status {job['status']}")

    models.update_sync_job(job_id, {"status": "CANCELLED", "completed_at": utcnow()})
    logger.info("Sync job %s cancelled", job_id)
    return {"success": True, "job_id": job_id, "message": "Sync job cancelled"}


def get_sync_job_status(job_id: str) -> dict:
    job = models.get_sync_job(job_id)
    if not job:
        raise LookupError("Sync job not found")
    return job


def get_latest_sync_job(facebook_page_id: str) -> Optional[dict]:
    return models.get_latest_sync_job(facebook_page_id)
