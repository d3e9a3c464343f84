"""
Campaign sending - targets contacts, renders messages and sends them in
parallel batches through the page's Graph client.

Flow:
    start_campaign(id)
      -> get_target_contacts(id)        targeting type + platform filter
      -> status SENDING, total_recipients
      -> send_messages(outgoing)         daemon thread, batches of CAMPAIGN_BATCH_SIZE
           status polled before each batch (PAUSED/CANCELLED stops)
           send_message_direct() per contact: message row + counters
      -> COMPLETED
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Optional

from hiro.config import CAMPAIGN_BATCH_SIZE
from hiro.db import models
from hiro.db.connection import utcnow
from hiro.error_handler import log_operation_error
from hiro.facebook.client import GraphClient
from hiro.logging_config import log_context

logger = logging.getLogger("hiro.campaigns.send")

TARGETING_TYPES = ("CONTACT_GROUPS", "TAGS", "PIPELINE_STAGES", "SPECIFIC_CONTACTS",
                   "ALL_CONTACTS")
STOPPED_STATUSES = ("PAUSED", "CANCELLED")
COMPLETION_RETRY_DELAY = 1.0


@dataclass
class OutgoingMessage:
    campaign_id: str
    contact_id: str
    platform: str
    content: str
    page_access_token: str
    recipient_id: Optional[str]
    message_tag: Optional[str] = None


def render_template(content: str, contact: dict) -> str:
    """Fill {firstName}, {lastName} and {name} from a contact row."""
    first = contact.get("first_name") or ""
    last = contact.get("last_name") or ""
    return (
        (content or "")
        .replace("{firstName}", first)
        .replace("{lastName}", last)
        .replace("{name}", f"{first} {last}".strip())
    )


def recipient_for(contact: dict, platform: str) -> Optional[str]:
    return contact.get("messenger_psid") if platform == "MESSENGER" else contact.get("instagram_sid")


# ─── TARGETING ────────────────────────────────────────────────

def _contacts_for(campaign: dict) -> list:
    targeting = campaign["targeting_type"]
    org, page = campaign["organization_id"], campaign["facebook_page_id"]

    if targeting == "CONTACT_GROUPS":
        return models.get_group_contacts(campaign.get("target_group_ids") or [])
    if targeting == "TAGS":
        contacts = []
        for tag in campaign.get("target_tags") or []:
            contacts.extend(models.list_contacts(org, facebook_page_id=page, tag=tag, limit=None))
        return contacts
    if targeting == "PIPELINE_STAGES":
        contacts = []
        for stage_id in campaign.get("target_stage_ids") or []:
            contacts.extend(models.list_contacts(org, facebook_page_id=page, stage_id=stage_id,
                                                 limit=None))
        return contacts
    if targeting == "SPECIFIC_CONTACTS":
        return models.get_contacts_by_ids(campaign.get("target_contact_ids") or [])
    if targeting == "ALL_CONTACTS":
        return models.list_contacts(org, facebook_page_id=page, limit=None)

    logger.warning("Unknown targeting type %s", targeting, extra={"campaign_id": campaign["id"]})
    return []


def get_target_contacts(campaign_id: str) -> list:
    """Unique contacts reachable on the campaign's platform.

    Raises:
        LookupError: Unknown campaign.
    """
    campaign = models.get_campaign(campaign_id)
    if not campaign:
        raise LookupError("Campaign not found")

    unique = {}
    for contact in _contacts_for(campaign):
        unique.setdefault(contact["id"], contact)

    platform = campaign["platform"]
    if platform not in ("MESSENGER", "INSTAGRAM"):
        return []
    flag = "has_messenger" if platform == "MESSENGER" else "has_instagram"
    return [c for c in unique.values() if c.get(flag) and recipient_for(c, platform)]


# ─── SENDING ──────────────────────────────────────────────────

def _record_failure(outgoing: OutgoingMessage, error: str) -> dict:
    models.create_message({
        "contact_id": outgoing.contact_id,
        "campaign_id": outgoing.campaign_id,
        "content": outgoing.content,
        "platform": outgoing.platform,
        "status": "FAILED",
        "message_tag": outgoing.message_tag,
        "is_from_business": True,
        "failed_at": utcnow(),
        "error_message": error,
    })
    models.increment_campaign_counts(outgoing.campaign_id, failed=1)
    return {"success": False, "error": error}


def send_message_direct(outgoing: OutgoingMessage, client=None) -> dict:
    """Send one campaign message and record the outcome.

    Runs on executor threads, so it binds its own log context.

    Returns:
        {"success": True} or {"success": False, "error": str}
    """
    with log_context(campaign_id=outgoing.campaign_id, contact_id=outgoing.contact_id,
                     component="campaigns.send"):
        return _send_one(outgoing, client)


def _send_one(outgoing: OutgoingMessage, client) -> dict:
    if not outgoing.recipient_id:
        error = "No recipient ID (PSID) available for contact"
        logger.error(error)
        return _record_failure(outgoing, error)

    try:
        client = client or GraphClient(outgoing.page_access_token)
        if outgoing.platform == "MESSENGER":
            result = client.send_messenger_message(outgoing.recipient_id, outgoing.content,
                                                   message_tag=outgoing.message_tag)
        else:
            result = client.send_instagram_message(outgoing.recipient_id, outgoing.content)
    except Exception as e:
        return _record_failure(outgoing, str(e))

    if not result.get("success"):
        return _record_failure(outgoing, result.get("error") or "Failed to send message")

    models.create_message({
        "contact_id": outgoing.contact_id,
        "campaign_id": outgoing.campaign_id,
        "content": outgoing.content,
        "platform": outgoing.platform,
        "status": "SENT",
        "message_tag": outgoing.message_tag,
        "facebook_message_id": (result.get("data") or {}).get("message_id"),
        "is_from_business": True,
        "sent_at": utcnow(),
    })
    models.increment_campaign_counts(outgoing.campaign_id, sent=1)
    models.create_activity({
        "contact_id": outgoing.contact_id,
        "type": "CAMPAIGN_SENT",
        "title": "Campaign message sent",
        "description": outgoing.content[:100],
    })
    return {"success": True}


def _mark_completed(campaign_id: str):
    campaign = models.get_campaign(campaign_id)
    if not campaign:
        logger.error("Campaign %s not found during completion update", campaign_id)
        return
    if campaign["status"] != "SENDING":
        logger.warning("Campaign %s status is %s, skipping completion update",
                       campaign_id, campaign["status"])
        return
    models.update_campaign(campaign_id, {"status": "COMPLETED", "completed_at": utcnow()})
    logger.info("Campaign %s completed (sent=%d failed=%d total=%d)", campaign_id,
                campaign["sent_count"], campaign["failed_count"], campaign["total_recipients"])


def send_messages(messages: list, client_factory: Callable = None,
                  batch_size: int = None) -> dict:
    """Send prepared messages in parallel batches, then complete the campaign.

    Args:
        messages: OutgoingMessage list for a single campaign.
        client_factory: access_token -> Graph client. Defaults to GraphClient.

    Returns:
        {"sent": int, "failed": int, "stopped": bool}
    """
    if not messages:
        logger.error("No messages to send")
        return {"sent": 0, "failed": 0, "stopped": False}
    with log_context(campaign_id=messages[0].campaign_id, component="campaigns.send"):
        return _send_in_batches(messages, client_factory, batch_size)


def _send_in_batches(messages: list, client_factory: Optional[Callable],
                     batch_size: Optional[int]) -> dict:
    summary = {"sent": 0, "failed": 0, "stopped": False}

    client_factory = client_factory or GraphClient
    batch_size = batch_size or CAMPAIGN_BATCH_SIZE
    campaign_id = messages[0].campaign_id
    total_batches = (len(messages) + batch_size - 1) // batch_size
    clients = {}

    def client_for(token):
        if token not in clients:
            clients[token] = client_factory(token)
        return clients[token]

    logger.info("Sending %d messages in %d batches", len(messages), total_batches)

    for start in range(0, len(messages), batch_size):
        status = models.get_campaign_status(campaign_id)
        if status in STOPPED_STATUSES:
            logger.info("Campaign %s has been %s, stopping", campaign_id, status.lower())
            summary["stopped"] = True
            break

        batch = messages[start:start + batch_size]
        with ThreadPoolExecutor(max_workers=len(batch)) as executor:
            futures = {
                executor.submit(send_message_direct, msg, client_for(msg.page_access_token)): msg
                for msg in batch
            }
            for future in as_completed(futures):
                msg = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.error("Message to %s crashed: %s", msg.contact_id, e)
                    result = {"success": False}
                if result.get("success"):
                    summary["sent"] += 1
                else:
                    summary["failed"] += 1

        logger.info("Batch %d/%d done: %d sent, %d failed", start // batch_size + 1,
                    total_batches, summary["sent"], summary["failed"])

    try:
        _mark_completed(campaign_id)
    except Exception as e:
        logger.error("Failed to complete campaign %s: %s, retrying", campaign_id, e)
        time.sleep(COMPLETION_RETRY_DELAY)
        try:
            _mark_completed(campaign_id)
        except Exception as retry_error:
            log_operation_error(phase="campaign_send", error=retry_error,
                                campaign_id=campaign_id, component="campaigns.send",
                                severity="critical",
                                context={"note": "campaign may be stuck in SENDING"})
    return summary


# ─── CAMPAIGN CONTROL ─────────────────────────────────────────

def start_campaign(campaign_id: str, background: bool = True,
                   client_factory: Callable = None) -> dict:
    """Queue a campaign for sending.

    Raises:
        LookupError: Unknown campaign.
        ValueError: No reachable target contacts (campaign is marked COMPLETED).
    """
    campaign = models.get_campaign(campaign_id)
    if not campaign:
        raise LookupError("Campaign not found")

    targets = get_target_contacts(campaign_id)
    logger.info("Campaign %s: %d target contacts", campaign["name"], len(targets),
                extra={"campaign_id": campaign_id})

    if not targets:
        models.update_campaign(campaign_id, {"status": "COMPLETED", "total_recipients": 0,
                                             "completed_at": utcnow()})
        raise ValueError("No target contacts found for this campaign. Make sure contacts "
                         "have valid Messenger PSIDs or Instagram SIDs.")

    models.update_campaign(campaign_id, {"status": "SENDING", "started_at": utcnow(),
                                         "total_recipients": len(targets)})

    page = models.get_facebook_page(campaign["facebook_page_id"])
    template = models.get_template(campaign["template_id"]) if campaign.get("template_id") else None
    ai_messages = campaign.get("ai_messages_map") or {}
    use_ai = bool(campaign.get("use_ai_personalization")) and bool(ai_messages)

    outgoing = []
    for contact in targets:
        if use_ai and ai_messages.get(contact["id"]):
            content = ai_messages[contact["id"]]
        else:
            content = render_template(template["content"] if template else "", contact)
        outgoing.append(OutgoingMessage(
            campaign_id=campaign_id,
            contact_id=contact["id"],
            platform=campaign["platform"],
            content=content,
            page_access_token=page["page_access_token"],
            recipient_id=recipient_for(contact, campaign["platform"]),
            message_tag=campaign.get("message_tag"),
        ))

    if background:
        threading.Thread(
            target=send_messages,
            args=(outgoing,),
            kwargs={"client_factory": client_factory},
            name=f"campaign-{campaign_id}",
            daemon=True,
        ).start()
    else:
        send_messages(outgoing, client_factory=client_factory)

    return {
        "success": True,
        "queued": len(outgoing),
        "mode": "parallel-batches",
        "message": "Messages are being sent in parallel batches",
    }


def pause_campaign(campaign_id: str) -> dict:
    campaign = models.get_campaign(campaign_id)
    if not campaign:
        raise LookupError("Campaign not found")
    if campaign["status"] != "SENDING":
        raise ValueError(f"Cannot pause campaign with status {campaign['status']}")
    return models.update_campaign(campaign_id, {"status": "PAUSED"})


def cancel_campaign(campaign_id: str) -> dict:
    campaign = models.get_campaign(campaign_id)
    if not campaign:
        raise LookupError("Campaign not found")
    if campaign["status"] in ("COMPLETED", "CANCELLED"):
        raise ValueError(f"Cannot cancel campaign with status {campaign['status']}")
    return models.update_campaign(campaign_id, {"status": "CANCELLED",
                                                "completed_at": utcnow()})


def get_failed_messages(campaign_id: str) -> list:
    if not models.get_campaign(campaign_id):
        raise LookupError("Campaign not found")
    return models.list_campaign_messages(campaign_id, status="FAILED")


def resend_failed_messages(campaign_id: str, client=None) -> dict:
    """Retry FAILED messages of a campaign, updating the rows in place.

    Returns:
        {"resent": int, "stillFailed": int}
    """
    campaign = models.get_campaign(campaign_id)
    if not campaign:
        raise LookupError("Campaign not found")

    page = models.get_facebook_page(campaign["facebook_page_id"])
    client = client or GraphClient(page["page_access_token"])
    resent = still_failed = 0

    for msg in models.list_campaign_messages(campaign_id, status="FAILED"):
        recipient = recipient_for(msg, msg["platform"])
        if not recipient:
            still_failed += 1
            continue

        try:
            if msg["platform"] == "MESSENGER":
                result = client.send_messenger_message(recipient, msg["content"],
                                                       message_tag=msg.get("message_tag"))
            else:
                result = client.send_instagram_message(recipient, msg["content"])
        except Exception as e:
            result = {"success": False, "error": str(e)}

        if result.get("success"):
            models.update_message(msg["id"], {
                "status": "SENT",
                "sent_at": utcnow(),
                "facebook_message_id": (result.get("data") or {}).get("message_id"),
                "error_message": None,
            })
            models.increment_campaign_counts(campaign_id, sent=1, failed=-1)
            resent += 1
        else:
            models.update_message(msg["id"], {
                "failed_at": utcnow(),
                "error_message": result.get("error") or "Failed to send message",
            })
            still_failed += 1

    logger.info("Resend for campaign %s: %d resent, %d still failed", campaign_id, resent,
                still_failed, extra={"campaign_id": campaign_id})
    return {"resent": resent, "stillFailed": still_failed}
