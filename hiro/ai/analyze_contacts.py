"""
Backfill AI context for contacts synced before summaries existed.

Each contact's conversation is located through its page's Graph client,
summarized by the LLM gateway and stored as ai_context.
"""

import logging
import time
from typing import Callable

from hiro.ai.llm_gateway import LLMGateway, get_gateway
from hiro.db import models
from hiro.db.connection import utcnow
from hiro.error_handler import log_operation_error
from hiro.facebook.client import GraphClient
from hiro.facebook.sync import conversation_messages

logger = logging.getLogger("hiro.ai.analyze_contacts")

CONTACT_DELAY = 0.5  # seconds between contacts


def _find_conversation(conversations: list, participant_id: str):
    for convo in conversations:
        participants = (convo.get("participants") or {}).get("data") or []
        if any(p.get("id") == participant_id for p in participants):
            return convo
    return None


def analyze_existing_contacts(organization_id: str = None, facebook_page_id: str = None,
                              limit: int = None, skip_if_has_context: bool = True,
                              client_factory: Callable = None, gateway: LLMGateway = None,
                              delay: float = CONTACT_DELAY) -> dict:
    """Summarize the conversations of existing contacts.

    Args:
        organization_id: Restrict to one organization.
        facebook_page_id: Restrict to one page (facebook_pages.id).
        limit: Maximum contacts to process.
        skip_if_has_context: Only contacts without ai_context.
        client_factory: access_token -> Graph client. Defaults to GraphClient.

    Returns:
        {"successCount": int, "failedCount": int, "total": int}
    """
    client_factory = client_factory or GraphClient
    gateway = gateway or get_gateway()

    contacts = models.list_contacts_for_analysis(
        organization_id=organization_id,
        facebook_page_id=facebook_page_id,
        without_context=skip_if_has_context,
        limit=limit,
    )
    logger.info("Found %d contacts to analyze", len(contacts))

    pages = {}
    conversations = {}
    success = failed = 0

    for contact in contacts:
        try:
            page_id = contact.get("facebook_page_id")
            if page_id not in pages:
                pages[page_id] = models.get_facebook_page(page_id) if page_id else None
            page = pages[page_id]

            participant_id = contact.get("messenger_psid") or contact.get("instagram_sid")
            if not page or not participant_id:
                failed += 1
                continue

            instagram = not contact.get("messenger_psid")
            cache_key = (page_id, instagram)
            if cache_key not in conversations:
                client = client_factory(page["page_access_token"])
                if instagram and page.get("instagram_account_id"):
                    conversations[cache_key] = client.get_instagram_conversations(
                        page["instagram_account_id"])
                else:
                    conversations[cache_key] = client.get_messenger_conversations(page["page_id"])

            convo = _find_conversation(conversations[cache_key], participant_id)
            messages = conversation_messages(convo) if convo else []
            if not messages:
                failed += 1
                continue

            ai_context = gateway.summarize_conversation(messages)
            if ai_context:
                models.update_contact(contact["id"], {
                    "ai_context": ai_context,
                    "ai_context_updated_at": utcnow(),
                })
                success += 1
                logger.info("Analyzed %s %s", contact["first_name"], contact.get("last_name") or "",
                            extra={"contact_id": contact["id"]})
            else:
                failed += 1

            time.sleep(delay)
        except Exception as e:
            failed += 1
            log_operation_error(phase="analysis", error=e, contact_id=contact["id"],
                                component="ai.analyze_contacts")

    logger.info("Analysis complete: %d analyzed, %d failed", success, failed)
    return {"successCount": success, "failedCount": failed, "total": len(contacts)}
