"""
Enhanced Analysis - LLM analysis with retries and a deterministic fallback.

analyze_with_fallback() never returns an empty result: when every model
attempt fails it builds an analysis from fallback_scoring, so contacts
always get a usable score and stage recommendation.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from hiro.ai.fallback_scoring import calculate_fallback_score, enhance_low_score
from hiro.ai.llm_gateway import ContactAnalysis, LLMGateway, get_gateway
from hiro.db import models
from hiro.db.connection import utcnow
from hiro.error_handler import log_operation_error

logger = logging.getLogger("hiro.ai.enhanced_analysis")

DEFAULT_STAGE_NAME = "New Lead"
BATCH_RETRIES = 2


@dataclass
class AnalysisResult:
    analysis: ContactAnalysis
    used_fallback: bool
    retry_count: int

    def to_dict(self) -> dict:
        return {
            "analysis": self.analysis.model_dump(by_alias=True),
            "usedFallback": self.used_fallback,
            "retryCount": self.retry_count,
        }


def determine_stage_by_score(score: int, stages: Optional[list]) -> str:
    """Name of the stage whose score range holds `score`, else the nearest by midpoint."""
    if not stages:
        return DEFAULT_STAGE_NAME

    def bounds(stage):
        lo = stage.get("lead_score_min")
        hi = stage.get("lead_score_max")
        return (0 if lo is None else lo), (100 if hi is None else hi)

    for stage in stages:
        lo, hi = bounds(stage)
        if lo <= score <= hi:
            return stage["name"]

    closest = stages[0]
    closest_distance = abs(sum(bounds(closest)) / 2 - score)
    for stage in stages:
        distance = abs(sum(bounds(stage)) / 2 - score)
        if distance < closest_distance:
            closest, closest_distance = stage, distance
    return closest["name"]


def analyze_with_fallback(messages: list, pipeline_stages: list = None,
                          conversation_age: datetime = None, max_retries: int = 3,
                          gateway: LLMGateway = None) -> AnalysisResult:
    """Analyze a conversation, retrying the LLM and falling back to heuristics.

    With stages the model is asked for a full stage recommendation. Without
    stages only a summary is requested and the score comes from the
    fallback heuristics.
    """
    gateway = gateway or get_gateway()
    retry_count = 0
    last_error = None

    while retry_count < max_retries:
        try:
            if pipeline_stages:
                analysis = gateway.recommend_stage(messages, pipeline_stages,
                                                   retries=max_retries - retry_count)
                if analysis:
                    logger.info("AI success on attempt %d", retry_count + 1)
                    return AnalysisResult(analysis, False, retry_count)
            else:
                summary = gateway.summarize_conversation(messages,
                                                         retries=max_retries - retry_count)
                if summary:
                    fallback = calculate_fallback_score(messages, conversation_age)
                    logger.info("Summary success on attempt %d, using fallback scoring",
                                retry_count + 1)
                    return AnalysisResult(
                        ContactAnalysis(
                            summary=summary,
                            recommended_stage=DEFAULT_STAGE_NAME,
                            lead_score=fallback.lead_score,
                            lead_status=fallback.lead_status,
                            confidence=fallback.confidence,
                            reasoning=fallback.reasoning,
                        ),
                        True,
                        retry_count,
                    )
        except Exception as e:
            last_error = e
            logger.warning("Analysis attempt %d failed: %s", retry_count + 1, e)

        retry_count += 1
        if retry_count < max_retries:
            delay = 2 ** retry_count
            logger.info("Retrying analysis in %ss...", delay)
            time.sleep(delay)

    logger.warning("All AI attempts failed, using fallback scoring (last error: %s)", last_error)
    fallback = calculate_fallback_score(messages, conversation_age)
    return AnalysisResult(
        ContactAnalysis(
            summary=f"Analyzed {len(messages)} messages. {fallback.reasoning}",
            recommended_stage=determine_stage_by_score(fallback.lead_score, pipeline_stages),
            lead_score=fallback.lead_score,
            lead_status=fallback.lead_status,
            confidence=fallback.confidence,
            reasoning=fallback.reasoning,
        ),
        True,
        retry_count,
    )


def emergency_fallback(messages: list, pipeline_stages: list = None,
                       conversation_age: datetime = None) -> AnalysisResult:
    fallback = calculate_fallback_score(messages, conversation_age)
    return AnalysisResult(
        ContactAnalysis(
            summary="Analysis failed - minimum score assigned",
            recommended_stage=pipeline_stages[0]["name"] if pipeline_stages else DEFAULT_STAGE_NAME,
            lead_score=fallback.lead_score,
            lead_status=fallback.lead_status,
            confidence=30,
            reasoning="Emergency fallback due to repeated failures",
        ),
        True,
        0,
    )


def batch_analyze_with_fallback(items: list, pipeline_stages: list = None, delay: float = 1.5,
                                gateway: LLMGateway = None) -> dict:
    """Analyze many contacts sequentially.

    Args:
        items: [{"contact_id": str, "messages": [...], "conversation_age": datetime|None}]

    Returns:
        {contact_id: AnalysisResult}
    """
    results = {}
    logger.info("Batch analysis: processing %d contacts", len(items))

    for item in items:
        contact_id = item["contact_id"]
        messages = item.get("messages") or []
        age = item.get("conversation_age")
        try:
            result = analyze_with_fallback(messages, pipeline_stages, age,
                                           max_retries=BATCH_RETRIES, gateway=gateway)
            results[contact_id] = result
            if result.used_fallback:
                logger.warning("Contact %s: used fallback (score: %d)", contact_id,
                               result.analysis.lead_score, extra={"contact_id": contact_id})
            else:
                logger.info("Contact %s: AI success (score: %d)", contact_id,
                            result.analysis.lead_score, extra={"contact_id": contact_id})
            time.sleep(delay)
        except Exception as e:
            log_operation_error(phase="batch_analysis", error=e, contact_id=contact_id,
                                component="enhanced_analysis")
            results[contact_id] = emergency_fallback(messages, pipeline_stages, age)

    fallback_count = sum(1 for r in results.values() if r.used_fallback)
    logger.info("Batch analysis complete: %d total, %d used fallback", len(results), fallback_count)
    return results


# ─── STORED CONVERSATIONS ─────────────────────────────────────

def parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def stored_conversation(contact: dict, limit: int = None) -> list:
    """Messages saved for a contact in {from, text} form, oldest first."""
    name = " ".join(p for p in (contact.get("first_name"), contact.get("last_name")) if p)
    conversation = []
    for m in models.list_messages(contact["id"], limit=limit):
        if not m.get("content"):
            continue
        sender = m.get("sender_name") or ("Business" if m.get("is_from_business") else name)
        conversation.append({"from": sender, "text": m["content"]})
    return conversation


def fix_low_scores(organization_id: str, pipeline_id: str = None, min_score: int = 0,
                   max_score: int = 15, limit: int = 100, delay: float = 1.5,
                   gateway: LLMGateway = None) -> dict:
    """Re-analyse contacts stuck with a low score and persist the better result.

    Returns:
        {"processed", "updated", "usedFallback", "failed", "results": [...]}
    """
    contacts = models.list_contacts(organization_id, pipeline_id=pipeline_id,
                                    min_score=min_score, max_score=max_score, limit=limit)
    stage_cache = {}
    summary = {"processed": 0, "updated": 0, "usedFallback": 0, "failed": 0, "results": []}
    logger.info("Fixing low scores for %d contacts (range %d-%d)",
                len(contacts), min_score, max_score)

    for contact in contacts:
        summary["processed"] += 1
        cid = contact["id"]
        try:
            pid = contact.get("pipeline_id")
            if pid and pid not in stage_cache:
                stage_cache[pid] = models.list_stages(pid)
            stages = stage_cache.get(pid) or None

            messages = stored_conversation(contact)
            age = parse_timestamp(contact.get("last_interaction"))
            result = analyze_with_fallback(messages, stages, age,
                                           max_retries=BATCH_RETRIES, gateway=gateway)
            analysis = result.analysis
            new_score = enhance_low_score(analysis.lead_score, messages, age)
            old_score = contact.get("lead_score") or 0

            models.update_contact(cid, {
                "lead_score": new_score,
                "lead_status": analysis.lead_status,
                "ai_context": analysis.summary,
                "ai_context_updated_at": utcnow(),
            })
            models.create_activity({
                "contact_id": cid,
                "type": "STATUS_CHANGED",
                "title": f"Lead score updated from {old_score} to {new_score}",
                "description": analysis.reasoning,
                "metadata": {
                    "oldScore": old_score,
                    "newScore": new_score,
                    "leadStatus": analysis.lead_status,
                    "usedFallback": result.used_fallback,
                    "confidence": analysis.confidence,
                },
            })
            summary["updated"] += 1
            if result.used_fallback:
                summary["usedFallback"] += 1
            summary["results"].append({
                "contactId": cid,
                "oldScore": old_score,
                "newScore": new_score,
                "usedFallback": result.used_fallback,
            })
            time.sleep(delay)
        except Exception as e:
            summary["failed"] += 1
            log_operation_error(phase="fix_low_scores", error=e, contact_id=cid,
                                component="enhanced_analysis")

    logger.info("Low score fix complete: %d updated, %d failed",
                summary["updated"], summary["failed"])
    return summary
