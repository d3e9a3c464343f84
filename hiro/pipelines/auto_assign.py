"""
Auto-assign - places an analysed contact into a pipeline stage.
"""

import logging
from typing import Optional

from hiro.ai.llm_gateway import ContactAnalysis
from hiro.db import models
from hiro.db.connection import utcnow

logger = logging.getLogger("hiro.pipelines.auto_assign")

UPDATE_MODES = ("SKIP_EXISTING", "UPDATE_EXISTING")


def auto_assign_contact_to_pipeline(contact_id: str, analysis: ContactAnalysis, pipeline_id: str,
                                    update_mode: str = "SKIP_EXISTING",
                                    user_id: str = None) -> Optional[dict]:
    """Assign a contact to the recommended stage of a pipeline.

    The recommended stage is matched by name, case-insensitively; an unknown
    name falls back to the first stage. In SKIP_EXISTING mode contacts that
    already belong to a pipeline are left alone.

    Returns:
        The updated contact, or None when nothing was changed.
    """
    if update_mode not in UPDATE_MODES:
        raise ValueError(f"update_mode must be one of {UPDATE_MODES}")

    contact = models.get_contact(contact_id)
    if not contact:
        return None

    if update_mode == "SKIP_EXISTING" and contact.get("pipeline_id"):
        logger.info("Skipping contact %s - already assigned", contact_id,
                    extra={"contact_id": contact_id})
        return None

    pipeline = models.get_pipeline(pipeline_id)
    if not pipeline:
        logger.error("Pipeline %s not found", pipeline_id)
        return None
    if not pipeline["stages"]:
        logger.error("Pipeline %s has no stages", pipeline_id)
        return None

    wanted = (analysis.recommended_stage or "").lower()
    target = next((s for s in pipeline["stages"] if s["name"].lower() == wanted), None)
    if target is None:
        logger.warning("Stage '%s' not found, using first stage", analysis.recommended_stage)
        target = pipeline["stages"][0]

    updated = models.update_contact(contact_id, {
        "pipeline_id": pipeline_id,
        "stage_id": target["id"],
        "stage_entered_at": utcnow(),
        "lead_score": analysis.lead_score,
        "lead_status": analysis.lead_status,
    })

    models.create_activity({
        "contact_id": contact_id,
        "type": "STAGE_CHANGED",
        "title": "AI auto-assigned to pipeline",
        "description": analysis.reasoning,
        "from_stage_id": contact.get("stage_id"),
        "to_stage_id": target["id"],
        "user_id": user_id,
        "metadata": {
            "confidence": analysis.confidence,
            "aiRecommendation": analysis.recommended_stage,
            "leadScore": analysis.lead_score,
            "leadStatus": analysis.lead_status,
        },
    })

    logger.info("Contact %s -> %s -> %s (score: %d, confidence: %d%%)", contact_id,
                pipeline["name"], target["name"], analysis.lead_score, analysis.confidence,
                extra={"contact_id": contact_id})
    return updated
