"""
Stage Analyzer - assigns lead score ranges to pipeline stages and routes
contacts to the stage that fits their score.

Score bands by stage type:
    LEAD         0-30   split evenly across LEAD stages
    IN_PROGRESS  31-80  split evenly across IN_PROGRESS stages
    WON          81-100 split evenly across WON stages
    LOST         0-20   every LOST stage
    ARCHIVED     0-100  every ARCHIVED stage
"""

import logging
import math
from typing import Optional

from hiro.db import models
from hiro.db.connection import utcnow
from hiro.error_handler import log_operation_error

logger = logging.getLogger("hiro.pipelines.stage_analyzer")

STAGE_TYPES = ("LEAD", "IN_PROGRESS", "WON", "LOST", "ARCHIVED")

# (type, band start, band width, band end)
_SPLIT_BANDS = [("LEAD", 0, 30, 30), ("IN_PROGRESS", 31, 50, 80), ("WON", 81, 20, 100)]
_FIXED_BANDS = [("LOST", 0, 20), ("ARCHIVED", 0, 100)]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_stage_score_ranges(stages: list) -> list:
    """Compute [{stage_id, lead_score_min, lead_score_max}] for ordered stages.

    Output is grouped by band (LEAD, IN_PROGRESS, WON, LOST, ARCHIVED), keeping
    stage order inside each group. Stages of an unknown type get no range.
    """
    ranges = []

    for stage_type, start, width, end in _SPLIT_BANDS:
        group = [s for s in stages if s.get("type") == stage_type]
        if not group:
            continue
        # Last stage of a band is pinned to the band end
        step = width / len(group)
        current = start
        for i, stage in enumerate(group):
            low = _round_half_up(current)
            high = end if i == len(group) - 1 else _round_half_up(current + step)
            ranges.append({"stage_id": stage["id"], "lead_score_min": low, "lead_score_max": high})
            current = high

    for stage_type, low, high in _FIXED_BANDS:
        for stage in stages:
            if stage.get("type") == stage_type:
                ranges.append({"stage_id": stage["id"], "lead_score_min": low,
                               "lead_score_max": high})

    return ranges


def apply_stage_score_ranges(pipeline_id: str) -> list:
    """Compute and persist score ranges for a pipeline's stages.

    Raises:
        LookupError: If the pipeline does not exist.
    """
    pipeline = models.get_pipeline(pipeline_id)
    if not pipeline:
        raise LookupError(f"Pipeline {pipeline_id} not found")

    ranges = calculate_stage_score_ranges(pipeline["stages"])
    models.set_stage_ranges(ranges)

    names = {s["id"]: s["name"] for s in pipeline["stages"]}
    for r in ranges:
        logger.debug("  - %s: %d-%d", names.get(r["stage_id"]), r["lead_score_min"],
                     r["lead_score_max"])
    logger.info("Applied score ranges to %d stages of pipeline %s", len(ranges), pipeline["name"])
    return ranges


def should_prevent_downgrade(current_stage_order: Optional[int], target_stage_order: int,
                             current_score: int, new_score: int, target_stage_min: int) -> bool:
    """True when a high-scoring contact would land in a low-value stage."""
    if new_score >= 80 and target_stage_min < 50:
        logger.info("Prevented downgrade: score %d too high for stage (min: %d)",
                    new_score, target_stage_min)
        return True
    if new_score >= 50 and target_stage_min < 20:
        logger.info("Prevented downgrade: score %d blocked from low stage (min: %d)",
                    new_score, target_stage_min)
        return True
    return False


def find_best_matching_stage(stages: list, lead_score: int, lead_status: str) -> Optional[dict]:
    """Pick the stage for a contact from an ordered stage list.

    Status WON/LOST routes to the first stage of that type. Otherwise the first
    active stage whose range contains the score wins, then the stage with the
    nearest range midpoint (ARCHIVED stages excluded).
    """
    if not stages:
        return None

    if lead_status in ("WON", "LOST"):
        for stage in stages:
            if stage.get("type") == lead_status:
                logger.debug("Status routing: %s -> %s", lead_status, stage["name"])
                return stage

    for stage in stages:
        if stage.get("type") in ("WON", "LOST", "ARCHIVED"):
            continue
        if stage["lead_score_min"] <= lead_score <= stage["lead_score_max"]:
            logger.debug("Score routing: %d -> %s", lead_score, stage["name"])
            return stage

    closest = stages[0]
    closest_distance = abs((closest["lead_score_min"] + closest["lead_score_max"]) / 2 - lead_score)
    for stage in stages:
        if stage.get("type") == "ARCHIVED":
            continue
        distance = abs((stage["lead_score_min"] + stage["lead_score_max"]) / 2 - lead_score)
        if distance < closest_distance:
            closest, closest_distance = stage, distance

    logger.debug("Fallback routing: %d -> %s (closest match)", lead_score, closest["name"])
    return closest


def find_best_matching_stage_id(pipeline_id: str, lead_score: int,
                                lead_status: str) -> Optional[str]:
    stage = find_best_matching_stage(models.list_stages(pipeline_id), lead_score, lead_status)
    return stage["id"] if stage else None


def reassign_pipeline_contacts(pipeline_id: str) -> dict:
    """Move every contact in a pipeline to the stage matching its score and status.

    Contacts already in the right stage, or with no matching stage, count as
    skipped. Per-contact failures are recorded and skipped.

    Returns:
        {"reassigned": int, "skipped": int, "total": int}
    """
    contacts = models.list_contacts_in_pipeline(pipeline_id)
    logger.info("Re-assigning %d contacts in pipeline %s", len(contacts), pipeline_id)
    reassigned = skipped = 0

    for contact in contacts:
        score = contact.get("lead_score") or 0
        status = contact.get("lead_status") or "NEW"
        try:
            target_id = find_best_matching_stage_id(pipeline_id, score, status)
            if not target_id:
                logger.warning("No matching stage for contact %s", contact["id"],
                               extra={"contact_id": contact["id"]})
                skipped += 1
                continue
            if target_id == contact.get("stage_id"):
                skipped += 1
                continue

            models.update_contact(contact["id"], {"stage_id": target_id,
                                                  "stage_entered_at": utcnow()})
            models.create_activity({
                "contact_id": contact["id"],
                "type": "STAGE_CHANGED",
                "title": "Bulk re-assigned based on lead score",
                "description": f"Moved to match lead score range. Score: {score}, Status: {status}",
                "from_stage_id": contact.get("stage_id"),
                "to_stage_id": target_id,
                "metadata": {"bulkReassignment": True, "leadScore": score, "leadStatus": status},
            })
            reassigned += 1
        except Exception as e:
            log_operation_error(phase="reassign", error=e, contact_id=contact["id"],
                                component="pipelines.stage_analyzer")
            skipped += 1

    logger.info("Re-assignment complete: %d reassigned, %d skipped", reassigned, skipped)
    return {"reassigned": reassigned, "skipped": skipped, "total": len(contacts)}


def get_stage_score_distribution(pipeline_id: str) -> Optional[dict]:
    pipeline = models.get_pipeline(pipeline_id)
    if not pipeline:
        return None
    counts = models.count_contacts_by_stage(pipeline_id)
    return {
        "pipelineName": pipeline["name"],
        "stages": [
            {
                "id": s["id"],
                "name": s["name"],
                "type": s["type"],
                "scoreRange": f"{s['lead_score_min']}-{s['lead_score_max']}",
                "contactCount": counts.get(s["id"], 0),
                "avgScore": s["lead_score_min"] + (s["lead_score_max"] - s["lead_score_min"]) / 2,
            }
            for s in pipeline["stages"]
        ],
    }


def auto_generate_all_pipeline_ranges(organization_id: str) -> int:
    """Apply score ranges to every non-archived pipeline with stages."""
    updated = 0
    for pipeline in models.list_pipelines(organization_id):
        if models.list_stages(pipeline["id"]):
            apply_stage_score_ranges(pipeline["id"])
            updated += 1
    logger.info("Updated %d pipelines with score ranges", updated)
    return updated
