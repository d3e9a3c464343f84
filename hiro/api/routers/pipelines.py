"""Pipeline routes: templates, stages, score ranges and AI auto-assignment."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import List, Optional

from hiro.ai.enhanced_analysis import analyze_with_fallback, parse_timestamp, stored_conversation
from hiro.api.deps import get_organization_id, owned
from hiro.db import models
from hiro.error_handler import log_operation_error
from hiro.pipelines import stage_analyzer
from hiro.pipelines.auto_assign import UPDATE_MODES, auto_assign_contact_to_pipeline
from hiro.pipelines.templates import PIPELINE_TEMPLATES, create_pipeline_from_template
from hiro.pipelines.validation import (
    detect_score_range_overlaps, sanitize_input, validate_color, validate_contact_ids,
    validate_pipeline_name, validate_stage_order,
)

router = APIRouter(prefix="/api/pipelines", tags=["pipelines"])


class StageIn(BaseModel):
    name: str
    description: Optional[str] = None
    color: str = "#3b82f6"
    type: str = "IN_PROGRESS"
    order: Optional[int] = None


class PipelineCreate(BaseModel):
    template: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    color: str = "#3b82f6"
    icon: Optional[str] = None
    stages: List[StageIn] = []


class AutoAssignRequest(BaseModel):
    contact_ids: list
    update_mode: str = "SKIP_EXISTING"
    user_id: Optional[str] = None


def _pipeline(pipeline_id: str, org_id: str) -> dict:
    return owned(models.get_pipeline(pipeline_id), org_id, "Pipeline")


def _reject(errors: list):
    if errors:
        raise HTTPException(status_code=400, detail="; ".join(errors))


@router.post("")
def create_pipeline(req: PipelineCreate, org_id: str = Depends(get_organization_id)):
    if req.template:
        if req.name is not None:
            _reject(validate_pipeline_name(req.name)["errors"])
        try:
            return create_pipeline_from_template(org_id, req.template,
                                                 name=sanitize_input(req.name) if req.name else None)
        except KeyError as e:
            raise HTTPException(status_code=400, detail=str(e.args[0]))

    _reject(validate_pipeline_name(req.name)["errors"])
    _reject(validate_color(req.color)["errors"])
    if not req.stages:
        raise HTTPException(status_code=400, detail="A custom pipeline needs at least one stage")

    stages = []
    for i, stage in enumerate(req.stages):
        if stage.type not in stage_analyzer.STAGE_TYPES:
            raise HTTPException(status_code=400, detail=f"Invalid stage type '{stage.type}'")
        order = i if stage.order is None else stage.order
        _reject(validate_stage_order(order)["errors"])
        _reject(validate_color(stage.color)["errors"])
        stages.append({
            "name": sanitize_input(stage.name),
            "description": stage.description,
            "color": stage.color,
            "type": stage.type,
            "order": order,
        })

    pipeline = models.create_pipeline({
        "organization_id": org_id,
        "name": sanitize_input(req.name),
        "description": req.description,
        "color": req.color,
        "icon": req.icon,
    }, stages=stages)
    stage_analyzer.apply_stage_score_ranges(pipeline["id"])
    return models.get_pipeline(pipeline["id"])


@router.get("")
def list_pipelines(include_archived: bool = False, org_id: str = Depends(get_organization_id)):
    return models.list_pipelines(org_id, include_archived=include_archived)


@router.get("/templates")
def list_templates():
    return [
        {"key": key, "name": t["name"], "description": t["description"],
         "stages": [s["name"] for s in t["stages"]]}
        for key, t in PIPELINE_TEMPLATES.items()
    ]


@router.post("/auto-generate-ranges")
def auto_generate_ranges(org_id: str = Depends(get_organization_id)):
    return {"updated": stage_analyzer.auto_generate_all_pipeline_ranges(org_id)}


@router.get("/{pipeline_id}")
def get_pipeline(pipeline_id: str, org_id: str = Depends(get_organization_id)):
    pipeline = _pipeline(pipeline_id, org_id)
    pipeline["overlaps"] = detect_score_range_overlaps(pipeline["stages"])
    return pipeline


@router.get("/{pipeline_id}/stages")
def list_stages(pipeline_id: str, org_id: str = Depends(get_organization_id)):
    return _pipeline(pipeline_id, org_id)["stages"]


@router.post("/{pipeline_id}/apply-score-ranges")
def apply_score_ranges(pipeline_id: str, org_id: str = Depends(get_organization_id)):
    _pipeline(pipeline_id, org_id)
    ranges = stage_analyzer.apply_stage_score_ranges(pipeline_id)
    return {"success": True, "ranges": ranges}


@router.get("/{pipeline_id}/distribution")
def distribution(pipeline_id: str, org_id: str = Depends(get_organization_id)):
    _pipeline(pipeline_id, org_id)
    return stage_analyzer.get_stage_score_distribution(pipeline_id)


@router.post("/{pipeline_id}/reassign-all")
def reassign_all(pipeline_id: str, org_id: str = Depends(get_organization_id)):
    _pipeline(pipeline_id, org_id)
    return {"success": True, **stage_analyzer.reassign_pipeline_contacts(pipeline_id)}


@router.post("/{pipeline_id}/auto-assign")
def auto_assign(pipeline_id: str, req: AutoAssignRequest,
                org_id: str = Depends(get_organization_id)):
    pipeline = _pipeline(pipeline_id, org_id)
    _reject(validate_contact_ids(req.contact_ids)["errors"])
    if req.update_mode not in UPDATE_MODES:
        raise HTTPException(status_code=400, detail=f"update_mode must be one of {UPDATE_MODES}")

    contacts = models.get_contacts_by_ids(req.contact_ids)
    summary = {"assigned": 0, "skipped": 0, "failed": len(set(req.contact_ids)) - len(contacts)}
    for contact in contacts:
        if contact["organization_id"] != org_id:
            summary["failed"] += 1
            continue
        if req.update_mode == "SKIP_EXISTING" and contact.get("pipeline_id"):
            summary["skipped"] += 1
            continue
        try:
            result = analyze_with_fallback(stored_conversation(contact), pipeline["stages"],
                                           parse_timestamp(contact.get("last_interaction")))
            assigned = auto_assign_contact_to_pipeline(contact["id"], result.analysis,
                                                       pipeline_id, update_mode=req.update_mode,
                                                       user_id=req.user_id)
        except Exception as e:
            log_operation_error(phase="auto_assign", error=e, contact_id=contact["id"],
                                component="api.pipelines")
            summary["failed"] += 1
            continue
        summary["assigned" if assigned else "skipped"] += 1

    return summary
