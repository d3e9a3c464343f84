"""Contact routes: listing, edits, stage moves and AI analysis."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import List, Optional

from hiro.ai.analyze_contacts import analyze_existing_contacts
from hiro.ai.enhanced_analysis import analyze_with_fallback, fix_low_scores, stored_conversation
from hiro.ai.llm_gateway import LEAD_STATUSES
from hiro.api.deps import get_organization_id, owned
from hiro.db import models
from hiro.db.connection import utcnow
from hiro.pipelines.auto_assign import UPDATE_MODES, auto_assign_contact_to_pipeline
from hiro.pipelines.validation import sanitize_input

router = APIRouter(prefix="/api/contacts", tags=["contacts"])


class ContactUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    tags: Optional[List[str]] = None
    lead_score: Optional[int] = None
    lead_status: Optional[str] = None


class MoveToStage(BaseModel):
    stage_id: str
    user_id: Optional[str] = None


class AnalyzeRequest(BaseModel):
    pipeline_id: Optional[str] = None
    update_mode: str = "UPDATE_EXISTING"


class FixLowScoresRequest(BaseModel):
    pipeline_id: Optional[str] = None
    min_score: int = 0
    max_score: int = 15
    limit: int = 100


class AnalyzeAllRequest(BaseModel):
    facebook_page_id: Optional[str] = None
    limit: Optional[int] = None
    skip_if_has_context: bool = True


@router.get("")
def list_contacts(limit: int = 100, offset: int = 0, facebook_page_id: str = None,
                  pipeline_id: str = None, stage_id: str = None, lead_status: str = None,
                  min_score: int = None, max_score: int = None, tag: str = None,
                  search: str = None, has_ai_context: bool = None,
                  org_id: str = Depends(get_organization_id)):
    return models.list_contacts(
        org_id, facebook_page_id=facebook_page_id, pipeline_id=pipeline_id,
        stage_id=stage_id, lead_status=lead_status, min_score=min_score,
        max_score=max_score, tag=tag, search=search, has_ai_context=has_ai_context,
        limit=limit, offset=offset,
    )


@router.post("/fix-low-scores")
def fix_low_scores_route(req: FixLowScoresRequest, org_id: str = Depends(get_organization_id)):
    if req.min_score > req.max_score:
        raise HTTPException(status_code=400, detail="min_score cannot be greater than max_score")
    return fix_low_scores(org_id, pipeline_id=req.pipeline_id, min_score=req.min_score,
                          max_score=req.max_score, limit=req.limit)


@router.post("/analyze-all")
def analyze_all(req: AnalyzeAllRequest, org_id: str = Depends(get_organization_id)):
    if req.facebook_page_id:
        owned(models.get_facebook_page(req.facebook_page_id), org_id, "Facebook page")
    return analyze_existing_contacts(organization_id=org_id,
                                     facebook_page_id=req.facebook_page_id,
                                     limit=req.limit,
                                     skip_if_has_context=req.skip_if_has_context)


@router.get("/{contact_id}")
def get_contact(contact_id: str, org_id: str = Depends(get_organization_id)):
    return owned(models.get_contact(contact_id), org_id, "Contact")


@router.patch("/{contact_id}")
def update_contact(contact_id: str, data: ContactUpdate,
                   org_id: str = Depends(get_organization_id)):
    owned(models.get_contact(contact_id), org_id, "Contact")
    update_data = {k: v for k, v in data.model_dump().items() if v is not None}
    if not update_data:
        raise HTTPException(status_code=400, detail="No fields to update")
    for field in ("first_name", "last_name"):
        if field in update_data:
            update_data[field] = sanitize_input(update_data[field])
    if "lead_score" in update_data and not 0 <= update_data["lead_score"] <= 100:
        raise HTTPException(status_code=400, detail="lead_score must be between 0 and 100")
    if "lead_status" in update_data and update_data["lead_status"] not in LEAD_STATUSES:
        raise HTTPException(status_code=400,
                            detail=f"lead_status must be one of {', '.join(LEAD_STATUSES)}")
    return models.update_contact(contact_id, update_data)


@router.post("/{contact_id}/move")
def move_to_stage(contact_id: str, req: MoveToStage, org_id: str = Depends(get_organization_id)):
    contact = owned(models.get_contact(contact_id), org_id, "Contact")
    stage = models.get_stage(req.stage_id)
    if not stage:
        raise HTTPException(status_code=404, detail="Stage not found")
    owned(models.get_pipeline(stage["pipeline_id"], with_stages=False), org_id, "Pipeline")

    updated = models.update_contact(contact_id, {
        "pipeline_id": stage["pipeline_id"],
        "stage_id": stage["id"],
        "stage_entered_at": utcnow(),
    })
    models.create_activity({
        "contact_id": contact_id,
        "type": "STAGE_CHANGED",
        "title": f"Moved to {stage['name']}",
        "from_stage_id": contact.get("stage_id"),
        "to_stage_id": stage["id"],
        "user_id": req.user_id,
    })
    return updated


@router.post("/{contact_id}/analyze")
def analyze_contact(contact_id: str, req: AnalyzeRequest,
                    org_id: str = Depends(get_organization_id)):
    if req.update_mode not in UPDATE_MODES:
        raise HTTPException(status_code=400, detail=f"update_mode must be one of {UPDATE_MODES}")
    contact = owned(models.get_contact(contact_id), org_id, "Contact")
    pipeline_id = req.pipeline_id or contact.get("pipeline_id")
    stages = []
    if pipeline_id:
        owned(models.get_pipeline(pipeline_id, with_stages=False), org_id, "Pipeline")
        stages = models.list_stages(pipeline_id)

    messages = stored_conversation(contact)
    if not messages:
        raise HTTPException(status_code=400, detail="Contact has no stored messages to analyze")

    result = analyze_with_fallback(messages, pipeline_stages=stages or None)
    analysis = result.analysis
    models.update_contact(contact_id, {
        "lead_score": analysis.lead_score,
        "lead_status": analysis.lead_status,
        "ai_context": analysis.summary or analysis.reasoning,
        "ai_context_updated_at": utcnow(),
    })
    if pipeline_id:
        auto_assign_contact_to_pipeline(contact_id, analysis, pipeline_id,
                                        update_mode=req.update_mode)
    return {**result.to_dict(), "contact": models.get_contact(contact_id)}


@router.get("/{contact_id}/activities")
def list_activities(contact_id: str, limit: int = 50, org_id: str = Depends(get_organization_id)):
    owned(models.get_contact(contact_id), org_id, "Contact")
    return models.list_activities(contact_id, limit=limit)


@router.get("/{contact_id}/messages")
def list_messages(contact_id: str, limit: int = None, org_id: str = Depends(get_organization_id)):
    owned(models.get_contact(contact_id), org_id, "Contact")
    return models.list_messages(contact_id, limit=limit)
