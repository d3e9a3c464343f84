"""Campaign routes: create, send, pause/cancel and failed-message recovery."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Dict, List, Optional

from hiro.api.deps import get_organization_id, owned
from hiro.campaigns import send
from hiro.db import models
from hiro.facebook.message_tags import is_valid_tag

router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])


class CampaignCreate(BaseModel):
    name: str
    facebook_page_id: str
    template_id: Optional[str] = None
    content: Optional[str] = None
    platform: str = "MESSENGER"
    message_tag: Optional[str] = None
    targeting_type: str = "ALL_CONTACTS"
    target_tags: List[str] = []
    target_stage_ids: List[str] = []
    target_contact_ids: List[str] = []
    target_group_ids: List[str] = []
    use_ai_personalization: bool = False
    ai_messages_map: Optional[Dict[str, str]] = None


def _campaign(campaign_id: str, org_id: str) -> dict:
    return owned(models.get_campaign(campaign_id), org_id, "Campaign")


@router.post("")
def create_campaign(req: CampaignCreate, org_id: str = Depends(get_organization_id)):
    owned(models.get_facebook_page(req.facebook_page_id), org_id, "Facebook page")
    if req.platform not in ("MESSENGER", "INSTAGRAM"):
        raise HTTPException(status_code=400, detail="platform must be MESSENGER or INSTAGRAM")
    if req.targeting_type not in send.TARGETING_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid targeting type '{req.targeting_type}'")
    if req.message_tag and not is_valid_tag(req.message_tag):
        raise HTTPException(status_code=400, detail=f"Invalid message tag '{req.message_tag}'")

    data = req.model_dump(exclude={"content"})
    if req.template_id:
        owned(models.get_template(req.template_id), org_id, "Template")
    elif req.content:
        template = models.create_template({"organization_id": org_id,
                                           "name": f"{req.name} template",
                                           "content": req.content})
        data["template_id"] = template["id"]
    elif not req.use_ai_personalization:
        raise HTTPException(status_code=400, detail="Provide template_id or content")

    data["organization_id"] = org_id
    return models.create_campaign(data)


@router.get("")
def list_campaigns(status: str = None, limit: int = 100,
                   org_id: str = Depends(get_organization_id)):
    return models.list_campaigns(org_id, status=status, limit=limit)


@router.get("/{campaign_id}")
def get_campaign(campaign_id: str, org_id: str = Depends(get_organization_id)):
    return _campaign(campaign_id, org_id)


@router.post("/{campaign_id}/send")
def send_campaign(campaign_id: str, org_id: str = Depends(get_organization_id)):
    campaign = _campaign(campaign_id, org_id)
    if campaign["status"] == "SENDING":
        raise HTTPException(status_code=400, detail="Campaign is already sending")
    try:
        return send.start_campaign(campaign_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{campaign_id}/pause")
def pause_campaign(campaign_id: str, org_id: str = Depends(get_organization_id)):
    _campaign(campaign_id, org_id)
    try:
        return send.pause_campaign(campaign_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{campaign_id}/cancel")
def cancel_campaign(campaign_id: str, org_id: str = Depends(get_organization_id)):
    _campaign(campaign_id, org_id)
    try:
        return send.cancel_campaign(campaign_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{campaign_id}/failed-messages")
def failed_messages(campaign_id: str, org_id: str = Depends(get_organization_id)):
    _campaign(campaign_id, org_id)
    return send.get_failed_messages(campaign_id)


@router.post("/{campaign_id}/resend-failed")
def resend_failed(campaign_id: str, org_id: str = Depends(get_organization_id)):
    _campaign(campaign_id, org_id)
    return send.resend_failed_messages(campaign_id)
