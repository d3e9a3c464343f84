"""Facebook routes: connected pages, contact sync jobs and message tags."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional

from hiro.api.deps import get_organization_id, owned
from hiro.db import models
from hiro.facebook import sync
from hiro.facebook.message_tags import get_all_message_tags

router = APIRouter(prefix="/api/facebook", tags=["facebook"])


class PageConnect(BaseModel):
    page_id: str
    page_name: Optional[str] = None
    page_access_token: str
    instagram_account_id: Optional[str] = None


class SyncRequest(BaseModel):
    facebook_page_id: str


class CancelRequest(BaseModel):
    job_id: str


def _page(facebook_page_id: str, org_id: str) -> dict:
    return owned(models.get_facebook_page(facebook_page_id), org_id, "Facebook page")


def _job_page(job_id: str, org_id: str) -> dict:
    job = models.get_sync_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Sync job not found")
    _page(job["facebook_page_id"], org_id)
    return job


def _public(page: dict) -> dict:
    return {k: v for k, v in page.items() if k != "page_access_token"}


@router.get("/pages")
def list_pages(org_id: str = Depends(get_organization_id)):
    return [_public(p) for p in models.list_facebook_pages(org_id)]


@router.post("/pages")
def connect_page(req: PageConnect, org_id: str = Depends(get_organization_id)):
    page = models.create_facebook_page({**req.model_dump(), "organization_id": org_id})
    return _public(page)


@router.post("/sync")
def sync_now(req: SyncRequest, org_id: str = Depends(get_organization_id)):
    _page(req.facebook_page_id, org_id)
    return sync.sync_contacts(req.facebook_page_id).to_dict()


@router.post("/sync-background")
def sync_background(req: SyncRequest, org_id: str = Depends(get_organization_id)):
    _page(req.facebook_page_id, org_id)
    return sync.start_background_sync(req.facebook_page_id)


@router.post("/sync-cancel")
def sync_cancel(req: CancelRequest, org_id: str = Depends(get_organization_id)):
    _job_page(req.job_id, org_id)
    try:
        return sync.cancel_sync_job(req.job_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/sync-status/{job_id}")
def sync_status(job_id: str, org_id: str = Depends(get_organization_id)):
    return _job_page(job_id, org_id)


@router.get("/latest-sync/{facebook_page_id}")
def latest_sync(facebook_page_id: str, org_id: str = Depends(get_organization_id)):
    _page(facebook_page_id, org_id)
    job = sync.get_latest_sync_job(facebook_page_id)
    if not job:
        raise HTTPException(status_code=404, detail="No sync jobs for this page")
    return job


@router.get("/message-tags")
def message_tags():
    return get_all_message_tags()
