"""Scheduled job endpoints, authorized with the CRON_SECRET bearer token."""

from fastapi import APIRouter, Header, HTTPException
from typing import Optional

from hiro.ai.api_key_manager import reenable_rate_limited_keys
from hiro.config import CRON_SECRET

router = APIRouter(prefix="/api/cron", tags=["cron"])


def _authorize(authorization: Optional[str]):
    if not CRON_SECRET or authorization != f"Bearer {CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/api-keys")
@router.post("/api-keys")
def reenable_api_keys(authorization: Optional[str] = Header(None)):
    _authorize(authorization)
    return {"success": True, **reenable_rate_limited_keys()}
