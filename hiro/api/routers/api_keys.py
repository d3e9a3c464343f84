"""LLM API key pool routes. Secrets are never returned, only masked previews."""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional

from hiro.ai.api_key_manager import get_key_manager

router = APIRouter(prefix="/api/api-keys", tags=["api-keys"])


class KeyCreate(BaseModel):
    key: str
    name: Optional[str] = None


class KeyStatus(BaseModel):
    status: str


@router.get("")
def list_keys():
    manager = get_key_manager()
    return {"keys": manager.get_all_keys(), "activeCount": manager.get_key_count()}


@router.post("")
def add_key(req: KeyCreate):
    if not req.key.strip():
        raise HTTPException(status_code=400, detail="API key cannot be empty")
    return get_key_manager().add_key(req.name, req.key)


@router.patch("/{key_id}")
def set_status(key_id: str, req: KeyStatus):
    try:
        record = get_key_manager().set_status(key_id, req.status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not record:
        raise HTTPException(status_code=404, detail="API key not found")
    return record


@router.delete("/{key_id}")
def delete_key(key_id: str):
    if not get_key_manager().delete_key(key_id):
        raise HTTPException(status_code=404, detail="API key not found")
    return {"deleted": True}
