"""Shared route dependencies: tenant scoping."""

from typing import Optional

from fastapi import Header, HTTPException

from hiro.db import models


def get_organization_id(x_organization_id: Optional[str] = Header(None)) -> str:
    if not x_organization_id:
        raise HTTPException(status_code=401, detail="X-Organization-Id header required")
    if not models.get_organization(x_organization_id):
        raise HTTPException(status_code=404, detail="Organization not found")
    return x_organization_id


def owned(record: Optional[dict], organization_id: str, label: str) -> dict:
    """404 for a missing row, 403 for another tenant's row."""
    if not record:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    if record.get("organization_id") != organization_id:
        raise HTTPException(status_code=403, detail=f"{label} belongs to another organization")
    return record
