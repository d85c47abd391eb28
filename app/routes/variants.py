"""
Variant status and operator kill-switch endpoints.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from spotter.errors import ValidationError


router = APIRouter(prefix="/variants")


def _service(request: Request):
    return request.app.state.coaching


@router.get("")
async def variant_status(request: Request):
    return await _service(request).get_variant_status()


@router.post("/{variant_id}/disable")
async def disable_variant(variant_id: str, request: Request, reason: Optional[str] = None):
    reason = reason or "operator kill switch"
    try:
        evicted = await _service(request).disable_variant(variant_id, reason)
    except ValidationError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"variant_id": variant_id, "enabled": False, "evicted_sessions": evicted}


@router.post("/{variant_id}/enable")
async def enable_variant(variant_id: str, request: Request, reason: Optional[str] = None):
    reason = reason or "operator re-enable"
    try:
        changed = await _service(request).enable_variant(variant_id, reason)
    except ValidationError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"variant_id": variant_id, "enabled": True, "changed": changed}
