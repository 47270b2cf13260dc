from __future__ import annotations

from fastapi import APIRouter, Request

from beacon.records import utc_now_iso

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request):
    cfg = getattr(request.app.state, "cfg", None)
    return {
        "status": "ok",
        "timestamp": utc_now_iso(),
        "mode": getattr(cfg, "mode", None),
        "records": len(request.app.state.record_log),
    }
