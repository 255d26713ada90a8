"""User settings routes."""
from fastapi import APIRouter, Depends

from monitor.core.state import MonitorContext, get_context

router = APIRouter(prefix="/api")


@router.get("/settings")
async def get_settings(ctx: MonitorContext = Depends(get_context)):
    return ctx.settings.get().to_dict()


@router.post("/settings")
async def update_settings(payload: dict, ctx: MonitorContext = Depends(get_context)):
    settings = ctx.settings.update(payload)
    if "refresh_interval" in payload:
        ctx.scheduler.set_interval(settings.refresh_interval)
    return {"success": True, "settings": settings.to_dict()}
