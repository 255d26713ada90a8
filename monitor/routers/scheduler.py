"""Scheduler control and session status routes."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from monitor.core.state import MonitorContext, get_context

router = APIRouter(prefix="/api")


class SetIntervalRequest(BaseModel):
    interval_secs: int = Field(gt=0)


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/status")
async def status(ctx: MonitorContext = Depends(get_context)):
    return {
        "scheduler": ctx.scheduler.get_status(),
        "session": ctx.scheduler.get_session_status(),
    }


@router.post("/scheduler/start")
async def start_scheduler(ctx: MonitorContext = Depends(get_context)):
    started = ctx.scheduler.start()
    return {"success": started, **ctx.scheduler.get_status()}


@router.post("/scheduler/stop")
async def stop_scheduler(ctx: MonitorContext = Depends(get_context)):
    stopped = ctx.scheduler.stop()
    return {"success": stopped, **ctx.scheduler.get_status()}


@router.post("/scheduler/interval")
async def set_interval(req: SetIntervalRequest, ctx: MonitorContext = Depends(get_context)):
    interval = ctx.scheduler.set_interval(req.interval_secs)
    ctx.settings.update({"refresh_interval": interval})
    return {"success": True, "interval": interval}


@router.post("/refresh")
async def refresh(ctx: MonitorContext = Depends(get_context)):
    # RefreshRateLimited is mapped to 429 by the app
    await ctx.scheduler.force_refresh()
    return {"success": True, **ctx.scheduler.get_status()}


@router.post("/resume")
async def resume(ctx: MonitorContext = Depends(get_context)):
    result = await ctx.scheduler.resume()
    return {"success": True, **result}


@router.get("/session")
async def session_status(ctx: MonitorContext = Depends(get_context)):
    return ctx.scheduler.get_session_status()
