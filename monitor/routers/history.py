"""Usage history routes: query, stats, export and retention."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from db.history import DEFAULT_QUERY_LIMIT
from db.models import RetentionPolicy
from monitor.core.state import MonitorContext, get_context

router = APIRouter(prefix="/api/history")


class RetentionPolicyRequest(BaseModel):
    retention_days: int = Field(ge=0)
    auto_cleanup: bool = True


@router.get("")
async def query_history(
    provider: Optional[str] = None,
    account_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(DEFAULT_QUERY_LIMIT, ge=0),
    offset: int = Query(0, ge=0),
    ctx: MonitorContext = Depends(get_context),
):
    entries = ctx.history.query(
        provider=provider,
        account_id=account_id,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    return [e.to_dict() for e in entries]


@router.get("/stats")
async def history_stats(
    provider: str,
    limit_id: str,
    start: datetime,
    end: datetime,
    ctx: MonitorContext = Depends(get_context),
):
    stats = ctx.history.stats(provider, limit_id, start, end)
    if stats is None:
        return JSONResponse(status_code=404, content={"error": "no data"})
    return stats.to_dict()


@router.get("/export")
async def export_history(
    format: str = Query("json", pattern="^(json|csv)$"),
    provider: Optional[str] = None,
    account_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    ctx: MonitorContext = Depends(get_context),
):
    query = {"provider": provider, "account_id": account_id, "start": start, "end": end}
    if format == "csv":
        return Response(ctx.history.export_csv(**query), media_type="text/csv")
    return Response(ctx.history.export_json(**query), media_type="application/json")


@router.get("/metadata")
async def history_metadata(ctx: MonitorContext = Depends(get_context)):
    return ctx.history.get_metadata().to_dict()


@router.get("/retention")
async def get_retention(ctx: MonitorContext = Depends(get_context)):
    policy = ctx.history.get_retention_policy()
    return {"retention_days": policy.retention_days, "auto_cleanup": policy.auto_cleanup}


@router.post("/retention")
async def set_retention(req: RetentionPolicyRequest, ctx: MonitorContext = Depends(get_context)):
    ctx.history.set_retention_policy(
        RetentionPolicy(retention_days=req.retention_days, auto_cleanup=req.auto_cleanup)
    )
    return {"success": True}


@router.post("/cleanup")
async def cleanup_history(ctx: MonitorContext = Depends(get_context)):
    return {"removed": ctx.history.cleanup()}


@router.delete("")
async def clear_history(ctx: MonitorContext = Depends(get_context)):
    ctx.history.clear()
    return {"success": True}
