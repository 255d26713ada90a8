"""Account management routes. Credentials are never returned unmasked."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from db.models import Account
from db.store import mask_credentials
from monitor.core.state import MonitorContext, get_context
from monitor.providers import check_connection

router = APIRouter(prefix="/api")

logger = logging.getLogger(__name__)


class CreateAccountRequest(BaseModel):
    name: str
    provider: str
    credentials: dict = Field(default_factory=dict)


def _account_view(ctx: MonitorContext, account: Account) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "provider": account.provider,
        "created_at": account.created_at,
        "credentials": mask_credentials(account.credentials),
        "session": ctx.sessions.status(account.id).to_dict(),
    }


def _not_found(account_id: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": f"account {account_id} not found"})


@router.get("/accounts")
async def list_accounts(provider: Optional[str] = None, ctx: MonitorContext = Depends(get_context)):
    return [_account_view(ctx, a) for a in ctx.accounts.list_accounts(provider)]


@router.post("/accounts")
async def create_account(req: CreateAccountRequest, ctx: MonitorContext = Depends(get_context)):
    account = ctx.accounts.add_account(req.name, req.provider, req.credentials)
    logger.info("Saved account %s (%s)", account.name, account.id)
    return {"success": True, "account": _account_view(ctx, account)}


@router.delete("/accounts/{account_id}")
async def delete_account(account_id: str, ctx: MonitorContext = Depends(get_context)):
    if not ctx.accounts.delete_account(account_id):
        return _not_found(account_id)
    logger.info("Deleted account %s", account_id)
    return {"success": True}


@router.post("/accounts/{account_id}/test")
async def test_account(account_id: str, ctx: MonitorContext = Depends(get_context)):
    account = ctx.accounts.get_account(account_id)
    if account is None:
        return _not_found(account_id)
    result = await check_connection(ctx.providers, account)
    return result.to_dict()
