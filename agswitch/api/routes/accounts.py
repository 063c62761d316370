"""Account routes -- list, add, delete, switch, import/export, quota."""

import asyncio
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from agswitch.api.responses import command_error, error_response, get_service
from agswitch.service import (
    AccountResponse,
    AccountsResponse,
    DeleteResponse,
    ImportResponse,
    QuotaResponse,
    SwitchResponse,
)

router = APIRouter()

# Tokens only leave the process through export.
TOKEN_FIELDS = {"account": {"refresh_token", "access_token"}}


class AddAccountRequest(BaseModel):
    email: str
    refresh_token: str
    name: Optional[str] = None


class ImportRequest(BaseModel):
    json_data: str


# --- Routes ---


@router.get("/accounts", response_model=AccountsResponse)
async def list_accounts(request: Request):
    """All accounts with live quota. Accounts whose quota fetch failed have quota=null."""
    return await get_service(request).list_accounts_with_quota()


@router.post(
    "/accounts",
    response_model=AccountResponse,
    response_model_exclude=TOKEN_FIELDS,
)
async def add_account(body: AddAccountRequest, request: Request):
    """Add an account from a known refresh token. The token is validated first."""
    result = await get_service(request).add_account(
        body.email, body.refresh_token, body.name
    )
    if not result.success:
        return command_error(result)
    return result


@router.get(
    "/accounts/active",
    response_model=AccountResponse,
    response_model_exclude=TOKEN_FIELDS,
)
async def get_active_account(request: Request):
    return await asyncio.to_thread(get_service(request).get_active_account)


@router.get("/accounts/export")
async def export_accounts(request: Request):
    result = await asyncio.to_thread(get_service(request).export_accounts)
    return PlainTextResponse(result.json_data or "[]", media_type="application/json")


@router.post("/accounts/import", response_model=ImportResponse)
async def import_accounts(body: ImportRequest, request: Request):
    result = await asyncio.to_thread(get_service(request).import_accounts, body.json_data)
    if not result.success:
        return command_error(result)
    return result


@router.delete("/accounts/{account_id}", response_model=DeleteResponse)
async def delete_account(account_id: str, request: Request):
    result = await asyncio.to_thread(get_service(request).delete_account, account_id)
    if not result.success:
        return command_error(result)
    return result


@router.post("/accounts/{account_id}/switch", response_model=SwitchResponse)
async def switch_account(account_id: str, request: Request):
    """Switch Antigravity to this account. Stops and relaunches the application."""
    result = await get_service(request).switch_account(account_id)
    if result.partial:
        return error_response(
            result.error or "Switch failed",
            result.code,
            partial=True,
            hint="Antigravity was restarted with its previous login",
        )
    if not result.success:
        return command_error(result)
    return result


@router.post("/accounts/{account_id}/quota", response_model=QuotaResponse)
async def refresh_quota(account_id: str, request: Request):
    """Re-fetch quota for one account. quota=null when it cannot be fetched."""
    return await get_service(request).refresh_quota(account_id)
