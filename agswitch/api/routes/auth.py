"""Auth routes -- interactive OAuth flow and out-of-band code exchange."""

from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from agswitch.api.responses import command_error, get_service
from agswitch.api.routes.accounts import TOKEN_FIELDS
from agswitch.service import AccountResponse, OAuthStartResponse

router = APIRouter()


class FlowStatusResponse(BaseModel):
    status: str
    flow_id: str
    account_id: Optional[str] = None
    email: Optional[str] = None
    error: Optional[str] = None


class CallbackRequest(BaseModel):
    code: str


@router.post("/oauth/start", response_model=OAuthStartResponse)
async def start_oauth(request: Request, open_browser: bool = True):
    """Start the browser login. Returns flow_id for polling and the auth URL."""
    result = await get_service(request).start_oauth_flow(open_browser=open_browser)
    if not result.success:
        return command_error(result)
    return result


@router.get("/flow/{flow_id}", response_model=FlowStatusResponse)
async def get_flow_status(flow_id: str, request: Request):
    """Poll OAuth flow status: pending, completed, error, timeout, or not_found."""
    return FlowStatusResponse(**get_service(request).oauth_flow_status(flow_id))


@router.post(
    "/oauth/callback",
    response_model=AccountResponse,
    response_model_exclude=TOKEN_FIELDS,
)
async def oauth_callback(body: CallbackRequest, request: Request):
    """Exchange an authorization code obtained outside the listener."""
    result = await get_service(request).handle_oauth_callback(body.code)
    if not result.success:
        return command_error(result)
    return result
