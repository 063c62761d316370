"""Error envelope shared by the route modules.

Failed commands are returned as::

    {"error": {"message": "...", "code": "NOT_FOUND"}}

with an HTTP status picked from the error code.
"""

from typing import Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse

from agswitch.service import AccountService, CommandResult

STATUS_BY_CODE = {
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "DUPLICATE_ACCOUNT": status.HTTP_409_CONFLICT,
    "CALLBACK_PORT_IN_USE": status.HTTP_409_CONFLICT,
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "NO_VALID_ACCOUNTS": status.HTTP_400_BAD_REQUEST,
    "CONFIGURATION_MISSING": status.HTTP_503_SERVICE_UNAVAILABLE,
    "TOKEN_EXCHANGE_FAILED": status.HTTP_502_BAD_GATEWAY,
    "TOKEN_REFRESH_FAILED": status.HTTP_502_BAD_GATEWAY,
    "PROFILE_FETCH_FAILED": status.HTTP_502_BAD_GATEWAY,
    "QUOTA_FETCH_FAILED": status.HTTP_502_BAD_GATEWAY,
}


def status_for(code: Optional[str]) -> int:
    """
    >>> status_for("NOT_FOUND")
    404
    >>> status_for("INJECTION_FAILED")
    500
    """
    return STATUS_BY_CODE.get(code or "", status.HTTP_500_INTERNAL_SERVER_ERROR)


def error_response(message: str, code: Optional[str], **detail) -> JSONResponse:
    error: dict = {"message": message, "code": code or "INTERNAL_ERROR"}
    if detail:
        error["detail"] = detail
    return JSONResponse(status_code=status_for(code), content={"error": error})


def command_error(result: CommandResult, **detail) -> JSONResponse:
    return error_response(result.error or "Request failed", result.code, **detail)


def get_service(request: Request) -> AccountService:
    """Service instance from app state."""
    return request.app.state.service
