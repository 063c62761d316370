"""FastAPI application for the account-switcher shell."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agswitch import __version__
from agswitch.api.responses import error_response
from agswitch.api.routes import accounts, auth
from agswitch.config import Settings
from agswitch.errors import AgSwitchError
from agswitch.service import AccountService

logger = logging.getLogger(__name__)


def _build_allowed_origins(host: str, port: int) -> list[str]:
    """Build the CORS allowed origins list.

    >>> _build_allowed_origins("127.0.0.1", 8322)
    ['http://127.0.0.1:8322', 'http://localhost:8322', 'tauri://localhost']
    >>> _build_allowed_origins("0.0.0.0", 8322)
    ['*']
    """
    if host == "0.0.0.0":
        return ["*"]
    return [f"http://127.0.0.1:{port}", f"http://localhost:{port}", "tauri://localhost"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the service on startup if none was injected; release flows on shutdown."""
    if getattr(app.state, "service", None) is None:
        app.state.service = AccountService(app.state.settings)
        logger.info("Account store at %s", app.state.settings.accounts_file)

    if app.state.settings.host == "0.0.0.0":
        logger.warning("API exposed to network; it can read and switch every stored account")

    yield

    await app.state.service.aclose()


def create_app(
    service: Optional[AccountService] = None, settings: Optional[Settings] = None
) -> FastAPI:
    settings = settings or (service.settings if service else Settings.from_env())

    app = FastAPI(
        title="agswitch",
        description="Local API for switching Antigravity between Google accounts.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service

    origins = _build_allowed_origins(settings.host, settings.port)
    # allow_credentials must be False when origins is ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Exception handlers ---

    @app.exception_handler(AgSwitchError)
    async def agswitch_error_handler(request: Request, exc: AgSwitchError):
        return error_response(str(exc), exc.code)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": {"message": str(exc), "code": "VALIDATION_ERROR"}},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {"message": "An internal error occurred", "code": "INTERNAL_ERROR"}
            },
        )

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "version": __version__}

    app.include_router(accounts.router, prefix="/api", tags=["accounts"])
    app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
    return app
