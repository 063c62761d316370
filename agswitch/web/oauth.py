"""Google OAuth client and interactive authorization flow.

Token operations (all form-encoded POSTs against TOKEN_URL):
- authorization_code grant: exchange the redirect code for tokens
- refresh_token grant: mint a new access token, keeping the refresh token

The authorization URL always asks for ``access_type=offline`` and
``prompt=consent`` so the provider issues a refresh token every time.
"""

import asyncio
import logging
import secrets
import webbrowser
from typing import TYPE_CHECKING, Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel

from agswitch.config import (
    PLACEHOLDER_CLIENT_ID,
    PLACEHOLDER_CLIENT_SECRET,
    Settings,
)
from agswitch.errors import (
    AgSwitchError,
    ConfigurationMissing,
    OAuthTimeout,
    ProfileFetchFailed,
    TokenExchangeFailed,
    TokenRefreshFailed,
)

if TYPE_CHECKING:
    from agswitch.web.accounts import AccountStore
    from agswitch.web.callback import CallbackListener

logger = logging.getLogger("agswitch.oauth")

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
SCOPES = (
    "openid",
    "email",
    "profile",
    "https://www.googleapis.com/auth/cloud-platform",
)
DEFAULT_EXPIRES_IN = 3600

CONFIG_HELP = (
    "OAuth client credentials are not configured. Set AGSWITCH_CLIENT_ID and "
    "AGSWITCH_CLIENT_SECRET to a Google OAuth desktop client, or use a release "
    "build with embedded credentials."
)


class TokenData(BaseModel):
    """Result of a token-endpoint call. Never persisted as-is."""

    access_token: str
    refresh_token: str
    expires_in: int = DEFAULT_EXPIRES_IN
    id_token: Optional[str] = None


class UserInfo(BaseModel):
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None


def _provider_message(resp: httpx.Response) -> str:
    """Best-effort error text from a provider response."""
    try:
        data = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        desc = data.get("error_description")
        err = data.get("error")
        if isinstance(err, dict):
            err = err.get("message")
        if err and desc:
            return f"{err}: {desc}"
        if err or desc:
            return str(err or desc)
    return resp.text or f"HTTP {resp.status_code}"


def _json_object(resp: httpx.Response, error_cls: type, context: str) -> dict:
    """Decode a 200 body, raising ``error_cls`` unless it is a JSON object."""
    try:
        data = resp.json()
    except ValueError:
        raise error_cls(f"{context}: response was not JSON") from None
    if not isinstance(data, dict):
        raise error_cls(f"{context}: unexpected response body")
    return data


def _expires_in(data: dict) -> int:
    try:
        return int(data.get("expires_in", DEFAULT_EXPIRES_IN))
    except (TypeError, ValueError):
        return DEFAULT_EXPIRES_IN


class OAuthClient:
    """Talks to the identity provider's token and user-info endpoints."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        *,
        timeout: float = 30.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "OAuthClient":
        return cls(settings.client_id, settings.client_secret, settings.redirect_uri)

    def _require_client_id(self) -> str:
        if not self.client_id or self.client_id == PLACEHOLDER_CLIENT_ID:
            raise ConfigurationMissing(CONFIG_HELP)
        return self.client_id

    def _require_credentials(self) -> tuple[str, str]:
        client_id = self._require_client_id()
        if not self.client_secret or self.client_secret == PLACEHOLDER_CLIENT_SECRET:
            raise ConfigurationMissing(CONFIG_HELP)
        return client_id, self.client_secret

    def build_authorization_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self._require_client_id(),
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenData:
        client_id, client_secret = self._require_credentials()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    TOKEN_URL,
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                )
        except httpx.HTTPError as e:
            raise TokenExchangeFailed(f"Token exchange request failed: {e}") from e

        if resp.status_code != 200:
            message = _provider_message(resp)
            logger.error("Token exchange HTTP %d: %s", resp.status_code, message)
            raise TokenExchangeFailed(f"Token exchange failed: {message}")

        data = _json_object(resp, TokenExchangeFailed, "Token exchange failed")
        if not data.get("access_token"):
            raise TokenExchangeFailed("Token exchange failed: missing access_token")
        if not data.get("refresh_token"):
            raise TokenExchangeFailed("Token exchange failed: missing refresh_token")

        logger.info("Token exchange successful: expires_in=%s", data.get("expires_in"))
        return TokenData(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_in=_expires_in(data),
            id_token=data.get("id_token"),
        )

    async def refresh(self, refresh_token: str) -> TokenData:
        """Refresh grant. The returned TokenData carries the same refresh token."""
        client_id, client_secret = self._require_credentials()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    TOKEN_URL,
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "refresh_token": refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
        except httpx.HTTPError as e:
            raise TokenRefreshFailed(f"Token refresh request failed: {e}") from e

        if resp.status_code != 200:
            message = _provider_message(resp)
            logger.warning("Token refresh HTTP %d: %s", resp.status_code, message)
            raise TokenRefreshFailed(f"Token refresh failed: {message}")

        data = _json_object(resp, TokenRefreshFailed, "Token refresh failed")
        if not data.get("access_token"):
            raise TokenRefreshFailed("Token refresh failed: missing access_token")

        return TokenData(
            access_token=data["access_token"],
            refresh_token=refresh_token,
            expires_in=_expires_in(data),
            id_token=data.get("id_token"),
        )

    async def fetch_user_info(self, access_token: str) -> UserInfo:
        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                resp = await client.get(
                    USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as e:
            raise ProfileFetchFailed(f"Profile request failed: {e}") from e

        if resp.status_code != 200:
            raise ProfileFetchFailed(f"Failed to get user info: {_provider_message(resp)}")

        data = _json_object(resp, ProfileFetchFailed, "Failed to get user info")
        if not data.get("email"):
            raise ProfileFetchFailed("Failed to get user info: missing email")
        return UserInfo(
            email=data["email"],
            name=data.get("name"),
            picture=data.get("picture"),
        )


# ---------------------------------------------------------------------------
# Interactive flow
# ---------------------------------------------------------------------------


async def complete_authorization(
    client: OAuthClient, store: "AccountStore", code: str
):
    """Exchange ``code``, fetch the profile, and upsert the account."""
    tokens = await client.exchange_code(code)
    user_info = await client.fetch_user_info(tokens.access_token)
    return await asyncio.to_thread(store.upsert_oauth, user_info, tokens)


class OAuthFlow:
    """One browser-based authorization, from URL to stored account.

    Lifecycle:
    1. start() binds the callback listener and opens the browser
    2. callers poll get_status()
    3. redirect arrives -> exchange -> profile -> store upsert
    """

    def __init__(
        self,
        client: OAuthClient,
        store: "AccountStore",
        listener: "CallbackListener",
        *,
        open_browser: bool = True,
    ):
        self.client = client
        self.store = store
        self.listener = listener
        self.open_browser = open_browser
        self.flow_id = secrets.token_urlsafe(16)
        self.auth_url: Optional[str] = None
        self._status = "pending"  # pending | completed | error | timeout
        self._account_id: Optional[str] = None
        self._email: Optional[str] = None
        self._error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    def get_status(self) -> dict:
        """Current flow status for polling.

        >>> flow = OAuthFlow(OAuthClient("id", "secret", "http://localhost/cb"), None, None)
        >>> flow.get_status()["status"]
        'pending'
        """
        result: dict = {"status": self._status, "flow_id": self.flow_id}
        if self._account_id:
            result["account_id"] = self._account_id
            result["email"] = self._email
        if self._error:
            result["error"] = self._error
        return result

    async def start(self) -> dict:
        """Start listening and open the browser. Returns flow_id and auth_url.

        Raises ConfigurationMissing before binding anything.
        """
        self.auth_url = self.client.build_authorization_url()
        await self.listener.start()
        if self.open_browser:
            webbrowser.open(self.auth_url)
            logger.info("Opened browser for OAuth authorization")
        self._task = asyncio.create_task(self._run())
        return {"flow_id": self.flow_id, "auth_url": self.auth_url}

    async def wait(self) -> dict:
        """Block until the flow reaches a terminal status."""
        if self._task is not None:
            await self._task
        return self.get_status()

    async def cancel(self) -> None:
        """Abandon a pending flow and release the callback port."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._status == "pending":
            self._status = "error"
            self._error = "OAuth flow cancelled"
        await self.listener.close()

    async def _run(self) -> None:
        try:
            code = await self.listener.wait()
            account = await complete_authorization(self.client, self.store, code)
        except OAuthTimeout as e:
            self._status = "timeout"
            self._error = str(e)
            logger.warning("OAuth flow %s timed out", self.flow_id)
        except AgSwitchError as e:
            self._status = "error"
            self._error = str(e)
            logger.error("OAuth flow %s failed: %s", self.flow_id, e)
        except Exception as e:
            self._status = "error"
            self._error = f"Unexpected error: {e}"
            logger.exception("OAuth flow %s crashed", self.flow_id)
        else:
            self._status = "completed"
            self._account_id = account.id
            self._email = account.email


class FlowRegistry:
    """In-flight OAuth flows by id. Owned by the service, not module-global."""

    def __init__(self):
        self._flows: dict[str, OAuthFlow] = {}

    def add(self, flow: OAuthFlow) -> None:
        """Register ``flow``, dropping flows that already finished."""
        for flow_id, old in list(self._flows.items()):
            if old.get_status()["status"] != "pending":
                del self._flows[flow_id]
        self._flows[flow.flow_id] = flow

    def get(self, flow_id: str) -> Optional[OAuthFlow]:
        return self._flows.get(flow_id)

    def status(self, flow_id: str) -> dict:
        """
        >>> FlowRegistry().status("nope")
        {'status': 'not_found', 'flow_id': 'nope'}
        """
        flow = self.get(flow_id)
        if flow is None:
            return {"status": "not_found", "flow_id": flow_id}
        return flow.get_status()

    def pending(self) -> list[OAuthFlow]:
        return [f for f in self._flows.values() if f.get_status()["status"] == "pending"]

    def has_pending(self) -> bool:
        return bool(self.pending())
