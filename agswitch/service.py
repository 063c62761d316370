"""Commands exposed to the desktop shell, the HTTP API, and the CLI.

``AccountService`` owns the store (and therefore the store lock), the OAuth
client, the target controller, the switch orchestrator, and the registry of
in-flight OAuth flows. Build one per process and hand it to the front ends.

Store access does blocking file I/O, so the async commands run it in a
worker thread.

Every command returns a response model with a ``success`` flag. Domain
errors (``AgSwitchError``) become ``success=False`` with the error text;
anything else propagates.
"""

import asyncio
import json
import logging
from typing import Optional

from pydantic import BaseModel

from agswitch.config import Settings
from agswitch.controller import TargetController, get_controller
from agswitch.errors import AgSwitchError, InjectionFailed
from agswitch.switch import SwitchOrchestrator
from agswitch.web.accounts import Account, AccountStore
from agswitch.web.callback import CallbackListener
from agswitch.web.oauth import FlowRegistry, OAuthClient, OAuthFlow, complete_authorization
from agswitch.web.quota import QuotaInfo, fetch_quota

logger = logging.getLogger(__name__)

VALIDATION_ERROR = "VALIDATION_ERROR"


class AccountWithQuota(BaseModel):
    id: str
    email: str
    name: str
    picture: Optional[str] = None
    quota: Optional[QuotaInfo] = None
    is_active: bool
    last_checked: Optional[int] = None


class CommandResult(BaseModel):
    """Common envelope: ``success`` plus error text and code on failure."""

    success: bool
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def failure(cls, exc: AgSwitchError, **extra):
        return cls(success=False, error=str(exc), code=exc.code, **extra)


class AccountsResponse(CommandResult):
    accounts: list[AccountWithQuota] = []


class AccountResponse(CommandResult):
    account: Optional[Account] = None


class DeleteResponse(CommandResult):
    pass


class SwitchResponse(CommandResult):
    email: Optional[str] = None
    partial: bool = False


class ExportResponse(CommandResult):
    json_data: Optional[str] = None


class ImportResponse(CommandResult):
    added: int = 0
    updated: int = 0


class OAuthStartResponse(CommandResult):
    auth_url: Optional[str] = None
    flow_id: Optional[str] = None


class QuotaResponse(CommandResult):
    quota: Optional[QuotaInfo] = None


class AccountService:
    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[AccountStore] = None,
        oauth: Optional[OAuthClient] = None,
        controller: Optional[TargetController] = None,
        orchestrator: Optional[SwitchOrchestrator] = None,
    ):
        self.settings = settings
        self.store = store or AccountStore(settings.accounts_file)
        self.oauth = oauth or OAuthClient.from_settings(settings)
        self.controller = controller or get_controller(state_db_path=settings.state_db_path)
        self.orchestrator = orchestrator or SwitchOrchestrator(
            self.store, self.oauth, self.controller
        )
        self.flows = FlowRegistry()

    def new_listener(self) -> CallbackListener:
        return CallbackListener(
            port=self.settings.callback_port,
            path=self.settings.callback_path,
            timeout=self.settings.callback_timeout,
        )

    # -- accounts ------------------------------------------------------------

    async def _quota_for(self, account: Account) -> Optional[QuotaInfo]:
        if not account.access_token:
            return None
        try:
            return await fetch_quota(account.access_token)
        except AgSwitchError as exc:
            logger.debug("Quota fetch failed for %s: %s", account.email, exc)
            return None

    async def list_accounts_with_quota(self) -> AccountsResponse:
        """All accounts with quota fetched concurrently. Quota failures map to None."""
        accounts = await asyncio.to_thread(self.store.load)
        quotas = await asyncio.gather(*(self._quota_for(a) for a in accounts))
        return AccountsResponse(
            success=True,
            accounts=[
                AccountWithQuota(
                    id=a.id,
                    email=a.email,
                    name=a.display_name,
                    picture=a.picture,
                    quota=q,
                    is_active=a.is_active,
                    last_checked=a.last_checked,
                )
                for a, q in zip(accounts, quotas)
            ],
        )

    async def add_account(
        self, email: str, refresh_token: str, name: Optional[str] = None
    ) -> AccountResponse:
        """Validate the refresh token with a refresh, then store the account."""
        try:
            tokens = await self.oauth.refresh(refresh_token)
            account = await asyncio.to_thread(
                self.store.add, email, refresh_token, name, tokens
            )
        except AgSwitchError as exc:
            return AccountResponse.failure(exc)
        return AccountResponse(success=True, account=account)

    def delete_account(self, account_id: str) -> DeleteResponse:
        try:
            self.store.delete(account_id)
        except AgSwitchError as exc:
            return DeleteResponse.failure(exc)
        return DeleteResponse(success=True)

    def get_active_account(self) -> AccountResponse:
        return AccountResponse(success=True, account=self.store.get_active())

    async def switch_account(self, account_id: str) -> SwitchResponse:
        try:
            result = await self.orchestrator.switch(account_id)
        except AgSwitchError as exc:
            return SwitchResponse.failure(exc)
        return SwitchResponse(
            success=result.success,
            email=result.email,
            error=result.error,
            code=None if result.success else InjectionFailed.code,
            partial=not result.success,
        )

    def export_accounts(self) -> ExportResponse:
        return ExportResponse(success=True, json_data=self.store.export_json())

    def import_accounts(self, json_data: str) -> ImportResponse:
        try:
            records = json.loads(json_data)
        except json.JSONDecodeError as exc:
            return ImportResponse(
                success=False, error=f"Invalid JSON: {exc}", code=VALIDATION_ERROR
            )
        if not isinstance(records, list):
            return ImportResponse(
                success=False,
                error="Expected a JSON array of accounts",
                code=VALIDATION_ERROR,
            )
        try:
            added, updated = self.store.import_accounts(records)
        except AgSwitchError as exc:
            return ImportResponse.failure(exc)
        except ValueError as exc:
            # pydantic ValidationError on malformed records
            return ImportResponse(
                success=False,
                error=f"Invalid account record: {exc}",
                code=VALIDATION_ERROR,
            )
        return ImportResponse(success=True, added=added, updated=updated)

    # -- OAuth ---------------------------------------------------------------

    async def start_oauth_flow(self, *, open_browser: bool = True) -> OAuthStartResponse:
        """Bind the callback listener, open the browser, return the URL."""
        # Only one listener can hold the callback port; a new login supersedes
        # any flow still waiting for its redirect.
        for stale in self.flows.pending():
            await stale.cancel()

        flow = OAuthFlow(self.oauth, self.store, self.new_listener(), open_browser=open_browser)
        try:
            result = await flow.start()
        except AgSwitchError as exc:
            return OAuthStartResponse.failure(exc)
        except OSError as exc:
            return OAuthStartResponse(
                success=False,
                error=f"Could not bind callback port {self.settings.callback_port}: {exc}",
                code="CALLBACK_PORT_IN_USE",
            )
        self.flows.add(flow)
        return OAuthStartResponse(success=True, **result)

    def oauth_flow_status(self, flow_id: str) -> dict:
        return self.flows.status(flow_id)

    async def wait_for_flow(self, flow_id: str) -> dict:
        flow = self.flows.get(flow_id)
        if flow is None:
            return self.flows.status(flow_id)
        return await flow.wait()

    async def handle_oauth_callback(self, code: str) -> AccountResponse:
        """Exchange a code obtained out of band and store the account."""
        try:
            account = await complete_authorization(self.oauth, self.store, code)
        except AgSwitchError as exc:
            return AccountResponse.failure(exc)
        return AccountResponse(success=True, account=account)

    # -- quota ---------------------------------------------------------------

    async def refresh_quota(self, account_id: str) -> QuotaResponse:
        account = await asyncio.to_thread(self.store.get, account_id)
        if account is None:
            return QuotaResponse(success=True, quota=None)
        try:
            access_token = await self.orchestrator.ensure_fresh_token(account)
            quota = await fetch_quota(access_token)
        except AgSwitchError as exc:
            logger.info("Quota refresh failed for %s: %s", account.email, exc)
            return QuotaResponse(success=True, quota=None, error=str(exc))
        await asyncio.to_thread(self.store.mark_checked, account.id)
        return QuotaResponse(success=True, quota=quota)

    async def aclose(self) -> None:
        """Cancel pending OAuth flows so their listeners release the port."""
        for flow in self.flows.pending():
            await flow.cancel()
