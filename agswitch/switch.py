"""Account switch pipeline.

    Lookup -> EnsureFreshToken -> StopTarget -> DelayForTermination
           -> ClearLocks -> InjectCredentials
           -> success: MarkActive -> RestartTarget -> SUCCESS
           -> failure: RestartTarget -> PARTIAL_FAILURE

Lookup and token refresh failures raise before the target is touched.
Once StopTarget begins the target is always restarted, even when marking
the account active fails afterwards; that error is re-raised after the
restart.

Store calls run in worker threads. The store lock is only held inside
individual store calls, never across a network await.
"""

import asyncio
import enum
import logging
import time
from typing import Callable, Optional

from pydantic import BaseModel

from agswitch.controller import TargetController
from agswitch.errors import AccountNotFound, InjectionFailed, StopTargetFailed
from agswitch.statedb import StateDatabase, clear_lock_files
from agswitch.web.accounts import Account, AccountStore
from agswitch.web.oauth import OAuthClient

logger = logging.getLogger(__name__)

REFRESH_MARGIN_MS = 5 * 60 * 1000
TERMINATION_DELAY = 0.5  # seconds
INJECTED_EXPIRY_SECONDS = 3600
INJECTION_FAILED_MESSAGE = "Database injection failed"


class SwitchOutcome(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"


class SwitchResult(BaseModel):
    outcome: SwitchOutcome
    email: Optional[str] = None
    error: Optional[str] = None
    restarted: bool = False

    @property
    def success(self) -> bool:
        return self.outcome is SwitchOutcome.SUCCESS


def needs_refresh(account: Account, now_ms: int) -> bool:
    """True when the cached access token is missing or within 5 minutes of expiry.

    >>> a = Account(id="1", email="a@b.c", refresh_token="r", access_token="t", expires_at=10_000_000)
    >>> needs_refresh(a, 10_000_000 - 4 * 60_000)
    True
    >>> needs_refresh(a, 10_000_000 - 10 * 60_000)
    False
    """
    if not account.access_token or account.expires_at is None:
        return True
    return now_ms > account.expires_at - REFRESH_MARGIN_MS


class SwitchOrchestrator:
    def __init__(
        self,
        store: AccountStore,
        oauth: OAuthClient,
        controller: TargetController,
        *,
        settle_delay: float = TERMINATION_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.oauth = oauth
        self.controller = controller
        self.settle_delay = settle_delay
        self._clock = clock

    async def ensure_fresh_token(self, account: Account) -> str:
        """Return a usable access token, refreshing and caching it if needed.

        Raises TokenRefreshFailed.
        """
        if not needs_refresh(account, int(self._clock() * 1000)):
            return account.access_token

        logger.info("Refreshing access token for %s before switch", account.email)
        tokens = await self.oauth.refresh(account.refresh_token)
        await asyncio.to_thread(
            self.store.update_token, account.id, tokens.access_token, tokens.expires_in
        )
        return tokens.access_token

    async def _stop_target(self) -> None:
        try:
            await asyncio.to_thread(self.controller.stop)
        except StopTargetFailed as exc:
            logger.warning("Failed to stop Antigravity (continuing): %s", exc)

    async def _restart_target(self) -> bool:
        try:
            await asyncio.to_thread(self.controller.start)
            return True
        except (OSError, ValueError) as exc:
            logger.warning("Failed to restart Antigravity: %s", exc)
            return False

    def _inject(self, access_token: str, account: Account) -> None:
        db_path = self.controller.state_db_path()
        expiry = int(self._clock()) + INJECTED_EXPIRY_SECONDS
        StateDatabase(db_path).inject_credentials(
            access_token, account.refresh_token, expiry, account.email
        )

    async def switch(self, account_id: str) -> SwitchResult:
        """Switch the target application to ``account_id``.

        Raises AccountNotFound or TokenRefreshFailed without side effects on
        the target. Injection failure is reported as PARTIAL_FAILURE. A store
        error while marking the account active propagates, but only after
        the target has been restarted.
        """
        account = await asyncio.to_thread(self.store.get, account_id)
        if account is None:
            raise AccountNotFound(account_id)

        access_token = await self.ensure_fresh_token(account)

        await self._stop_target()
        try:
            error = await self._replace_credentials(access_token, account)
        finally:
            restarted = await self._restart_target()

        if error is not None:
            return SwitchResult(
                outcome=SwitchOutcome.PARTIAL_FAILURE, error=error, restarted=restarted
            )
        logger.info("Switched to %s", account.email)
        return SwitchResult(
            outcome=SwitchOutcome.SUCCESS, email=account.email, restarted=restarted
        )

    async def _replace_credentials(self, access_token: str, account: Account) -> Optional[str]:
        """Runs while the target is stopped. Returns an error message on injection failure."""
        await asyncio.sleep(self.settle_delay)
        clear_lock_files(self.controller.state_db_path())

        try:
            await asyncio.to_thread(self._inject, access_token, account)
        except InjectionFailed as exc:
            logger.error("Injection failed for %s: %s", account.email, exc)
            return INJECTION_FAILED_MESSAGE

        await asyncio.to_thread(self.store.set_active, account.id)
        return None
