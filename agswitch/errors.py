"""Error taxonomy for account switching.

Store and codec errors always propagate to the caller. OS-level best-effort
steps (kill, restart, lock cleanup) log and continue instead of raising.

Each class carries a stable ``code`` used in API error envelopes.
"""


class AgSwitchError(Exception):
    """Base class for every error surfaced by agswitch."""

    code = "AGSWITCH_ERROR"


class ConfigurationMissing(AgSwitchError):
    """OAuth client id/secret are not configured."""

    code = "CONFIGURATION_MISSING"


class TokenExchangeFailed(AgSwitchError):
    """Provider rejected the authorization-code exchange."""

    code = "TOKEN_EXCHANGE_FAILED"


class TokenRefreshFailed(AgSwitchError):
    """Provider rejected the refresh-token grant."""

    code = "TOKEN_REFRESH_FAILED"


class ProfileFetchFailed(AgSwitchError):
    """User-info endpoint failed or returned no email."""

    code = "PROFILE_FETCH_FAILED"


class AccountNotFound(AgSwitchError):
    code = "NOT_FOUND"

    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class DuplicateAccount(AgSwitchError):
    code = "DUPLICATE_ACCOUNT"

    def __init__(self, email: str):
        super().__init__(f"Account already exists: {email}")
        self.email = email


class NoValidAccounts(AgSwitchError):
    code = "NO_VALID_ACCOUNTS"

    def __init__(self, skipped: int):
        super().__init__(
            f"No valid accounts found to import. {skipped} accounts were "
            "skipped due to missing email or refresh_token."
        )
        self.skipped = skipped


class StopTargetFailed(AgSwitchError):
    """Killing the target application failed. Logged, never surfaced."""

    code = "STOP_FAILED"


class InjectionFailed(AgSwitchError):
    """Writing credentials into the target's state database failed."""

    code = "INJECTION_FAILED"


class OAuthTimeout(AgSwitchError):
    """No redirect reached the callback listener in time."""

    code = "OAUTH_TIMEOUT"


class OAuthCallbackError(AgSwitchError):
    """The provider redirected back with an ``error`` parameter."""

    code = "OAUTH_CALLBACK_ERROR"


class QuotaFetchFailed(AgSwitchError):
    """Quota endpoints failed or returned an unusable response."""

    code = "QUOTA_FETCH_FAILED"
