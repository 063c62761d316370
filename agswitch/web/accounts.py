"""JSON-file account store.

Every operation is a full load -> mutate -> save cycle under one
``threading.Lock`` owned by the store instance. Saves write the whole
collection to a temp file, fsync it, and atomically replace the target,
so readers never see a half-written file.

Invariant: at most one account has ``is_active`` set. The first account
added to an empty store becomes active.
"""

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator

from agswitch.errors import AccountNotFound, DuplicateAccount, NoValidAccounts
from agswitch.web.files import safe_replace
from agswitch.web.oauth import TokenData, UserInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")


def now_ms() -> int:
    return int(time.time() * 1000)


def new_account_id() -> str:
    return str(uuid.uuid4())


def local_part(email: str) -> str:
    """Default display name for an email.

    >>> local_part("alice@example.com")
    'alice'
    >>> local_part("")
    'Unknown'
    """
    return email.split("@", 1)[0] or "Unknown"


class Account(BaseModel):
    """One stored identity. Timestamps are epoch milliseconds."""

    id: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    refresh_token: str
    access_token: Optional[str] = None
    expires_at: Optional[int] = None
    is_active: bool = False
    added_at: int = Field(default_factory=now_ms)
    last_switched: Optional[int] = None
    last_checked: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.name or local_part(self.email)


class ImportRecord(BaseModel):
    """Lenient shape for imported records; validation happens in the store."""

    id: str = ""
    email: str = ""
    name: Optional[str] = None
    picture: Optional[str] = None
    refresh_token: str = ""
    access_token: Optional[str] = None
    expires_at: Optional[int] = None
    is_active: bool = False
    added_at: Optional[int] = None
    last_switched: Optional[int] = None
    last_checked: Optional[int] = None

    @field_validator("id", "email", "refresh_token", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class AccountStore:
    """Durable, ordered collection of accounts.

    One instance per accounts file. Pass it to whatever needs it rather
    than creating a second store on the same path; the lock only
    serializes callers that share the instance.
    """

    def __init__(self, path: Path, clock: Callable[[], int] = now_ms):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._clock = clock

    # -- persistence ---------------------------------------------------------

    def _read(self) -> list[Account]:
        if not self.path.exists():
            return []
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise ValueError(f"{self.path} does not contain a JSON array")
        return [Account.model_validate(item) for item in raw]

    def _write(self, accounts: list[Account]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            [a.model_dump(mode="json") for a in accounts], indent=2
        )
        fd, tmp = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=".accounts_tmp_", suffix=".json"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            try:
                os.chmod(tmp, 0o600)
            except OSError:
                pass
            safe_replace(tmp, str(self.path))
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def _transaction(self, fn: Callable[[list[Account]], T], *, save: bool = True) -> T:
        with self._lock:
            accounts = self._read()
            result = fn(accounts)
            if save:
                self._write(accounts)
            return result

    def _expiry(self, expires_in: int) -> int:
        return self._clock() + expires_in * 1000

    # -- reads ---------------------------------------------------------------

    def load(self) -> list[Account]:
        """All accounts in insertion order; empty if no file exists yet."""
        return self._transaction(lambda accounts: accounts, save=False)

    def get(self, account_id: str) -> Optional[Account]:
        return self._transaction(
            lambda accounts: next((a for a in accounts if a.id == account_id), None),
            save=False,
        )

    def get_active(self) -> Optional[Account]:
        return self._transaction(
            lambda accounts: next((a for a in accounts if a.is_active), None),
            save=False,
        )

    def export_json(self) -> str:
        """Pretty-printed JSON array, same shape as the accounts file."""
        accounts = self.load()
        return json.dumps([a.model_dump(mode="json") for a in accounts], indent=2)

    # -- writes --------------------------------------------------------------

    def add(
        self,
        email: str,
        refresh_token: str,
        name: Optional[str] = None,
        token_data: Optional[TokenData] = None,
    ) -> Account:
        """Add a new account. Raises DuplicateAccount if the email exists."""

        def _add(accounts: list[Account]) -> Account:
            if any(a.email == email for a in accounts):
                raise DuplicateAccount(email)
            account = Account(
                id=new_account_id(),
                email=email,
                name=name or local_part(email),
                refresh_token=refresh_token,
                access_token=token_data.access_token if token_data else None,
                expires_at=self._expiry(token_data.expires_in) if token_data else None,
                is_active=not accounts,
                added_at=self._clock(),
            )
            accounts.append(account)
            return account

        account = self._transaction(_add)
        logger.info("Added account %s (id=%s)", account.email, account.id)
        return account

    def delete(self, account_id: str) -> None:
        def _delete(accounts: list[Account]) -> None:
            remaining = [a for a in accounts if a.id != account_id]
            if len(remaining) == len(accounts):
                raise AccountNotFound(account_id)
            accounts[:] = remaining

        self._transaction(_delete)
        logger.info("Deleted account %s", account_id)

    def set_active(self, account_id: str) -> Account:
        """Make exactly this account active and stamp ``last_switched``."""

        def _set_active(accounts: list[Account]) -> Account:
            target = next((a for a in accounts if a.id == account_id), None)
            if target is None:
                raise AccountNotFound(account_id)
            for a in accounts:
                a.is_active = a is target
            target.last_switched = self._clock()
            return target

        return self._transaction(_set_active)

    def update_token(self, account_id: str, access_token: str, expires_in: int) -> None:
        """Cache a refreshed access token. Unknown ids are ignored."""

        def _update(accounts: list[Account]) -> None:
            for a in accounts:
                if a.id == account_id:
                    a.access_token = access_token
                    a.expires_at = self._expiry(expires_in)
                    return

        self._transaction(_update)

    def mark_checked(self, account_id: str) -> None:
        """Stamp ``last_checked`` after a quota fetch. Unknown ids are ignored."""

        def _mark(accounts: list[Account]) -> None:
            for a in accounts:
                if a.id == account_id:
                    a.last_checked = self._clock()
                    return

        self._transaction(_mark)

    def upsert_oauth(self, user_info: UserInfo, tokens: TokenData) -> Account:
        """Merge an OAuth result by email, or append a new account."""

        def _upsert(accounts: list[Account]) -> Account:
            name = user_info.name or local_part(user_info.email)
            for a in accounts:
                if a.email == user_info.email:
                    a.refresh_token = tokens.refresh_token
                    a.access_token = tokens.access_token
                    a.expires_at = self._expiry(tokens.expires_in)
                    a.name = name
                    a.picture = user_info.picture
                    return a
            account = Account(
                id=new_account_id(),
                email=user_info.email,
                name=name,
                picture=user_info.picture,
                refresh_token=tokens.refresh_token,
                access_token=tokens.access_token,
                expires_at=self._expiry(tokens.expires_in),
                is_active=not accounts,
                added_at=self._clock(),
            )
            accounts.append(account)
            return account

        account = self._transaction(_upsert)
        logger.info("Stored OAuth account %s (id=%s)", account.email, account.id)
        return account

    def import_accounts(self, records: Iterable[Any]) -> tuple[int, int]:
        """Merge imported records by email. Returns ``(added, updated)``.

        Records with an empty email, empty refresh token, or an email
        without ``@`` are skipped. Raises NoValidAccounts when every record
        was skipped.
        """
        parsed = [
            r if isinstance(r, ImportRecord) else ImportRecord.model_validate(r)
            for r in records
        ]

        def _import(accounts: list[Account]) -> tuple[int, int]:
            added = updated = skipped = 0
            for rec in parsed:
                if not rec.email:
                    logger.warning("Skipping account with empty email")
                    skipped += 1
                    continue
                if not rec.refresh_token:
                    logger.warning("Skipping account %s with empty refresh_token", rec.email)
                    skipped += 1
                    continue
                if "@" not in rec.email:
                    logger.warning("Skipping account with invalid email format: %s", rec.email)
                    skipped += 1
                    continue

                existing_idx = next(
                    (i for i, a in enumerate(accounts) if a.email == rec.email), None
                )
                # Merged records keep their stored id; new ones must not collide.
                if existing_idx is not None:
                    account_id = accounts[existing_idx].id
                elif not rec.id or any(a.id == rec.id for a in accounts):
                    account_id = new_account_id()
                else:
                    account_id = rec.id
                account = Account(
                    id=account_id,
                    email=rec.email,
                    name=rec.name or local_part(rec.email),
                    picture=rec.picture,
                    refresh_token=rec.refresh_token,
                    access_token=rec.access_token,
                    expires_at=rec.expires_at,
                    is_active=False,
                    added_at=rec.added_at if rec.added_at is not None else self._clock(),
                    last_switched=rec.last_switched,
                    last_checked=rec.last_checked,
                )
                if existing_idx is not None:
                    existing = accounts[existing_idx]
                    account.added_at = existing.added_at
                    account.is_active = existing.is_active
                    accounts[existing_idx] = account
                    updated += 1
                else:
                    accounts.append(account)
                    added += 1

            if added == 0 and updated == 0 and skipped > 0:
                raise NoValidAccounts(skipped)

            if accounts and not any(a.is_active for a in accounts):
                accounts[0].is_active = True
            return added, updated

        added, updated = self._transaction(_import)
        logger.info("Imported accounts: added=%d updated=%d", added, updated)
        return added, updated
