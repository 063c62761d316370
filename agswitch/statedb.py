"""Adapter for Antigravity's ``state.vscdb`` key-value store.

The file is a SQLite database with a single ``ItemTable(key TEXT, value TEXT)``.
Injection writes two rows and purges the assistant's cached state:

- AUTH_STATE_KEY: base64 credential record (see agswitch.codec)
- AUTH_STATUS_KEY: JSON ``{"email", "apiKey", "name"}``
- CACHE_KEYS: deleted, together with every ``<key>.*`` row

The target process must be stopped before any of this runs; nothing here
coordinates with it.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from agswitch import codec
from agswitch.errors import InjectionFailed
from agswitch.web.files import remove_quietly

logger = logging.getLogger(__name__)

AUTH_STATE_KEY = "jetskiStateSync.agentManagerInitState"
AUTH_STATUS_KEY = "antigravityAuthStatus"
CACHE_KEYS = (
    "google.geminicodeassist",
    "google.geminicodeassist.hasRunOnce",
    "geminiCodeAssist.chatThreads",
)
SIDECAR_SUFFIXES = (".vscdb-wal", ".vscdb-shm")


def like_prefix(key: str) -> str:
    """LIKE pattern matching ``key.`` followed by anything.

    >>> like_prefix("google.gemini_code")
    'google.gemini\\\\_code.%'
    """
    escaped = key.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}.%"


def sidecar_paths(db_path: Path) -> list[Path]:
    """WAL and shared-memory files that sit next to the database.

    >>> [p.name for p in sidecar_paths(Path("/x/state.vscdb"))]
    ['state.vscdb-wal', 'state.vscdb-shm']
    """
    return [db_path.with_name(db_path.name.replace(".vscdb", s)) for s in SIDECAR_SUFFIXES]


def clear_lock_files(db_path: Path) -> int:
    """Remove sidecar files if present. Returns how many were removed."""
    removed = sum(1 for p in sidecar_paths(db_path) if remove_quietly(p))
    if removed:
        logger.info("Removed %d stale lock file(s) next to %s", removed, db_path)
    return removed


class StateDatabase:
    """Thin key/value API over ItemTable. Each method is its own transaction."""

    def __init__(self, path: Path, *, timeout: float = 5.0):
        self.path = Path(path)
        self.timeout = timeout

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), timeout=self.timeout)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def get(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM ItemTable WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def keys(self) -> list[str]:
        with self._connect() as conn:
            return [r[0] for r in conn.execute("SELECT key FROM ItemTable ORDER BY key")]

    def inject_credentials(
        self,
        access_token: str,
        refresh_token: str,
        expiry: int,
        email: str,
    ) -> None:
        """Write the credential record and auth status, then purge caches.

        Raises InjectionFailed if the database is missing or any statement fails.
        """
        if not self.path.exists():
            raise InjectionFailed(f"Antigravity database not found at {self.path}")

        try:
            os.chmod(self.path, 0o644)
        except OSError as exc:
            logger.debug("Could not chmod %s: %s", self.path, exc)

        auth_state = codec.encode_base64(access_token, refresh_token, expiry)
        auth_status = json.dumps(
            {"email": email, "apiKey": access_token, "name": email.split("@")[0] or "User"}
        )

        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT value FROM ItemTable WHERE key = ?", (AUTH_STATE_KEY,)
                ).fetchone()
                if row is None:
                    conn.execute(
                        "INSERT INTO ItemTable (key, value) VALUES (?, ?)",
                        (AUTH_STATE_KEY, auth_state),
                    )
                else:
                    conn.execute(
                        "UPDATE ItemTable SET value = ? WHERE key = ?",
                        (auth_state, AUTH_STATE_KEY),
                    )
                conn.execute(
                    "INSERT OR REPLACE INTO ItemTable (key, value) VALUES (?, ?)",
                    (AUTH_STATUS_KEY, auth_status),
                )
                for key in CACHE_KEYS:
                    conn.execute(
                        "DELETE FROM ItemTable WHERE key = ? OR key LIKE ? ESCAPE '\\'",
                        (key, like_prefix(key)),
                    )
        except sqlite3.Error as e:
            raise InjectionFailed(f"Database update failed: {e}") from e

        logger.info("Injected credentials for %s into %s", email, self.path)
