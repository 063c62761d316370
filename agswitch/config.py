"""Runtime settings.

OAuth client credentials resolve in this order:
  1. Build-time embedded constants below (release builds overwrite them)
  2. AGSWITCH_CLIENT_ID / AGSWITCH_CLIENT_SECRET environment variables

Missing credentials are not an error here; the OAuth client raises
ConfigurationMissing the first time it needs them.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

PLACEHOLDER_CLIENT_ID = "YOUR_CLIENT_ID"
PLACEHOLDER_CLIENT_SECRET = "YOUR_CLIENT_SECRET"

# Replaced by the release build. Placeholders mean "not embedded".
EMBEDDED_CLIENT_ID = PLACEHOLDER_CLIENT_ID
EMBEDDED_CLIENT_SECRET = PLACEHOLDER_CLIENT_SECRET

CALLBACK_PORT = 3847
CALLBACK_PATH = "/auth/callback"
CALLBACK_TIMEOUT = 300  # seconds

DEFAULT_DATA_DIR = Path.home() / ".antigravity-manager"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8322


def resolve_credential(
    embedded: Optional[str], placeholder: str, env_name: str
) -> Optional[str]:
    """Pick the embedded value unless it is a placeholder, else the env var.

    >>> resolve_credential("real-id", "YOUR_CLIENT_ID", "AGSWITCH_UNSET_TEST")
    'real-id'
    >>> resolve_credential("YOUR_CLIENT_ID", "YOUR_CLIENT_ID", "AGSWITCH_UNSET_TEST") is None
    True
    """
    if embedded and embedded != placeholder:
        return embedded
    value = os.environ.get(env_name, "").strip()
    if not value or value == placeholder:
        return None
    return value


class Settings(BaseModel):
    """Resolved configuration for one agswitch process."""

    data_dir: Path = DEFAULT_DATA_DIR
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    callback_port: int = CALLBACK_PORT
    callback_path: str = CALLBACK_PATH
    callback_timeout: float = CALLBACK_TIMEOUT
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    state_db_path: Optional[Path] = None

    @property
    def accounts_file(self) -> Path:
        return self.data_dir / "accounts.json"

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.callback_port}{self.callback_path}"

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from the environment, falling back to defaults."""
        data_dir = os.environ.get("AGSWITCH_DATA_DIR")
        state_db = os.environ.get("AGSWITCH_STATE_DB")
        try:
            port = int(os.environ.get("AGSWITCH_PORT", str(DEFAULT_PORT)))
        except ValueError as e:
            raise ValueError(f"AGSWITCH_PORT must be an integer: {e}") from e
        return cls(
            data_dir=Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR,
            client_id=resolve_credential(
                EMBEDDED_CLIENT_ID, PLACEHOLDER_CLIENT_ID, "AGSWITCH_CLIENT_ID"
            ),
            client_secret=resolve_credential(
                EMBEDDED_CLIENT_SECRET, PLACEHOLDER_CLIENT_SECRET, "AGSWITCH_CLIENT_SECRET"
            ),
            host=os.environ.get("AGSWITCH_HOST", DEFAULT_HOST),
            port=port,
            state_db_path=Path(state_db).expanduser() if state_db else None,
        )
