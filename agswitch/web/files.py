"""File helpers shared by the account store and the state-DB adapter."""

import logging
import os
import sys
import time
from pathlib import Path

logger = logging.getLogger(__name__)


def safe_replace(src: str, dst: str, *, retries: int = 3, delay: float = 0.1):
    """os.replace() with retry for Windows PermissionError.

    On Windows, os.replace() can fail while another process holds the
    target open. Elsewhere this is a single os.replace() call.
    """
    for attempt in range(retries):
        try:
            os.replace(src, dst)
            return
        except PermissionError:
            if sys.platform != "win32" or attempt == retries - 1:
                raise
            time.sleep(delay * (2 ** attempt))


def remove_quietly(path: Path) -> bool:
    """Delete a file if present. Returns True if something was removed.

    >>> remove_quietly(Path("/nonexistent/agswitch/file"))
    False
    """
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.debug("Could not remove %s: %s", path, exc)
        return False
