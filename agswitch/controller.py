"""Stop, start, and locate the Antigravity desktop application.

One controller per platform behind a common interface so the switch
orchestrator never branches on ``sys.platform``. Stopping and starting are
best-effort: a process that is already gone is not an error.
"""

import logging
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Optional, Sequence

from agswitch.errors import StopTargetFailed

logger = logging.getLogger(__name__)

APP_NAME = "Antigravity"
STATE_DB_RELATIVE = Path("User") / "globalStorage" / "state.vscdb"


class TargetController:
    """Base controller. Subclasses define kill commands and the launcher."""

    kill_commands: Sequence[Sequence[str]] = ()

    def __init__(self, home: Optional[Path] = None, state_db_path: Optional[Path] = None):
        self.home = home or Path.home()
        self._state_db_override = state_db_path

    def config_dir(self) -> Path:
        raise NotImplementedError

    def state_db_path(self) -> Path:
        if self._state_db_override is not None:
            return self._state_db_override
        return self.config_dir() / STATE_DB_RELATIVE

    def stop(self) -> None:
        """Kill every target process. Raises StopTargetFailed if no command could run."""
        ran = 0
        for cmd in self.kill_commands:
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, timeout=10)
                ran += 1
                # pkill exits 1 when nothing matched
                logger.debug("%s exited %d", cmd[0], result.returncode)
            except (subprocess.SubprocessError, OSError) as exc:
                logger.debug("Kill command %s failed: %s", cmd, exc)
        if self.kill_commands and ran == 0:
            raise StopTargetFailed(f"Could not run any kill command for {APP_NAME}")

    def launch_command(self) -> list[str]:
        raise NotImplementedError

    def start(self) -> None:
        """Relaunch the target detached from this process."""
        cmd = self.launch_command()
        kwargs: dict = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
        }
        if sys.platform == "win32":
            kwargs["creationflags"] = getattr(subprocess, "DETACHED_PROCESS", 0)
        else:
            kwargs["start_new_session"] = True
        subprocess.Popen(cmd, **kwargs)
        logger.info("Launched %s", APP_NAME)


class MacController(TargetController):
    kill_commands = (
        ("pkill", "-9", "-i", APP_NAME),
        ("pkill", "-9", "-f", f"{APP_NAME} Helper"),
    )

    def config_dir(self) -> Path:
        return self.home / "Library" / "Application Support" / APP_NAME

    def launch_command(self) -> list[str]:
        return ["open", "-a", APP_NAME]


class WindowsController(TargetController):
    kill_commands = (("taskkill", "/F", "/IM", f"{APP_NAME}.exe", "/T"),)

    def config_dir(self) -> Path:
        return self.home / "AppData" / "Roaming" / APP_NAME

    def executable_candidates(self) -> list[Path]:
        return [
            self.home / "AppData" / "Local" / "Programs" / APP_NAME / f"{APP_NAME}.exe",
            Path("C:/Program Files") / APP_NAME / f"{APP_NAME}.exe",
        ]

    def launch_command(self) -> list[str]:
        for exe in self.executable_candidates():
            if exe.exists():
                return [str(exe)]
        raise FileNotFoundError(f"Could not find {APP_NAME}.exe")


class LinuxController(TargetController):
    kill_commands = (("pkill", "-9", "-f", APP_NAME.lower()),)

    def config_dir(self) -> Path:
        return self.home / ".config" / APP_NAME

    def launch_command(self) -> list[str]:
        exe = shutil.which(APP_NAME.lower())
        if not exe:
            raise FileNotFoundError(f"{APP_NAME.lower()} not found in PATH")
        return [exe]


def get_controller(
    platform: Optional[str] = None, state_db_path: Optional[Path] = None
) -> TargetController:
    """Controller for the given (or current) platform.

    >>> type(get_controller("darwin")).__name__
    'MacController'
    >>> type(get_controller("linux")).__name__
    'LinuxController'
    """
    platform = platform or sys.platform
    if platform == "darwin":
        return MacController(state_db_path=state_db_path)
    if platform == "win32":
        return WindowsController(state_db_path=state_db_path)
    return LinuxController(state_db_path=state_db_path)
