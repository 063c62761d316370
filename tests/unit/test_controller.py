"""Unit tests for the per-platform application controllers."""

import subprocess
from pathlib import Path
from unittest import mock

import pytest

from agswitch.controller import (
    LinuxController,
    MacController,
    WindowsController,
    get_controller,
)
from agswitch.errors import StopTargetFailed


@pytest.mark.parametrize("platform,cls", [
    ("darwin", MacController),
    ("win32", WindowsController),
    ("linux", LinuxController),
])
def test_get_controller(platform, cls):
    assert isinstance(get_controller(platform), cls)


def test_state_db_paths(tmp_path):
    assert MacController(home=tmp_path).state_db_path() == (
        tmp_path / "Library/Application Support/Antigravity/User/globalStorage/state.vscdb"
    )
    assert WindowsController(home=tmp_path).state_db_path() == (
        tmp_path / "AppData/Roaming/Antigravity/User/globalStorage/state.vscdb"
    )
    assert LinuxController(home=tmp_path).state_db_path() == (
        tmp_path / ".config/Antigravity/User/globalStorage/state.vscdb"
    )


def test_state_db_override(tmp_path):
    override = tmp_path / "custom.vscdb"
    assert get_controller("linux", state_db_path=override).state_db_path() == override


def test_mac_stop_runs_both_kill_commands():
    with mock.patch("agswitch.controller.subprocess.run") as run:
        run.return_value = subprocess.CompletedProcess([], 1, "", "")
        MacController().stop()
    cmds = [c.args[0] for c in run.call_args_list]
    assert cmds == [
        ("pkill", "-9", "-i", "Antigravity"),
        ("pkill", "-9", "-f", "Antigravity Helper"),
    ]


def test_windows_stop_uses_taskkill():
    with mock.patch("agswitch.controller.subprocess.run") as run:
        WindowsController().stop()
    assert run.call_args.args[0] == ("taskkill", "/F", "/IM", "Antigravity.exe", "/T")


def test_stop_tolerates_one_failing_command():
    with mock.patch(
        "agswitch.controller.subprocess.run",
        side_effect=[FileNotFoundError("pkill"), subprocess.CompletedProcess([], 0)],
    ):
        MacController().stop()


def test_stop_raises_when_nothing_could_run():
    with mock.patch("agswitch.controller.subprocess.run", side_effect=FileNotFoundError("pkill")):
        with pytest.raises(StopTargetFailed):
            LinuxController().stop()


def test_linux_start_uses_path_lookup():
    with (
        mock.patch("agswitch.controller.shutil.which", return_value="/usr/bin/antigravity"),
        mock.patch("agswitch.controller.subprocess.Popen") as popen,
    ):
        LinuxController().start()
    assert popen.call_args.args[0] == ["/usr/bin/antigravity"]
    assert popen.call_args.kwargs["start_new_session"] is True


def test_linux_start_missing_executable():
    with mock.patch("agswitch.controller.shutil.which", return_value=None):
        with pytest.raises(FileNotFoundError):
            LinuxController().start()


def test_mac_launch_command():
    assert MacController().launch_command() == ["open", "-a", "Antigravity"]


def test_windows_launch_prefers_existing_install(tmp_path):
    exe = tmp_path / "AppData/Local/Programs/Antigravity/Antigravity.exe"
    exe.parent.mkdir(parents=True)
    exe.write_bytes(b"")
    assert WindowsController(home=tmp_path).launch_command() == [str(exe)]


def test_windows_launch_missing(tmp_path):
    controller = WindowsController(home=tmp_path)
    with mock.patch.object(
        WindowsController, "executable_candidates", return_value=[Path(tmp_path / "none.exe")]
    ):
        with pytest.raises(FileNotFoundError):
            controller.launch_command()
