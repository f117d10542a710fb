"""
Open an installed tool in a new terminal window.
"""

from __future__ import annotations

import logging
import os
import re
import stat
import subprocess
from pathlib import Path
from typing import Sequence

from .detection import ToolStatus
from .layout import InstallLayout
from .platforms import PlatformPolicy
from .tools import get_tool


logger = logging.getLogger(__name__)

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]")


def launch_args(name: str, args: Sequence[str] = (), yolo: bool = False) -> list[str]:
    """
    Command line arguments for a launched tool.

    With ``yolo`` the tool's own "skip confirmations" flags come first,
    followed by ``args``. Tools without such a flag launch normally.
    """
    extra: list[str] = []
    if yolo:
        tool = get_tool(name)
        if tool is not None and tool.yolo_args:
            extra = list(tool.yolo_args)
        else:
            logger.warning("%s has no option to skip confirmations, launching normally", name)
    return [*extra, *args]


def write_launch_script(
    status: ToolStatus,
    layout: InstallLayout,
    policy: PlatformPolicy,
    project_dir: str | None = None,
    env: dict[str, str] | None = None,
    args: Sequence[str] = (),
    yolo: bool = False,
) -> Path:
    """
    Write a script that runs ``status.path`` with the private bin dir on PATH.

    Args:
        status: Status of an installed tool
        layout: Install layout (script and bin directories)
        policy: Platform policy rendering the script
        project_dir: Working directory for the tool
        env: Extra environment variables to export
        args: Arguments passed to the tool
        yolo: Prepend the tool's "skip confirmations" flags

    Returns:
        Path to the written script

    Raises:
        ValueError: If the tool is not installed
    """
    if not status.installed or not status.path:
        raise ValueError(f"{status.name} is not installed")

    content = policy.render_launch_script(
        status.path,
        str(layout.bin_dir),
        project_dir=project_dir,
        env=env,
        args=launch_args(status.name, args, yolo),
    )

    layout.scripts_dir.mkdir(parents=True, exist_ok=True)
    script = layout.scripts_dir / f"launch-{_SAFE_NAME_RE.sub('_', status.name)}{policy.launch_script_suffix}"
    # Windows batch files need CRLF kept as written
    with open(script, "w", encoding="utf-8", newline="") as f:
        f.write(content)
    mode = os.stat(script).st_mode
    os.chmod(script, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


def launch_tool(
    status: ToolStatus,
    layout: InstallLayout,
    policy: PlatformPolicy,
    project_dir: str | None = None,
    env: dict[str, str] | None = None,
    args: Sequence[str] = (),
    yolo: bool = False,
) -> bool:
    """
    Launch a tool in a new terminal window.

    Returns:
        True if a terminal was started, False if none is available or it
        failed to start
    """
    script = write_launch_script(status, layout, policy, project_dir=project_dir, env=env, args=args, yolo=yolo)
    command = policy.terminal_command(str(script))
    if not command:
        logger.error("No terminal emulator found to launch %s (script: %s)", status.name, script)
        return False

    logger.info("Launching %s in %s", status.name, project_dir or os.getcwd())
    try:
        subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=policy.os_name != "windows",
        )
    except OSError as e:
        logger.error("Failed to start terminal %s: %s", command[0], e)
        return False
    return True
