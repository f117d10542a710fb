"""
Package installation with an enumerated retry policy.

Installs and updates run ``npm install -g`` against the private install
root. A failure whose output matches a known retryable signature triggers
a recovery step and exactly one retry of the identical command.
"""

from __future__ import annotations

import enum
import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from .common import child_env_with_bin, vlog
from .detection import ToolStatus
from .environment import Environment
from .layout import InstallLayout
from .package_managers import build_cache_clean_command, build_install_command, resolve_npm
from .platforms import PlatformPolicy
from .tools import Tool, UpdateStrategy


logger = logging.getLogger(__name__)

DEFAULT_INSTALL_TIMEOUT = 600
PACKAGE_DIR_REMOVE_ATTEMPTS = 3
PACKAGE_DIR_REMOVE_DELAY = 1.0


class InstallMode(str, enum.Enum):
    INSTALL = "install"
    UPDATE = "update"


class Recovery(str, enum.Enum):
    """Recovery action taken before the single retry."""
    CLEAN_CACHE = "clean-cache"
    CLEAN_CACHE_AND_PACKAGE = "clean-cache-and-package"


# Case-insensitive substrings of npm output that make a failure retryable.
# Order matters: the first match decides the recovery.
RETRYABLE_SIGNATURES: tuple[tuple[str, Recovery], ...] = (
    ("ENOTEMPTY", Recovery.CLEAN_CACHE_AND_PACKAGE),
    ("directory not empty", Recovery.CLEAN_CACHE_AND_PACKAGE),
    ("EACCES", Recovery.CLEAN_CACHE),
    ("EPERM", Recovery.CLEAN_CACHE),
    ("EEXIST", Recovery.CLEAN_CACHE),
    ("access denied", Recovery.CLEAN_CACHE),
    ("permission denied", Recovery.CLEAN_CACHE),
    ("already exists", Recovery.CLEAN_CACHE),
)


@dataclass(frozen=True)
class CommandResult:
    """
    Result of one external command.

    Attributes:
        command: Argument list that was executed
        exit_code: Process exit code (-1 when it never ran or timed out)
        stdout: Standard output
        stderr: Standard error
        duration_seconds: Wall time
        error_message: Human-readable error message if failed
        attempt_number: 1 for the first run, 2 for the retry
    """
    command: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    error_message: str | None = None
    attempt_number: int = 1

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        return "\n".join(part for part in (self.stdout, self.stderr, self.error_message or "") if part)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "command": list(self.command),
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_seconds": self.duration_seconds,
            "error_message": self.error_message,
            "attempt_number": self.attempt_number,
        }


class InstallError(Exception):
    """
    Installation or update failure.

    Attributes:
        message: Human-readable error message
        tool: Tool name
        command: Command that failed
        exit_code: Exit code of the last attempt
        output: Combined output of the last attempt
        retryable: Whether the failure matched a retryable signature
        remediation: Suggested fix for the error
    """
    def __init__(
        self,
        message: str,
        tool: str = "",
        command: Sequence[str] = (),
        exit_code: int = -1,
        output: str = "",
        retryable: bool = False,
        remediation: str | None = None,
    ):
        self.message = message
        self.tool = tool
        self.command = tuple(command)
        self.exit_code = exit_code
        self.output = output
        self.retryable = retryable
        self.remediation = remediation
        super().__init__(message)


def classify_failure(output: str) -> Recovery | None:
    """
    Match command output against the retryable signatures.

    Returns:
        Recovery for the first matching signature, or None when not retryable
    """
    lowered = output.lower()
    for signature, recovery in RETRYABLE_SIGNATURES:
        if signature.lower() in lowered:
            return recovery
    return None


def is_retryable_output(output: str) -> bool:
    """True when ``output`` matches a retryable signature."""
    return classify_failure(output) is not None


def run_command(
    command: Sequence[str],
    timeout: float | None = None,
    env: dict[str, str] | None = None,
    policy: PlatformPolicy | None = None,
    verbose: bool = False,
) -> CommandResult:
    """
    Run one command to completion.

    Args:
        command: Command and arguments
        timeout: Command timeout in seconds
        env: Child environment
        policy: Platform policy for extra subprocess options
        verbose: Enable verbose logging

    Returns:
        CommandResult (never raises for process failures)
    """
    start_time = time.time()
    command = tuple(command)
    vlog(f"Executing: {' '.join(command)}", verbose)

    try:
        result = subprocess.run(
            list(command),
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
            stdin=subprocess.DEVNULL,
            env=env,
            **(policy.subprocess_kwargs() if policy else {}),
        )
    except subprocess.TimeoutExpired as e:
        return CommandResult(
            command=command,
            exit_code=-1,
            stdout=_decode(e.stdout),
            stderr=_decode(e.stderr),
            duration_seconds=time.time() - start_time,
            error_message=f"Command timed out after {timeout}s",
        )
    except OSError as e:
        return CommandResult(
            command=command,
            exit_code=-1,
            duration_seconds=time.time() - start_time,
            error_message=f"Command could not start: {e}",
        )

    error_msg = None
    if result.returncode != 0:
        error_msg = f"Command failed with exit code {result.returncode}"
    return CommandResult(
        command=command,
        exit_code=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
        duration_seconds=time.time() - start_time,
        error_message=error_msg,
    )


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def remove_package_dir(
    path: Path,
    attempts: int = PACKAGE_DIR_REMOVE_ATTEMPTS,
    delay: float = PACKAGE_DIR_REMOVE_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Remove a package directory, retrying while files are held open.

    Returns:
        True if the directory is gone
    """
    for attempt in range(attempts):
        if not path.exists():
            return True
        try:
            shutil.rmtree(path)
            return True
        except OSError as e:
            logger.debug("Removing %s failed (attempt %d/%d): %s", path, attempt + 1, attempts, e)
            if attempt < attempts - 1:
                sleep(delay)
    return not path.exists()


def _package_dirs(tool: Tool, layout: InstallLayout, env: Environment, policy: PlatformPolicy) -> list[Path]:
    packages = [tool.package_for(env.os_name), *tool.extra_packages_for(env.os_name, env.arch)]
    return [policy.package_dir(layout.root, pkg) for pkg in packages]


def _recover(
    recovery: Recovery,
    npm: str,
    tool: Tool,
    layout: InstallLayout,
    env: Environment,
    policy: PlatformPolicy,
    child_env: dict[str, str],
    verbose: bool,
) -> None:
    logger.info("%s: cleaning package cache before retry", tool.name)
    clean = run_command(build_cache_clean_command(npm, layout), timeout=120, env=child_env, policy=policy, verbose=verbose)
    if not clean.success:
        # Best effort; the retry decides the outcome
        logger.debug("%s: cache clean failed: %s", tool.name, clean.output[:200])

    if recovery is Recovery.CLEAN_CACHE_AND_PACKAGE:
        for package_dir in _package_dirs(tool, layout, env, policy):
            if not remove_package_dir(package_dir):
                logger.warning("%s: could not remove %s", tool.name, package_dir)


def install_or_update(
    tool: Tool,
    mode: InstallMode,
    layout: InstallLayout,
    env: Environment,
    policy: PlatformPolicy,
    npm: str | None = None,
    status: ToolStatus | None = None,
    timeout: float = DEFAULT_INSTALL_TIMEOUT,
    verbose: bool = False,
) -> CommandResult:
    """
    Install or update one tool into the private install root.

    Args:
        tool: Tool descriptor
        mode: INSTALL or UPDATE
        layout: Install layout
        env: Host environment
        policy: Platform policy
        npm: npm launcher (resolved when omitted)
        status: Current tool status, required for self-updating tools
        timeout: Per-command timeout in seconds
        verbose: Enable verbose logging

    Returns:
        CommandResult of the successful command

    Raises:
        InstallError: If the command fails and the retry (if any) fails too
    """
    child_env = child_env_with_bin(str(layout.bin_dir))

    if mode is InstallMode.UPDATE and tool.update_strategy is UpdateStrategy.SELF_UPDATE:
        if status is None or not status.path:
            raise InstallError(f"{tool.name}: cannot self-update, tool path unknown", tool=tool.name)
        command = [status.path, *tool.self_update_args]
        logger.info("%s: running self-update", tool.name)
        result = run_command(command, timeout=timeout, env=child_env, policy=policy, verbose=verbose)
        if not result.success:
            raise InstallError(
                f"{tool.name}: self-update failed: {result.error_message}",
                tool=tool.name,
                command=command,
                exit_code=result.exit_code,
                output=result.output,
            )
        return result

    npm = npm or resolve_npm(layout, policy, verbose)
    if not npm:
        raise InstallError(
            f"{tool.name}: npm not found",
            tool=tool.name,
            remediation="Install the Node.js runtime first (aicoder-env check --force)",
        )

    layout.cache_dir.mkdir(parents=True, exist_ok=True)

    if mode is InstallMode.INSTALL:
        for package_dir in _package_dirs(tool, layout, env, policy):
            if package_dir.exists():
                logger.info("%s: removing stale package directory %s", tool.name, package_dir)
                if not remove_package_dir(package_dir):
                    logger.warning("%s: stale package directory %s could not be removed", tool.name, package_dir)

    command = build_install_command(npm, tool, layout, env)
    logger.info("%s: %s via npm", tool.name, "installing" if mode is InstallMode.INSTALL else "updating")
    result = run_command(command, timeout=timeout, env=child_env, policy=policy, verbose=verbose)
    if result.success:
        return result

    recovery = classify_failure(result.output)
    if recovery is None:
        raise InstallError(
            f"{tool.name}: npm {mode.value} failed with exit code {result.exit_code}",
            tool=tool.name,
            command=command,
            exit_code=result.exit_code,
            output=result.output,
        )

    logger.warning("%s: retryable npm failure (%s), retrying once", tool.name, recovery.value)
    _recover(recovery, npm, tool, layout, env, policy, child_env, verbose)

    retry = run_command(command, timeout=timeout, env=child_env, policy=policy, verbose=verbose)
    if retry.success:
        return CommandResult(
            command=retry.command,
            exit_code=retry.exit_code,
            stdout=retry.stdout,
            stderr=retry.stderr,
            duration_seconds=retry.duration_seconds,
            attempt_number=2,
        )

    raise InstallError(
        f"{tool.name}: npm {mode.value} failed after retry with exit code {retry.exit_code}",
        tool=tool.name,
        command=command,
        exit_code=retry.exit_code,
        output=retry.output,
        retryable=True,
        remediation=f"Remove {layout.cache_dir} and try again",
    )
