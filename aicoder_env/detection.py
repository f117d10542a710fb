"""
Tool location and version probing inside the private install root.

Locating never consults PATH: a tool counts as installed only when one of
its binaries exists under the install root.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .common import child_env_with_bin, vlog
from .layout import InstallLayout
from .platforms import PlatformPolicy
from .tools import Tool


logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 10

ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_SEMVER = r"v?(\d+(?:\.\d+)+(?:[-+][0-9A-Za-z.+-]+)?)"
# "claude-code/0.2.29 darwin-arm64 node-v22.12.0"
PACKAGE_SLASH_VERSION_RE = re.compile(r"^[@\w.-]+(?:/[@\w.-]+)*/" + _SEMVER + r"(?:\s|$)")
# "1.4.0", "v0.9.1", "1.0.58 (Claude Code)"
BARE_VERSION_RE = re.compile(r"^" + _SEMVER + r"[,;:]?$")
# "codex-cli 0.46.0"
NAME_SPACE_VERSION_RE = re.compile(r"^[@\w./-]+\s+" + _SEMVER + r"(?:\s|$)")


class ProbeError(Exception):
    """Base class for version probe failures."""

    def __init__(self, message: str, path: str = "", output: str = ""):
        super().__init__(message)
        self.message = message
        self.path = path
        self.output = output


class ExecutionFailed(ProbeError):
    """``<tool> --version`` could not run, exited non-zero or timed out."""


class UnrecognizedFormat(ProbeError):
    """The version output matched none of the known formats."""


@dataclass(frozen=True)
class Located:
    """
    Result of a successful tool lookup.

    Attributes:
        path: Candidate path that exists
        binary_name: Which of the tool's binary names matched
        resolved_path: ``path`` with symlinks resolved
    """
    path: str
    binary_name: str
    resolved_path: str


@dataclass(frozen=True)
class ToolStatus:
    """
    Observed state of one tool (never persisted).

    Attributes:
        name: Tool name
        installed: Whether a binary was found inside the install root
        version: Probed version, empty when unknown
        path: Located binary path
        resolved_path: Symlink-resolved binary path
        inside_root: Whether ``resolved_path`` stays inside the install root
    """
    name: str
    installed: bool
    version: str = ""
    path: str = ""
    resolved_path: str = ""
    inside_root: bool = True

    @property
    def version_known(self) -> bool:
        return bool(self.version)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "installed": self.installed,
            "version": self.version,
            "path": self.path,
            "resolved_path": self.resolved_path,
            "inside_root": self.inside_root,
        }


def locate_tool(tool: Tool, layout: InstallLayout, policy: PlatformPolicy) -> Located | None:
    """
    Find a tool's binary inside the private install root.

    Candidate binary names are tried in declared order; for each name the
    platform's location list is tried in order. The first existing
    non-directory path wins.

    Args:
        tool: Tool descriptor
        layout: Install layout
        policy: Platform policy supplying the location list

    Returns:
        Located result, or None when no candidate exists
    """
    package = tool.package_for(policy.os_name)
    for binary_name in tool.binaries_for(policy.os_name):
        for candidate in policy.candidate_paths(layout.root, binary_name, package):
            if candidate.exists() and not candidate.is_dir():
                return Located(
                    path=str(candidate),
                    binary_name=binary_name,
                    resolved_path=os.path.realpath(candidate),
                )
    return None


def parse_version_output(output: str) -> str:
    """
    Extract a version from ``--version`` output.

    Only the first non-empty line is considered. Recognized forms, in order:
    ``<package>/<semver> ...``, a leading dotted-numeric token (optionally
    ``v``-prefixed, trailing tokens ignored), and ``<name> <semver> ...``.

    Args:
        output: Raw command output

    Returns:
        Version string without a ``v`` prefix

    Raises:
        UnrecognizedFormat: If no form matches
    """
    first_line = ""
    for line in output.splitlines():
        line = ANSI_ESCAPE_RE.sub("", line).strip()
        if line:
            first_line = line
            break

    if not first_line:
        raise UnrecognizedFormat("Empty version output", output=output)

    match = PACKAGE_SLASH_VERSION_RE.match(first_line)
    if match:
        return match.group(1)

    first_token = first_line.split()[0]
    match = BARE_VERSION_RE.match(first_token)
    if match:
        return match.group(1)

    match = NAME_SPACE_VERSION_RE.match(first_line)
    if match:
        return match.group(1)

    raise UnrecognizedFormat(f"Unrecognized version output: {first_line!r}", output=output)


def probe_version(
    path: str,
    bin_dir: str | Path | None = None,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    policy: PlatformPolicy | None = None,
    verbose: bool = False,
) -> str:
    """
    Run ``<path> --version`` and parse the result.

    Args:
        path: Executable to probe
        bin_dir: Directory put first on the child's PATH so script shims
            find the private runtime
        timeout: Seconds before the probe is abandoned
        policy: Platform policy for extra subprocess options
        verbose: Enable verbose logging

    Returns:
        Parsed version string

    Raises:
        ExecutionFailed: On launch failure, non-zero exit or timeout
        UnrecognizedFormat: If the output cannot be parsed
    """
    env = child_env_with_bin(str(bin_dir)) if bin_dir else dict(os.environ)
    env["TERM"] = "dumb"  # Disable ANSI/color output from subprocesses
    extra = policy.subprocess_kwargs() if policy else {}

    vlog(f"Probing version: {path} --version", verbose)
    try:
        proc = subprocess.run(
            [path, "--version"],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
            env=env,
            **extra,
        )
    except subprocess.TimeoutExpired as e:
        raise ExecutionFailed(f"Version probe timed out after {timeout}s", path=path) from e
    except OSError as e:
        raise ExecutionFailed(f"Version probe could not start: {e}", path=path) from e

    output = proc.stdout or ""
    if proc.returncode != 0:
        raise ExecutionFailed(
            f"Version probe exited with code {proc.returncode}",
            path=path,
            output=output,
        )
    return parse_version_output(output)


def get_tool_status(
    tool: Tool,
    layout: InstallLayout,
    policy: PlatformPolicy,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    verbose: bool = False,
) -> ToolStatus:
    """
    Locate and probe one tool.

    A probe failure is logged and reported as installed with an unknown
    version. A binary whose resolved path leaves the install root is never
    executed: it is reported as installed outside the root, version unknown.

    Returns:
        ToolStatus for the tool
    """
    located = locate_tool(tool, layout, policy)
    if located is None:
        vlog(f"{tool.name}: not found under {layout.root}", verbose)
        return ToolStatus(name=tool.name, installed=False)

    if not layout.contains(located.resolved_path):
        logger.warning(
            "%s: %s resolves to %s outside %s, not probing it",
            tool.name,
            located.path,
            located.resolved_path,
            layout.root,
        )
        return ToolStatus(
            name=tool.name,
            installed=True,
            path=located.path,
            resolved_path=located.resolved_path,
            inside_root=False,
        )

    version = ""
    try:
        version = probe_version(
            located.path,
            bin_dir=layout.bin_dir,
            timeout=timeout,
            policy=policy,
            verbose=verbose,
        )
    except ProbeError as e:
        logger.warning("%s: version probe failed for %s: %s", tool.name, located.path, e.message)

    return ToolStatus(
        name=tool.name,
        installed=True,
        version=version,
        path=located.path,
        resolved_path=located.resolved_path,
    )
