"""
Tool definitions for the AI coding assistants the engine provisions.

The catalog is static: descriptors are compiled in and immutable for the
lifetime of the process. Declaration order is also the check order.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Mapping


class UpdateStrategy(str, enum.Enum):
    """How an installed tool is brought up to date."""
    REINSTALL = "reinstall"              # npm install <pkg>@latest into the root
    SELF_UPDATE = "self-update-command"  # run the tool's own update subcommand


@dataclass(frozen=True)
class Tool:
    """
    Static tool descriptor.

    Attributes:
        name: Logical tool name
        binary_names: Executable names to search for, highest priority first
        package: npm package identifier
        update_strategy: How updates are applied
        check_updates: Whether the registry is queried for newer versions
        platform_packages: Per-OS package overrides as (os, package) pairs;
            a mapping is accepted and frozen
        extra_packages: Companion packages as ("os-arch" or os, packages) pairs
        windows_binary_names: Additional names only searched on Windows
        ignore_scripts: Pass --ignore-scripts to npm
        self_update_args: Arguments for UpdateStrategy.SELF_UPDATE
        yolo_args: Arguments that turn off the tool's confirmation prompts
    """
    name: str
    binary_names: tuple[str, ...]
    package: str
    update_strategy: UpdateStrategy = UpdateStrategy.REINSTALL
    check_updates: bool = True
    platform_packages: tuple[tuple[str, str], ...] = ()
    extra_packages: tuple[tuple[str, tuple[str, ...]], ...] = ()
    windows_binary_names: tuple[str, ...] = ()
    ignore_scripts: bool = False
    self_update_args: tuple[str, ...] = ()
    yolo_args: tuple[str, ...] = ()

    def __post_init__(self):
        for name in ("platform_packages", "extra_packages"):
            value = getattr(self, name)
            if isinstance(value, Mapping):
                object.__setattr__(self, name, tuple(value.items()))

    def package_for(self, os_name: str) -> str:
        """npm package identifier on a given OS."""
        return dict(self.platform_packages).get(os_name, self.package)

    def binaries_for(self, os_name: str) -> tuple[str, ...]:
        """Binary names to search for on a given OS, in priority order."""
        if os_name == "windows":
            return self.binary_names + self.windows_binary_names
        return self.binary_names

    def extra_packages_for(self, os_name: str, arch: str) -> tuple[str, ...]:
        """Companion packages installed alongside the main one."""
        extras = dict(self.extra_packages)
        return extras.get(f"{os_name}-{arch}", extras.get(os_name, ()))

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "binary_names": list(self.binary_names),
            "package": self.package,
            "update_strategy": self.update_strategy.value,
            "check_updates": self.check_updates,
        }


TOOLS: tuple[Tool, ...] = (
    Tool(
        name="kilo",
        binary_names=("kilo", "kilocode"),
        package="@kilocode/cli",
    ),
    Tool(
        name="claude",
        binary_names=("claude", "claude-code"),
        package="@anthropic-ai/claude-code",
        yolo_args=("--dangerously-skip-permissions",),
    ),
    Tool(
        name="gemini",
        binary_names=("gemini",),
        package="@google/gemini-cli",
        yolo_args=("--yolo",),
    ),
    Tool(
        name="codex",
        binary_names=("codex", "openai"),
        package="@openai/codex",
        yolo_args=("--full-auto",),
    ),
    Tool(
        name="opencode",
        binary_names=("opencode",),
        package="opencode-ai",
        platform_packages=(("windows", "opencode-windows-x64"),),
        windows_binary_names=("opencode-windows-x64",),
        # The launcher package resolves its native binary from these
        extra_packages=(
            ("darwin-arm64", ("opencode-darwin-arm64",)),
            ("darwin-x64", ("opencode-darwin-x64",)),
            ("linux-arm64", ("opencode-linux-arm64",)),
            ("linux-x64", ("opencode-linux-x64",)),
        ),
    ),
    Tool(
        name="codebuddy",
        binary_names=("codebuddy", "codebuddy-code"),
        package="@tencent-ai/codebuddy-code",
        yolo_args=("-y",),
    ),
    Tool(
        name="qoder",
        binary_names=("qodercli", "qoder"),
        package="@qoder-ai/qodercli",
        yolo_args=("--yolo",),
    ),
    Tool(
        name="iflow",
        binary_names=("iflow",),
        package="@iflow-ai/iflow-cli",
        # postinstall references a ripgrep helper missing from the tarball
        ignore_scripts=True,
        yolo_args=("-y",),
    ),
)

# Tool lookup map for fast access
TOOL_MAP: dict[str, Tool] = {t.name: t for t in TOOLS}


def get_tool(name: str) -> Tool | None:
    """Get tool definition by name (case-insensitive)."""
    return TOOL_MAP.get(name.lower())


def all_tools() -> list[Tool]:
    """Get all tool definitions in check order."""
    return list(TOOLS)


def filter_tools(names: list[str]) -> list[Tool]:
    """
    Filter tools by name list, keeping catalog order.

    Args:
        names: List of tool names (case-insensitive)

    Returns:
        Matching tools
    """
    wanted = {n.lower() for n in names}
    return [t for t in TOOLS if t.name in wanted]
