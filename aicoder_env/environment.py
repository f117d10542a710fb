"""
Host environment detection.

Determines the operating system family, CPU architecture and UI language
that select the platform policy, runtime archive and download mirrors.
"""

from __future__ import annotations

import os
import platform
import sys
from dataclasses import dataclass

from .common import is_chinese_locale, vlog


VALID_OS_NAMES = ("linux", "darwin", "windows")


@dataclass(frozen=True)
class Environment:
    """
    Detected environment information.

    Attributes:
        os_name: Operating system family ('linux', 'darwin' or 'windows')
        arch: Node.js style architecture ('x64' or 'arm64')
        language: UI language tag (e.g. 'en', 'zh-Hans')
    """
    os_name: str
    arch: str
    language: str = "en"

    def __post_init__(self):
        if self.os_name not in VALID_OS_NAMES:
            raise ValueError(
                f"Unsupported operating system: {self.os_name}. "
                f"Must be one of: {', '.join(VALID_OS_NAMES)}"
            )

    @property
    def use_china_mirrors(self) -> bool:
        return is_chinese_locale(self.language)

    def __str__(self) -> str:
        return f"{self.os_name}-{self.arch} ({self.language})"


def normalize_os_name(value: str) -> str:
    """Map sys.platform style names to an OS family."""
    value = value.lower()
    if value.startswith("win") or value.startswith("cygwin"):
        return "windows"
    if value.startswith("darwin") or value == "macos":
        return "darwin"
    return "linux"


def normalize_arch(machine: str) -> str:
    """Map platform.machine() values to Node.js architecture names."""
    machine = machine.lower()
    if machine in ("arm64", "aarch64", "armv8", "armv8l") or machine.startswith("arm64"):
        return "arm64"
    return "x64"


def detect_language() -> str:
    """Read the UI language from the usual locale variables."""
    for var in ("LC_ALL", "LC_MESSAGES", "LANG", "LANGUAGE"):
        value = os.environ.get(var, "")
        if value and value not in ("C", "POSIX"):
            return value.split(".")[0].split(":")[0]
    return "en"


def detect_environment(
    language: str | None = None,
    os_name: str | None = None,
    arch: str | None = None,
    verbose: bool = False,
) -> Environment:
    """
    Detect the host environment.

    Args:
        language: Explicit UI language (overrides locale detection)
        os_name: Explicit OS family override
        arch: Explicit architecture override
        verbose: Enable verbose logging

    Returns:
        Environment object
    """
    env = Environment(
        os_name=os_name or normalize_os_name(sys.platform),
        arch=arch or normalize_arch(platform.machine()),
        language=language or detect_language(),
    )
    vlog(f"Detected environment: {env}", verbose)
    return env
