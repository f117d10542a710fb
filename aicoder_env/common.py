"""
Common utilities shared across aicoder_env modules.
"""

from __future__ import annotations

import os
import sys
from typing import Sequence


def is_chinese_locale(language: str | None) -> bool:
    """
    Check whether a UI language selects the Chinese mirrors.

    Args:
        language: Language tag such as "zh-Hans", "zh_CN.UTF-8" or "en"

    Returns:
        True for any "zh" variant
    """
    return bool(language) and language.strip().lower().startswith("zh")


def augment_search_path(
    current: str,
    entries: Sequence[str],
    separator: str = os.pathsep,
) -> tuple[str, list[str]]:
    """
    Prepend directories to a search path, skipping ones already present.

    Entries keep their declared order in front of the existing value, and
    existing entries keep their relative order.

    Args:
        current: Existing search path value (may be empty)
        entries: Directories to put in front, highest priority first
        separator: Path list separator

    Returns:
        Tuple of (new search path, list of entries that were added)
    """
    existing = [part for part in current.split(separator) if part] if current else []
    seen = set(existing)

    added: list[str] = []
    for entry in entries:
        if entry and entry not in seen:
            added.append(entry)
            seen.add(entry)

    return separator.join(added + existing), added


def child_env_with_bin(bin_dir: str, base: dict[str, str] | None = None) -> dict[str, str]:
    """
    Build a child-process environment with ``bin_dir`` first on PATH.

    Args:
        bin_dir: Directory to prepend
        base: Environment to copy (defaults to os.environ)

    Returns:
        New environment dictionary
    """
    env = dict(os.environ if base is None else base)
    # Windows keeps the variable as "Path"; reuse whatever key is present
    key = next((k for k in env if k.upper() == "PATH"), "PATH")
    current = env.get(key, "")
    env[key] = f"{bin_dir}{os.pathsep}{current}" if current else bin_dir
    return env


def vlog(msg: str, verbose: bool = False) -> None:
    """
    Log verbose message using structured logging.

    Args:
        msg: Message to log
        verbose: Whether verbose mode is enabled
    """
    if verbose or os.environ.get("AICODER_ENV_DEBUG", "0") == "1":
        try:
            from .logging_config import get_logger
            get_logger().info(msg)
        except Exception:
            # Fallback to stderr if logging fails
            print(f"[aicoder_env] {msg}", file=sys.stderr)
