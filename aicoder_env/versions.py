"""
Version comparison for dotted numeric version strings.
"""

from __future__ import annotations

import re

from packaging.version import InvalidVersion, Version


_LEADING_INT_RE = re.compile(r"^\s*(\d+)")


def _numeric_segments(version: str) -> list[int]:
    """Split "1.2.3" into [1, 2, 3]; non-numeric segments count as 0."""
    segments = []
    for part in version.strip().lstrip("vV").split("."):
        match = _LEADING_INT_RE.match(part)
        segments.append(int(match.group(1)) if match else 0)
    return segments


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two version strings.

    Uses PEP 440 ordering where both strings parse (so "2.1" == "2.1.0" and
    pre-releases sort before their release), otherwise compares dotted integer
    segments with missing segments treated as zero.

    Args:
        v1: First version
        v2: Second version

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2
    """
    try:
        ver1 = Version(v1.strip())
        ver2 = Version(v2.strip())
    except InvalidVersion:
        parts1 = _numeric_segments(v1)
        parts2 = _numeric_segments(v2)
        width = max(len(parts1), len(parts2))
        parts1 += [0] * (width - len(parts1))
        parts2 += [0] * (width - len(parts2))
        if parts1 < parts2:
            return -1
        if parts1 > parts2:
            return 1
        return 0

    if ver1 < ver2:
        return -1
    if ver1 > ver2:
        return 1
    return 0


def is_newer(candidate: str, current: str) -> bool:
    """True only when ``candidate`` is strictly newer than ``current``."""
    return compare_versions(candidate, current) > 0
