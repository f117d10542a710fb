"""
Private install layout.

Everything the engine provisions lives under one per-user directory tree.
The data directory doubles as the first-run sentinel: when it is missing,
the next environment check is forced.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .platforms import PlatformPolicy


DATA_DIR_NAME = ".aicoder"


@dataclass(frozen=True)
class InstallLayout:
    """
    Resolved locations of the private install tree.

    Attributes:
        data_dir: Per-user data directory (sentinel for first-run detection)
        root: Install root holding the runtime and all tools
        bin_dir: Directory with runtime and tool launchers
        cache_dir: Package manager cache, deliberately outside ``root``
        scripts_dir: Generated launch scripts
    """
    data_dir: Path
    root: Path
    bin_dir: Path
    cache_dir: Path
    scripts_dir: Path

    @property
    def sentinel(self) -> Path:
        return self.data_dir

    def contains(self, path: str | Path) -> bool:
        """Whether ``path`` (after resolving symlinks) lies inside the root."""
        try:
            Path(os.path.realpath(path)).relative_to(Path(os.path.realpath(self.root)))
            return True
        except ValueError:
            return False

    def ensure(self) -> None:
        """Create the data, root, bin and cache directories."""
        for directory in (self.data_dir, self.root, self.bin_dir, self.cache_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "data_dir": str(self.data_dir),
            "root": str(self.root),
            "bin_dir": str(self.bin_dir),
            "cache_dir": str(self.cache_dir),
            "scripts_dir": str(self.scripts_dir),
        }


def default_data_dir(home: Path | None = None) -> Path:
    """Data directory from AICODER_ENV_HOME, else ~/.aicoder."""
    override = os.environ.get("AICODER_ENV_HOME")
    if override:
        return Path(override).expanduser()
    return (home or Path.home()) / DATA_DIR_NAME


def build_layout(policy: PlatformPolicy, data_dir: str | Path | None = None) -> InstallLayout:
    """
    Build the install layout for a platform.

    Args:
        policy: Platform policy deciding where launchers live
        data_dir: Explicit data directory (defaults to ``default_data_dir()``)

    Returns:
        InstallLayout (nothing is created on disk)
    """
    base = Path(data_dir).expanduser() if data_dir else default_data_dir()
    root = base / "tools"
    return InstallLayout(
        data_dir=base,
        root=root,
        bin_dir=policy.bin_dir(root),
        cache_dir=base / "npm-cache",
        scripts_dir=base / "scripts",
    )
