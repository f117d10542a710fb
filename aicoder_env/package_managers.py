"""
npm resolution, command construction and registry queries.

All commands target the private install root: global installs use
``--prefix <root>`` and a package cache that lives outside the root.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading

from .common import child_env_with_bin, vlog
from .environment import Environment
from .layout import InstallLayout
from .platforms import PlatformPolicy
from .tools import Tool


logger = logging.getLogger(__name__)

NPM_MIRROR_REGISTRY = "https://registry.npmmirror.com"

# Cache for registry lookups, keyed by (package, registry)
_LATEST_CACHE: dict[tuple[str, str], str] = {}
_LATEST_CACHE_LOCK = threading.Lock()


def resolve_npm(layout: InstallLayout, policy: PlatformPolicy, verbose: bool = False) -> str | None:
    """
    Find the npm launcher, preferring the private runtime.

    System PATH is consulted only when the private root has no npm.

    Returns:
        Path to npm, or None if unavailable
    """
    for candidate in policy.npm_candidates(layout.root):
        if candidate.is_file():
            vlog(f"Using private npm: {candidate}", verbose)
            return str(candidate)

    system_npm = shutil.which("npm")
    if system_npm:
        vlog(f"Private npm missing, using system npm: {system_npm}", verbose)
    return system_npm


def registry_args(env: Environment) -> list[str]:
    """``--registry`` override for Chinese locales."""
    if env.use_china_mirrors:
        return [f"--registry={NPM_MIRROR_REGISTRY}"]
    return []


def build_install_command(
    npm: str,
    tool: Tool,
    layout: InstallLayout,
    env: Environment,
) -> list[str]:
    """
    Build ``npm install -g`` for a tool and its companion packages.

    Args:
        npm: npm launcher path
        tool: Tool descriptor
        layout: Install layout (prefix and cache)
        env: Host environment (OS, architecture, mirrors)

    Returns:
        Command argument list
    """
    packages = [f"{tool.package_for(env.os_name)}@latest"]
    packages += [f"{pkg}@latest" for pkg in tool.extra_packages_for(env.os_name, env.arch)]

    cmd = [
        npm, "install", "-g", *packages,
        "--prefix", str(layout.root),
        "--cache", str(layout.cache_dir),
        "--loglevel", "info",
        "--force",
    ]
    if tool.ignore_scripts:
        cmd.append("--ignore-scripts")
    cmd += registry_args(env)
    return cmd


def build_cache_clean_command(npm: str, layout: InstallLayout) -> list[str]:
    """``npm cache clean`` against the private cache."""
    return [npm, "cache", "clean", "--force", "--cache", str(layout.cache_dir)]


def build_view_command(npm: str, package: str, layout: InstallLayout, env: Environment) -> list[str]:
    """``npm view <pkg> version`` for the latest published version."""
    return [
        npm, "view", package, "version",
        "--cache", str(layout.cache_dir),
        *registry_args(env),
    ]


def get_latest_version(
    npm: str,
    tool: Tool,
    layout: InstallLayout,
    env: Environment,
    policy: PlatformPolicy | None = None,
    timeout: float = 30,
    verbose: bool = False,
) -> str:
    """
    Query the registry for a tool's latest version.

    Results are cached per package and registry until ``clear_cache()``.

    Returns:
        Version string, or empty string if the query failed
    """
    package = tool.package_for(env.os_name)
    key = (package, NPM_MIRROR_REGISTRY if env.use_china_mirrors else "")
    with _LATEST_CACHE_LOCK:
        if key in _LATEST_CACHE:
            return _LATEST_CACHE[key]

    cmd = build_view_command(npm, package, layout, env)
    vlog(f"Querying registry: {' '.join(cmd)}", verbose)
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
            stdin=subprocess.DEVNULL,
            env=child_env_with_bin(str(layout.bin_dir)),
            **(policy.subprocess_kwargs() if policy else {}),
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("%s: registry query failed: %s", tool.name, e)
        return ""

    if result.returncode != 0:
        logger.warning(
            "%s: registry query exited with code %d: %s",
            tool.name,
            result.returncode,
            (result.stderr or "").strip()[:200],
        )
        return ""

    lines = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
    latest = lines[-1].strip("'\"") if lines else ""
    if latest:
        with _LATEST_CACHE_LOCK:
            _LATEST_CACHE[key] = latest
    return latest


def clear_cache() -> None:
    """Forget cached registry lookups."""
    with _LATEST_CACHE_LOCK:
        _LATEST_CACHE.clear()
