"""
Per-OS platform policies.

The orchestrator is written once and parameterized by a PlatformPolicy that
knows where a platform puts executables inside the private install root,
how the runtime archive is named and unpacked, which system directories are
conventional, and how to open a terminal.
"""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import tarfile
import zipfile
from pathlib import Path
from typing import Sequence


# Python 3.12+ ships tar extraction filters
_HAS_EXTRACTION_FILTERS = hasattr(tarfile, "data_filter")

NODE_DIST_URL = "https://nodejs.org/dist"
NODE_MIRROR_URL = "https://mirrors.tuna.tsinghua.edu.cn/nodejs-release"


def _strip_components(name: str, components: int) -> str | None:
    """Drop the leading ``components`` path segments of an archive member."""
    parts = [p for p in name.replace("\\", "/").split("/") if p not in ("", ".")]
    if len(parts) <= components:
        return None
    return "/".join(parts[components:])


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def extract_tar_stripped(archive: Path, target: Path, components: int = 1) -> int:
    """
    Extract a tar archive, collapsing its leading directory into ``target``.

    Equivalent to ``tar -xf archive --strip-components=N -C target``.

    Args:
        archive: Path to a .tar.gz/.tar.xz archive
        target: Destination directory (created if missing)
        components: Number of leading path segments to drop

    Returns:
        Number of members extracted

    Raises:
        ValueError: If a member would land outside ``target``
        tarfile.TarError, OSError: On corrupt archives or write failures
    """
    target.mkdir(parents=True, exist_ok=True)
    root = target.resolve()
    count = 0

    with tarfile.open(archive, "r:*") as tar:
        for member in tar.getmembers():
            stripped = _strip_components(member.name, components)
            if stripped is None:
                continue
            if not _is_within((root / stripped).resolve(), root):
                raise ValueError(f"Archive member escapes target directory: {member.name}")

            if member.islnk():
                link = _strip_components(member.linkname, components)
                if link is None:
                    continue
                member.linkname = link
            member.name = stripped

            if _HAS_EXTRACTION_FILTERS:
                tar.extract(member, root, filter="data")
            else:
                tar.extract(member, root)
            count += 1

    return count


def extract_zip_stripped(archive: Path, target: Path, components: int = 1) -> int:
    """
    Extract a zip archive, collapsing its leading directory into ``target``.

    Unix permission bits stored in the archive are restored.

    Returns:
        Number of members extracted
    """
    target.mkdir(parents=True, exist_ok=True)
    root = target.resolve()
    count = 0

    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            is_dir = info.is_dir()
            stripped = _strip_components(info.filename, components)
            if stripped is None:
                continue
            if not _is_within((root / stripped).resolve(), root):
                raise ValueError(f"Archive member escapes target directory: {info.filename}")

            info.filename = stripped + "/" if is_dir else stripped
            extracted = zf.extract(info, root)

            mode = (info.external_attr >> 16) & 0o777
            if mode and not is_dir:
                os.chmod(extracted, mode)
            count += 1

    return count


class PlatformPolicy:
    """
    Capabilities that differ between operating systems.

    Subclasses override the class attributes and the handful of methods
    whose behavior is not a simple table lookup.
    """

    os_name = ""
    binary_suffixes: tuple[str, ...] = ("",)
    runtime_binary = "node"
    npm_binaries: tuple[str, ...] = ("npm",)
    archive_platform = ""
    archive_extension = ".tar.gz"
    supported_archive_extensions: tuple[str, ...] = (".tar.gz", ".tar.xz", ".tgz")
    launch_script_suffix = ".sh"

    # Install root layout

    def bin_dir(self, root: Path) -> Path:
        """Directory holding launchers for the runtime and installed tools."""
        return root / "bin"

    def package_dir(self, root: Path, package: str) -> Path:
        """Where ``npm install -g --prefix root`` puts a package."""
        return root / "lib" / "node_modules" / package

    def candidate_paths(self, root: Path, binary_name: str, package: str | None) -> list[Path]:
        """
        Ordered locations to probe for one binary name, all inside ``root``.

        Args:
            root: Private install root
            binary_name: Executable name without suffix
            package: npm package the binary belongs to, if known

        Returns:
            Candidate paths, highest priority first
        """
        paths = [self.bin_dir(root) / f"{binary_name}{suffix}" for suffix in self.binary_suffixes]
        if package:
            for pkg_root in (self.package_dir(root, package), root / "node_modules" / package):
                for suffix in self.binary_suffixes:
                    paths.append(pkg_root / "bin" / f"{binary_name}{suffix}")
        return _dedupe(paths)

    def npm_candidates(self, root: Path) -> list[Path]:
        """Private npm launchers, in preference order."""
        return [self.bin_dir(root) / name for name in self.npm_binaries]

    def system_bin_dirs(self, home: Path) -> list[str]:
        """Conventional system executable directories for this OS."""
        return []

    # Runtime archive

    def runtime_archive_name(self, version: str, arch: str) -> str:
        """File name of the official Node.js archive for this platform."""
        version = version.lstrip("v")
        return f"node-v{version}-{self.archive_platform}-{arch}{self.archive_extension}"

    def runtime_download_url(self, version: str, arch: str, use_mirror: bool = False) -> str:
        """Download URL, using the China mirror when requested."""
        version = version.lstrip("v")
        base = NODE_MIRROR_URL if use_mirror else NODE_DIST_URL
        return f"{base}/v{version}/{self.runtime_archive_name(version, arch)}"

    def runtime_binary_path(self, root: Path) -> Path:
        return self.bin_dir(root) / self.runtime_binary

    def extract_runtime(self, archive: Path, target: Path) -> int:
        """Unpack the runtime archive into the install root (strip 1)."""
        return extract_tar_stripped(archive, target, components=1)

    # Processes and terminals

    def subprocess_kwargs(self) -> dict:
        """Extra keyword arguments for subprocess calls."""
        return {}

    def render_launch_script(
        self,
        tool_path: str,
        bin_dir: str,
        project_dir: str | None = None,
        env: dict[str, str] | None = None,
        args: Sequence[str] = (),
    ) -> str:
        """Shell script that runs a tool with the private bin dir on PATH."""
        lines = ["#!/bin/bash", f'export PATH={shlex.quote(bin_dir)}:"$PATH"']
        for key, value in sorted((env or {}).items()):
            lines.append(f"export {key}={shlex.quote(value)}")
        if project_dir:
            quoted = shlex.quote(project_dir)
            lines.append(f'cd {quoted} || {{ echo "Failed to change directory to "{quoted}; exit 1; }}')
        command = " ".join(shlex.quote(part) for part in (tool_path, *args))
        lines.append(f"exec {command}")
        return "\n".join(lines) + "\n"

    def terminal_command(self, script_path: str) -> list[str] | None:
        """Command that opens a terminal running ``script_path``, if any."""
        return None


class LinuxPolicy(PlatformPolicy):
    os_name = "linux"
    archive_platform = "linux"
    terminals = ("x-terminal-emulator", "gnome-terminal", "konsole", "xterm")

    def system_bin_dirs(self, home: Path) -> list[str]:
        return ["/usr/local/bin", "/usr/bin", "/bin", "/usr/sbin", "/sbin"]

    def terminal_command(self, script_path: str) -> list[str] | None:
        for terminal in self.terminals:
            if shutil.which(terminal):
                if terminal == "gnome-terminal":
                    return [terminal, "--", script_path]
                return [terminal, "-e", script_path]
        return None


class DarwinPolicy(PlatformPolicy):
    os_name = "darwin"
    archive_platform = "darwin"

    def system_bin_dirs(self, home: Path) -> list[str]:
        return [
            "/usr/local/bin",
            "/opt/homebrew/bin",
            "/usr/bin",
            "/bin",
            "/usr/sbin",
            "/sbin",
            str(home / ".npm-global" / "bin"),
        ]

    def terminal_command(self, script_path: str) -> list[str] | None:
        escaped = script_path.replace("\\", "\\\\").replace('"', '\\"')
        script = (
            "try\n"
            f'\ttell application "Terminal" to do script "\\"{escaped}\\""\n'
            '\ttell application "Terminal" to activate\n'
            "on error errMsg\n"
            '\tdisplay dialog "Failed to launch Terminal: " & errMsg\n'
            "end try"
        )
        return ["osascript", "-e", script]


_BATCH_SPECIAL = frozenset(' \t&|<>^()"')


def _batch_escape(text: str) -> str:
    # cmd expands %VAR% even inside quotes
    return text.replace("%", "%%")


def _batch_arg(arg: str) -> str:
    """Quote one argument for a batch file command line."""
    if arg and not _BATCH_SPECIAL.intersection(arg):
        return _batch_escape(arg)
    quoted = subprocess.list2cmdline([arg])
    if not quoted.startswith('"'):
        quoted = f'"{quoted}"'
    return _batch_escape(quoted)


class WindowsPolicy(PlatformPolicy):
    os_name = "windows"
    binary_suffixes = (".cmd", ".exe", ".bat", ".ps1", "")
    runtime_binary = "node.exe"
    npm_binaries = ("npm.cmd", "npm.exe")
    archive_platform = "win"
    archive_extension = ".zip"
    supported_archive_extensions = (".zip",)
    launch_script_suffix = ".bat"

    def bin_dir(self, root: Path) -> Path:
        # npm on Windows writes shims to the prefix itself, not prefix/bin
        return root

    def package_dir(self, root: Path, package: str) -> Path:
        return root / "node_modules" / package

    def candidate_paths(self, root: Path, binary_name: str, package: str | None) -> list[Path]:
        paths = [root / f"{binary_name}{suffix}" for suffix in (".cmd", ".exe", ".bat", ".ps1")]
        paths += [root / "bin" / f"{binary_name}{suffix}" for suffix in (".cmd", ".exe")]
        paths += [root / binary_name, root / "bin" / binary_name]
        if package:
            base = self.package_dir(root, package) / "bin" / binary_name
            paths += [base, base.with_name(f"{binary_name}.exe"), base.with_name(f"{binary_name}.js")]
        return _dedupe(paths)

    def system_bin_dirs(self, home: Path) -> list[str]:
        program_files = os.environ.get("ProgramFiles", r"C:\Program Files")
        return [str(Path(program_files) / "nodejs")]

    def extract_runtime(self, archive: Path, target: Path) -> int:
        return extract_zip_stripped(archive, target, components=1)

    def subprocess_kwargs(self) -> dict:
        # Keep npm and version probes from flashing console windows
        return {"creationflags": getattr(subprocess, "CREATE_NO_WINDOW", 0)}

    def render_launch_script(
        self,
        tool_path: str,
        bin_dir: str,
        project_dir: str | None = None,
        env: dict[str, str] | None = None,
        args: Sequence[str] = (),
    ) -> str:
        lines = ["@echo off", f'set "PATH={_batch_escape(bin_dir)};%PATH%"']
        for key, value in sorted((env or {}).items()):
            lines.append(f'set "{key}={_batch_escape(value)}"')
        if project_dir:
            lines.append(f'cd /d "{_batch_escape(project_dir)}"')
        command = " ".join([f'"{_batch_escape(tool_path)}"', *(_batch_arg(arg) for arg in args)])
        lines.append(command)
        return "\r\n".join(lines) + "\r\n"

    def terminal_command(self, script_path: str) -> list[str] | None:
        return ["cmd", "/c", "start", "", "cmd", "/k", script_path]


_POLICIES = {
    "linux": LinuxPolicy,
    "darwin": DarwinPolicy,
    "windows": WindowsPolicy,
}


def get_platform_policy(os_name: str) -> PlatformPolicy:
    """
    Get the policy for an OS family.

    Raises:
        ValueError: If the OS family is unknown
    """
    try:
        return _POLICIES[os_name]()
    except KeyError:
        raise ValueError(f"No platform policy for OS: {os_name}") from None


def _dedupe(paths: list[Path]) -> list[Path]:
    seen: set[Path] = set()
    result = []
    for path in paths:
        if path not in seen:
            seen.add(path)
            result.append(path)
    return result
