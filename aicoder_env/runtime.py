"""
Private Node.js runtime discovery and installation.

The runtime is downloaded as the official archive for the host platform,
validated, and unpacked into the install root with its top-level
directory stripped, so ``node`` and ``npm`` land in the bin directory.
"""

from __future__ import annotations

import http.client
import logging
import os
import shutil
import socket
import tarfile
import tempfile
import time
import urllib.error
import urllib.request
import zipfile
from pathlib import Path
from typing import Callable

from .common import vlog
from .config import Config
from .environment import Environment
from .events import EventBus, Phase
from .layout import InstallLayout
from .platforms import PlatformPolicy
from .singleflight import SingleFlight


logger = logging.getLogger(__name__)

USER_AGENT = "aicoder-env/1.0"
MIN_ARCHIVE_BYTES = 1024 * 1024
CHUNK_SIZE = 64 * 1024
PROGRESS_INTERVAL_SECONDS = 0.25


class ProvisionError(Exception):
    """
    Base exception for runtime provisioning failures.

    Attributes:
        message: Human-readable error message
        url: Download URL involved, if any
        path: Local file involved, if any
    """
    def __init__(self, message: str, url: str = "", path: str = ""):
        self.message = message
        self.url = url
        self.path = path
        super().__init__(message)


class DownloadNetworkError(ProvisionError):
    """Connection, DNS or socket failure while downloading."""


class DownloadHTTPError(ProvisionError):
    """The server answered with an error status."""

    def __init__(self, message: str, url: str = "", status: int = 0):
        super().__init__(message, url=url)
        self.status = status


class DownloadTruncatedError(ProvisionError):
    """Fewer bytes arrived than the server declared."""


class DownloadWriteError(ProvisionError):
    """The archive could not be written to local disk."""


class ArchiveValidationError(ProvisionError):
    """Archive rejected before or after download (type or size)."""


class ExtractionError(ProvisionError):
    """The archive could not be unpacked."""


class PostInstallMissing(ProvisionError):
    """Extraction finished but the runtime binary is not where expected."""


class RuntimeProvisioner:
    """
    Ensures a usable Node.js runtime, installing a private one if needed.

    Concurrent ``ensure_runtime`` calls share a single download through a
    ``SingleFlight``.
    """

    def __init__(
        self,
        layout: InstallLayout,
        policy: PlatformPolicy,
        env: Environment,
        bus: EventBus | None = None,
        config: Config | None = None,
        verbose: bool = False,
        opener: Callable | None = None,
    ):
        self.layout = layout
        self.policy = policy
        self.env = env
        self.bus = bus or EventBus()
        self.config = config or Config()
        self.verbose = verbose
        self._open = opener or urllib.request.urlopen
        self._flight = SingleFlight(
            wait_timeout=self.config.preferences.runtime_wait_timeout_seconds,
            name="runtime installation",
        )

    @property
    def node_version(self) -> str:
        return self.config.node_version

    def private_runtime(self) -> str | None:
        """Runtime binary inside the install root, if present."""
        path = self.policy.runtime_binary_path(self.layout.root)
        return str(path) if path.is_file() else None

    def find_runtime(self) -> str | None:
        """
        Locate a runtime: private bin dir, then system dirs, then PATH.

        Returns:
            Path to the runtime binary, or None
        """
        private = self.private_runtime()
        if private:
            return private

        for directory in self.policy.system_bin_dirs(Path.home()):
            candidate = Path(directory) / self.policy.runtime_binary
            if candidate.is_file():
                vlog(f"Found system runtime: {candidate}", self.verbose)
                return str(candidate)

        found = shutil.which("node")
        if found:
            vlog(f"Found runtime on PATH: {found}", self.verbose)
        return found

    def ensure_runtime(self) -> str:
        """
        Return a runtime path, installing the private runtime when none exists.

        Raises:
            ProvisionError: If installation fails
            TimeoutWaitingForInstall: If another caller's installation took too long
        """
        existing = self.find_runtime()
        if existing:
            return existing
        return self._flight.do(self._install)

    def _install(self) -> str:
        # A concurrent pass may have finished between the check and the flight
        existing = self.private_runtime()
        if existing:
            return existing

        version = self.node_version
        url = self.policy.runtime_download_url(version, self.env.arch, self.env.use_china_mirrors)
        logger.info("Installing Node.js v%s from %s", version.lstrip("v"), url)

        self.layout.ensure()
        archive = self.download_archive(url)
        try:
            self.extract(archive)
        finally:
            try:
                archive.unlink()
            except OSError:
                pass

        installed = self.private_runtime()
        if not installed:
            expected = self.policy.runtime_binary_path(self.layout.root)
            raise PostInstallMissing(f"Runtime binary missing after extraction: {expected}", path=str(expected))

        logger.info("Node.js installed at %s", installed)
        return installed

    def _archive_suffix(self, name: str) -> str:
        for ext in self.policy.supported_archive_extensions:
            if name.endswith(ext):
                return ext
        raise ArchiveValidationError(f"Invalid file extension: {name}")

    def download_archive(self, url: str, dest_dir: Path | None = None) -> Path:
        """
        Download the runtime archive to a temporary file.

        Args:
            url: Archive URL
            dest_dir: Directory for the temporary file (defaults to the data dir)

        Returns:
            Path to the downloaded archive

        Raises:
            ArchiveValidationError: Unsupported extension or too small
            DownloadHTTPError: Error status from the server
            DownloadNetworkError: Connection or read failure
            DownloadTruncatedError: Fewer bytes than declared, or the body was
                cut short
            DownloadWriteError: The temporary file could not be created or written
        """
        suffix = self._archive_suffix(url.rsplit("/", 1)[-1])
        timeout = self.config.preferences.download_timeout_seconds

        req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
        try:
            response = self._open(req, timeout=timeout)
        except urllib.error.HTTPError as e:
            raise DownloadHTTPError(f"Download failed: HTTP {e.code} for {url}", url=url, status=e.code) from e
        except (urllib.error.URLError, http.client.HTTPException, socket.timeout, OSError) as e:
            raise DownloadNetworkError(f"Download failed: {e}", url=url) from e

        target_dir = dest_dir or self.layout.data_dir

        with response:
            status = getattr(response, "status", 200)
            if status is not None and status >= 400:
                raise DownloadHTTPError(f"Download failed: HTTP {status} for {url}", url=url, status=status)

            length_header = response.headers.get("Content-Length") if response.headers else None
            total = int(length_header) if length_header and length_header.isdigit() else 0
            if total and total < MIN_ARCHIVE_BYTES:
                raise ArchiveValidationError(f"File too small: {total} bytes", url=url)

            try:
                target_dir.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(prefix="node-", suffix=suffix, dir=str(target_dir))
            except OSError as e:
                raise DownloadWriteError(
                    f"Cannot create download file in {target_dir}: {e}", url=url, path=str(target_dir)
                ) from e
            tmp_path = Path(tmp_name)
            try:
                received = self._stream(response, fd, tmp_name, total, url)
            except BaseException:
                tmp_path.unlink(missing_ok=True)
                raise

        if total and received < total:
            tmp_path.unlink(missing_ok=True)
            raise DownloadTruncatedError(
                f"Download truncated: received {received} of {total} bytes", url=url, path=tmp_name
            )
        if received < MIN_ARCHIVE_BYTES:
            tmp_path.unlink(missing_ok=True)
            raise ArchiveValidationError(f"File too small: {received} bytes", url=url, path=tmp_name)

        vlog(f"Downloaded {received} bytes to {tmp_path}", self.verbose)
        return tmp_path

    @staticmethod
    def _read_chunk(response, received: int, url: str) -> bytes:
        try:
            return response.read(CHUNK_SIZE)
        except http.client.HTTPException as e:
            # IncompleteRead when a chunked body ends early
            raise DownloadTruncatedError(f"Download truncated after {received} bytes: {e!r}", url=url) from e
        except (socket.timeout, OSError) as e:
            raise DownloadNetworkError(f"Download interrupted: {e}", url=url) from e

    def _stream(self, response, fd: int, tmp_name: str, total: int, url: str) -> int:
        received = 0
        last_emit = 0.0
        # Read errors come back as ProvisionError, so OSError here is local I/O
        try:
            with os.fdopen(fd, "wb") as f:
                while True:
                    chunk = self._read_chunk(response, received, url)
                    if not chunk:
                        break
                    f.write(chunk)
                    received += len(chunk)

                    now = time.monotonic()
                    if now - last_emit >= PROGRESS_INTERVAL_SECONDS:
                        last_emit = now
                        self._emit_download_progress(received, total)
        except OSError as e:
            raise DownloadWriteError(f"Cannot write {tmp_name}: {e}", url=url, path=tmp_name) from e

        if not total or received >= total:
            self.bus.progress(Phase.RUNTIME_DOWNLOAD, "Downloading Node.js: 100%", 100.0)
        return received

    def _emit_download_progress(self, received: int, total: int) -> None:
        if total:
            percent = min(100.0, received * 100.0 / total)
            self.bus.progress(
                Phase.RUNTIME_DOWNLOAD,
                f"Downloading Node.js: {percent:.1f}% ({received // 1024 // 1024}/{total // 1024 // 1024} MB)",
                percent,
            )
        else:
            self.bus.progress(Phase.RUNTIME_DOWNLOAD, f"Downloading Node.js: {received // 1024} KB")

    def extract(self, archive: Path) -> int:
        """
        Unpack the runtime archive into the install root.

        Raises:
            ExtractionError: On corrupt archives, unsafe members or write failures
        """
        self.bus.progress(Phase.RUNTIME_EXTRACT, "Extracting Node.js")
        try:
            count = self.policy.extract_runtime(archive, self.layout.root)
        except (tarfile.TarError, zipfile.BadZipFile, ValueError, OSError) as e:
            raise ExtractionError(f"Extraction failed: {e}", path=str(archive)) from e
        vlog(f"Extracted {count} entries into {self.layout.root}", self.verbose)
        return count
