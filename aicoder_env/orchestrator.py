"""
Environment check orchestration.

One pass decides whether to run, puts the private bin directory on PATH,
makes sure a runtime exists, then walks the tool catalog installing
missing tools and updating outdated ones. Passes run on a background
thread; a trigger that arrives while a pass is active is coalesced into
at most one follow-up pass.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import MutableMapping

from .common import augment_search_path, vlog
from .config import Config, ConfigStore
from .detection import ToolStatus, get_tool_status
from .environment import Environment, detect_environment
from .events import CheckDoneEvent, EventBus, Phase
from .installer import InstallError, InstallMode, install_or_update
from .layout import InstallLayout, build_layout
from .package_managers import clear_cache, get_latest_version, resolve_npm
from .platforms import PlatformPolicy, get_platform_policy
from .runtime import ProvisionError, RuntimeProvisioner
from .singleflight import TimeoutWaitingForInstall
from .tools import Tool, all_tools, get_tool
from .versions import is_newer


logger = logging.getLogger(__name__)


class RunState(str, enum.Enum):
    IDLE = "idle"
    DECIDING = "deciding"
    PATH_SETUP = "path_setup"
    RUNTIME_CHECK = "runtime_check"
    RUNTIME_INSTALLING = "runtime_installing"
    TOOL_LOOP = "tool_loop"
    DONE = "done"
    ABORTED = "aborted"


ALLOWED_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.DECIDING}),
    RunState.DECIDING: frozenset({RunState.PATH_SETUP, RunState.DONE}),
    RunState.PATH_SETUP: frozenset({RunState.RUNTIME_CHECK}),
    RunState.RUNTIME_CHECK: frozenset({RunState.RUNTIME_INSTALLING, RunState.TOOL_LOOP, RunState.ABORTED}),
    RunState.RUNTIME_INSTALLING: frozenset({RunState.TOOL_LOOP, RunState.ABORTED}),
    RunState.TOOL_LOOP: frozenset({RunState.DONE}),
    RunState.DONE: frozenset({RunState.IDLE}),
    RunState.ABORTED: frozenset({RunState.IDLE}),
}


class InvalidTransition(RuntimeError):
    """A state change not listed in ALLOWED_TRANSITIONS was attempted."""


class ToolAction(str, enum.Enum):
    """What a pass did with one tool."""
    INSTALLED = "installed"
    UPDATED = "updated"
    UP_TO_DATE = "up_to_date"
    FAILED = "failed"
    SKIPPED_OUTSIDE_ROOT = "skipped_outside_root"
    UPDATE_CHECK_SKIPPED = "update_check_skipped"


@dataclass(frozen=True)
class ToolOutcome:
    """
    Per-tool result of one pass.

    Attributes:
        name: Tool name
        action: What happened
        version: Version after the pass (empty when unknown)
        previous_version: Version before the pass
        latest_version: Registry version, when queried
        path: Binary path
        error: Error message for FAILED or skipped outcomes
    """
    name: str
    action: ToolAction
    version: str = ""
    previous_version: str = ""
    latest_version: str = ""
    path: str = ""
    error: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "action": self.action.value,
            "version": self.version,
            "previous_version": self.previous_version,
            "latest_version": self.latest_version,
            "path": self.path,
            "error": self.error,
        }


@dataclass(frozen=True)
class CheckReport:
    """
    Summary of one orchestrator pass, carried by the CheckDoneEvent.

    Attributes:
        forced: Whether the pass ran with force (explicit or first run)
        skipped: Pass skipped because checks are paused
        aborted: Pass ended early on a runtime failure
        abort_reason: Error message when aborted
        runtime_path: Runtime binary used by the pass
        tools: Per-tool outcomes in catalog order
        duration_seconds: Wall time of the pass
    """
    forced: bool
    skipped: bool = False
    aborted: bool = False
    abort_reason: str = ""
    runtime_path: str = ""
    tools: tuple[ToolOutcome, ...] = ()
    duration_seconds: float = 0.0
    finished_at: float = field(default_factory=time.time)

    @property
    def failed_tools(self) -> list[str]:
        return [t.name for t in self.tools if t.action is ToolAction.FAILED]

    @property
    def success(self) -> bool:
        return not self.aborted and not self.failed_tools

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "forced": self.forced,
            "skipped": self.skipped,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "runtime_path": self.runtime_path,
            "tools": [t.to_dict() for t in self.tools],
            "duration_seconds": self.duration_seconds,
            "finished_at": self.finished_at,
        }


class _Abort(Exception):
    """Internal signal ending a pass in the ABORTED state."""


class BootstrapOrchestrator:
    """
    Runs environment check passes.

    All collaborators are injectable; by default the host environment is
    detected and the per-user layout and config file are used.
    """

    def __init__(
        self,
        env: Environment | None = None,
        policy: PlatformPolicy | None = None,
        layout: InstallLayout | None = None,
        config_store: ConfigStore | None = None,
        bus: EventBus | None = None,
        provisioner: RuntimeProvisioner | None = None,
        tools: list[Tool] | None = None,
        environ: MutableMapping[str, str] | None = None,
        verbose: bool = False,
    ):
        self.config_store = config_store or ConfigStore(verbose=verbose)
        config = self.config_store.load()
        self.env = env or detect_environment(language=config.language or None, verbose=verbose)
        self.policy = policy or get_platform_policy(self.env.os_name)
        self.layout = layout or build_layout(self.policy, config.install_home or None)
        self.bus = bus or EventBus()
        self.provisioner = provisioner or RuntimeProvisioner(
            self.layout, self.policy, self.env, bus=self.bus, config=config, verbose=verbose
        )
        self.tools = list(tools) if tools is not None else all_tools()
        self.environ = environ if environ is not None else os.environ
        self.verbose = verbose

        self._cond = threading.Condition()
        self._state = RunState.IDLE
        self._running = False
        self._pending = False
        self._pending_force = False
        self._last_report: CheckReport | None = None
        self._install_lock = threading.Lock()

    # State

    @property
    def state(self) -> RunState:
        with self._cond:
            return self._state

    @property
    def last_report(self) -> CheckReport | None:
        with self._cond:
            return self._last_report

    @property
    def is_running(self) -> bool:
        with self._cond:
            return self._running

    def _transition(self, new_state: RunState) -> None:
        with self._cond:
            if new_state not in ALLOWED_TRANSITIONS[self._state]:
                raise InvalidTransition(f"{self._state.value} -> {new_state.value}")
            vlog(f"State: {self._state.value} -> {new_state.value}", self.verbose)
            self._state = new_state
            self._cond.notify_all()

    # Triggers

    def run_check(self, force: bool = False) -> bool:
        """
        Start a pass on a background thread and return immediately.

        A call while a pass is running schedules at most one follow-up pass;
        force flags of coalesced calls are OR-ed together.

        Returns:
            True if a new pass was started, False if the call was coalesced
        """
        with self._cond:
            if self._running:
                self._pending = True
                self._pending_force = self._pending_force or force
                vlog("Check already running, follow-up pass scheduled", self.verbose)
                return False
            self._running = True

        worker = threading.Thread(target=self._worker, args=(force,), name="aicoder-env-check", daemon=True)
        worker.start()
        return True

    def run_check_sync(self, force: bool = False, timeout: float | None = None) -> CheckReport | None:
        """Trigger a pass and block until the orchestrator is idle again."""
        self.run_check(force)
        self.wait_idle(timeout)
        return self.last_report

    def wait_idle(self, timeout: float | None = None) -> bool:
        """
        Block until no pass is running.

        Returns:
            False if the timeout expired first
        """
        with self._cond:
            return self._cond.wait_for(lambda: not self._running, timeout)

    def _worker(self, force: bool) -> None:
        try:
            while True:
                self._run_pass(force)
                with self._cond:
                    # Checking for a pending trigger and going idle must be atomic
                    if not self._pending:
                        self._running = False
                        self._cond.notify_all()
                        return
                    force = self._pending_force
                    self._pending = False
                    self._pending_force = False
                vlog("Running coalesced follow-up pass", self.verbose)
        finally:
            with self._cond:
                if self._running:
                    self._running = False
                    self._cond.notify_all()

    # Pass

    def _run_pass(self, force: bool) -> CheckReport:
        start = time.time()
        self._transition(RunState.DECIDING)
        runtime_path = ""
        outcomes: list[ToolOutcome] = []

        try:
            config = self.config_store.load()
            if not self.layout.sentinel.exists():
                logger.info("First run detected (%s missing), forcing environment check", self.layout.sentinel)
                force = True

            if not force and config.pause_env_check:
                logger.info("Environment check paused, skipping")
                self.bus.progress(Phase.SKIPPED, "Environment check skipped")
                self._transition(RunState.DONE)
                return self._finish(CheckReport(forced=False, skipped=True, duration_seconds=time.time() - start))

            self._transition(RunState.PATH_SETUP)
            self._setup_path()

            self._transition(RunState.RUNTIME_CHECK)
            runtime_path, npm = self._check_runtime()

            self._transition(RunState.TOOL_LOOP)
            clear_cache()
            for tool in self.tools:
                try:
                    outcomes.append(self._process_tool(tool, npm, config))
                except Exception as e:
                    logger.exception("%s: check failed unexpectedly", tool.name)
                    outcomes.append(
                        ToolOutcome(name=tool.name, action=ToolAction.FAILED, error=str(e) or type(e).__name__)
                    )

        except _Abort as e:
            with self._cond:
                if self._state is not RunState.ABORTED:
                    self._state = RunState.ABORTED
            self.bus.progress(Phase.ABORTED, str(e))
            return self._finish(CheckReport(
                forced=force,
                aborted=True,
                abort_reason=str(e),
                runtime_path=runtime_path,
                tools=tuple(outcomes),
                duration_seconds=time.time() - start,
            ))
        except Exception as e:
            logger.exception("Environment check failed unexpectedly")
            with self._cond:
                self._state = RunState.ABORTED
            self.bus.progress(Phase.ABORTED, f"Environment check failed: {e}")
            return self._finish(CheckReport(
                forced=force,
                aborted=True,
                abort_reason=str(e),
                runtime_path=runtime_path,
                tools=tuple(outcomes),
                duration_seconds=time.time() - start,
            ))

        self._transition(RunState.DONE)
        try:
            self.config_store.mark_checked()
        except OSError as e:
            logger.warning("Could not record check time in %s: %s", self.config_store.path, e)

        failed = [o.name for o in outcomes if o.action is ToolAction.FAILED]
        if failed:
            logger.warning("Environment check finished with failures: %s", ", ".join(failed))
        else:
            logger.info("Environment check finished")
        self.bus.progress(Phase.DONE, "Environment check finished")
        return self._finish(CheckReport(
            forced=force,
            runtime_path=runtime_path,
            tools=tuple(outcomes),
            duration_seconds=time.time() - start,
        ))

    def _finish(self, report: CheckReport) -> CheckReport:
        with self._cond:
            self._last_report = report
        self.bus.emit(CheckDoneEvent(report=report))
        self._transition(RunState.IDLE)
        return report

    def _setup_path(self) -> None:
        self.layout.ensure()
        entries = [str(self.layout.bin_dir), *self.policy.system_bin_dirs(Path.home())]
        new_path, added = augment_search_path(self.environ.get("PATH", ""), entries)
        self.environ["PATH"] = new_path
        self.bus.progress(Phase.PATH_SETUP, "Search path updated")
        if added:
            vlog(f"Added to PATH: {', '.join(added)}", self.verbose)

    def _check_runtime(self) -> tuple[str, str]:
        self.bus.progress(Phase.RUNTIME_CHECK, "Checking Node.js runtime")
        runtime_path = self.provisioner.find_runtime()
        if runtime_path:
            logger.info("Node.js found: %s", runtime_path)
        else:
            self._transition(RunState.RUNTIME_INSTALLING)
            try:
                runtime_path = self.provisioner.ensure_runtime()
            except TimeoutWaitingForInstall as e:
                logger.error("Timed out waiting for another runtime installation: %s", e.message)
                self._transition(RunState.ABORTED)
                raise _Abort(e.message) from e
            except ProvisionError as e:
                logger.error("Node.js installation failed (%s): %s", type(e).__name__, e.message)
                self._transition(RunState.ABORTED)
                raise _Abort(e.message) from e

        npm = resolve_npm(self.layout, self.policy, self.verbose)
        if not npm:
            logger.error("npm not found after runtime check (runtime: %s)", runtime_path)
            self._transition(RunState.ABORTED)
            raise _Abort("npm not found")
        return runtime_path, npm

    def _status(self, tool: Tool, config: Config) -> ToolStatus:
        return get_tool_status(
            tool,
            self.layout,
            self.policy,
            timeout=config.preferences.probe_timeout_seconds,
            verbose=self.verbose,
        )

    def _run_installer(self, tool: Tool, mode: InstallMode, npm: str, config: Config, status: ToolStatus | None = None):
        with self._install_lock:
            return install_or_update(
                tool,
                mode,
                self.layout,
                self.env,
                self.policy,
                npm=npm,
                status=status,
                timeout=config.preferences.install_timeout_seconds,
                verbose=self.verbose,
            )

    def _process_tool(self, tool: Tool, npm: str, config: Config) -> ToolOutcome:
        self.bus.progress(Phase.TOOL_CHECK, f"Checking {tool.name}")
        status = self._status(tool, config)

        if not status.installed:
            self.bus.progress(Phase.TOOL_INSTALL, f"Installing {tool.name}")
            try:
                self._run_installer(tool, InstallMode.INSTALL, npm, config)
            except InstallError as e:
                logger.error("%s: installation failed: %s\n%s", tool.name, e.message, e.output[-2000:])
                return ToolOutcome(name=tool.name, action=ToolAction.FAILED, error=e.message)

            status = self._status(tool, config)
            if not status.installed:
                logger.error("%s: not found under %s after installation", tool.name, self.layout.root)
                return ToolOutcome(
                    name=tool.name, action=ToolAction.FAILED, error="binary not found after installation"
                )
            logger.info("%s: installed %s", tool.name, status.version or "(unknown version)")
            return ToolOutcome(name=tool.name, action=ToolAction.INSTALLED, version=status.version, path=status.path)

        if not status.inside_root:
            logger.warning("%s: %s resolves outside %s, leaving it alone", tool.name, status.resolved_path, self.layout.root)
            return ToolOutcome(
                name=tool.name,
                action=ToolAction.SKIPPED_OUTSIDE_ROOT,
                version=status.version,
                path=status.path,
                error="outside install root",
            )

        if not tool.check_updates:
            return ToolOutcome(name=tool.name, action=ToolAction.UP_TO_DATE, version=status.version, path=status.path)

        if not status.version_known:
            logger.warning("%s: version unknown, skipping update check", tool.name)
            return ToolOutcome(
                name=tool.name,
                action=ToolAction.UPDATE_CHECK_SKIPPED,
                path=status.path,
                error="version unknown",
            )

        latest = get_latest_version(
            npm,
            tool,
            self.layout,
            self.env,
            policy=self.policy,
            timeout=config.preferences.registry_timeout_seconds,
            verbose=self.verbose,
        )
        if not latest:
            return ToolOutcome(
                name=tool.name,
                action=ToolAction.UPDATE_CHECK_SKIPPED,
                version=status.version,
                path=status.path,
                error="registry query failed",
            )

        if not is_newer(latest, status.version):
            vlog(f"{tool.name}: {status.version} is current (latest {latest})", self.verbose)
            return ToolOutcome(
                name=tool.name,
                action=ToolAction.UP_TO_DATE,
                version=status.version,
                latest_version=latest,
                path=status.path,
            )

        logger.info("%s: updating %s -> %s", tool.name, status.version, latest)
        self.bus.progress(Phase.TOOL_UPDATE, f"Updating {tool.name} to {latest}")
        try:
            self._run_installer(tool, InstallMode.UPDATE, npm, config, status=status)
        except InstallError as e:
            logger.error("%s: update failed: %s\n%s", tool.name, e.message, e.output[-2000:])
            return ToolOutcome(
                name=tool.name,
                action=ToolAction.FAILED,
                version=status.version,
                previous_version=status.version,
                latest_version=latest,
                path=status.path,
                error=e.message,
            )

        updated = self._status(tool, config)
        return ToolOutcome(
            name=tool.name,
            action=ToolAction.UPDATED,
            version=updated.version,
            previous_version=status.version,
            latest_version=latest,
            path=updated.path or status.path,
        )

    # User-initiated operations

    def _require_tool(self, name: str) -> Tool:
        tool = get_tool(name)
        if tool is None:
            raise ValueError(f"Unknown tool: {name}")
        return tool

    def _require_npm(self, tool: Tool) -> str:
        self.provisioner.ensure_runtime()
        npm = resolve_npm(self.layout, self.policy, self.verbose)
        if not npm:
            raise InstallError(f"{tool.name}: npm not found", tool=tool.name)
        return npm

    def check_tools_status(self) -> list[ToolStatus]:
        """Locate and probe every catalog tool without changing anything."""
        config = self.config_store.load()
        return [self._status(tool, config) for tool in self.tools]

    def install_tool(self, name: str) -> ToolStatus:
        """
        Install one tool on demand.

        Raises:
            ValueError: Unknown tool name
            ProvisionError: The runtime could not be provisioned
            InstallError: npm failed
        """
        tool = self._require_tool(name)
        config = self.config_store.load()
        self.layout.ensure()
        npm = self._require_npm(tool)
        self._run_installer(tool, InstallMode.INSTALL, npm, config)
        status = self._status(tool, config)
        if not status.installed:
            raise InstallError(f"{tool.name}: binary not found after installation", tool=tool.name)
        return status

    def update_tool(self, name: str) -> ToolStatus:
        """
        Update one installed tool on demand.

        Raises:
            ValueError: Unknown tool name
            InstallError: Tool missing, outside the install root, or npm failed
        """
        tool = self._require_tool(name)
        config = self.config_store.load()
        status = self._status(tool, config)
        if not status.installed:
            raise InstallError(
                f"{tool.name}: not installed",
                tool=tool.name,
                remediation=f"aicoder-env install {tool.name}",
            )
        if not status.inside_root:
            raise InstallError(
                f"{tool.name}: {status.resolved_path} is outside {self.layout.root}, refusing to update",
                tool=tool.name,
            )
        npm = self._require_npm(tool)
        self._run_installer(tool, InstallMode.UPDATE, npm, config, status=status)
        return self._status(tool, config)
