"""
Tests for the check pass state machine (aicoder_env/orchestrator.py).
"""

import threading
from unittest.mock import patch

import pytest

from aicoder_env.config import Config, ConfigStore
from aicoder_env.detection import ToolStatus
from aicoder_env.environment import Environment
from aicoder_env.events import CheckDoneEvent, EventBus, Phase, ProgressEvent
from aicoder_env.installer import InstallError, InstallMode
from aicoder_env.layout import build_layout
from aicoder_env.orchestrator import (
    ALLOWED_TRANSITIONS,
    BootstrapOrchestrator,
    InvalidTransition,
    RunState,
    ToolAction,
)
from aicoder_env.platforms import LinuxPolicy
from aicoder_env.runtime import DownloadNetworkError
from aicoder_env.singleflight import TimeoutWaitingForInstall
from aicoder_env.tools import Tool, get_tool


LINUX = Environment(os_name="linux", arch="x64")


class FakeProvisioner:
    """Runtime provisioner double with an optional gate on discovery."""

    def __init__(self, existing="/data/tools/bin/node", installed="/data/tools/bin/node", error=None):
        self.existing = existing
        self.installed = installed
        self.error = error
        self.gate = None
        self.find_calls = 0
        self.ensure_calls = 0

    def find_runtime(self):
        self.find_calls += 1
        if self.gate is not None and self.find_calls == 1:
            self.gate.wait(5)
        return self.existing

    def ensure_runtime(self):
        self.ensure_calls += 1
        if self.error is not None:
            raise self.error
        return self.existing or self.installed


class Harness:
    """Scripted tool states, installer and registry behind the orchestrator."""

    def __init__(self, tmp_path):
        self.policy = LinuxPolicy()
        self.layout = build_layout(self.policy, tmp_path / "data")
        self.store = ConfigStore(tmp_path / "config" / "config.yml")
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(self.events.append)
        self.environ = {"PATH": "/usr/bin"}
        self.provisioner = FakeProvisioner()
        self.statuses = {}
        self.latest = {}
        self.status_errors = {}
        self.install_calls = []
        self.install_errors = {}
        self.install_versions = {}
        self.registry_calls = []
        self.npm = "/data/tools/bin/npm"

    def installed(self, name, version="1.0.0", inside_root=True):
        path = str(self.layout.bin_dir / name)
        self.statuses[name] = ToolStatus(
            name=name,
            installed=True,
            version=version,
            path=path,
            resolved_path=path if inside_root else f"/usr/lib/{name}",
            inside_root=inside_root,
        )

    def orchestrator(self, tools=("claude",)):
        resolved = [t if isinstance(t, Tool) else get_tool(t) for t in tools]
        return BootstrapOrchestrator(
            env=LINUX,
            policy=self.policy,
            layout=self.layout,
            config_store=self.store,
            bus=self.bus,
            provisioner=self.provisioner,
            tools=resolved,
            environ=self.environ,
        )

    # Patched collaborators

    def get_tool_status(self, tool, layout, policy, timeout=10, verbose=False):
        if tool.name in self.status_errors:
            raise self.status_errors[tool.name]
        return self.statuses.get(tool.name, ToolStatus(name=tool.name, installed=False))

    def install_or_update(self, tool, mode, layout, env, policy, npm=None, status=None, timeout=600, verbose=False):
        self.install_calls.append((tool.name, mode, status))
        if tool.name in self.install_errors:
            raise self.install_errors[tool.name]
        if tool.name in self.install_versions:
            self.installed(tool.name, self.install_versions[tool.name])

    def get_latest_version(self, npm, tool, layout, env, policy=None, timeout=30, verbose=False):
        self.registry_calls.append(tool.name)
        return self.latest.get(tool.name, "")

    def resolve_npm(self, layout, policy, verbose=False):
        return self.npm

    # Event helpers

    def done_reports(self):
        return [e.report for e in self.events if isinstance(e, CheckDoneEvent)]

    def phases(self):
        return [e.phase for e in self.events if isinstance(e, ProgressEvent)]


@pytest.fixture
def harness(tmp_path):
    h = Harness(tmp_path)
    with patch("aicoder_env.orchestrator.get_tool_status", side_effect=h.get_tool_status), \
            patch("aicoder_env.orchestrator.install_or_update", side_effect=h.install_or_update), \
            patch("aicoder_env.orchestrator.get_latest_version", side_effect=h.get_latest_version), \
            patch("aicoder_env.orchestrator.resolve_npm", side_effect=h.resolve_npm):
        yield h


def _spy_transitions(orch):
    seen = []
    real_transition = orch._transition

    def spy(state):
        seen.append(state)
        real_transition(state)

    orch._transition = spy
    return seen


class TestTransitions:
    """Tests for the state transition table."""

    def test_starts_idle(self, harness):
        assert harness.orchestrator().state is RunState.IDLE

    def test_invalid_transition(self, harness):
        orch = harness.orchestrator()
        with pytest.raises(InvalidTransition):
            orch._transition(RunState.TOOL_LOOP)

    def test_terminal_states_return_to_idle(self):
        assert ALLOWED_TRANSITIONS[RunState.DONE] == frozenset({RunState.IDLE})
        assert ALLOWED_TRANSITIONS[RunState.ABORTED] == frozenset({RunState.IDLE})

    def test_normal_pass_sequence(self, harness):
        harness.layout.ensure()
        harness.installed("claude", "1.0.0")
        orch = harness.orchestrator()
        seen = _spy_transitions(orch)
        orch.run_check_sync(timeout=10)
        assert seen == [
            RunState.DECIDING, RunState.PATH_SETUP, RunState.RUNTIME_CHECK,
            RunState.TOOL_LOOP, RunState.DONE, RunState.IDLE,
        ]
        assert orch.state is RunState.IDLE

    def test_runtime_install_sequence(self, harness):
        harness.provisioner.existing = None
        harness.installed("claude", "1.0.0")
        orch = harness.orchestrator()
        seen = _spy_transitions(orch)
        orch.run_check_sync(timeout=10)
        assert RunState.RUNTIME_INSTALLING in seen
        assert seen.index(RunState.RUNTIME_INSTALLING) < seen.index(RunState.TOOL_LOOP)


class TestDecision:
    """Tests for the skip/force decision."""

    def test_paused_skips_without_writes(self, harness, tmp_path):
        harness.layout.ensure()
        harness.store.save(Config(pause_env_check=True))
        before = sorted(p for p in tmp_path.rglob("*"))
        config_text = harness.store.path.read_text()

        report = harness.orchestrator().run_check_sync(timeout=10)

        assert report.skipped
        assert harness.phases().count(Phase.SKIPPED) == 1
        assert len(harness.done_reports()) == 1
        assert harness.provisioner.find_calls == 0
        assert harness.install_calls == []
        assert sorted(p for p in tmp_path.rglob("*")) == before
        assert harness.store.path.read_text() == config_text
        assert harness.environ["PATH"] == "/usr/bin"

    def test_paused_but_forced(self, harness):
        harness.layout.ensure()
        harness.store.save(Config(pause_env_check=True))
        harness.installed("claude", "1.0.0")
        report = harness.orchestrator().run_check_sync(force=True, timeout=10)
        assert not report.skipped
        assert report.forced

    def test_missing_sentinel_forces(self, harness):
        harness.store.save(Config(pause_env_check=True))
        harness.install_versions["claude"] = "1.0.0"
        report = harness.orchestrator().run_check_sync(timeout=10)
        assert report.forced
        assert not report.skipped
        assert harness.layout.sentinel.is_dir()

    def test_marks_check_time(self, harness):
        harness.installed("claude", "1.0.0")
        harness.orchestrator().run_check_sync(timeout=10)
        assert harness.store.load().last_check() is not None

    def test_path_setup(self, harness):
        harness.installed("claude", "1.0.0")
        harness.orchestrator().run_check_sync(timeout=10)
        assert harness.environ["PATH"].split(":")[0] == str(harness.layout.bin_dir)
        assert harness.environ["PATH"].endswith("/usr/bin")


class TestRuntimeFailures:
    """Tests for passes that abort on runtime problems."""

    def test_provision_error_aborts(self, harness):
        harness.provisioner.existing = None
        harness.provisioner.error = DownloadNetworkError("Download failed: timed out")
        orch = harness.orchestrator()

        report = orch.run_check_sync(timeout=10)

        assert report.aborted
        assert "timed out" in report.abort_reason
        assert report.tools == ()
        assert len(harness.done_reports()) == 1
        assert Phase.ABORTED in harness.phases()
        assert harness.install_calls == []
        assert harness.store.load().last_check() is None
        assert orch.state is RunState.IDLE

    def test_wait_timeout_aborts(self, harness):
        harness.provisioner.existing = None
        harness.provisioner.error = TimeoutWaitingForInstall("Timed out after 600s waiting for runtime installation")
        report = harness.orchestrator().run_check_sync(timeout=10)
        assert report.aborted
        assert len(harness.done_reports()) == 1

    def test_npm_missing_aborts(self, harness):
        harness.npm = None
        report = harness.orchestrator().run_check_sync(timeout=10)
        assert report.aborted
        assert report.abort_reason == "npm not found"
        assert len(harness.done_reports()) == 1

    def test_unexpected_error_aborts(self, harness):
        orch = harness.orchestrator()
        with patch.object(harness.provisioner, "find_runtime", side_effect=RuntimeError("boom")):
            report = orch.run_check_sync(timeout=10)
        assert report.aborted
        assert len(harness.done_reports()) == 1
        assert orch.state is RunState.IDLE


class TestToolLoop:
    """Tests for per-tool decisions."""

    def _outcome(self, report, name):
        return next(o for o in report.tools if o.name == name)

    def test_installs_missing_tool(self, harness):
        harness.install_versions["claude"] = "1.0.72"
        report = harness.orchestrator().run_check_sync(timeout=10)
        outcome = self._outcome(report, "claude")
        assert outcome.action is ToolAction.INSTALLED
        assert outcome.version == "1.0.72"
        assert harness.install_calls[0][:2] == ("claude", InstallMode.INSTALL)
        assert harness.registry_calls == []

    def test_install_failure_continues(self, harness):
        harness.install_errors["claude"] = InstallError("claude: npm install failed", tool="claude")
        harness.install_versions["gemini"] = "0.8.0"
        report = harness.orchestrator(tools=("claude", "gemini")).run_check_sync(timeout=10)
        assert self._outcome(report, "claude").action is ToolAction.FAILED
        assert self._outcome(report, "gemini").action is ToolAction.INSTALLED
        assert report.failed_tools == ["claude"]
        assert not report.success

    def test_unexpected_tool_error_continues(self, harness):
        harness.status_errors["claude"] = PermissionError(13, "Permission denied")
        harness.installed("gemini", "0.8.0")
        harness.latest["gemini"] = "0.8.0"
        report = harness.orchestrator(tools=("claude", "gemini")).run_check_sync(timeout=10)

        assert not report.aborted
        claude = self._outcome(report, "claude")
        assert claude.action is ToolAction.FAILED
        assert "Permission denied" in claude.error
        assert self._outcome(report, "gemini").action is ToolAction.UP_TO_DATE
        assert len(harness.done_reports()) == 1
        assert Phase.DONE in harness.phases()

    def test_binary_missing_after_install(self, harness):
        report = harness.orchestrator().run_check_sync(timeout=10)
        outcome = self._outcome(report, "claude")
        assert outcome.action is ToolAction.FAILED
        assert "not found" in outcome.error

    def test_outside_root_left_alone(self, harness):
        harness.installed("claude", "1.0.0", inside_root=False)
        harness.latest["claude"] = "9.9.9"
        report = harness.orchestrator().run_check_sync(timeout=10)
        assert self._outcome(report, "claude").action is ToolAction.SKIPPED_OUTSIDE_ROOT
        assert harness.install_calls == []
        assert harness.registry_calls == []

    def test_unknown_version_skips_update_check(self, harness):
        harness.installed("claude", "")
        harness.latest["claude"] = "9.9.9"
        report = harness.orchestrator().run_check_sync(timeout=10)
        assert self._outcome(report, "claude").action is ToolAction.UPDATE_CHECK_SKIPPED
        assert harness.registry_calls == []
        assert harness.install_calls == []

    def test_registry_failure_skips_update(self, harness):
        harness.installed("claude", "1.0.0")
        report = harness.orchestrator().run_check_sync(timeout=10)
        assert self._outcome(report, "claude").action is ToolAction.UPDATE_CHECK_SKIPPED
        assert harness.install_calls == []

    def test_updates_when_newer(self, harness):
        harness.installed("claude", "1.0.0")
        harness.latest["claude"] = "1.1.0"
        harness.install_versions["claude"] = "1.1.0"
        report = harness.orchestrator().run_check_sync(timeout=10)

        outcome = self._outcome(report, "claude")
        assert outcome.action is ToolAction.UPDATED
        assert outcome.previous_version == "1.0.0"
        assert outcome.version == "1.1.0"
        name, mode, status = harness.install_calls[0]
        assert mode is InstallMode.UPDATE
        assert status.version == "1.0.0"

    @pytest.mark.parametrize("latest", ["1.0.0", "0.9.0", "1.0"])
    def test_no_update_when_not_newer(self, harness, latest):
        harness.installed("claude", "1.0.0")
        harness.latest["claude"] = latest
        report = harness.orchestrator().run_check_sync(timeout=10)
        assert self._outcome(report, "claude").action is ToolAction.UP_TO_DATE
        assert harness.install_calls == []

    def test_update_failure(self, harness):
        harness.installed("claude", "1.0.0")
        harness.latest["claude"] = "2.0.0"
        harness.install_errors["claude"] = InstallError("claude: npm update failed after retry", tool="claude")
        report = harness.orchestrator().run_check_sync(timeout=10)
        outcome = self._outcome(report, "claude")
        assert outcome.action is ToolAction.FAILED
        assert outcome.version == "1.0.0"

    def test_update_checks_disabled(self, harness):
        tool = Tool(name="pinned", binary_names=("pinned",), package="pinned-cli", check_updates=False)
        harness.installed("pinned", "1.0.0")
        report = harness.orchestrator(tools=(tool,)).run_check_sync(timeout=10)
        assert self._outcome(report, "pinned").action is ToolAction.UP_TO_DATE
        assert harness.registry_calls == []

    def test_catalog_order(self, harness):
        names = ("kilo", "claude", "gemini")
        for name in names:
            harness.installed(name, "1.0.0")
        report = harness.orchestrator(tools=names).run_check_sync(timeout=10)
        assert [o.name for o in report.tools] == list(names)


class TestCoalescing:
    """Tests for trigger coalescing while a pass is running."""

    def test_at_most_one_follow_up_with_or_ed_force(self, harness):
        harness.layout.ensure()
        harness.installed("claude", "1.0.0")
        harness.provisioner.gate = threading.Event()
        orch = harness.orchestrator()

        assert orch.run_check(force=False) is True
        assert orch.is_running
        assert orch.run_check(force=False) is False
        assert orch.run_check(force=True) is False
        assert orch.run_check(force=False) is False
        harness.provisioner.gate.set()

        assert orch.wait_idle(timeout=10)
        reports = harness.done_reports()
        assert len(reports) == 2
        assert reports[0].forced is False
        assert reports[1].forced is True
        assert orch.last_report is reports[1]
        assert not orch.is_running

    def test_new_pass_after_idle(self, harness):
        harness.installed("claude", "1.0.0")
        orch = harness.orchestrator()
        orch.run_check_sync(timeout=10)
        assert orch.run_check() is True
        orch.wait_idle(timeout=10)
        assert len(harness.done_reports()) == 2


class TestManualOperations:
    """Tests for install_tool(), update_tool() and check_tools_status()."""

    def test_check_tools_status(self, harness):
        harness.installed("gemini", "0.8.2")
        statuses = harness.orchestrator(tools=("claude", "gemini")).check_tools_status()
        assert [s.installed for s in statuses] == [False, True]
        assert harness.install_calls == []

    def test_install_unknown_tool(self, harness):
        with pytest.raises(ValueError, match="Unknown tool"):
            harness.orchestrator().install_tool("nope")

    def test_install_tool(self, harness):
        harness.install_versions["codex"] = "0.46.0"
        status = harness.orchestrator().install_tool("codex")
        assert status.version == "0.46.0"
        assert harness.provisioner.ensure_calls == 1

    def test_install_tool_runtime_failure(self, harness):
        harness.provisioner.existing = None
        harness.provisioner.error = DownloadNetworkError("Download failed")
        with pytest.raises(DownloadNetworkError):
            harness.orchestrator().install_tool("codex")
        assert harness.install_calls == []

    def test_update_not_installed(self, harness):
        with pytest.raises(InstallError, match="not installed"):
            harness.orchestrator().update_tool("claude")

    def test_update_outside_root(self, harness):
        harness.installed("claude", "1.0.0", inside_root=False)
        with pytest.raises(InstallError, match="outside"):
            harness.orchestrator().update_tool("claude")
        assert harness.install_calls == []

    def test_update_tool(self, harness):
        harness.installed("claude", "1.0.0")
        harness.install_versions["claude"] = "1.2.0"
        status = harness.orchestrator().update_tool("claude")
        assert status.version == "1.2.0"
        assert harness.install_calls[0][1] is InstallMode.UPDATE
