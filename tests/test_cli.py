"""
Tests for the command line interface and terminal rendering
(aicoder_env/cli.py, aicoder_env/render.py).
"""

import io
import json
from unittest.mock import patch

import pytest
import yaml

from aicoder_env.cli import build_parser, main
from aicoder_env.detection import ToolStatus
from aicoder_env.installer import InstallError
from aicoder_env.orchestrator import CheckReport, ToolAction, ToolOutcome
from aicoder_env.runtime import DownloadTruncatedError
from aicoder_env.render import (
    display_width,
    format_table,
    pad,
    render_report,
    render_status_table,
    status_icon,
)


@pytest.fixture
def plain_output():
    with patch("aicoder_env.render.USE_COLOR", False), patch("aicoder_env.render.USE_EMOJI", False):
        yield


@pytest.fixture
def orchestrator():
    with patch("aicoder_env.cli.BootstrapOrchestrator") as cls:
        instance = cls.return_value
        instance.config_store.should_remind_check.return_value = False
        yield instance


class TestParser:
    """Tests for argument parsing."""

    def test_check_force(self):
        args = build_parser().parse_args(["check", "--force"])
        assert args.command == "check"
        assert args.force

    def test_verbose_and_quiet_conflict(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["-v", "-q", "status"])

    def test_unknown_tool(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["install", "vim"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCheckCommand:
    """Tests for 'aicoder-env check'."""

    def test_success(self, orchestrator, plain_output, capsys):
        orchestrator.run_check_sync.return_value = CheckReport(
            forced=True,
            tools=(ToolOutcome(name="claude", action=ToolAction.INSTALLED, version="1.0.72"),),
        )
        assert main(["-q", "check", "--force"]) == 0
        orchestrator.run_check_sync.assert_called_once_with(force=True)
        assert "claude" in capsys.readouterr().out

    def test_failure_exit_code(self, orchestrator, plain_output):
        orchestrator.run_check_sync.return_value = CheckReport(
            forced=False,
            tools=(ToolOutcome(name="codex", action=ToolAction.FAILED, error="npm install failed"),),
        )
        assert main(["-q", "check"]) == 1

    def test_reminder(self, orchestrator, plain_output, capsys):
        orchestrator.config_store.should_remind_check.return_value = True
        orchestrator.config_store.load.return_value.env_check_interval_days = 7
        orchestrator.run_check_sync.return_value = CheckReport(forced=False, skipped=True)
        assert main(["-q", "check"]) == 0
        assert "paused" in capsys.readouterr().err


class TestStatusCommand:
    """Tests for 'aicoder-env status'."""

    def test_json(self, orchestrator, capsys):
        orchestrator.layout.to_dict.return_value = {"root": "/data/tools"}
        orchestrator.check_tools_status.return_value = [
            ToolStatus(name="claude", installed=True, version="1.0.72", path="/data/tools/bin/claude"),
            ToolStatus(name="gemini", installed=False),
        ]
        assert main(["-q", "status", "--json"]) == 0

        payload = json.loads(capsys.readouterr().out)
        assert payload["layout"]["root"] == "/data/tools"
        assert [t["name"] for t in payload["tools"]] == ["claude", "gemini"]
        assert payload["tools"][0]["version"] == "1.0.72"


class TestInstallUpdateCommands:
    """Tests for 'aicoder-env install' and 'aicoder-env update'."""

    def test_install(self, orchestrator, capsys):
        orchestrator.install_tool.return_value = ToolStatus(
            name="codex", installed=True, version="0.46.0", path="/data/tools/bin/codex"
        )
        assert main(["-q", "install", "codex"]) == 0
        orchestrator.install_tool.assert_called_once_with("codex")
        assert "0.46.0" in capsys.readouterr().out

    def test_install_failure_hint(self, orchestrator, capsys):
        orchestrator.install_tool.side_effect = InstallError(
            "codex: npm not found", tool="codex", remediation="Install the Node.js runtime first"
        )
        assert main(["-q", "install", "codex"]) == 1
        err = capsys.readouterr().err
        assert "npm not found" in err
        assert "Hint: Install the Node.js runtime first" in err

    def test_install_runtime_download_failure(self, orchestrator, capsys):
        orchestrator.install_tool.side_effect = DownloadTruncatedError(
            "Download truncated after 1024 bytes: IncompleteRead(1024 bytes read)"
        )
        assert main(["-q", "install", "codex"]) == 1
        assert "Download truncated" in capsys.readouterr().err

    def test_update_refused(self, orchestrator, capsys):
        orchestrator.update_tool.side_effect = InstallError("claude: not installed", tool="claude")
        assert main(["-q", "update", "claude"]) == 1
        assert "not installed" in capsys.readouterr().err


class TestLaunchCommand:
    """Tests for 'aicoder-env launch'."""

    @patch("aicoder_env.cli.launch_tool", return_value=True)
    def test_launch(self, mock_launch, orchestrator, tmp_path):
        status = ToolStatus(name="claude", installed=True, version="1.0.72", path="/data/tools/bin/claude")
        orchestrator.check_tools_status.return_value = [status]

        assert main(["-q", "launch", "claude", "--project", str(tmp_path), "--", "--resume"]) == 0

        args, kwargs = mock_launch.call_args
        assert args[0] is status
        assert kwargs["project_dir"] == str(tmp_path)
        assert kwargs["args"] == ["--resume"]
        assert kwargs["yolo"] is False

    @patch("aicoder_env.cli.launch_tool", return_value=True)
    def test_launch_yolo(self, mock_launch, orchestrator):
        status = ToolStatus(name="gemini", installed=True, version="0.1.0", path="/data/tools/bin/gemini")
        orchestrator.check_tools_status.return_value = [status]

        assert main(["-q", "launch", "gemini", "--yolo"]) == 0
        assert mock_launch.call_args[1]["yolo"] is True

    @patch("aicoder_env.cli.launch_tool")
    def test_not_installed(self, mock_launch, orchestrator):
        orchestrator.check_tools_status.return_value = [ToolStatus(name="claude", installed=False)]
        assert main(["-q", "launch", "claude"]) == 1
        mock_launch.assert_not_called()

    @patch("aicoder_env.cli.launch_tool")
    def test_missing_project(self, mock_launch, orchestrator, tmp_path):
        orchestrator.check_tools_status.return_value = [
            ToolStatus(name="claude", installed=True, path="/data/tools/bin/claude")
        ]
        assert main(["-q", "launch", "claude", "--project", str(tmp_path / "missing")]) == 1
        mock_launch.assert_not_called()


class TestConfigCommand:
    """Tests for 'aicoder-env config'."""

    def test_show_defaults(self, tmp_path, capsys):
        path = tmp_path / "config.yml"
        assert main(["-q", "--config", str(path), "config"]) == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["pause_env_check"] is False
        assert not path.exists()

    def test_pause_and_interval(self, tmp_path):
        path = tmp_path / "config.yml"
        assert main(["-q", "--config", str(path), "config", "--pause", "--interval", "14"]) == 0
        data = yaml.safe_load(path.read_text())
        assert data["pause_env_check"] is True
        assert data["env_check_interval_days"] == 14

    def test_resume(self, tmp_path):
        path = tmp_path / "config.yml"
        main(["-q", "--config", str(path), "config", "--pause"])
        main(["-q", "--config", str(path), "config", "--resume"])
        assert yaml.safe_load(path.read_text())["pause_env_check"] is False

    def test_invalid_interval(self, tmp_path, capsys):
        path = tmp_path / "config.yml"
        assert main(["-q", "--config", str(path), "config", "--interval", "45"]) == 1
        assert not path.exists()

    def test_refuses_to_overwrite_invalid_file(self, tmp_path, capsys):
        path = tmp_path / "config.yml"
        path.write_text("install_home: /custom\npreferences:\n  probe_timeout_seconds: 0\n")

        assert main(["-q", "--config", str(path), "config", "--pause"]) == 1

        assert "could not be loaded" in capsys.readouterr().err
        assert "install_home: /custom" in path.read_text()


class TestRender:
    """Tests for table rendering."""

    def test_display_width(self):
        assert display_width("abc") == 3
        assert display_width("中文") == 4
        assert display_width("\033[32m1.0\033[0m") == 3

    def test_pad_wide_characters(self):
        assert pad("中", 4) == "中  "

    def test_format_table_alignment(self):
        lines = format_table([["claude", "1.0.72"], ["中文", "2"]], ["tool", "version"])
        assert lines[0] == "tool    version"
        assert lines[1] == "claude  1.0.72"
        assert lines[2] == "中文    2"

    def test_status_icons(self, plain_output):
        assert status_icon(ToolStatus(name="a", installed=False)) == "x"
        assert status_icon(ToolStatus(name="a", installed=True, version="1")) == "✓"
        assert status_icon(ToolStatus(name="a", installed=True)) == "?"
        assert status_icon(ToolStatus(name="a", installed=True, version="1", inside_root=False)) == "!"

    def test_status_table(self, plain_output):
        out = io.StringIO()
        render_status_table([
            ToolStatus(name="claude", installed=True, version="1.0.72", path="/r/bin/claude"),
            ToolStatus(name="iflow", installed=True, version="0.2.0", path="/r/bin/iflow",
                       resolved_path="/usr/lib/iflow", inside_root=False),
            ToolStatus(name="gemini", installed=False),
        ], out)
        text = out.getvalue()
        assert "1.0.72" in text
        assert "/r/bin/iflow -> /usr/lib/iflow" in text
        assert "not installed" in text

    def test_report(self, plain_output):
        out = io.StringIO()
        render_report(CheckReport(forced=False, tools=(
            ToolOutcome(name="claude", action=ToolAction.UPDATED, version="1.1.0", previous_version="1.0.0"),
            ToolOutcome(name="codex", action=ToolAction.FAILED, error="npm install failed"),
        )), out)
        text = out.getvalue()
        assert "1.0.0 -> 1.1.0" in text
        assert "FAILED" in text
        assert "1 updated, 1 failed" in text

    def test_skipped_report(self, plain_output):
        out = io.StringIO()
        render_report(CheckReport(forced=False, skipped=True), out)
        assert "skipped" in out.getvalue()

    def test_aborted_report(self, plain_output):
        out = io.StringIO()
        render_report(CheckReport(forced=True, aborted=True, abort_reason="npm not found"), out)
        assert "aborted: npm not found" in out.getvalue()
