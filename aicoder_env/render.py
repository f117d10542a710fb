"""
Terminal rendering of tool status and check reports.
"""

from __future__ import annotations

import os
import re
import sys
from typing import TextIO

from wcwidth import wcswidth

from .detection import ToolStatus
from .orchestrator import CheckReport, ToolAction


# Environment options
USE_EMOJI = os.environ.get("AICODER_ENV_EMOJI", "1") == "1"
USE_COLOR = os.environ.get("AICODER_ENV_COLOR", "1") == "1"

# ANSI color codes
GREEN = "\033[32m"
YELLOW = "\033[33m"
BLUE = "\033[34m"
RED = "\033[31m"
RESET = "\033[0m"

CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")

ACTION_LABELS = {
    ToolAction.INSTALLED: "installed",
    ToolAction.UPDATED: "updated",
    ToolAction.UP_TO_DATE: "up to date",
    ToolAction.FAILED: "FAILED",
    ToolAction.SKIPPED_OUTSIDE_ROOT: "skipped (outside install root)",
    ToolAction.UPDATE_CHECK_SKIPPED: "update check skipped",
}


def display_width(text: str) -> int:
    """Terminal columns taken by ``text``, ignoring ANSI escapes."""
    plain = CSI_RE.sub("", text)
    width = wcswidth(plain)
    # wcswidth returns -1 for non-printable characters
    return width if width >= 0 else len(plain)


def pad(text: str, width: int) -> str:
    """Left-align ``text`` to ``width`` display columns."""
    return text + " " * max(0, width - display_width(text))


def colorize(text: str, color: str) -> str:
    """Apply color to text, or return it unchanged when colors are disabled."""
    if not USE_COLOR or not text:
        return text
    return f"{color}{text}{RESET}"


def status_icon(status: ToolStatus) -> str:
    """Icon for a tool row."""
    if not status.installed:
        return "❌" if USE_EMOJI else "x"
    if not status.inside_root:
        return "⚠️" if USE_EMOJI else "!"
    if not status.version:
        return "❓" if USE_EMOJI else "?"
    return "✅" if USE_EMOJI else "✓"


def format_table(rows: list[list[str]], headers: list[str]) -> list[str]:
    """Align rows by display width, two spaces between columns."""
    widths = [display_width(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], display_width(cell))

    lines = ["  ".join(pad(h, widths[i]) for i, h in enumerate(headers)).rstrip()]
    for row in rows:
        lines.append("  ".join(pad(cell, widths[i]) for i, cell in enumerate(row)).rstrip())
    return lines


def render_status_table(statuses: list[ToolStatus], out: TextIO | None = None) -> None:
    """
    Print one row per tool: icon, name, version and path.

    Args:
        statuses: Tool statuses in catalog order
        out: Output stream (defaults to stdout)
    """
    out = out or sys.stdout
    rows = []
    for status in statuses:
        if not status.installed:
            version = colorize("not installed", BLUE)
        elif not status.version:
            version = colorize("unknown", YELLOW)
        else:
            version = colorize(status.version, GREEN)
        path = status.path
        if status.installed and not status.inside_root:
            path = f"{path} -> {status.resolved_path}"
        rows.append([status_icon(status), status.name, version, path])

    for line in format_table(rows, ["", "tool", "version", "path"]):
        print(line, file=out)


def render_report(report: CheckReport, out: TextIO | None = None) -> None:
    """Print the per-tool outcome of a check pass and a summary line."""
    out = out or sys.stdout
    if report.skipped:
        print("Environment check skipped (paused). Use --force to run it anyway.", file=out)
        return

    rows = []
    for outcome in report.tools:
        label = ACTION_LABELS.get(outcome.action, outcome.action.value)
        if outcome.action is ToolAction.FAILED:
            label = colorize(label, RED)
        elif outcome.action in (ToolAction.INSTALLED, ToolAction.UPDATED):
            label = colorize(label, GREEN)
        version = outcome.version
        if outcome.action is ToolAction.UPDATED and outcome.previous_version:
            version = f"{outcome.previous_version} -> {outcome.version}"
        rows.append([outcome.name, label, version, outcome.error])

    if rows:
        for line in format_table(rows, ["tool", "result", "version", "note"]):
            print(line, file=out)

    if report.aborted:
        print(colorize(f"\nEnvironment check aborted: {report.abort_reason}", RED), file=out)
        return

    installed = sum(1 for t in report.tools if t.action is ToolAction.INSTALLED)
    updated = sum(1 for t in report.tools if t.action is ToolAction.UPDATED)
    failed = len(report.failed_tools)
    print(
        f"\nEnvironment: {len(report.tools)} tools, {installed} installed, {updated} updated, {failed} failed",
        file=out,
    )
