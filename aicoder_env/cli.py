"""
aicoder-env command line interface.

Usage:
    aicoder-env check [--force]          # Run an environment check pass
    aicoder-env status [--json]          # Show installed tools
    aicoder-env install TOOL             # Install one tool
    aicoder-env update TOOL              # Update one tool
    aicoder-env launch TOOL [--project DIR] [--yolo] [-- ARGS]  # Open a tool in a terminal
    aicoder-env config [--pause|--resume] [--interval DAYS]
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import replace

from .config import ConfigStore
from .events import Event, EventBus, Phase, ProgressEvent
from .installer import InstallError
from .launcher import launch_tool
from .logging_config import setup_logging
from .orchestrator import BootstrapOrchestrator
from .render import render_report, render_status_table
from .runtime import ProvisionError
from .singleflight import TimeoutWaitingForInstall
from .tools import TOOL_MAP


def _print_download_progress(event: Event) -> None:
    if isinstance(event, ProgressEvent) and event.phase is Phase.RUNTIME_DOWNLOAD:
        end = "\n" if event.percent is not None and event.percent >= 100 else ""
        print(f"\r{event.message}", end=end, file=sys.stderr, flush=True)


def _build_orchestrator(args: argparse.Namespace, bus: EventBus | None = None) -> BootstrapOrchestrator:
    return BootstrapOrchestrator(
        config_store=ConfigStore(args.config, verbose=args.verbose),
        bus=bus,
        verbose=args.verbose,
    )


def cmd_check(args: argparse.Namespace) -> int:
    """Run one environment check pass and wait for it."""
    bus = EventBus()
    if sys.stderr.isatty():
        bus.subscribe(_print_download_progress)
    orchestrator = _build_orchestrator(args, bus)

    store = orchestrator.config_store
    if not args.force and store.should_remind_check():
        print(
            "Environment checks are paused and the last check is older than "
            f"{store.load().env_check_interval_days} days. Run 'aicoder-env check --force'.",
            file=sys.stderr,
        )

    report = orchestrator.run_check_sync(force=args.force)
    if report is None:
        print("✗ Environment check did not complete", file=sys.stderr)
        return 1
    render_report(report)
    return 0 if report.success else 1


def cmd_status(args: argparse.Namespace) -> int:
    """Show where each tool is and which version it reports."""
    orchestrator = _build_orchestrator(args)
    statuses = orchestrator.check_tools_status()
    if args.json:
        payload = {
            "layout": orchestrator.layout.to_dict(),
            "tools": [s.to_dict() for s in statuses],
        }
        print(json.dumps(payload, indent=2))
    else:
        render_status_table(statuses)
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    """Install one tool into the private root."""
    orchestrator = _build_orchestrator(args)
    try:
        status = orchestrator.install_tool(args.tool)
    except (InstallError, ProvisionError, TimeoutWaitingForInstall, OSError) as e:
        print(f"✗ {e}", file=sys.stderr)
        remediation = getattr(e, "remediation", None)
        if remediation:
            print(f"  Hint: {remediation}", file=sys.stderr)
        return 1
    print(f"✓ {status.name} {status.version or '(unknown version)'} at {status.path}")
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    """Update one installed tool."""
    orchestrator = _build_orchestrator(args)
    try:
        status = orchestrator.update_tool(args.tool)
    except (InstallError, ProvisionError, TimeoutWaitingForInstall, OSError) as e:
        print(f"✗ {e}", file=sys.stderr)
        remediation = getattr(e, "remediation", None)
        if remediation:
            print(f"  Hint: {remediation}", file=sys.stderr)
        return 1
    print(f"✓ {status.name} {status.version or '(unknown version)'}")
    return 0


def cmd_launch(args: argparse.Namespace) -> int:
    """Open a tool in a new terminal window."""
    orchestrator = _build_orchestrator(args)
    tool = TOOL_MAP[args.tool]
    status = next(s for s in orchestrator.check_tools_status() if s.name == tool.name)
    if not status.installed:
        print(f"✗ {tool.name} is not installed. Run 'aicoder-env install {tool.name}'.", file=sys.stderr)
        return 1

    project = os.path.abspath(args.project) if args.project else os.getcwd()
    if not os.path.isdir(project):
        print(f"✗ Project directory does not exist: {project}", file=sys.stderr)
        return 1

    ok = launch_tool(
        status,
        orchestrator.layout,
        orchestrator.policy,
        project_dir=project,
        args=args.tool_args,
        yolo=args.yolo,
    )
    return 0 if ok else 1


def cmd_config(args: argparse.Namespace) -> int:
    """Show or change the check settings."""
    store = ConfigStore(args.config, verbose=args.verbose)
    config = store.load()
    changed = False

    if args.pause or args.resume:
        config = replace(config, pause_env_check=bool(args.pause))
        changed = True
    if args.interval is not None:
        try:
            config = config.with_check_interval(args.interval)
        except ValueError as e:
            print(f"✗ {e}", file=sys.stderr)
            return 1
        changed = True

    if changed:
        rejected = store.rejected_file(config)
        if rejected:
            print(f"✗ {rejected} could not be loaded; fix or remove it before changing settings", file=sys.stderr)
            return 1
        try:
            store.save(config)
        except OSError as e:
            print(f"✗ Failed to write {store.path}: {e}", file=sys.stderr)
            return 1

    print(json.dumps({"path": str(store.path), **config.to_dict()}, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aicoder-env",
        description="Provision a private Node.js runtime and AI coding CLIs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Only warnings and errors")
    parser.add_argument("--log-file", help="Also write a debug log to this file")
    parser.add_argument("--config", help="Config file (default: $AICODER_ENV_CONFIG or ~/.config/aicoder-env/config.yml)")

    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Run an environment check")
    check.add_argument("--force", action="store_true", help="Run even when checks are paused")
    check.set_defaults(func=cmd_check)

    status = sub.add_parser("status", help="Show installed tools")
    status.add_argument("--json", action="store_true", help="Machine-readable output")
    status.set_defaults(func=cmd_status)

    tool_names = list(TOOL_MAP)

    install = sub.add_parser("install", help="Install a tool")
    install.add_argument("tool", choices=tool_names)
    install.set_defaults(func=cmd_install)

    update = sub.add_parser("update", help="Update a tool")
    update.add_argument("tool", choices=tool_names)
    update.set_defaults(func=cmd_update)

    launch = sub.add_parser("launch", help="Open a tool in a new terminal")
    launch.add_argument("tool", choices=tool_names)
    launch.add_argument("--project", help="Working directory (default: current directory)")
    launch.add_argument("--yolo", action="store_true", help="Start the tool with its confirmation prompts disabled")
    launch.set_defaults(func=cmd_launch)

    config = sub.add_parser("config", help="Show or change check settings")
    toggle = config.add_mutually_exclusive_group()
    toggle.add_argument("--pause", action="store_true", help="Pause automatic checks")
    toggle.add_argument("--resume", action="store_true", help="Resume automatic checks")
    config.add_argument("--interval", type=int, help="Reminder interval in days (2-30)")
    config.set_defaults(func=cmd_config)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)

    # Everything after "--" goes to the launched tool untouched
    tool_args: list[str] = []
    if "--" in argv:
        split = argv.index("--")
        argv, tool_args = argv[:split], argv[split + 1:]

    args = parser.parse_args(argv)
    args.tool_args = tool_args

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)
    return args.func(args)


def run() -> None:
    """Console script wrapper."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)
