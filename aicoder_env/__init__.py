"""
aicoder-env - Private runtime and AI coding CLI provisioning.

Core Modules:
- Foundation: Environment detection, config, platform policies, install layout
- Detection: Tool location inside the install root, version probing
- Installation: npm installs with an enumerated retry policy, runtime download
- Orchestration: Check passes, single-flight runtime install, progress events
"""

__version__ = "1.0.0"

# Version info for backward compatibility
VERSION = __version__

# Foundation
from .environment import Environment, detect_environment
from .config import Config, ConfigStore, Preferences, load_config_file
from .platforms import PlatformPolicy, LinuxPolicy, DarwinPolicy, WindowsPolicy, get_platform_policy
from .layout import InstallLayout, build_layout
from .tools import Tool, UpdateStrategy, TOOLS, all_tools, filter_tools, get_tool
from .versions import compare_versions, is_newer

# Detection
from .detection import (
    Located,
    ToolStatus,
    ProbeError,
    ExecutionFailed,
    UnrecognizedFormat,
    locate_tool,
    parse_version_output,
    probe_version,
    get_tool_status,
)

# Installation
from .package_managers import resolve_npm, get_latest_version
from .installer import (
    CommandResult,
    InstallError,
    InstallMode,
    RETRYABLE_SIGNATURES,
    classify_failure,
    install_or_update,
)
from .runtime import (
    RuntimeProvisioner,
    ProvisionError,
    DownloadNetworkError,
    DownloadHTTPError,
    DownloadTruncatedError,
    DownloadWriteError,
    ArchiveValidationError,
    ExtractionError,
    PostInstallMissing,
)
from .singleflight import SingleFlight, TimeoutWaitingForInstall

# Orchestration
from .events import EventBus, Phase, ProgressEvent, LogLine, CheckDoneEvent
from .orchestrator import (
    BootstrapOrchestrator,
    CheckReport,
    ToolOutcome,
    ToolAction,
    RunState,
    ALLOWED_TRANSITIONS,
)

# Logging configuration
from .logging_config import (
    setup_logging,
    get_logger,
    attach_event_bus,
    detach_event_bus,
)

__all__ = [
    # Version
    "__version__",
    "VERSION",
    # Foundation
    "Environment",
    "detect_environment",
    "Config",
    "ConfigStore",
    "Preferences",
    "load_config_file",
    "PlatformPolicy",
    "LinuxPolicy",
    "DarwinPolicy",
    "WindowsPolicy",
    "get_platform_policy",
    "InstallLayout",
    "build_layout",
    "Tool",
    "UpdateStrategy",
    "TOOLS",
    "all_tools",
    "filter_tools",
    "get_tool",
    "compare_versions",
    "is_newer",
    # Detection
    "Located",
    "ToolStatus",
    "ProbeError",
    "ExecutionFailed",
    "UnrecognizedFormat",
    "locate_tool",
    "parse_version_output",
    "probe_version",
    "get_tool_status",
    # Installation
    "resolve_npm",
    "get_latest_version",
    "CommandResult",
    "InstallError",
    "InstallMode",
    "RETRYABLE_SIGNATURES",
    "classify_failure",
    "install_or_update",
    "RuntimeProvisioner",
    "ProvisionError",
    "DownloadNetworkError",
    "DownloadHTTPError",
    "DownloadTruncatedError",
    "DownloadWriteError",
    "ArchiveValidationError",
    "ExtractionError",
    "PostInstallMissing",
    "SingleFlight",
    "TimeoutWaitingForInstall",
    # Orchestration
    "EventBus",
    "Phase",
    "ProgressEvent",
    "LogLine",
    "CheckDoneEvent",
    "BootstrapOrchestrator",
    "CheckReport",
    "ToolOutcome",
    "ToolAction",
    "RunState",
    "ALLOWED_TRANSITIONS",
    # Logging
    "setup_logging",
    "get_logger",
    "attach_event_bus",
    "detach_event_bus",
]
