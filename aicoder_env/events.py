"""
Typed event stream consumed by the UI collaborator.

Events are fire-and-forget: the bus keeps no history, applies no
backpressure, and drops events when nobody is subscribed.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Union


logger = logging.getLogger(__name__)


class Phase(str, enum.Enum):
    """Lifecycle phase a progress event belongs to."""
    SKIPPED = "skipped"
    PATH_SETUP = "path_setup"
    RUNTIME_CHECK = "runtime_check"
    RUNTIME_DOWNLOAD = "runtime_download"
    RUNTIME_EXTRACT = "runtime_extract"
    TOOL_CHECK = "tool_check"
    TOOL_INSTALL = "tool_install"
    TOOL_UPDATE = "tool_update"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ProgressEvent:
    """
    Free-form progress notification.

    Attributes:
        phase: Lifecycle phase
        message: Human-readable message (untranslated)
        percent: Completion percentage for measurable work (downloads)
    """
    phase: Phase
    message: str
    percent: float | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "phase": self.phase.value,
            "message": self.message,
            "percent": self.percent,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class LogLine:
    """A log record forwarded to the UI."""
    level: str
    message: str
    logger_name: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "level": self.level,
            "message": self.message,
            "logger": self.logger_name,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class CheckDoneEvent:
    """Terminal event emitted exactly once per orchestrator pass."""
    report: Any  # orchestrator.CheckReport

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {"report": self.report.to_dict() if self.report is not None else None}


Event = Union[ProgressEvent, LogLine, CheckDoneEvent]
Subscriber = Callable[[Event], None]


class EventBus:
    """
    Thread-safe publish/subscribe hub.

    Subscribers are called synchronously on the emitting thread. A failing
    subscriber is logged and does not prevent delivery to the others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns:
            Function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def has_subscribers(self) -> bool:
        with self._lock:
            return bool(self._subscribers)

    def emit(self, event: Event) -> None:
        """Deliver an event to current subscribers, or drop it."""
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber %r failed", callback)

    def progress(self, phase: Phase, message: str, percent: float | None = None) -> None:
        """Convenience wrapper emitting a ProgressEvent."""
        self.emit(ProgressEvent(phase=phase, message=message, percent=percent))


class EventLogHandler(logging.Handler):
    """
    Logging handler that republishes records as ``LogLine`` events.

    Records from this module are not forwarded, so a failing subscriber
    cannot feed its own error report back into the bus.
    """

    def __init__(self, bus: EventBus):
        super().__init__()
        self.bus = bus

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == __name__:
            return
        try:
            message = record.getMessage()
        except Exception:
            self.handleError(record)
            return
        self.bus.emit(LogLine(
            level=record.levelname,
            message=message,
            logger_name=record.name,
            timestamp=record.created,
        ))
