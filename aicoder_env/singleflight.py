"""
Single-flight execution.

Concurrent callers of ``SingleFlight.do`` share one execution of the work
function: the first caller runs it, later callers block on a condition
variable until it finishes and then observe the same result or exception.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable


class TimeoutWaitingForInstall(Exception):
    """A waiter gave up before the in-flight execution finished."""

    def __init__(self, message: str, waited_seconds: float = 0.0):
        super().__init__(message)
        self.message = message
        self.waited_seconds = waited_seconds


class SingleFlight:
    """
    Coalesce concurrent executions of the same work.

    Each execution is one generation. Waiters remember the generation they
    joined, so a waiter woken after a newer execution started still gets
    the outcome of the one it waited for. An outcome is kept only while
    waiters of its generation have not read it yet.
    """

    def __init__(self, wait_timeout: float = 600.0, name: str = "operation"):
        self.wait_timeout = wait_timeout
        self.name = name
        self._cond = threading.Condition()
        self._in_flight = False
        self._generation = 0
        self._outcomes: dict[int, tuple[Any, BaseException | None]] = {}
        self._waiting: dict[int, int] = {}

    @property
    def in_flight(self) -> bool:
        with self._cond:
            return self._in_flight

    def do(self, fn: Callable[[], Any]) -> Any:
        """
        Run ``fn`` unless an execution is already in flight, then share its outcome.

        Raises:
            TimeoutWaitingForInstall: If waiting for another caller's
                execution exceeded ``wait_timeout``
            Exception: Whatever ``fn`` raised, re-raised in every caller
        """
        with self._cond:
            if self._in_flight:
                generation = self._generation
                self._waiting[generation] = self._waiting.get(generation, 0) + 1
                try:
                    outcome = self._wait_for(generation)
                finally:
                    self._leave(generation)
                return self._unwrap(outcome)

            self._in_flight = True
            self._generation += 1
            generation = self._generation

        outcome: tuple[Any, BaseException | None]
        try:
            outcome = (fn(), None)
        except BaseException as e:
            outcome = (None, e)

        with self._cond:
            if self._waiting.get(generation):
                self._outcomes[generation] = outcome
            self._in_flight = False
            self._cond.notify_all()

        return self._unwrap(outcome)

    def _wait_for(self, generation: int) -> tuple[Any, BaseException | None]:
        # Caller holds self._cond
        deadline = time.monotonic() + self.wait_timeout
        while generation not in self._outcomes:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutWaitingForInstall(
                    f"Timed out after {self.wait_timeout}s waiting for {self.name}",
                    waited_seconds=self.wait_timeout,
                )
            self._cond.wait(remaining)
        return self._outcomes[generation]

    def _leave(self, generation: int) -> None:
        # Caller holds self._cond; the last waiter drops the outcome
        self._waiting[generation] -= 1
        if self._waiting[generation] <= 0:
            del self._waiting[generation]
            self._outcomes.pop(generation, None)

    @staticmethod
    def _unwrap(outcome: tuple[Any, BaseException | None]) -> Any:
        value, error = outcome
        if error is not None:
            raise error
        return value
