"""One-shot task scheduling for refresh, retry and poll timers.

The default scheduler runs each task on a daemon ``threading.Timer``.
Callbacks receive their own task handle so they can tell whether they
were cancelled or superseded while waiting to run.
"""

from __future__ import annotations

import logging
import threading
import time

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from collections.abc import Callable


logger = logging.getLogger("sessionkeeper.scheduler")


class ScheduledTask:
    """Handle for a scheduled callback.

    Parameters
    ----------
    when : float
        Scheduler time at which the task is due.
    callback : callable
        Called as ``callback(task, *args)``.
    args : tuple
        Extra positional arguments for the callback.
    """

    def __init__(self, when: float, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        """Initialize the task handle."""
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.done = False
        self._timer: threading.Timer | None = None

    def cancel(self) -> None:
        """Cancel the task. Safe to call more than once or after it ran."""
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def run(self) -> None:
        """Run the callback unless the task was cancelled."""
        if self.cancelled or self.done:
            return
        self.done = True
        try:
            self.callback(self, *self.args)
        except Exception:
            logger.exception("Scheduled task %r failed", self.callback)

    @property
    def pending(self) -> bool:
        """Whether the task is still waiting to run."""
        return not (self.cancelled or self.done)


class Scheduler(ABC):
    """Abstract one-shot task scheduler."""

    @abstractmethod
    def now(self) -> float:
        """Current scheduler time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ScheduledTask:
        """Schedule ``callback(task, *args)`` to run after ``delay`` seconds.

        Parameters
        ----------
        delay : float
            Seconds to wait; negative values run as soon as possible.
        callback : callable
            Receives the returned task handle as first argument.
        *args : Any
            Extra arguments for the callback.

        Returns
        -------
        ScheduledTask
            Handle used to cancel the task.
        """


class TimerScheduler(Scheduler):
    """Scheduler backed by daemon ``threading.Timer`` threads."""

    def now(self) -> float:
        """Monotonic clock."""
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ScheduledTask:
        """Start a daemon timer for the callback."""
        delay = max(delay, 0.0)
        task = ScheduledTask(self.now() + delay, callback, args)
        timer = threading.Timer(delay, task.run)
        timer.daemon = True
        task._timer = timer  # noqa: SLF001
        timer.start()
        return task
