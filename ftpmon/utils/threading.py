"""Background task helpers for ftpmon.

Provides a small wrapper around threading.Thread used for the relay's
accept loop and copy loops, with a shared cancellation event and
collected result/error.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar


T = TypeVar("T")

logger = logging.getLogger("ftpmon.threading")


class TaskStatus(Enum):
    """Status of a background task."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TaskResult(Generic[T]):
    """Result of a background task."""
    status: TaskStatus
    result: Optional[T] = None
    error: Optional[Exception] = None


class ThreadedTask(Generic[T]):
    """
    Runs a callable in a background daemon thread.

    Usage:
        def copy_loop(stop_event):
            while not stop_event.is_set():
                ...

        task = ThreadedTask(copy_loop, name="relay-copy")
        task.start()
        ...
        task.cancel()
        result = task.get_result(timeout=5)

    If the target accepts a ``stop_event`` keyword, pass ``task.stop_event``
    explicitly; cancel() only sets the event, it cannot interrupt the target.
    """

    def __init__(
        self,
        target: Callable[..., T],
        args: tuple = (),
        kwargs: Optional[dict] = None,
        name: Optional[str] = None,
        on_complete: Optional[Callable[[TaskResult[T]], None]] = None,
        stop_event: Optional[threading.Event] = None
    ):
        """
        Initialize a threaded task.

        Args:
            target: Callable to run in background
            args: Positional arguments for target
            kwargs: Keyword arguments for target
            name: Thread name (shows up in log records)
            on_complete: Callback when task finishes (called from worker thread)
            stop_event: Cancellation event to share with other tasks
        """
        self._target = target
        self._args = args
        self._kwargs = kwargs or {}
        self._name = name
        self._on_complete = on_complete

        self._thread: Optional[threading.Thread] = None
        self._result: Optional[TaskResult[T]] = None
        self._cancelled = stop_event if stop_event is not None else threading.Event()
        self._status = TaskStatus.PENDING

    @property
    def status(self) -> TaskStatus:
        """Current task status."""
        return self._status

    @property
    def is_running(self) -> bool:
        """True if task is currently running."""
        return self._status == TaskStatus.RUNNING

    @property
    def is_cancelled(self) -> bool:
        """True if task was cancelled."""
        return self._cancelled.is_set()

    @property
    def stop_event(self) -> threading.Event:
        """The cancellation event set by cancel()."""
        return self._cancelled

    def start(self) -> None:
        """Start the background task."""
        if self._status != TaskStatus.PENDING:
            raise RuntimeError("Task already started")

        self._status = TaskStatus.RUNNING
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        """Request cancellation of the task."""
        self._cancelled.set()

    def _run(self) -> None:
        """Internal method that runs in the background thread."""
        try:
            result = self._target(*self._args, **self._kwargs)

            if self._cancelled.is_set():
                self._result = TaskResult(status=TaskStatus.CANCELLED, result=result)
                self._status = TaskStatus.CANCELLED
            else:
                self._result = TaskResult(status=TaskStatus.COMPLETED, result=result)
                self._status = TaskStatus.COMPLETED

        except Exception as e:
            logger.debug(f"Task {self._name or self._target!r} failed: {e}")
            self._result = TaskResult(status=TaskStatus.FAILED, error=e)
            self._status = TaskStatus.FAILED

        if self._on_complete:
            self._on_complete(self._result)

    def get_result(self, timeout: Optional[float] = None) -> TaskResult[T]:
        """
        Wait for task completion and return result.

        Args:
            timeout: Maximum time to wait (None = forever)

        Returns:
            TaskResult with status and result/error

        Raises:
            TimeoutError: If timeout expires before task completes
        """
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                raise TimeoutError("Task did not complete within timeout")

        return self._result or TaskResult(status=TaskStatus.PENDING)
