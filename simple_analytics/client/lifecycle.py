"""Host lifecycle hooks — suspension, termination and background work tokens."""

import atexit
import threading
from abc import ABC, abstractmethod

from simple_analytics.utils.logging import setup_logging

logger = setup_logging("analytics-lifecycle")


class LifecycleSignal(ABC):
    """Receives the host application's suspend/terminate notifications.

    Each host platform wires its own notifications to these two methods.
    """

    @abstractmethod
    def on_will_suspend(self) -> None:
        ...

    @abstractmethod
    def on_will_terminate(self) -> None:
        ...


class BackgroundTask:
    """
    Token a host holds open while a dismissal-time submission is running.

    begin() marks work as outstanding, end() concludes it; wait() lets the
    host block (with a timeout) until the work has concluded.
    """

    def __init__(self, name: str = "Submit Analytics Data"):
        self.name = name
        self._done = threading.Event()
        self._done.set()

    @property
    def active(self) -> bool:
        return not self._done.is_set()

    def begin(self) -> None:
        self._done.clear()
        logger.debug("background_task_started", task=self.name)

    def end(self) -> None:
        if self._done.is_set():
            return
        self._done.set()
        logger.debug("background_task_ended", task=self.name)

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)


def install_shutdown_hook(analytics, persist: bool = True) -> None:
    """Register analytics.shutdown() to run at interpreter exit."""

    def _shutdown():
        logger.info("shutdown_hook_running", persist=persist)
        analytics.shutdown(persist=persist)

    atexit.register(_shutdown)
