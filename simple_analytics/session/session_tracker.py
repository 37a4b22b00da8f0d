"""Session tracker — groups recorded events into idle-bounded sessions."""

import threading
import time
import uuid
from datetime import datetime
from typing import Callable, Optional

from simple_analytics.utils.logging import setup_logging
from simple_analytics.utils.schemas import local_now

logger = setup_logging("session-tracker")

DEFAULT_IDLE_TIMEOUT = 600.0


def _new_session_id() -> str:
    return str(uuid.uuid4()).upper()


class SessionTracker:
    """
    Owns the current session id and its idle deadline.

    A session starts on the first event recorded while none is active (or
    explicitly through start_session) and ends when the idle deadline passes,
    when end_session is called, or when the host app is dismissed. The
    deadline is re-armed by every recorded event. With use_timer enabled a
    single timer per session wakes at the deadline, re-schedules itself if
    the deadline has moved and otherwise ends the session; the
    deadline is also checked in ensure_session, so an expired session is never
    extended even if the timer has not run yet.
    """

    def __init__(
        self,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = _new_session_id,
        use_timer: bool = True,
    ):
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._id_factory = id_factory
        self._use_timer = use_timer
        self._lock = threading.Lock()
        self._session_id: Optional[str] = None
        self._started_at: Optional[datetime] = None
        self._deadline: Optional[float] = None
        self._timer: Optional[threading.Timer] = None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def started_at(self) -> Optional[datetime]:
        return self._started_at

    @property
    def is_active(self) -> bool:
        return self._session_id is not None

    def start_session(self) -> str:
        with self._lock:
            return self._start_unsafe()

    def ensure_session(self) -> str:
        """Return the active session id, starting a new session if needed."""
        with self._lock:
            if self._session_id is not None and self._expired_unsafe():
                self._end_unsafe(reason="idle_timeout")
            if self._session_id is None:
                return self._start_unsafe()
            return self._session_id

    def note_activity(self) -> None:
        with self._lock:
            if self._session_id is not None:
                self._arm_unsafe()

    def touch(self) -> str:
        """Ensure a session and push its idle deadline out, as one step."""
        with self._lock:
            if self._session_id is not None and self._expired_unsafe():
                self._end_unsafe(reason="idle_timeout")
            if self._session_id is None:
                return self._start_unsafe()
            self._arm_unsafe()
            return self._session_id

    def end_session(self, reason: str = "explicit") -> None:
        with self._lock:
            self._end_unsafe(reason=reason)

    # ── internals (caller must hold lock) ───────────────────────────────

    def _start_unsafe(self) -> str:
        if self._session_id is not None:
            self._end_unsafe(reason="restarted")
        self._session_id = self._id_factory()
        self._started_at = local_now()
        self._arm_unsafe()
        logger.info("session_started", session_id=self._session_id)
        return self._session_id

    def _end_unsafe(self, reason: str) -> None:
        self._cancel_timer_unsafe()
        self._deadline = None
        if self._session_id is None:
            return
        logger.info("session_ended", session_id=self._session_id, reason=reason)
        self._session_id = None
        self._started_at = None

    def _expired_unsafe(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline

    def _arm_unsafe(self) -> None:
        self._deadline = self._clock() + self.idle_timeout
        # A running timer re-checks the deadline when it fires.
        if self._use_timer and self._timer is None:
            self._schedule_unsafe(self.idle_timeout)

    def _schedule_unsafe(self, delay: float) -> None:
        timer = threading.Timer(delay, self._on_idle_timer)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer_unsafe(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_idle_timer(self) -> None:
        with self._lock:
            # Ending the session replaces the timer; stale ones do nothing.
            if threading.current_thread() is not self._timer:
                return
            self._timer = None
            if self._session_id is None or self._deadline is None:
                return
            remaining = self._deadline - self._clock()
            if remaining > 0:
                self._schedule_unsafe(remaining)
                return
            self._end_unsafe(reason="idle_timeout")
