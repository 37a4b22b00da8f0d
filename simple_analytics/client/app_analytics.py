"""AppAnalytics — the host-facing analytics client.

Usage:
    analytics = AppAnalytics(endpoint="https://collector.example.com/events",
                             app_name="My App", app_version="2.4.1")
    analytics.restore_persisted_contents()
    analytics.add_item("open file", {"kind": "pdf"})
    ...
    analytics.shutdown()

The host constructs one instance and keeps it for the life of the process;
there is no module-level singleton.
"""

from concurrent.futures import Future
from typing import Mapping, Optional

import httpx

from simple_analytics.batch.buffer_engine import (
    DEFAULT_FAILURE_PENALTY,
    DEFAULT_MAX_BATCH_SIZE,
    BufferEngine,
)
from simple_analytics.client.lifecycle import BackgroundTask, LifecycleSignal
from simple_analytics.ingestion.submitter import HttpSubmitter, Submitter
from simple_analytics.session.session_tracker import DEFAULT_IDLE_TIMEOUT, SessionTracker
from simple_analytics.storage.persistence import FileStore, PersistenceStore
from simple_analytics.utils.config import DEFAULTS, load_config
from simple_analytics.utils.device import (
    default_platform,
    default_system_version,
    load_or_create_device_id,
)
from simple_analytics.utils.logging import setup_logging
from simple_analytics.utils.schemas import AppMetadata

logger = setup_logging("app-analytics")

APP_NAME_FALLBACK = "App name N/A"
APP_VERSION_FALLBACK = "App version N/A"


class AppAnalytics(LifecycleSignal):
    """Records analytics events and submits them to your collector in batches."""

    def __init__(
        self,
        endpoint: str = "",
        app_name: str = "",
        app_version: str = "",
        *,
        submitter: Optional[Submitter] = None,
        store: Optional[PersistenceStore] = None,
        sessions: Optional[SessionTracker] = None,
        device_id: Optional[str] = None,
        device_id_path: Optional[str] = None,
        platform: Optional[str] = None,
        system_version: Optional[str] = None,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        failure_penalty: int = DEFAULT_FAILURE_PENALTY,
        session_timeout: float = DEFAULT_IDLE_TIMEOUT,
        submit_at_dismiss: bool = True,
        submit_workers: int = 1,
        request_timeout: float = 30.0,
        http_client: Optional[httpx.Client] = None,
    ):
        if device_id is None:
            device_id = load_or_create_device_id(device_id_path or DEFAULTS["device"]["id_path"])
        self.metadata = AppMetadata(
            device_id=device_id,
            app_name=app_name or APP_NAME_FALLBACK,
            app_version=app_version or APP_VERSION_FALLBACK,
            platform=platform or default_platform(),
            system_version=system_version or default_system_version(),
        )
        self._endpoint = endpoint
        self.submitter = submitter or HttpSubmitter(
            endpoint, self.metadata, request_timeout=request_timeout, client=http_client
        )
        self.store = store or FileStore()
        self.sessions = sessions or SessionTracker(idle_timeout=session_timeout)
        self.background_task = BackgroundTask()
        self.submit_at_dismiss = submit_at_dismiss
        self.engine = BufferEngine(
            self.submitter,
            self.metadata,
            sessions=self.sessions,
            max_batch_size=max_batch_size,
            failure_penalty=failure_penalty,
            submit_workers=submit_workers,
        )
        self._shut_down = False

    @classmethod
    def from_config(cls, config_path: Optional[str] = None, **overrides) -> "AppAnalytics":
        """Build a client from the YAML configuration (see config/analytics.yml)."""
        cfg = load_config(config_path)
        persistence = cfg["persistence"]
        session = cfg["session"]
        kwargs = dict(
            endpoint=str(cfg["collector"]["endpoint"] or ""),
            app_name=str(cfg["app"]["name"] or ""),
            app_version=str(cfg["app"]["version"] or ""),
            platform=cfg["app"]["platform"],
            device_id_path=cfg["device"]["id_path"],
            store=FileStore(directory=persistence["directory"], name=persistence["name"]),
            sessions=SessionTracker(
                idle_timeout=float(session["idle_timeout_seconds"]),
                use_timer=bool(session["use_timer"]),
            ),
            max_batch_size=int(cfg["buffer"]["max_batch_size"]),
            failure_penalty=int(cfg["buffer"]["failure_penalty"]),
            submit_workers=int(cfg["buffer"]["submit_workers"]),
            submit_at_dismiss=bool(cfg["app"]["submit_at_dismiss"]),
            request_timeout=float(cfg["collector"]["request_timeout_seconds"]),
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    # ── Public & accessible properties ───────────────────────────────

    @property
    def item_count(self) -> int:
        """Count of all items waiting to be submitted."""
        return self.engine.pending_count

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def app_name(self) -> str:
        return self.metadata.app_name

    @property
    def platform(self) -> str:
        return self.metadata.platform

    # ── Recording analytics data ─────────────────────────────────────

    def add_item(self, event_name: str, event_details: Optional[Mapping[str, str]] = None) -> None:
        """
        Record an event.

        Args:
            event_name: What happened (an action or user interaction)
            event_details: Optional string-to-string details for finer analysis
        """
        self.engine.record(event_name, event_details)

    def add_user_prop(self, key: str, value: str) -> None:
        """Attach a user property to every event recorded from now on."""
        self.engine.set_user_property(key, value)

    # ── Configuring output and behavior ──────────────────────────────

    def set_endpoint(self, url: str) -> None:
        self._endpoint = url
        if isinstance(self.submitter, HttpSubmitter):
            self.submitter.endpoint = url

    def set_platform(self, platform_name: str) -> None:
        """Override the detected platform name (e.g. for a hybrid environment)."""
        self.metadata.platform = platform_name

    def set_app_version(self, version: str) -> None:
        self.metadata.app_version = version

    def set_max_item_count(self, count: int) -> None:
        """
        Set the base number of items to accumulate before submitting.

        The threshold grows by the failure increment after each failed
        submission and returns to this value after the next success.
        """
        self.engine.set_max_batch_size(count)

    def set_submit_failure_increment(self, increment: int) -> None:
        """Set how much a failed submission raises the threshold before the next attempt."""
        self.engine.set_failure_penalty(increment)

    def override_submit_at_dismiss(self, should_submit: bool) -> None:
        """
        Enable or disable submitting pending items when the host app is
        suspended or terminated. Hosts that persist contents at dismissal
        should disable it to avoid sending the same items twice.
        """
        self.submit_at_dismiss = should_submit

    # ── Submitting data and persistence support ──────────────────────

    def submit_now(self) -> Optional[Future]:
        """Submit all pending items immediately, regardless of the threshold."""
        return self.engine.flush()

    def persist_contents(self) -> bool:
        """Write the pending items to the persistence store."""
        blob = self.engine.snapshot_for_persistence()
        try:
            self.store.clear()
            self.store.save(blob)
        except OSError as e:
            logger.error("persist_failed", error=str(e))
            return False
        return True

    def restore_persisted_contents(self) -> int:
        """
        Merge previously persisted items back into the pending queue.

        The stored snapshot is removed once read, so it is never restored
        twice. Returns the number of items restored.
        """
        try:
            blob = self.store.load()
        except OSError as e:
            logger.error("persisted_read_failed", error=str(e))
            return 0
        if blob is None:
            return 0
        try:
            self.store.clear()
        except OSError as e:
            logger.warning("persisted_clear_failed", error=str(e))
        return self.engine.restore_from_persistence(blob)

    # ── Sessions ─────────────────────────────────────────────────────

    def start_session(self) -> str:
        return self.sessions.start_session()

    def end_session(self) -> None:
        self.sessions.end_session()

    # ── Lifecycle ────────────────────────────────────────────────────

    def on_will_suspend(self) -> None:
        self._handle_dismissal("suspend")

    def on_will_terminate(self) -> None:
        self._handle_dismissal("terminate")

    def wait_for_background_task(self, timeout: Optional[float] = None) -> bool:
        return self.background_task.wait(timeout)

    def _handle_dismissal(self, reason: str) -> None:
        self.sessions.end_session(reason=reason)
        if not self.submit_at_dismiss:
            return
        self.background_task.begin()
        future = self.engine.flush()
        if future is None:
            self.background_task.end()
            return
        # Only the batch sent at dismissal concludes the task, not an earlier flush.
        future.add_done_callback(lambda _: self.background_task.end())

    def shutdown(self, persist: bool = True, wait: bool = True) -> None:
        """
        Stop the client. With persist set, anything still pending after
        in-flight submissions conclude is written to the persistence store.
        """
        if self._shut_down:
            return
        self._shut_down = True
        self.sessions.end_session(reason="shutdown")
        self.engine.shutdown(wait=wait)
        if persist and self.engine.pending_count:
            self.persist_contents()
        logger.info("analytics_shutdown", pending=self.engine.pending_count, persisted=persist)
