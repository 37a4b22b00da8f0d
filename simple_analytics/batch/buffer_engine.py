"""Buffer engine — accumulates events and flushes them to the collector in batches.

Flush policy:
  * a flush is triggered when the pending count reaches the active threshold,
    or on demand through flush();
  * the pending queue is detached into a batch before the batch is handed to
    the submitter, so events recorded while a submission is in flight land
    in a fresh queue;
  * a delivered batch resets the threshold to its base value;
  * a failed batch is put back in front of the queue and the threshold is
    raised by the failure penalty, which delays the next automatic attempt.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Mapping, Optional

from pydantic import ValidationError
from prometheus_client import Counter, Gauge

from simple_analytics.ingestion.submitter import Delivered, Failed, SubmitOutcome, Submitter
from simple_analytics.session.session_tracker import SessionTracker
from simple_analytics.utils.logging import setup_logging
from simple_analytics.utils.schemas import AppMetadata, EventRecord, PersistenceModel, local_now

logger = setup_logging("buffer-engine")

DEFAULT_MAX_BATCH_SIZE = 100
DEFAULT_FAILURE_PENALTY = 20

# --- Prometheus Metrics ---
EVENTS_RECORDED = Counter(
    "analytics_events_recorded_total",
    "Total events recorded into the buffer",
)
FLUSH_ATTEMPTS = Counter(
    "analytics_flush_attempts_total",
    "Batches handed to the submitter",
)
FLUSH_OUTCOMES = Counter(
    "analytics_flush_outcomes_total",
    "Flush outcomes by result",
    ["result"],
)
PENDING_EVENTS = Gauge(
    "analytics_pending_events",
    "Events waiting in the buffer",
)
BATCH_THRESHOLD = Gauge(
    "analytics_batch_threshold",
    "Pending count that triggers the next automatic flush",
)


def _content_hash(items: list[EventRecord]) -> int:
    return hash(tuple(item.key for item in items))


class BufferEngine:
    """
    Owns the pending queue and the adaptive flush threshold.

    All queue and threshold mutations (record, outcome application, restore,
    configuration) run under one lock. Submissions run on a worker pool so the
    caller of record() never waits on the network.
    """

    def __init__(
        self,
        submitter: Submitter,
        metadata: AppMetadata,
        sessions: Optional[SessionTracker] = None,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        failure_penalty: int = DEFAULT_FAILURE_PENALTY,
        submit_workers: int = 1,
        clock: Callable[[], datetime] = local_now,
        on_settled: Optional[Callable[[], None]] = None,
    ):
        self.submitter = submitter
        self.metadata = metadata
        self.sessions = sessions or SessionTracker()
        self.on_settled = on_settled
        self._clock = clock
        self._lock = threading.RLock()
        self._pending: list[EventRecord] = []
        self._user_props: dict[str, str] = {}
        self._last_timestamp: Optional[datetime] = None
        self._closed = False
        self._executor = ThreadPoolExecutor(
            max_workers=submit_workers, thread_name_prefix="analytics-submit"
        )

        self._check_batch_size(max_batch_size)
        self._check_penalty(failure_penalty)
        self._base_threshold = max_batch_size
        self._threshold = max_batch_size
        self._failure_penalty = failure_penalty
        BATCH_THRESHOLD.set(self._threshold)

    # ── Read accessors ───────────────────────────────────────────────

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def base_threshold(self) -> int:
        return self._base_threshold

    @property
    def failure_penalty(self) -> int:
        return self._failure_penalty

    def pending_items(self) -> list[EventRecord]:
        with self._lock:
            return list(self._pending)

    def user_properties(self) -> dict[str, str]:
        with self._lock:
            return dict(self._user_props)

    # ── Configuration ────────────────────────────────────────────────

    def set_max_batch_size(self, count: int) -> None:
        """Set both the active threshold and the value it resets to after a success."""
        self._check_batch_size(count)
        with self._lock:
            self._base_threshold = count
            self._threshold = count
            BATCH_THRESHOLD.set(count)

    def set_failure_penalty(self, increment: int) -> None:
        self._check_penalty(increment)
        with self._lock:
            self._failure_penalty = increment

    def set_user_property(self, key: str, value: str) -> None:
        with self._lock:
            self._user_props[key] = value

    # ── Recording & flushing ─────────────────────────────────────────

    def record(self, event_name: str, details: Optional[Mapping[str, str]] = None) -> None:
        """Append an event to the pending queue, flushing if the threshold is reached."""
        with self._lock:
            session_id = self.sessions.touch()
            try:
                item = EventRecord(
                    event_name=event_name,
                    timestamp=self._next_timestamp(),
                    event_details=dict(details) if details is not None else None,
                    session_id=session_id,
                    device_id=self.metadata.device_id,
                    app_name=self.metadata.app_name,
                    app_version=self.metadata.app_version,
                    platform=self.metadata.platform,
                    system_version=self.metadata.system_version,
                    user_props=dict(self._user_props),
                )
            except ValidationError as e:
                logger.error("event_rejected", event_name=event_name, error=str(e))
                return

            self._pending.append(item)
            EVENTS_RECORDED.inc()
            PENDING_EVENTS.set(len(self._pending))

            if len(self._pending) >= self._threshold:
                self._flush_unsafe()

    def flush(self) -> Optional[Future]:
        """
        Detach the pending queue and submit it in the background.

        Returns a future resolving to the submit outcome once it has been
        applied to the queue, or None when there was nothing to send.
        """
        with self._lock:
            future = self._flush_unsafe()
        if future is None:
            self._settle()
        return future

    def _flush_unsafe(self) -> Optional[Future]:
        if not self._pending:
            logger.debug("nothing_to_submit")
            return None
        if self._closed:
            logger.warning("flush_after_shutdown", pending=len(self._pending))
            return None

        batch = self._pending
        self._pending = []
        PENDING_EVENTS.set(0)
        try:
            future = self._executor.submit(self._deliver, batch)
        except RuntimeError as e:
            # Raised once the pool or the interpreter is shutting down.
            self._pending[:0] = batch
            PENDING_EVENTS.set(len(self._pending))
            logger.warning("flush_rejected", items=len(batch), error=str(e))
            return None
        FLUSH_ATTEMPTS.inc()
        logger.info("flush_started", items=len(batch), threshold=self._threshold)
        return future

    def _deliver(self, batch: list[EventRecord]) -> SubmitOutcome:
        try:
            outcome = self.submitter.submit(batch)
        except Exception as e:
            logger.error("submitter_raised", error=str(e), items=len(batch))
            outcome = Failed(batch=batch, reason="exception")

        try:
            self._apply_outcome(outcome, batch)
        finally:
            self._settle()
        return outcome

    def _apply_outcome(self, outcome: SubmitOutcome, batch: list[EventRecord]) -> None:
        with self._lock:
            if isinstance(outcome, Delivered):
                self._threshold = self._base_threshold
                FLUSH_OUTCOMES.labels(result="delivered").inc()
                logger.info("submission_succeeded", items=len(batch), message=outcome.message)
            else:
                # The engine owns the in-flight batch; restore it rather than
                # whatever the submitter handed back.
                self._pending[:0] = batch
                self._threshold += self._failure_penalty
                FLUSH_OUTCOMES.labels(result="failed").inc()
                logger.warning(
                    "submission_failed_restoring",
                    items=len(batch),
                    reason=getattr(outcome, "reason", "unknown"),
                    threshold=self._threshold,
                )
            PENDING_EVENTS.set(len(self._pending))
            BATCH_THRESHOLD.set(self._threshold)

    def _settle(self) -> None:
        if self.on_settled is None:
            return
        try:
            self.on_settled()
        except Exception as e:
            logger.error("settle_hook_failed", error=str(e))

    def _next_timestamp(self) -> datetime:
        now = self._clock()
        if self._last_timestamp is not None and now < self._last_timestamp:
            now = self._last_timestamp
        self._last_timestamp = now
        return now

    # ── Persistence ──────────────────────────────────────────────────

    def snapshot_for_persistence(self) -> bytes:
        with self._lock:
            return PersistenceModel(items=list(self._pending)).to_blob()

    def restore_from_persistence(self, blob: bytes) -> int:
        """
        Merge a snapshot back into the pending queue; returns the number of
        records restored.

        A snapshot identical to the current queue is treated as already
        applied. Otherwise records whose (event name, timestamp) is already
        pending are skipped and the rest are placed ahead of the queue in
        their persisted order.
        """
        try:
            items = PersistenceModel.from_blob(blob).items
        except ValidationError as e:
            logger.error("snapshot_decode_failed", error=str(e))
            return 0
        if not items:
            return 0

        with self._lock:
            if _content_hash(items) == _content_hash(self._pending):
                logger.info("snapshot_already_applied", items=len(items))
                return 0
            present = {item.key for item in self._pending}
            restored = [item for item in items if item.key not in present]
            self._pending[:0] = restored
            PENDING_EVENTS.set(len(self._pending))
            logger.info(
                "snapshot_restored",
                restored=len(restored),
                skipped=len(items) - len(restored),
                pending=len(self._pending),
            )
            return len(restored)

    # ── Shutdown ─────────────────────────────────────────────────────

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting flushes; in-flight submissions finish if wait is set."""
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
        self.submitter.close()

    @staticmethod
    def _check_batch_size(count: int) -> None:
        if count < 1:
            raise ValueError(f"max batch size must be positive, got {count}")

    @staticmethod
    def _check_penalty(increment: int) -> None:
        if increment < 0:
            raise ValueError(f"failure penalty must not be negative, got {increment}")
