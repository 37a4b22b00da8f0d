"""Tests for the buffer engine's accumulation, flush and restore policy."""

import threading
from datetime import timedelta

import pytest

from simple_analytics.batch.buffer_engine import BufferEngine
from simple_analytics.ingestion.submitter import Failed, Submitter
from simple_analytics.session.session_tracker import SessionTracker
from simple_analytics.utils.schemas import PersistenceModel


@pytest.fixture
def engine(stub_submitter, metadata, ticking_clock, manual_clock, settled):
    eng = BufferEngine(
        stub_submitter,
        metadata,
        sessions=SessionTracker(clock=manual_clock, use_timer=False),
        max_batch_size=100,
        failure_penalty=20,
        clock=ticking_clock,
        on_settled=settled.set,
    )
    yield eng
    eng.shutdown(wait=True)


def wait_settled(settled: threading.Event) -> None:
    assert settled.wait(5), "submission did not settle"
    settled.clear()


class TestRecording:
    def test_records_accumulate_in_call_order(self, engine, stub_submitter):
        names = ["open file", "load  view", "move square", "jump 5", "exit game"]
        for name in names:
            engine.record(name)
        assert engine.pending_count == 5
        assert [i.event_name for i in engine.pending_items()] == names
        assert stub_submitter.batches == []

    def test_records_share_one_session(self, engine):
        engine.record("a")
        engine.record("b")
        sessions = {i.session_id for i in engine.pending_items()}
        assert len(sessions) == 1
        assert engine.sessions.is_active

    def test_records_are_enriched(self, engine, metadata):
        engine.set_user_property("plan", "pro")
        engine.record("open", {"kind": "pdf"})
        item = engine.pending_items()[0]
        assert item.device_id == metadata.device_id
        assert item.app_name == metadata.app_name
        assert item.platform == "macOS"
        assert item.event_details == {"kind": "pdf"}
        assert item.user_props == {"plan": "pro"}

    def test_missing_details_stay_absent(self, engine):
        engine.record("open")
        assert engine.pending_items()[0].event_details is None

    def test_user_props_not_retroactive(self, engine):
        engine.set_user_property("plan", "free")
        engine.record("first")
        engine.set_user_property("plan", "pro")
        engine.record("second")
        first, second = engine.pending_items()
        assert first.user_props == {"plan": "free"}
        assert second.user_props == {"plan": "pro"}
        assert engine.user_properties() == {"plan": "pro"}

    def test_timestamps_never_go_backwards(self, engine, ticking_clock):
        engine.record("a")
        ticking_clock.now -= timedelta(seconds=10)
        engine.record("b")
        first, second = engine.pending_items()
        assert second.timestamp >= first.timestamp

    def test_invalid_details_are_dropped_not_raised(self, engine):
        engine.record("bad", {"count": object()})
        assert engine.pending_count == 0


class TestFlushPolicy:
    def test_empty_flush_never_calls_submitter(self, engine, stub_submitter, settled):
        assert engine.flush() is None
        assert stub_submitter.batches == []
        assert settled.is_set()

    def test_threshold_triggers_single_flush(self, engine, stub_submitter, settled):
        engine.set_max_batch_size(5)
        for i in range(5):
            engine.record(f"event-{i}")
        wait_settled(settled)
        assert len(stub_submitter.batches) == 1
        assert len(stub_submitter.batches[0]) == 5
        assert engine.pending_count == 0

    def test_queue_detached_before_submission(self, engine, stub_submitter, settled):
        stub_submitter.gate = threading.Event()
        stub_submitter.succeed = False
        engine.set_max_batch_size(3)
        for i in range(3):
            engine.record(f"batch-{i}")
        assert engine.pending_count == 0

        engine.record("late-1")
        engine.record("late-2")
        assert [i.event_name for i in engine.pending_items()] == ["late-1", "late-2"]

        stub_submitter.gate.set()
        wait_settled(settled)
        assert [i.event_name for i in engine.pending_items()] == [
            "batch-0", "batch-1", "batch-2", "late-1", "late-2",
        ]
        assert engine.threshold == 3 + 20
        assert [i.event_name for i in stub_submitter.batches[0]] == ["batch-0", "batch-1", "batch-2"]

    def test_success_resets_accumulated_penalty(self, engine, stub_submitter, settled):
        engine.set_max_batch_size(2)
        stub_submitter.succeed = False
        engine.record("a")
        engine.flush()
        wait_settled(settled)
        engine.flush()
        wait_settled(settled)
        assert engine.threshold == 2 + 40

        stub_submitter.succeed = True
        engine.flush()
        wait_settled(settled)
        assert engine.threshold == 2
        assert engine.pending_count == 0

    def test_backoff_scenario(self, engine, stub_submitter, settled):
        stub_submitter.succeed = False
        for i in range(100):
            engine.record(f"e{i}")
        wait_settled(settled)
        assert len(stub_submitter.batches) == 1
        assert engine.pending_count == 100
        assert engine.threshold == 120

        stub_submitter.succeed = True
        for i in range(100, 119):
            engine.record(f"e{i}")
        assert len(stub_submitter.batches) == 1
        engine.record("e119")
        wait_settled(settled)
        assert len(stub_submitter.batches) == 2
        assert len(stub_submitter.batches[1]) == 120
        assert [i.event_name for i in stub_submitter.batches[1]] == [f"e{i}" for i in range(120)]
        assert engine.pending_count == 0
        assert engine.threshold == 100

    def test_flush_returns_future_with_outcome(self, engine):
        engine.record("a")
        future = engine.flush()
        outcome = future.result(timeout=5)
        assert outcome.message == "stored"

    def test_raising_submitter_restores_batch(self, metadata, settled):
        class Exploding(Submitter):
            def submit(self, batch):
                raise RuntimeError("socket on fire")

        eng = BufferEngine(
            Exploding(), metadata,
            sessions=SessionTracker(use_timer=False),
            max_batch_size=2, failure_penalty=5, on_settled=settled.set,
        )
        eng.record("a")
        eng.record("b")
        wait_settled(settled)
        assert [i.event_name for i in eng.pending_items()] == ["a", "b"]
        assert eng.threshold == 7
        eng.shutdown()

    def test_engine_restores_its_own_batch(self, metadata, settled):
        class Forgetful(Submitter):
            def submit(self, batch):
                return Failed(batch=[], reason="lost")

        eng = BufferEngine(
            Forgetful(), metadata,
            sessions=SessionTracker(use_timer=False),
            max_batch_size=1, on_settled=settled.set,
        )
        eng.record("a")
        wait_settled(settled)
        assert [i.event_name for i in eng.pending_items()] == ["a"]
        eng.shutdown()

    def test_rejected_flush_keeps_batch_pending(self, engine, stub_submitter):
        engine.record("a")
        engine.record("b")
        engine._executor.shutdown()
        assert engine.flush() is None
        assert [i.event_name for i in engine.pending_items()] == ["a", "b"]
        assert engine.threshold == 100
        assert stub_submitter.batches == []

    def test_rejected_threshold_flush_does_not_raise(self, engine):
        engine.set_max_batch_size(2)
        engine._executor.shutdown()
        engine.record("a")
        engine.record("b")
        assert engine.pending_count == 2

    def test_configuration_validation(self, engine):
        with pytest.raises(ValueError):
            engine.set_max_batch_size(0)
        with pytest.raises(ValueError):
            engine.set_failure_penalty(-1)

    def test_set_max_batch_size_sets_base_and_active(self, engine):
        engine.set_max_batch_size(7)
        assert engine.threshold == 7
        assert engine.base_threshold == 7

    def test_shutdown_closes_submitter(self, engine, stub_submitter):
        engine.shutdown()
        assert stub_submitter.closed


class TestPersistence:
    def _engine(self, submitter, metadata, clock):
        return BufferEngine(
            submitter, metadata, sessions=SessionTracker(use_timer=False), clock=clock
        )

    def test_snapshot_roundtrip_into_empty_engine(self, stub_submitter, metadata, ticking_clock):
        source = self._engine(stub_submitter, metadata, ticking_clock)
        source.record("open", {"kind": "pdf"})
        source.record("save")
        source.record("close")
        blob = source.snapshot_for_persistence()

        target = self._engine(stub_submitter, metadata, ticking_clock)
        assert target.restore_from_persistence(blob) == 3
        assert [i.to_wire() for i in target.pending_items()] == [
            i.to_wire() for i in source.pending_items()
        ]
        source.shutdown()
        target.shutdown()

    def test_identical_snapshot_is_noop(self, engine):
        engine.record("a")
        engine.record("b")
        blob = engine.snapshot_for_persistence()
        assert engine.restore_from_persistence(blob) == 0
        assert engine.pending_count == 2

    def test_restored_items_prepended_without_duplicates(self, engine):
        engine.record("old-1")
        engine.record("old-2")
        blob = engine.snapshot_for_persistence()
        old = engine.pending_items()

        engine.flush().result(timeout=5)
        engine.record("new-1")
        # One persisted record is still pending in memory
        engine._pending.insert(0, old[1])

        assert engine.restore_from_persistence(blob) == 1
        assert [i.event_name for i in engine.pending_items()] == ["old-1", "old-2", "new-1"]

    def test_same_name_distinct_timestamps_not_deduplicated(self, engine):
        engine.record("open")
        engine.record("open")
        blob = engine.snapshot_for_persistence()
        engine.flush().result(timeout=5)

        assert engine.restore_from_persistence(blob) == 2
        assert [i.event_name for i in engine.pending_items()] == ["open", "open"]

    def test_empty_snapshot_restores_nothing(self, engine):
        engine.record("a")
        assert engine.restore_from_persistence(PersistenceModel().to_blob()) == 0
        assert engine.pending_count == 1

    def test_corrupt_snapshot_ignored(self, engine):
        engine.record("a")
        assert engine.restore_from_persistence(b"{not json") == 0
        assert engine.pending_count == 1
