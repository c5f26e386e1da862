# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Tests for phase reconciliation, staleness detection and accounting."""

import logging
import threading
from unittest.mock import Mock

import pytest

from slurmbridge.contract import JobPhase, ObservedPhase
from slurmbridge.core.accounting import AccountingReporter
from slurmbridge.core.dispatcher import Dispatcher
from slurmbridge.core.errors import TransientDispatchError
from slurmbridge.core.intents import SpoolIntentQueue
from slurmbridge.core.models import DelegationIntent, IntentAction, ObjectRef, PhaseEvent, WorkloadKind, WorkloadSpec
from slurmbridge.core.reconciler import Reconciler
from slurmbridge.core.records import RecordTable
from slurmbridge.core.stats import BridgeStats

from fake_control_plane import FakeClock, FakeControlPlane, dispatch_config, reconcile_config

KEY = "0123456789abcdef"


def make_spec() -> WorkloadSpec:
    return WorkloadSpec(
        kind=WorkloadKind.BATCH_JOB,
        name="ai-training-job-0123456789",
        namespace="slurm-jobs",
        image="quay.io/myrepo/ml-image:latest",
        limits={"nvidia.com/gpu": "2"},
        requests={"nvidia.com/gpu": "2"},
    )


class RecordingSink:
    def __init__(self):
        self.reports = []

    def report(self, record, phase, message=None):
        self.reports.append((record.idempotency_key, phase))
        return True


class Harness:
    """Dispatcher + reconciler sharing one record table and clock."""

    def __init__(self, spool=None, **reconcile_overrides):
        self.clock = FakeClock()
        self.control_plane = FakeControlPlane()
        self.records = RecordTable(clock=self.clock)
        self.stats = BridgeStats()
        self.sink = RecordingSink()
        self.accounting = AccountingReporter([self.sink], stats=self.stats)
        self.dispatcher = Dispatcher(
            dispatch_config(),
            self.control_plane,
            self.records,
            self.accounting,
            self.stats,
            clock=self.clock,
            sleep=lambda s: None,
        )
        self.reconciler = Reconciler(
            reconcile_config(**reconcile_overrides),
            self.records,
            self.accounting,
            self.stats,
            clock=self.clock,
            spool=spool,
        )

    def dispatch(self) -> ObjectRef:
        return self.dispatcher.dispatch(make_spec(), KEY, job_name="ai-training-job")

    def event(self, ref: ObjectRef, phase: ObservedPhase) -> PhaseEvent:
        return PhaseEvent(ref=ref, phase=phase, idempotency_key=KEY)


@pytest.fixture
def harness():
    return Harness()


# ============================================================================
# observe()
# ============================================================================


class TestObserve:
    """Test Reconciler.observe() phase mapping."""

    def test_pending_keeps_dispatching(self, harness):
        ref = harness.dispatch()
        harness.clock.advance(5)

        assert harness.reconciler.observe(harness.event(ref, ObservedPhase.PENDING)) is JobPhase.DISPATCHING
        assert harness.records.get(KEY).last_observed_at == harness.clock()

    def test_running(self, harness):
        ref = harness.dispatch()
        harness.clock.advance(12)

        assert harness.reconciler.observe(harness.event(ref, ObservedPhase.RUNNING)) is JobPhase.RUNNING

        record = harness.records.get(KEY)
        assert record.running_at == harness.clock()
        histogram = harness.stats.snapshot().dispatch_to_running
        assert histogram.count == 1
        assert histogram.sum == pytest.approx(12)

    def test_succeeded_reports_once(self, harness):
        """Terminal phases are written to accounting exactly once."""
        ref = harness.dispatch()
        harness.reconciler.observe(harness.event(ref, ObservedPhase.RUNNING))

        harness.reconciler.observe(harness.event(ref, ObservedPhase.SUCCEEDED))
        harness.reconciler.observe(harness.event(ref, ObservedPhase.SUCCEEDED))

        assert harness.records.get(KEY).phase is JobPhase.SUCCEEDED
        assert harness.sink.reports == [(KEY, JobPhase.SUCCEEDED)]

    def test_failed(self, harness):
        ref = harness.dispatch()

        harness.reconciler.observe(
            PhaseEvent(ref=ref, phase=ObservedPhase.FAILED, idempotency_key=KEY, message="BackoffLimitExceeded")
        )

        record = harness.records.get(KEY)
        assert record.phase is JobPhase.FAILED
        assert record.last_error == "BackoffLimitExceeded"
        assert harness.sink.reports == [(KEY, JobPhase.FAILED)]

    def test_events_after_terminal_are_ignored(self, harness):
        ref = harness.dispatch()
        harness.reconciler.observe(harness.event(ref, ObservedPhase.SUCCEEDED))

        assert harness.reconciler.observe(harness.event(ref, ObservedPhase.RUNNING)) is None
        assert harness.records.get(KEY).phase is JobPhase.SUCCEEDED

    def test_missing_does_not_refresh(self, harness):
        """A missing object is not a sign of life."""
        ref = harness.dispatch()
        before = harness.records.get(KEY).last_observed_at
        harness.clock.advance(30)

        assert harness.reconciler.observe(harness.event(ref, ObservedPhase.MISSING)) is None
        assert harness.records.get(KEY).last_observed_at == before

    def test_unknown_object_is_ignored(self, harness):
        ref = ObjectRef(WorkloadKind.BATCH_JOB, "other", "unrelated")

        assert harness.reconciler.observe(PhaseEvent(ref=ref, phase=ObservedPhase.RUNNING)) is None

    def test_event_matched_by_ref_without_key(self, harness):
        ref = harness.dispatch()

        assert harness.reconciler.observe(PhaseEvent(ref=ref, phase=ObservedPhase.RUNNING)) is JobPhase.RUNNING


# ============================================================================
# Staleness
# ============================================================================


class TestStaleness:
    """Test Reconciler.check_staleness()."""

    def test_silent_job_becomes_lost(self, harness, caplog):
        """No observation for longer than the timeout -> lost, alert, accounting."""
        harness.dispatch()
        harness.clock.advance(61)

        with caplog.at_level(logging.ERROR):
            lost = harness.reconciler.check_staleness()

        assert lost == [KEY]
        assert harness.records.get(KEY).phase is JobPhase.LOST
        assert harness.sink.reports == [(KEY, JobPhase.LOST)]
        assert harness.stats.snapshot().failures["lost"] == 1
        assert "ALERT" in caplog.text

    def test_within_timeout_is_not_lost(self, harness):
        harness.dispatch()
        harness.clock.advance(59)

        assert harness.reconciler.check_staleness() == []
        assert harness.records.get(KEY).phase is JobPhase.DISPATCHING

    def test_observation_resets_staleness(self, harness):
        ref = harness.dispatch()
        harness.clock.advance(50)
        harness.reconciler.observe(harness.event(ref, ObservedPhase.RUNNING))
        harness.clock.advance(50)

        assert harness.reconciler.check_staleness() == []

    def test_lost_job_is_not_redispatched(self, harness):
        harness.dispatch()
        harness.clock.advance(61)
        harness.reconciler.check_staleness()

        ref = harness.dispatch()

        assert harness.control_plane.create_calls == 1
        assert ref == harness.records.get(KEY).object_ref
        assert harness.records.get(KEY).phase is JobPhase.LOST

    def test_lost_is_reported_once(self, harness):
        harness.dispatch()
        harness.clock.advance(61)
        harness.reconciler.check_staleness()
        harness.clock.advance(61)
        harness.reconciler.check_staleness()

        assert harness.sink.reports == [(KEY, JobPhase.LOST)]

    def test_late_success_after_lost_is_ignored(self, harness):
        ref = harness.dispatch()
        harness.clock.advance(61)
        harness.reconciler.check_staleness()

        harness.reconciler.observe(harness.event(ref, ObservedPhase.SUCCEEDED))

        assert harness.records.get(KEY).phase is JobPhase.LOST


# ============================================================================
# Purge and run loop
# ============================================================================


class TestPurgeAndRun:
    """Test retention purging and the run loop."""

    def test_purge_after_retention(self):
        harness = Harness(retention_seconds=100)
        ref = harness.dispatch()
        harness.reconciler.observe(harness.event(ref, ObservedPhase.SUCCEEDED))
        harness.clock.advance(101)

        assert harness.reconciler.purge() == [KEY]
        assert KEY not in harness.records

    def test_run_consumes_source(self, harness):
        ref = harness.dispatch()
        stop_event = threading.Event()

        class ListSource:
            def subscribe(self, stop):
                yield harness.event(ref, ObservedPhase.RUNNING)
                yield harness.event(ref, ObservedPhase.SUCCEEDED)
                stop.set()

        harness.reconciler.run(ListSource(), stop_event)

        assert harness.records.get(KEY).phase is JobPhase.SUCCEEDED
        assert harness.sink.reports == [(KEY, JobPhase.SUCCEEDED)]

    def test_housekeeping_marks_lost(self):
        harness = Harness(check_interval=0.01)
        harness.dispatch()
        harness.clock.advance(61)
        stop_event = threading.Event()

        thread = threading.Thread(target=harness.reconciler.run_housekeeping, args=(stop_event,))
        thread.start()
        for _ in range(200):
            if harness.records.get(KEY).phase is JobPhase.LOST:
                break
            stop_event.wait(0.01)
        stop_event.set()
        thread.join(timeout=2)

        assert harness.records.get(KEY).phase is JobPhase.LOST


# ============================================================================
# recover()
# ============================================================================


def spooled_harness(tmp_path) -> tuple[Harness, SpoolIntentQueue]:
    """Harness whose spool holds one acknowledged delegate intent for KEY."""
    spool = SpoolIntentQueue(tmp_path / "spool")
    spool.ensure()
    spool.put(
        DelegationIntent(
            action=IntentAction.DELEGATE, idempotency_key=KEY, job_name="ai-training-job", spec=make_spec()
        )
    )
    spool.ack(spool.get(timeout=0.1))
    return Harness(spool=spool), spool


class TestRecover:
    """Test Reconciler.recover() after a restart."""

    def test_running_object_is_recovered(self, harness):
        ref = harness.control_plane.create_workload(make_spec(), KEY, timeout=1)
        harness.control_plane.set_phase(ref, ObservedPhase.RUNNING)

        assert harness.reconciler.recover(harness.control_plane, timeout=1) == [KEY]

        record = harness.records.get(KEY)
        assert record.object_ref == ref
        assert record.phase is JobPhase.RUNNING
        assert harness.records.key_for_ref(ref) == KEY
        assert harness.dispatch() == ref
        assert harness.control_plane.create_calls == 1

    def test_finished_object_without_pending_intent_is_skipped(self, harness):
        ref = harness.control_plane.create_workload(make_spec(), KEY, timeout=1)
        harness.control_plane.set_phase(ref, ObservedPhase.SUCCEEDED)

        assert harness.reconciler.recover(harness.control_plane, timeout=1) == []
        assert harness.records.get(KEY) is None
        assert harness.sink.reports == []

    def test_unreported_finish_is_reported(self, tmp_path):
        harness, _ = spooled_harness(tmp_path)
        ref = harness.control_plane.create_workload(make_spec(), KEY, timeout=1)
        harness.control_plane.set_phase(ref, ObservedPhase.SUCCEEDED)

        harness.reconciler.recover(harness.control_plane, timeout=1)

        record = harness.records.get(KEY)
        assert record.phase is JobPhase.SUCCEEDED
        assert record.job_name == "ai-training-job"
        assert harness.sink.reports == [(KEY, JobPhase.SUCCEEDED)]

    def test_reported_intent_is_skipped(self, tmp_path):
        harness, spool = spooled_harness(tmp_path)
        spool.write_result(KEY, "succeeded")

        assert harness.reconciler.recover(harness.control_plane, timeout=1) == []

    def test_vanished_object_becomes_lost(self, tmp_path):
        """An intent whose object disappeared while the bridge was down goes lost after the timeout."""
        harness, _ = spooled_harness(tmp_path)

        assert harness.reconciler.recover(harness.control_plane, timeout=1) == [KEY]
        record = harness.records.get(KEY)
        assert record.phase is JobPhase.DISPATCHING
        assert record.object_ref.name == "ai-training-job-0123456789"

        harness.clock.advance(61)

        assert harness.reconciler.check_staleness() == [KEY]
        assert harness.sink.reports == [(KEY, JobPhase.LOST)]

    def test_list_failure_falls_back_to_spool(self, tmp_path):
        harness, _ = spooled_harness(tmp_path)
        harness.control_plane.list_phases = Mock(side_effect=TransientDispatchError("HTTP 503"))

        assert harness.reconciler.recover(harness.control_plane, timeout=1) == [KEY]

    def test_existing_record_is_kept(self, harness):
        ref = harness.dispatch()
        harness.records.get(KEY).attempts = 3

        assert harness.reconciler.recover(harness.control_plane, timeout=1) == []
        assert harness.records.get(KEY).attempts == 3
        assert harness.records.get(KEY).object_ref == ref
