# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Dispatcher: turns delegation intents into orchestration objects.

This module provides:
- Idempotent dispatch keyed by the job's idempotency key
- Bounded retries with backoff for transient control-plane errors
- Cancellation of delegated jobs
- Worker threads that drain an IntentQueue
"""

import logging
import threading
import time
from collections.abc import Callable

from slurmbridge.contract import JobPhase
from slurmbridge.core.accounting import AccountingReporter
from slurmbridge.core.backoff import BackoffPolicy
from slurmbridge.core.control_plane import ControlPlane
from slurmbridge.core.errors import (
    BridgeError,
    DispatchError,
    RejectedDispatchError,
    TransientDispatchError,
)
from slurmbridge.core.intents import IntentQueue
from slurmbridge.core.models import DelegationIntent, IntentAction, ObjectRef, WorkloadSpec
from slurmbridge.core.records import DispatchRecord, RecordTable
from slurmbridge.core.schema import DispatchConfig
from slurmbridge.core.stats import BridgeStats

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled by scheduler"


class Dispatcher:
    """Creates one orchestration object per idempotency key.

    Usage:
        dispatcher = Dispatcher(config.dispatch, control_plane, records, accounting, stats)
        ref = dispatcher.dispatch(spec, key)
        threads = dispatcher.start_workers(queue, stop_event)
    """

    def __init__(
        self,
        config: DispatchConfig,
        control_plane: ControlPlane,
        records: RecordTable,
        accounting: AccountingReporter,
        stats: BridgeStats,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] | None = None,
        stop_event: threading.Event | None = None,
    ):
        self.config = config
        self.control_plane = control_plane
        self.records = records
        self.accounting = accounting
        self.stats = stats
        self.backoff = backoff or BackoffPolicy.from_config(config)
        self.clock = clock
        self.stop_event = stop_event or threading.Event()
        self.sleep = sleep or self._wait
        self._cancel_requests: set[str] = set()
        self._cancel_lock = threading.Lock()

    def _wait(self, seconds: float) -> None:
        self.stop_event.wait(seconds)

    # ========================================================================
    # Dispatch
    # ========================================================================

    def dispatch(
        self,
        spec: WorkloadSpec,
        idempotency_key: str,
        job_name: str = "",
        submitted_at: float | None = None,
    ) -> ObjectRef:
        """Create the workload for ``idempotency_key`` unless it already exists.

        Args:
            spec: Workload to create
            idempotency_key: Key derived from the job identity
            job_name: Scheduler job name, for logs and accounting
            submitted_at: Gate submission time, for latency metrics

        Returns:
            ObjectRef of the created (or previously created) object

        Raises:
            RejectedDispatchError: The control plane refused the spec, or the
                record is terminal without an object
            TransientDispatchError: Retries exhausted, or shutdown in progress
        """
        with self.records.locked(idempotency_key):
            record, created = self.records.get_or_create(
                idempotency_key,
                job_name=job_name or spec.name,
                spec=spec,
                submitted_at=submitted_at,
            )
            if record.object_ref is not None:
                if not created:
                    logger.debug("Key %s already dispatched as %s", idempotency_key, record.object_ref)
                return record.object_ref

            if record.is_terminal:
                raise RejectedDispatchError(
                    f"Job {record.job_name or idempotency_key} is {record.phase.value}: "
                    f"{record.last_error or 'not re-dispatching'}"
                )

            if record.spec is None:
                record.spec = spec
            if record.submitted_at is None:
                record.submitted_at = submitted_at
            return self._dispatch_locked(record)

    def _dispatch_locked(self, record: DispatchRecord) -> ObjectRef:
        key = record.idempotency_key
        spec = record.spec
        attempt = 0

        while True:
            if self.cancel_requested(key):
                logger.info("Stopping dispatch of %s: %s", key, CANCELLED_MESSAGE)
                raise RejectedDispatchError(CANCELLED_MESSAGE)
            attempt += 1
            record.transition(JobPhase.DISPATCHING, self.clock())
            record.attempts += 1
            self.stats.record_attempt()

            try:
                ref = self.control_plane.create_workload(spec, key, timeout=self.config.call_timeout)
            except RejectedDispatchError as e:
                logger.error("Control plane rejected %s: %s", key, e.reason)
                self._fail(record, e)
                raise
            except TransientDispatchError as e:
                record.last_error = e.reason
                if self.stop_event.is_set():
                    record.transition(JobPhase.PENDING, self.clock())
                    raise TransientDispatchError(f"Shutting down during dispatch of {key}") from e
                if not self.backoff.should_retry(attempt):
                    logger.error("Giving up on %s after %d attempts: %s", key, attempt, e.reason)
                    self._fail(record, e)
                    raise

                delay = self.backoff.delay(attempt)
                record.transition(JobPhase.PENDING, self.clock())
                self.stats.record_retry()
                logger.warning(
                    "Attempt %d/%d for %s failed (%s), retrying in %.1fs",
                    attempt,
                    self.backoff.max_attempts,
                    key,
                    e.reason,
                    delay,
                )
                self.sleep(delay)
                continue

            now = self.clock()
            record.dispatched_at = now
            record.last_observed_at = now
            record.last_error = None
            self.records.bind_ref(record, ref)
            self.stats.record_success()
            if record.submitted_at is not None:
                self.stats.observe_submission_to_dispatch(now - record.submitted_at)
            logger.info("Dispatched %s as %s %s (attempt %d)", record.job_name, ref.kind.value, ref, attempt)
            return ref

    def _fail(self, record: DispatchRecord, error: DispatchError) -> None:
        record.last_error = error.reason
        record.transition(JobPhase.FAILED, self.clock())
        self.stats.record_failure(error.category)
        self.accounting.report(record, JobPhase.FAILED, error.reason)

    # ========================================================================
    # Cancellation
    # ========================================================================

    def cancel(self, idempotency_key: str) -> bool:
        """Cancel a delegated job.

        Creates a cancelled record when the delegate intent has not been
        handled yet, so that it is skipped when it arrives. Deleting the
        object is best effort.

        A dispatch that is retrying for the same key stops before its next
        attempt; the record lock is only taken once that dispatch returns.

        Returns:
            False if the job was already cancelled
        """
        self.request_cancel(idempotency_key)
        try:
            return self._cancel(idempotency_key)
        finally:
            with self._cancel_lock:
                self._cancel_requests.discard(idempotency_key)

    def request_cancel(self, idempotency_key: str) -> None:
        """Flag ``idempotency_key`` so an in-progress dispatch gives up."""
        with self._cancel_lock:
            self._cancel_requests.add(idempotency_key)

    def cancel_requested(self, idempotency_key: str) -> bool:
        with self._cancel_lock:
            return idempotency_key in self._cancel_requests

    def _cancel(self, idempotency_key: str) -> bool:
        with self.records.locked(idempotency_key):
            record, created = self.records.get_or_create(idempotency_key, cancelled=True)
            if not created and record.cancelled:
                logger.debug("Job %s already cancelled", idempotency_key)
                return False

            record.cancelled = True
            self.stats.record_cancellation()
            if not record.is_terminal:
                record.last_error = CANCELLED_MESSAGE
                record.transition(JobPhase.FAILED, self.clock())
                self.accounting.report(record, JobPhase.FAILED, CANCELLED_MESSAGE)
            ref = record.object_ref

        logger.info("Cancelled job %s", record.job_name or idempotency_key)
        if ref is not None:
            try:
                self.control_plane.delete_workload(ref, timeout=self.config.call_timeout)
            except DispatchError as e:
                logger.warning("Could not delete %s for cancelled job %s: %s", ref, idempotency_key, e.reason)
        return True

    # ========================================================================
    # Workers
    # ========================================================================

    def handle_intent(self, intent: DelegationIntent) -> bool:
        """Process one intent.

        Returns:
            True if the intent is finished with and can be acknowledged
        """
        key = intent.idempotency_key
        if intent.action is IntentAction.CANCEL:
            self.cancel(key)
            return True

        if intent.spec is None:
            logger.error("Delegate intent %s has no workload spec, dropping it", key)
            return True

        existing = self.records.get(key)
        if existing is not None and existing.cancelled:
            logger.info("Skipping delegate intent %s: job was cancelled", key)
            return True

        try:
            self.dispatch(intent.spec, key, job_name=intent.job_name, submitted_at=intent.submitted_at)
        except TransientDispatchError as e:
            record = self.records.get(key)
            if record is not None and not record.is_terminal:
                logger.info("Leaving intent %s unacknowledged: %s", key, e.reason)
                return False
            logger.error("Dispatch of %s failed: %s", intent.job_name or key, e.reason)
        except RejectedDispatchError as e:
            if e.reason == CANCELLED_MESSAGE:
                logger.info("Dispatch of %s stopped: %s", intent.job_name or key, e.reason)
            else:
                logger.error("Dispatch of %s failed: %s", intent.job_name or key, e.reason)
        return True

    def run_worker(self, queue: IntentQueue, stop_event: threading.Event, poll_timeout: float = 0.5) -> None:
        """Drain ``queue`` until ``stop_event`` is set."""
        logger.debug("Dispatcher worker %s started", threading.current_thread().name)
        while not stop_event.is_set():
            intent = queue.get(timeout=poll_timeout)
            if intent is None:
                continue
            try:
                if self.handle_intent(intent):
                    queue.ack(intent)
            except BridgeError as e:
                logger.error("Intent %s failed: %s", intent.idempotency_key, e)
                queue.ack(intent)
        logger.debug("Dispatcher worker %s stopped", threading.current_thread().name)

    def start_workers(self, queue: IntentQueue, stop_event: threading.Event) -> list[threading.Thread]:
        threads = []
        for i in range(self.config.workers):
            thread = threading.Thread(
                target=self.run_worker,
                args=(queue, stop_event),
                name=f"dispatcher-{i}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        logger.info("Started %d dispatcher workers", len(threads))
        return threads
