# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Reconciler: maps observed workload phases back onto dispatch records.

This module provides:
- observe(): apply one PhaseEvent to its record under the record's lock
- check_staleness(): mark silent in-flight jobs lost and alert
- purge(): drop terminal records past their retention
- recover(): rebuild records for jobs dispatched before a restart
- run(): consume a status source until stopped
"""

import logging
import threading
import time
from collections.abc import Callable

from slurmbridge.contract import JobPhase, ObservedPhase
from slurmbridge.core.accounting import AccountingReporter
from slurmbridge.core.control_plane import ControlPlane
from slurmbridge.core.errors import DispatchError, InvalidTransitionError, StaleWorkloadError
from slurmbridge.core.intents import SpoolIntentQueue
from slurmbridge.core.models import DelegationIntent, ObjectRef, PhaseEvent
from slurmbridge.core.records import RecordTable
from slurmbridge.core.schema import ReconcileConfig
from slurmbridge.core.stats import BridgeStats
from slurmbridge.core.status_sources import StatusSource
from slurmbridge.logging_utils import alert

logger = logging.getLogger(__name__)

_FINAL = {
    ObservedPhase.SUCCEEDED: JobPhase.SUCCEEDED,
    ObservedPhase.FAILED: JobPhase.FAILED,
}


class Reconciler:
    """Keeps DispatchRecords in step with the orchestration objects.

    Usage:
        reconciler = Reconciler(config.reconcile, records, accounting, stats)
        reconciler.run(source, stop_event)
    """

    def __init__(
        self,
        config: ReconcileConfig,
        records: RecordTable,
        accounting: AccountingReporter,
        stats: BridgeStats,
        clock: Callable[[], float] = time.time,
        spool: SpoolIntentQueue | None = None,
    ):
        self.config = config
        self.records = records
        self.accounting = accounting
        self.stats = stats
        self.clock = clock
        self.spool = spool

    def observe(self, event: PhaseEvent) -> JobPhase | None:
        """Apply one observation.

        Returns:
            The record's phase after the update, or None if the event was ignored
        """
        key = self.records.key_for_ref(event.ref) or event.idempotency_key
        if key is None:
            logger.debug("Ignoring event for unmanaged object %s", event.ref)
            return None

        with self.records.locked(key):
            record = self.records.get(key)
            if record is None or record.object_ref is None or record.object_ref != event.ref:
                logger.debug("Ignoring event for unknown object %s", event.ref)
                return None
            if record.is_terminal:
                logger.debug("Ignoring %s for %s: already %s", event.phase.value, key, record.phase.value)
                return None
            if event.phase is ObservedPhase.MISSING:
                logger.debug("Object %s for %s not found", event.ref, key)
                return None

            now = self.clock()
            record.last_observed_at = now

            if event.phase is ObservedPhase.PENDING:
                return record.phase

            if event.phase is ObservedPhase.RUNNING:
                if record.phase is not JobPhase.RUNNING:
                    record.transition(JobPhase.RUNNING, now)
                    if record.dispatched_at is not None:
                        self.stats.observe_dispatch_to_running(now - record.dispatched_at)
                    logger.info("Job %s is running (%s)", record.job_name, event.ref)
                return JobPhase.RUNNING

            target = _FINAL[event.phase]
            record.transition(target, now)
            if target is JobPhase.FAILED:
                record.last_error = event.message or "workload failed"
            self.accounting.report(record, target, event.message)
            return target

    def check_staleness(self, now: float | None = None) -> list[str]:
        """Mark in-flight jobs with no observation within the timeout as lost.

        Returns:
            Keys of the records that became lost
        """
        now = self.clock() if now is None else now
        timeout = self.config.staleness_timeout
        lost = []

        for snapshot in self.records.in_flight():
            if now - _last_seen(snapshot) <= timeout:
                continue

            key = snapshot.idempotency_key
            with self.records.locked(key):
                record = self.records.get(key)
                if record is None or record.is_terminal:
                    continue
                silent_for = now - _last_seen(record)
                if silent_for <= timeout:
                    continue

                error = StaleWorkloadError(key, silent_for)
                record.last_error = str(error)
                record.transition(JobPhase.LOST, now)
                alert(f"Job {record.job_name} ({record.object_ref}) lost: {error}", logger)
                self.stats.record_failure("lost")
                self.accounting.report(record, JobPhase.LOST, str(error))
                lost.append(key)

        return lost

    def purge(self, now: float | None = None) -> list[str]:
        now = self.clock() if now is None else now
        purged = self.records.purge(now, self.config.retention_seconds)
        for key in purged:
            self.accounting.forget(key)
        if self.spool is not None:
            self.spool.prune(self.config.retention_seconds, now)
        return purged

    def recover(self, control_plane: ControlPlane, timeout: float) -> list[str]:
        """Rebuild records for jobs dispatched before a restart.

        Candidates are delegate intents in the spool's ``done/`` ledger that
        have no result yet, plus managed objects the cluster lists as not
        finished. Finished objects are only taken when their intent is still
        unreported, so results from before the restart are not sent twice.
        An intent whose object is gone gets a record anyway and becomes lost
        once the staleness timeout passes.

        Returns:
            Keys of the rebuilt records
        """
        unreported: dict[str, DelegationIntent] = {}
        if self.spool is not None:
            for intent in self.spool.dispatched_intents():
                if self.spool.read_result(intent.idempotency_key) is None:
                    unreported[intent.idempotency_key] = intent

        try:
            events = control_plane.list_phases(timeout)
        except DispatchError as e:
            logger.warning("Could not list managed workloads during recovery: %s", e.reason)
            events = []

        observed: dict[str, PhaseEvent] = {}
        for event in events:
            key = event.idempotency_key
            if key is None:
                continue
            if key in unreported or event.phase not in _FINAL:
                observed[key] = event

        now = self.clock()
        recovered = []
        for key in sorted(set(unreported) | set(observed)):
            intent = unreported.get(key)
            event = observed.get(key)
            if event is not None:
                ref = event.ref
            elif intent.spec is not None:
                ref = ObjectRef(kind=intent.spec.kind, namespace=intent.spec.namespace, name=intent.spec.name)
            else:
                logger.warning("Cannot recover %s: intent has no workload spec", key)
                continue

            fields = {"job_name": ref.name}
            if intent is not None:
                fields.update(
                    job_name=intent.job_name or ref.name,
                    spec=intent.spec,
                    submitted_at=intent.submitted_at,
                )
            if self.records.restore(key, ref, now, **fields) is None:
                continue
            recovered.append(key)
            if event is not None:
                self.observe(event)

        if recovered:
            logger.info("Recovered %d in-flight jobs", len(recovered))
        return recovered

    def run_housekeeping(self, stop_event: threading.Event) -> None:
        """Staleness checks and purges every ``check_interval`` seconds."""
        while not stop_event.wait(self.config.check_interval):
            now = self.clock()
            self.check_staleness(now)
            self.purge(now)

    def run(self, source: StatusSource, stop_event: threading.Event) -> None:
        """Consume ``source`` until ``stop_event`` is set."""
        threading.Thread(
            target=self.run_housekeeping,
            args=(stop_event,),
            name="reconcile-housekeeping",
            daemon=True,
        ).start()

        logger.info("Reconciler started")
        for event in source.subscribe(stop_event):
            try:
                self.observe(event)
            except InvalidTransitionError as e:
                logger.warning("Dropping status event: %s", e)
        logger.info("Reconciler stopped")


def _last_seen(record) -> float:
    return record.last_observed_at or record.dispatched_at or record.created_at
