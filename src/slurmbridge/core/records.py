# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Dispatch record table.

This module tracks one DispatchRecord per idempotency key:
- Per-key exclusive locks so concurrent dispatches of one job serialise
- The JobPhase state machine, enforced on every transition
- Lookup by orchestration object for the reconciler
- Retention-based purging of terminal records
"""

import contextlib
import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from slurmbridge.contract import JobPhase
from slurmbridge.core.errors import InvalidTransitionError
from slurmbridge.core.models import ObjectRef, WorkloadSpec

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[JobPhase, frozenset[JobPhase]] = {
    JobPhase.PENDING: frozenset({JobPhase.DISPATCHING, JobPhase.FAILED}),
    JobPhase.DISPATCHING: frozenset(
        {JobPhase.PENDING, JobPhase.RUNNING, JobPhase.SUCCEEDED, JobPhase.FAILED, JobPhase.LOST}
    ),
    JobPhase.RUNNING: frozenset({JobPhase.SUCCEEDED, JobPhase.FAILED, JobPhase.LOST}),
    JobPhase.SUCCEEDED: frozenset(),
    JobPhase.FAILED: frozenset(),
    JobPhase.LOST: frozenset(),
}


@dataclass
class DispatchRecord:
    """Mapping of one job to its orchestration object.

    Attributes:
        idempotency_key: Key derived from the job identity
        job_name: Scheduler job name, for logs and accounting
        spec: WorkloadSpec to create (None until a delegate intent arrives)
        object_ref: Created object, once known
        phase: Current JobPhase
        attempts: Control-plane create attempts made so far
        last_error: Message of the most recent failure
        cancelled: Scheduler cancelled the job
    """

    idempotency_key: str
    job_name: str = ""
    spec: WorkloadSpec | None = None
    object_ref: ObjectRef | None = None
    phase: JobPhase = JobPhase.PENDING
    attempts: int = 0
    last_error: str | None = None
    cancelled: bool = False
    created_at: float = 0.0
    submitted_at: float | None = None
    dispatched_at: float | None = None
    running_at: float | None = None
    last_observed_at: float | None = None
    finished_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def can_transition(self, target: JobPhase) -> bool:
        return target in ALLOWED_TRANSITIONS[self.phase]

    def transition(self, target: JobPhase, now: float) -> None:
        """Move to ``target``, raising InvalidTransitionError if not allowed."""
        if target == self.phase:
            return
        if not self.can_transition(target):
            raise InvalidTransitionError(self.idempotency_key, self.phase, target)
        logger.debug("%s: %s -> %s", self.idempotency_key, self.phase.value, target.value)
        self.phase = target
        if target is JobPhase.RUNNING:
            self.running_at = now
        if target.is_terminal:
            self.finished_at = now


class RecordTable:
    """Table of DispatchRecords with per-record exclusive access.

    Usage:
        with table.locked(key):
            record, created = table.get_or_create(key, job_name="train")
            record.transition(JobPhase.DISPATCHING, now)
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._records: dict[str, DispatchRecord] = {}
        self._by_ref: dict[ObjectRef, str] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextlib.contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Hold the exclusive lock of one idempotency key."""
        lock = self._lock_for(key)
        with lock:
            yield

    def get(self, key: str) -> DispatchRecord | None:
        with self._lock:
            return self._records.get(key)

    def get_or_create(self, key: str, **fields) -> tuple[DispatchRecord, bool]:
        """Return the record for ``key``, creating it if needed.

        Callers must hold ``locked(key)``.
        """
        with self._lock:
            record = self._records.get(key)
            if record is not None:
                return record, False
            record = DispatchRecord(idempotency_key=key, created_at=self.clock(), **fields)
            self._records[key] = record
            logger.debug("Created dispatch record %s", key)
            return record, True

    def bind_ref(self, record: DispatchRecord, ref: ObjectRef) -> None:
        """Attach the created object to a record and index it."""
        with self._lock:
            record.object_ref = ref
            self._by_ref[ref] = record.idempotency_key

    def restore(self, key: str, ref: ObjectRef, now: float, **fields) -> DispatchRecord | None:
        """Recreate the record of an object created by an earlier process.

        The record starts out dispatching and freshly observed, so status
        events and staleness checks apply to it again.

        Returns:
            The new record, or None if ``key`` already has one
        """
        with self.locked(key):
            record, created = self.get_or_create(key, **fields)
            if not created:
                return None
            record.transition(JobPhase.DISPATCHING, now)
            record.last_observed_at = now
            self.bind_ref(record, ref)
            logger.debug("Restored dispatch record %s for %s", key, ref)
            return record

    def key_for_ref(self, ref: ObjectRef) -> str | None:
        with self._lock:
            return self._by_ref.get(ref)

    def snapshot(self) -> list[DispatchRecord]:
        """Copies of all records, safe to read without locks."""
        with self._lock:
            return [dataclasses.replace(r) for r in self._records.values()]

    def in_flight(self) -> list[DispatchRecord]:
        """Copies of non-terminal records that have an object."""
        return [r for r in self.snapshot() if r.object_ref is not None and not r.is_terminal]

    def count_by_phase(self) -> dict[JobPhase, int]:
        counts = {phase: 0 for phase in JobPhase}
        with self._lock:
            for record in self._records.values():
                counts[record.phase] += 1
        return counts

    def remove(self, key: str) -> None:
        with self.locked(key):
            with self._lock:
                record = self._records.pop(key, None)
                if record and record.object_ref is not None:
                    self._by_ref.pop(record.object_ref, None)
                self._locks.pop(key, None)

    def purge(self, now: float, retention: float) -> list[str]:
        """Remove terminal records finished more than ``retention`` seconds ago."""
        expired = [
            r.idempotency_key
            for r in self.snapshot()
            if r.is_terminal and r.finished_at is not None and now - r.finished_at > retention
        ]
        for key in expired:
            self.remove(key)
        if expired:
            logger.debug("Purged %d terminal records", len(expired))
        return expired

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._records
