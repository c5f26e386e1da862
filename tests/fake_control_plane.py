# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
In-memory control plane for dispatcher and reconciler tests.

Behaves like the Kubernetes API as far as slurmbridge cares: create-if-absent
by namespace/name, phase lookup, deletion, listing and a scripted watch.
Failures can be injected per call.
"""

import threading
import time

from slurmbridge.contract import ObservedPhase
from slurmbridge.core.errors import RejectedDispatchError
from slurmbridge.core.models import ObjectRef, PhaseEvent, WorkloadKind, WorkloadSpec
from slurmbridge.core.schema import (
    BridgeConfig,
    DispatchConfig,
    ReconcileConfig,
    ResourceMapping,
    TranslatorConfig,
)


class FakeControlPlane:
    """Thread-safe fake. ``create_calls`` counts every create request."""

    def __init__(self, kinds=(WorkloadKind.BATCH_JOB, WorkloadKind.DISTRIBUTED_TRAINING), create_delay: float = 0.0):
        self._kinds = tuple(kinds)
        self.create_delay = create_delay
        self.objects: dict[ObjectRef, dict] = {}
        self.create_calls = 0
        self.timeouts: list[float] = []
        self.failures: list[Exception] = []
        self.always_fail: Exception | None = None
        self.deleted: list[ObjectRef] = []
        self.delete_error: Exception | None = None
        self.watch_events: dict[WorkloadKind, list[PhaseEvent]] = {}
        self._lock = threading.Lock()
        self._uid = 0

    @property
    def kinds(self):
        return self._kinds

    def create_workload(self, spec: WorkloadSpec, idempotency_key: str, timeout: float) -> ObjectRef:
        with self._lock:
            self.create_calls += 1
            self.timeouts.append(timeout)
            if self.always_fail is not None:
                raise self.always_fail
            if self.failures:
                raise self.failures.pop(0)

        if self.create_delay:
            time.sleep(self.create_delay)

        with self._lock:
            ref = ObjectRef(kind=spec.kind, namespace=spec.namespace, name=spec.name)
            existing = self.objects.get(ref)
            if existing is not None:
                if existing["key"] != idempotency_key:
                    raise RejectedDispatchError(f"{ref} exists", status=409)
                return existing["ref"]
            self._uid += 1
            ref = ObjectRef(kind=spec.kind, namespace=spec.namespace, name=spec.name, uid=f"uid-{self._uid}")
            self.objects[ref] = {"ref": ref, "spec": spec, "key": idempotency_key, "phase": ObservedPhase.PENDING}
            return ref

    def set_phase(self, ref: ObjectRef, phase: ObservedPhase) -> None:
        with self._lock:
            self.objects[ref]["phase"] = phase

    def event_for(self, ref: ObjectRef, phase: ObservedPhase | None = None) -> PhaseEvent:
        with self._lock:
            obj = self.objects.get(ref)
        if obj is None:
            return PhaseEvent(ref=ref, phase=ObservedPhase.MISSING)
        return PhaseEvent(ref=obj["ref"], phase=phase or obj["phase"], idempotency_key=obj["key"])

    def get_phase(self, ref: ObjectRef, timeout: float) -> PhaseEvent:
        return self.event_for(ref)

    def delete_workload(self, ref: ObjectRef, timeout: float) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        with self._lock:
            self.objects.pop(ref, None)
            self.deleted.append(ref)

    def list_phases(self, timeout: float) -> list[PhaseEvent]:
        with self._lock:
            refs = list(self.objects)
        return [self.event_for(ref) for ref in refs]

    def watch_phases(self, kind: WorkloadKind, timeout_seconds: int):
        events = self.watch_events.pop(kind, [])
        yield from events
        time.sleep(0.01)


# ============================================================================
# Config builders
# ============================================================================


def translator_config(**overrides) -> TranslatorConfig:
    values = {
        "resource_map": {"gpu": ResourceMapping(resource_name="nvidia.com/gpu")},
        "default_namespace": "slurm-jobs",
    }
    values.update(overrides)
    return TranslatorConfig(**values)


def dispatch_config(**overrides) -> DispatchConfig:
    values = {"max_attempts": 5, "initial_backoff": 0.01, "max_backoff": 0.05, "workers": 2}
    values.update(overrides)
    return DispatchConfig(**values)


def reconcile_config(**overrides) -> ReconcileConfig:
    values = {"staleness_timeout": 60.0, "poll_interval": 0.05, "check_interval": 0.05}
    values.update(overrides)
    return ReconcileConfig(**values)


def bridge_config(**overrides) -> BridgeConfig:
    values = {
        "translator": translator_config(),
        "dispatch": dispatch_config(),
        "reconcile": reconcile_config(),
    }
    values.update(overrides)
    return BridgeConfig(**values)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
