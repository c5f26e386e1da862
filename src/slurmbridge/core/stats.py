# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Prometheus counters and histograms written by the gate, dispatcher and reconciler.

Each BridgeStats owns a CollectorRegistry so that several bridges (or tests)
in one process never share series. The metrics bridge exposes that registry.
"""

from dataclasses import dataclass

from prometheus_client import CollectorRegistry, Counter, Histogram

PREFIX = "slurmbridge"

LATENCY_BUCKETS: tuple[float, ...] = (0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0)

FAILURE_CATEGORIES = ("transient", "rejected", "translation", "lost", "accounting")
GATE_DECISIONS = ("accept", "delegate", "reject")


@dataclass(frozen=True)
class LatencySummary:
    count: int
    sum: float


@dataclass(frozen=True)
class StatsSnapshot:
    dispatch_attempts: int
    dispatch_successes: int
    dispatch_retries: int
    cancellations: int
    failures: dict[str, int]
    gate_decisions: dict[str, int]
    submission_to_dispatch: LatencySummary
    dispatch_to_running: LatencySummary


class BridgeStats:
    """Bridge counters and latency histograms on one registry."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry(auto_describe=True)

        self.dispatch_attempts = Counter(
            f"{PREFIX}_dispatch_attempts", "Control-plane create attempts", registry=self.registry
        )
        self.dispatch_success = Counter(
            f"{PREFIX}_dispatch_success", "Workloads created or found", registry=self.registry
        )
        self.dispatch_retries = Counter(
            f"{PREFIX}_dispatch_retries",
            "Create attempts retried after a transient error",
            registry=self.registry,
        )
        self.cancellations = Counter(
            f"{PREFIX}_cancellations", "Delegated jobs cancelled by the scheduler", registry=self.registry
        )
        self.failures = Counter(
            f"{PREFIX}_dispatch_failures", "Terminal failures by category", ["category"], registry=self.registry
        )
        self.gate_decisions = Counter(
            f"{PREFIX}_gate_decisions", "Submission gate decisions", ["decision"], registry=self.registry
        )
        for category in FAILURE_CATEGORIES:
            self.failures.labels(category)
        for decision in GATE_DECISIONS:
            self.gate_decisions.labels(decision)

        self.submission_to_dispatch = Histogram(
            f"{PREFIX}_submission_to_dispatch_seconds",
            "Time from gate submission to workload creation",
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.dispatch_to_running = Histogram(
            f"{PREFIX}_dispatch_to_running_seconds",
            "Time from workload creation to first running observation",
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )

    def record_attempt(self) -> None:
        self.dispatch_attempts.inc()

    def record_success(self) -> None:
        self.dispatch_success.inc()

    def record_retry(self) -> None:
        self.dispatch_retries.inc()

    def record_cancellation(self) -> None:
        self.cancellations.inc()

    def record_failure(self, category: str) -> None:
        if category not in FAILURE_CATEGORIES:
            raise ValueError(f"Unknown failure category: {category!r}")
        self.failures.labels(category).inc()

    def record_gate_decision(self, decision: str) -> None:
        if decision not in GATE_DECISIONS:
            raise ValueError(f"Unknown gate decision: {decision!r}")
        self.gate_decisions.labels(decision).inc()

    def observe_submission_to_dispatch(self, seconds: float) -> None:
        self.submission_to_dispatch.observe(max(0.0, seconds))

    def observe_dispatch_to_running(self, seconds: float) -> None:
        self.dispatch_to_running.observe(max(0.0, seconds))

    def snapshot(self) -> StatsSnapshot:
        """Current values read back from the registry."""
        return StatsSnapshot(
            dispatch_attempts=self._count("dispatch_attempts_total"),
            dispatch_successes=self._count("dispatch_success_total"),
            dispatch_retries=self._count("dispatch_retries_total"),
            cancellations=self._count("cancellations_total"),
            failures={c: self._count("dispatch_failures_total", {"category": c}) for c in FAILURE_CATEGORIES},
            gate_decisions={d: self._count("gate_decisions_total", {"decision": d}) for d in GATE_DECISIONS},
            submission_to_dispatch=self._latency("submission_to_dispatch_seconds"),
            dispatch_to_running=self._latency("dispatch_to_running_seconds"),
        )

    def _sample(self, name: str, labels: dict[str, str] | None = None) -> float:
        return self.registry.get_sample_value(f"{PREFIX}_{name}", labels or {}) or 0.0

    def _count(self, name: str, labels: dict[str, str] | None = None) -> int:
        return int(self._sample(name, labels))

    def _latency(self, name: str) -> LatencySummary:
        return LatencySummary(count=self._count(f"{name}_count"), sum=self._sample(f"{name}_sum"))
