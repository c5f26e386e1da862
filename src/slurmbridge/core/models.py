# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Data model shared by the gate, dispatcher and reconciler.

Everything here is a plain dataclass. Records that cross a process boundary
(DelegationIntent, WorkloadSpec) know how to turn themselves into JSON.
"""

import hashlib
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from slurmbridge.contract import ObservedPhase, SubmissionPayload


# ============================================================================
# Submissions
# ============================================================================


@dataclass(frozen=True)
class GresRequest:
    """One generic-resource request, e.g. ``gpu:a100:2``."""

    name: str
    count: int = 1
    type: str | None = None

    @classmethod
    def parse(cls, token: str) -> "GresRequest":
        """Parse a single Slurm gres/TRES token.

        Accepts ``gpu``, ``gpu:2``, ``gpu:a100:2``, ``gpu:a100=2`` and the
        ``gres/`` or ``gres:`` prefixed spellings Slurm puts in tres_per_node.
        """
        raw = token.strip()
        for prefix in ("gres/", "gres:"):
            if raw.startswith(prefix):
                raw = raw[len(prefix) :]

        count_str: str | None = None
        if "=" in raw:
            raw, count_str = raw.split("=", 1)

        parts = raw.split(":")
        if not parts[0] or len(parts) > 3 or any(not p for p in parts):
            raise ValueError(f"Malformed gres request: {token!r}")

        name = parts[0]
        gres_type = None
        if len(parts) == 3:
            gres_type, tail = parts[1], parts[2]
            if count_str is not None:
                raise ValueError(f"Malformed gres request: {token!r}")
            count_str = tail
        elif len(parts) == 2:
            if parts[1].isdigit() and count_str is None:
                count_str = parts[1]
            else:
                gres_type = parts[1]

        if count_str is None:
            count = 1
        elif count_str.isdigit() and int(count_str) >= 1:
            count = int(count_str)
        else:
            raise ValueError(f"Invalid count in gres request: {token!r}")

        return cls(name=name, count=count, type=gres_type)

    @classmethod
    def parse_many(cls, value: str | None) -> tuple["GresRequest", ...]:
        """Parse a comma separated gres string. ``None`` or ``""`` -> ()."""
        if not value:
            return ()
        return tuple(cls.parse(token) for token in value.split(",") if token.strip())


@dataclass(frozen=True)
class SubmissionDescriptor:
    """Immutable view of a scheduler job request at submit time."""

    job_name: str
    user_id: str
    gres: tuple[GresRequest, ...] = ()
    image: str | None = None
    namespace: str | None = None
    num_nodes: int = 1
    cpus_per_task: int | None = None
    memory_mb: int | None = None
    environment: dict[str, str] = field(default_factory=dict)
    cluster: str = ""
    submission_id: str | None = None
    script: str = ""

    @property
    def identity(self) -> tuple[str, str, str, str]:
        """Fields that identify a job across re-submissions."""
        return (self.cluster, self.user_id, self.job_name, self.submission_id or "")

    @classmethod
    def from_payload(cls, payload: SubmissionPayload) -> "SubmissionDescriptor":
        return cls(
            job_name=payload.job_name,
            user_id=payload.user_id,
            gres=GresRequest.parse_many(payload.gres),
            image=payload.image,
            namespace=payload.namespace,
            num_nodes=payload.num_nodes,
            cpus_per_task=payload.cpus_per_task,
            memory_mb=payload.memory_mb,
            environment=dict(payload.environment),
            cluster=payload.cluster,
            submission_id=payload.submission_id,
            script=payload.script,
        )


# ============================================================================
# Workloads
# ============================================================================


class WorkloadKind(str, Enum):
    """Orchestration object kinds the bridge can create."""

    BATCH_JOB = "batch-job"
    DISTRIBUTED_TRAINING = "distributed-training"


@dataclass(frozen=True)
class WorkloadSpec:
    """Derived description of the orchestration object for one job.

    A deterministic function of its SubmissionDescriptor and the translator
    config; ``canonical_json()`` is byte-identical for equal specs.
    """

    kind: WorkloadKind
    name: str
    namespace: str
    image: str
    limits: dict[str, str]
    requests: dict[str, str]
    restart_policy: str = "Never"
    replicas: int = 1
    node_selector: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)
    command: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "name": self.name,
            "namespace": self.namespace,
            "image": self.image,
            "limits": dict(self.limits),
            "requests": dict(self.requests),
            "restart_policy": self.restart_policy,
            "replicas": self.replicas,
            "node_selector": dict(self.node_selector),
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "environment": dict(self.environment),
            "command": list(self.command),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkloadSpec":
        return cls(
            kind=WorkloadKind(data["kind"]),
            name=data["name"],
            namespace=data["namespace"],
            image=data["image"],
            limits=dict(data.get("limits", {})),
            requests=dict(data.get("requests", {})),
            restart_policy=data.get("restart_policy", "Never"),
            replicas=int(data.get("replicas", 1)),
            node_selector=dict(data.get("node_selector", {})),
            labels=dict(data.get("labels", {})),
            annotations=dict(data.get("annotations", {})),
            environment=dict(data.get("environment", {})),
            command=tuple(data.get("command", ())),
        )

    def canonical_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    def spec_hash(self) -> str:
        return hashlib.sha256(self.canonical_json().encode()).hexdigest()[:16]


@dataclass(frozen=True)
class ObjectRef:
    """Identity of an orchestration object. ``uid`` is informational."""

    kind: WorkloadKind
    namespace: str
    name: str
    uid: str | None = field(default=None, compare=False)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class PhaseEvent:
    """One status observation of a workload."""

    ref: ObjectRef
    phase: ObservedPhase
    idempotency_key: str | None = None
    message: str | None = None
    observed_at: float = field(default_factory=time.time)


# ============================================================================
# Gate decisions and intents
# ============================================================================


@dataclass(frozen=True)
class Accept:
    """Leave the job to the scheduler unchanged."""


@dataclass(frozen=True)
class Delegate:
    """Run the job as an orchestration workload."""

    spec: WorkloadSpec
    idempotency_key: str


@dataclass(frozen=True)
class Reject:
    """Refuse the submission."""

    reason: str


GateDecision = Accept | Delegate | Reject


class IntentAction(str, Enum):
    DELEGATE = "delegate"
    CANCEL = "cancel"


@dataclass(frozen=True)
class DelegationIntent:
    """Unit of work handed from the gate to the dispatcher."""

    action: IntentAction
    idempotency_key: str
    job_name: str = ""
    spec: WorkloadSpec | None = None
    submitted_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(
            {
                "action": self.action.value,
                "idempotency_key": self.idempotency_key,
                "job_name": self.job_name,
                "spec": self.spec.to_dict() if self.spec else None,
                "submitted_at": self.submitted_at,
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, text: str) -> "DelegationIntent":
        data = json.loads(text)
        spec = data.get("spec")
        return cls(
            action=IntentAction(data["action"]),
            idempotency_key=data["idempotency_key"],
            job_name=data.get("job_name", ""),
            spec=WorkloadSpec.from_dict(spec) if spec else None,
            submitted_at=float(data.get("submitted_at") or time.time()),
        )
