# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Protocol the dispatcher and status sources use to talk to the orchestration
control plane.
"""

from collections.abc import Iterator
from typing import Protocol

from slurmbridge.core.models import ObjectRef, PhaseEvent, WorkloadKind, WorkloadSpec


class ControlPlane(Protocol):
    """Create/get/delete/watch workload objects by namespace + name.

    Every call takes an explicit timeout. Implementations raise
    TransientDispatchError or RejectedDispatchError for API failures.
    """

    @property
    def kinds(self) -> tuple[WorkloadKind, ...]:
        """Workload kinds this control plane can create and watch."""
        ...

    def create_workload(self, spec: WorkloadSpec, idempotency_key: str, timeout: float) -> ObjectRef:
        """Create the object, or return the existing one carrying this key."""
        ...

    def get_phase(self, ref: ObjectRef, timeout: float) -> PhaseEvent:
        """Current phase of one object (ObservedPhase.MISSING if it is gone)."""
        ...

    def delete_workload(self, ref: ObjectRef, timeout: float) -> None:
        """Delete one object. Deleting a missing object is not an error."""
        ...

    def list_phases(self, timeout: float) -> list[PhaseEvent]:
        """Current phase of every bridge-managed object."""
        ...

    def watch_phases(self, kind: WorkloadKind, timeout_seconds: int) -> Iterator[PhaseEvent]:
        """Stream phase changes of one kind until the server closes the watch."""
        ...
