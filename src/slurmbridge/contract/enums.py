# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Canonical enum definitions for the hook and accounting contracts."""

from enum import Enum


class JobPhase(str, Enum):
    """Bridge-side phase of a delegated job.

    Phases only move forward, except for the dispatching -> pending edge
    taken between retry attempts.
    """

    PENDING = "pending"
    DISPATCHING = "dispatching"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    LOST = "lost"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({JobPhase.SUCCEEDED, JobPhase.FAILED, JobPhase.LOST})


class ObservedPhase(str, Enum):
    """Workload phase as reported by the orchestration platform."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    MISSING = "missing"


class HookAction(str, Enum):
    """Verdict returned to the scheduler submission hook."""

    ACCEPT = "accept"
    REJECT = "reject"
