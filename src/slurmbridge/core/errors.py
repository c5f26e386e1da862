# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Exception taxonomy for slurmbridge.

- TranslationError: fatal to one submission, reported to the user, never retried
- DispatchError: TransientDispatchError is retried, RejectedDispatchError is not
- ReconcileError: StaleWorkloadError marks a job lost for an operator to look at
"""


class BridgeError(Exception):
    """Base class for all slurmbridge errors."""


# ============================================================================
# Translation
# ============================================================================


class TranslationError(BridgeError):
    """A submission cannot be turned into a workload spec."""


class UnsupportedResourceError(TranslationError):
    """A requested generic resource has no known orchestration mapping."""

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(f"Unsupported generic resource: {resource!r}")


class MissingImageError(TranslationError):
    """No container image in the submission and no configured default."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        super().__init__(f"No container image for job {job_name!r} and no default_image configured")


# ============================================================================
# Dispatch
# ============================================================================


class DispatchError(BridgeError):
    """The control plane did not accept a workload."""

    category = "dispatch"

    def __init__(self, reason: str, status: int | None = None):
        self.reason = reason
        self.status = status
        super().__init__(reason)


class TransientDispatchError(DispatchError):
    """Timeouts, unavailable control plane, rate limiting. Safe to retry."""

    category = "transient"


class RejectedDispatchError(DispatchError):
    """Malformed spec, quota exceeded, auth denied. Never retried."""

    category = "rejected"


# ============================================================================
# Reconciliation
# ============================================================================


class ReconcileError(BridgeError):
    """Status of a delegated job cannot be reconciled."""


class StaleWorkloadError(ReconcileError):
    """No status observed within the staleness timeout."""

    def __init__(self, idempotency_key: str, silent_for: float):
        self.idempotency_key = idempotency_key
        self.silent_for = silent_for
        super().__init__(f"No status for {idempotency_key} in {silent_for:.0f}s")


class InvalidTransitionError(BridgeError):
    """A phase change that the job state machine does not allow."""

    def __init__(self, idempotency_key: str, current, target):
        self.idempotency_key = idempotency_key
        self.current = current
        self.target = target
        super().__init__(f"{idempotency_key}: illegal transition {current.value} -> {target.value}")
