# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
slurmbridge - run Slurm GPU jobs as Kubernetes workloads.

Jobs submitted to Slurm that request accelerators are translated into
Kubernetes Jobs (or PyTorchJobs for multi-node requests), created
idempotently, and tracked until they finish. The outcome flows back to Slurm
through a polling stub that replaces the job's batch script.

Key modules:
- core.translator: Submission -> WorkloadSpec
- core.gate: Scheduler-side hook (accept / delegate / reject)
- core.dispatcher: Idempotent workload creation with bounded retries
- core.reconciler: Phase tracking, staleness detection, accounting
- core.metrics: Prometheus collector
- core.bridge: Daemon wiring
- cli.main: Command line
- logging_utils: Logging configuration

Usage:
    slurmbridge serve -f bridge.yaml
"""

__version__ = "0.1.0"

from .contract import HookAction, HookVerdict, JobPhase, ObservedPhase, SubmissionPayload
from .core import (
    BridgeConfig,
    Dispatcher,
    MetricsBridge,
    Reconciler,
    SubmissionDescriptor,
    SubmissionGate,
    Translator,
    WorkloadSpec,
    load_config,
    translate,
)

__all__ = [
    "__version__",
    "HookAction",
    "HookVerdict",
    "JobPhase",
    "ObservedPhase",
    "SubmissionPayload",
    "BridgeConfig",
    "Dispatcher",
    "MetricsBridge",
    "Reconciler",
    "SubmissionDescriptor",
    "SubmissionGate",
    "Translator",
    "WorkloadSpec",
    "load_config",
    "translate",
]
