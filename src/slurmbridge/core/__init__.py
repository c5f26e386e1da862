# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Core modules for slurmbridge.

This package contains:
- config / schema: Configuration loading and frozen dataclass schemas
- models / identity: Data model and idempotency keys
- translator: Submission -> WorkloadSpec
- gate: Scheduler-side accept/delegate/reject hook
- intents: Queues between the gate and the dispatcher
- dispatcher: Idempotent workload creation with retries
- reconciler / status_sources: Phase tracking and staleness detection
- accounting: Write-back of terminal phases
- stats / metrics: Counters and Prometheus exposition
- control_plane / kube: Orchestrator protocol and Kubernetes client
- bridge: Daemon wiring
"""

from .config import load_config
from .schema import (
    AccountingConfig,
    BridgeConfig,
    DispatchConfig,
    GateConfig,
    KubeConfig,
    MetricsConfig,
    ReconcileConfig,
    ResourceMapping,
    SpoolConfig,
    TranslatorConfig,
)
from .errors import (
    BridgeError,
    DispatchError,
    InvalidTransitionError,
    MissingImageError,
    ReconcileError,
    RejectedDispatchError,
    StaleWorkloadError,
    TransientDispatchError,
    TranslationError,
    UnsupportedResourceError,
)
from .models import (
    Accept,
    Delegate,
    DelegationIntent,
    GresRequest,
    IntentAction,
    ObjectRef,
    PhaseEvent,
    Reject,
    SubmissionDescriptor,
    WorkloadKind,
    WorkloadSpec,
)
from .identity import idempotency_key, workload_name
from .translator import Translator, translate
from .intents import IntentQueue, MemoryIntentQueue, SpoolIntentQueue
from .records import DispatchRecord, RecordTable
from .backoff import BackoffPolicy
from .stats import BridgeStats
from .accounting import AccountingReporter, HttpAccountingSink, SpoolResultSink
from .metrics import MetricsBridge
from .control_plane import ControlPlane
from .dispatcher import Dispatcher
from .status_sources import PollingStatusSource, WatchStatusSource, make_status_source, subscribe_job
from .reconciler import Reconciler
from .gate import SubmissionGate
