#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Frozen dataclass schema definitions for the bridge configuration.

Uses marshmallow_dataclass for type-safe configuration with validation.
All config classes are frozen (immutable) after creation and are passed
explicitly into each component at construction.

Values with no sensible universal default (the gres -> resource mapping,
retry counts and delays, the staleness timeout) are required fields.
"""

from dataclasses import field
from pathlib import Path
from typing import ClassVar, Dict, List, Optional, Type

import yaml
from marshmallow import Schema, validate
from marshmallow_dataclass import dataclass

from slurmbridge.logging_utils import get_logger

logger = get_logger(__name__)


# ============================================================================
# Site Configuration (slurmbridge.yaml)
# ============================================================================


@dataclass
class SiteConfig:
    """Site-wide defaults from slurmbridge.yaml."""

    default_namespace: Optional[str] = None
    default_image: Optional[str] = None
    images: Optional[Dict[str, str]] = None
    spool_dir: Optional[str] = None
    accounting_endpoint: Optional[str] = None

    Schema: ClassVar[Type[Schema]] = Schema


# ============================================================================
# Sub-Configuration Dataclasses (all frozen)
# ============================================================================


@dataclass(frozen=True)
class ResourceMapping:
    """How one Slurm gres name maps onto an orchestration resource.

    Example (YAML):
        gpu:
          resource_name: nvidia.com/gpu
          node_label: nvidia.com/gpu.product
          types:
            a100: NVIDIA-A100-SXM4-80GB
    """

    resource_name: str
    node_label: Optional[str] = None
    types: Dict[str, str] = field(default_factory=dict)

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class TranslatorConfig:
    """Submission -> workload translation settings."""

    resource_map: Dict[str, ResourceMapping]
    default_image: Optional[str] = None
    default_namespace: str = "default"
    images: Dict[str, str] = field(default_factory=dict)
    restart_policy: str = field(default="Never", metadata={"validate": validate.OneOf(["Never", "OnFailure"])})
    distributed_kind_enabled: bool = True
    env_passthrough: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    command: Optional[List[str]] = None

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class GateConfig:
    """Submission gate settings."""

    enabled: bool = True
    latency_budget_ms: int = field(default=200, metadata={"validate": validate.Range(min=1)})
    stub_poll_interval: int = field(default=15, metadata={"validate": validate.Range(min=1)})

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class DispatchConfig:
    """Dispatcher retry and concurrency settings."""

    max_attempts: int = field(metadata={"validate": validate.Range(min=1)})
    initial_backoff: float = field(metadata={"validate": validate.Range(min=0)})
    max_backoff: float = field(metadata={"validate": validate.Range(min=0)})
    backoff_multiplier: float = field(default=2.0, metadata={"validate": validate.Range(min=1)})
    jitter: float = field(default=0.5, metadata={"validate": validate.Range(min=0, max=1)})
    call_timeout: float = field(default=10.0, metadata={"validate": validate.Range(min=0, min_inclusive=False)})
    workers: int = field(default=4, metadata={"validate": validate.Range(min=1)})

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class ReconcileConfig:
    """Status observation settings.

    The staleness timeout is independent of the dispatcher's retry timing.
    """

    staleness_timeout: float = field(metadata={"validate": validate.Range(min=0, min_inclusive=False)})
    mode: str = field(default="watch", metadata={"validate": validate.OneOf(["watch", "poll"])})
    poll_interval: float = field(default=15.0, metadata={"validate": validate.Range(min=0, min_inclusive=False)})
    watch_timeout: int = field(default=300, metadata={"validate": validate.Range(min=1)})
    check_interval: float = field(default=10.0, metadata={"validate": validate.Range(min=0, min_inclusive=False)})
    retention_seconds: float = field(default=3600.0, metadata={"validate": validate.Range(min=0)})

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class KubeConfig:
    """How to reach the Kubernetes API."""

    in_cluster: bool = False
    kubeconfig: Optional[str] = None
    context: Optional[str] = None

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class AccountingConfig:
    """Where terminal outcomes are written back."""

    endpoint: Optional[str] = None
    timeout: float = 5.0
    write_results: bool = True

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class MetricsConfig:
    """Prometheus scrape endpoint."""

    enabled: bool = True
    port: int = field(default=9464, metadata={"validate": validate.Range(min=1, max=65535)})
    addr: str = "0.0.0.0"

    Schema: ClassVar[Type[Schema]] = Schema


@dataclass(frozen=True)
class SpoolConfig:
    """Intent spool shared by the submit host, the daemon and compute nodes."""

    path: str = "/var/spool/slurmbridge"

    Schema: ClassVar[Type[Schema]] = Schema


# ============================================================================
# Main Configuration Dataclass
# ============================================================================


@dataclass(frozen=True)
class BridgeConfig:
    """Complete slurmbridge configuration (frozen, immutable).

    This is the main configuration type returned by load_config().
    """

    translator: TranslatorConfig
    dispatch: DispatchConfig
    reconcile: ReconcileConfig

    name: str = "slurmbridge"
    kube: KubeConfig = field(default_factory=KubeConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    accounting: AccountingConfig = field(default_factory=AccountingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    spool: SpoolConfig = field(default_factory=SpoolConfig)

    Schema: ClassVar[Type[Schema]] = Schema

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "BridgeConfig":
        with open(yaml_path, "r") as f:
            data = yaml.safe_load(f)
        schema = cls.Schema()
        return schema.load(data)

    @property
    def spool_path(self) -> Path:
        return Path(self.spool.path)
