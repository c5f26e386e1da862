# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Prometheus exposition of dispatch and reconcile state.

Counters and histograms live on the BridgeStats registry. MetricsBridge adds
a read-only collector for the record-table gauges, which are computed at
scrape time. Nothing here mutates bridge state.
"""

import logging

from prometheus_client import generate_latest, start_http_server
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector

from slurmbridge.core.records import RecordTable
from slurmbridge.core.stats import PREFIX, BridgeStats

logger = logging.getLogger(__name__)


class MetricsBridge(Collector):
    """Record-table collector plus the exposition endpoint.

    Usage:
        metrics = MetricsBridge(stats, records)
        metrics.serve(port=9464)
        print(metrics.render())
    """

    def __init__(self, stats: BridgeStats, records: RecordTable):
        self.stats = stats
        self.records = records
        self.registry = stats.registry
        self.registry.register(self)

    def collect(self):
        by_phase = self.records.count_by_phase()
        yield GaugeMetricFamily(
            f"{PREFIX}_inflight_records",
            "Dispatch records not yet in a terminal phase",
            value=sum(count for phase, count in by_phase.items() if not phase.is_terminal),
        )
        phases = GaugeMetricFamily(f"{PREFIX}_records", "Dispatch records by phase", labels=["phase"])
        for phase, count in by_phase.items():
            phases.add_metric([phase.value], count)
        yield phases

    def render(self) -> str:
        """Text exposition of the current metrics."""
        return generate_latest(self.registry).decode("utf-8")

    def serve(self, port: int, addr: str = "0.0.0.0"):
        """Start the scrape endpoint in a background thread."""
        logger.info("Serving metrics on %s:%d", addr, port)
        return start_http_server(port, addr=addr, registry=self.registry)
