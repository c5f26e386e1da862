# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Bridge daemon: wires the dispatcher, reconciler and metrics bridge together.

Every component is built from one explicit BridgeConfig; there is no global
state. ``run()`` blocks until SIGTERM/SIGINT or ``stop()``.
"""

import logging
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from slurmbridge.core.accounting import AccountingReporter, AccountingSink, HttpAccountingSink, SpoolResultSink
from slurmbridge.core.control_plane import ControlPlane
from slurmbridge.core.dispatcher import Dispatcher
from slurmbridge.core.intents import IntentQueue, SpoolIntentQueue
from slurmbridge.core.metrics import MetricsBridge
from slurmbridge.core.reconciler import Reconciler
from slurmbridge.core.records import RecordTable
from slurmbridge.core.schema import BridgeConfig
from slurmbridge.core.stats import BridgeStats
from slurmbridge.core.status_sources import StatusSource, make_status_source
from slurmbridge.logging_utils import ROCKET, section, success, warn

logger = logging.getLogger(__name__)


def setup_signal_handlers(stop_event: threading.Event) -> None:
    """Setup signal handlers for graceful shutdown.

    Args:
        stop_event: Event to signal shutdown
    """

    def signal_handler(signum, frame):
        sig_name = signal.Signals(signum).name
        logger.warning("Received signal %s, shutting down...", sig_name)
        stop_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


@dataclass
class Bridge:
    """The long-running bridge process.

    Usage:
        bridge = Bridge.from_config(load_config("bridge.yaml"))
        bridge.run()
    """

    config: BridgeConfig
    queue: IntentQueue
    control_plane: ControlPlane
    records: RecordTable
    stats: BridgeStats
    accounting: AccountingReporter
    dispatcher: Dispatcher
    reconciler: Reconciler
    source: StatusSource
    metrics: MetricsBridge
    stop_event: threading.Event
    threads: list[threading.Thread] = field(default_factory=list)

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        control_plane: ControlPlane | None = None,
        queue: IntentQueue | None = None,
        clock: Callable[[], float] = time.time,
    ) -> "Bridge":
        """Build every component from ``config``.

        Args:
            config: Validated bridge configuration
            control_plane: Override for the Kubernetes control plane (tests)
            queue: Override for the spool intent queue (tests, embedding)
            clock: Time source shared by all components
        """
        if control_plane is None:
            from slurmbridge.core.kube import KubeControlPlane

            control_plane = KubeControlPlane.from_config(
                config.kube, training_operator=config.translator.distributed_kind_enabled
            )
        if queue is None:
            queue = SpoolIntentQueue(config.spool_path)
        spool = queue if isinstance(queue, SpoolIntentQueue) else None

        stats = BridgeStats()
        records = RecordTable(clock=clock)

        sinks: list[AccountingSink] = []
        if config.accounting.write_results and spool is not None:
            sinks.append(SpoolResultSink(spool))
        http_sink = HttpAccountingSink.from_config(config.accounting)
        if http_sink.enabled:
            sinks.append(http_sink)
        accounting = AccountingReporter(sinks, stats=stats)

        stop_event = threading.Event()
        dispatcher = Dispatcher(
            config.dispatch,
            control_plane,
            records,
            accounting,
            stats,
            clock=clock,
            stop_event=stop_event,
        )
        reconciler = Reconciler(config.reconcile, records, accounting, stats, clock=clock, spool=spool)
        source = make_status_source(config.reconcile, control_plane, records, call_timeout=config.dispatch.call_timeout)

        return cls(
            config=config,
            queue=queue,
            control_plane=control_plane,
            records=records,
            stats=stats,
            accounting=accounting,
            dispatcher=dispatcher,
            reconciler=reconciler,
            source=source,
            metrics=MetricsBridge(stats, records),
            stop_event=stop_event,
        )

    def start(self) -> None:
        """Start workers, the reconciler and the metrics endpoint."""
        section(f"Starting {self.config.name}", ROCKET, logger)

        if isinstance(self.queue, SpoolIntentQueue):
            self.queue.ensure()
            self.queue.requeue_orphans()
            logger.info("Intent spool: %s", self.queue.root)
        self.reconciler.recover(self.control_plane, self.config.dispatch.call_timeout)

        if self.config.metrics.enabled:
            self.metrics.serve(self.config.metrics.port, self.config.metrics.addr)

        self.threads = self.dispatcher.start_workers(self.queue, self.stop_event)
        reconciler_thread = threading.Thread(
            target=self.reconciler.run,
            args=(self.source, self.stop_event),
            name="reconciler",
            daemon=True,
        )
        reconciler_thread.start()
        self.threads.append(reconciler_thread)
        success(f"{self.config.name} running ({self.config.dispatch.workers} workers)", logger)

    def run(self, install_signal_handlers: bool = True) -> None:
        """Start everything and block until stopped."""
        if install_signal_handlers:
            setup_signal_handlers(self.stop_event)
        self.start()
        self.stop_event.wait()
        self.join()

    def stop(self) -> None:
        self.stop_event.set()

    def join(self, timeout: float = 10.0) -> None:
        deadline = time.monotonic() + timeout
        for thread in self.threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        alive = [t.name for t in self.threads if t.is_alive()]
        if alive:
            warn(f"Threads still running at shutdown: {', '.join(alive)}", logger)
        logger.info("%s stopped", self.config.name)
