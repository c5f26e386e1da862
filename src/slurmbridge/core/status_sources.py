# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Status sources feeding the reconciler.

- WatchStatusSource: periodic relist plus one Kubernetes watch per workload kind
- PollingStatusSource: periodic get of every in-flight object

Both yield PhaseEvents from ``subscribe(stop_event)`` until the event is set.
"""

import logging
import queue
import threading
import time
from collections.abc import Iterator
from typing import Protocol

from slurmbridge.contract import ObservedPhase
from slurmbridge.core.control_plane import ControlPlane
from slurmbridge.core.errors import BridgeError
from slurmbridge.core.models import ObjectRef, PhaseEvent, WorkloadKind
from slurmbridge.core.records import RecordTable
from slurmbridge.core.schema import ReconcileConfig

logger = logging.getLogger(__name__)


class StatusSource(Protocol):
    def subscribe(self, stop_event: threading.Event) -> Iterator[PhaseEvent]:
        """Yield phase observations until ``stop_event`` is set."""
        ...


class WatchStatusSource:
    """List-then-watch over every bridge-managed object.

    The relist runs at start, after any watch failure and every
    ``relist_interval`` seconds. Each relist re-observes every live object,
    which keeps quiet but healthy workloads from going stale.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        watch_timeout: int = 300,
        relist_interval: float | None = None,
        call_timeout: float = 10.0,
        error_backoff: float = 5.0,
    ):
        self.control_plane = control_plane
        self.watch_timeout = watch_timeout
        self.relist_interval = relist_interval if relist_interval is not None else float(watch_timeout)
        self.call_timeout = call_timeout
        self.error_backoff = error_backoff
        self._relist = threading.Event()

    def subscribe(self, stop_event: threading.Event) -> Iterator[PhaseEvent]:
        events: queue.Queue[PhaseEvent] = queue.Queue()
        for kind in self.control_plane.kinds:
            threading.Thread(
                target=self._pump,
                args=(kind, events, stop_event),
                name=f"watch-{kind.value}",
                daemon=True,
            ).start()

        next_relist = 0.0
        while not stop_event.is_set():
            now = time.monotonic()
            if now >= next_relist or self._relist.is_set():
                self._relist.clear()
                listed = self._list()
                if listed is None:
                    next_relist = now + self.error_backoff
                else:
                    next_relist = now + self.relist_interval
                    yield from listed

            try:
                yield events.get(timeout=0.5)
            except queue.Empty:
                continue

    def _list(self) -> list[PhaseEvent] | None:
        try:
            listed = self.control_plane.list_phases(timeout=self.call_timeout)
        except BridgeError as e:
            logger.warning("Relist failed: %s", e)
            return None
        logger.debug("Relisted %d workloads", len(listed))
        return listed

    def _pump(self, kind: WorkloadKind, events: "queue.Queue[PhaseEvent]", stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                for event in self.control_plane.watch_phases(kind, timeout_seconds=self.watch_timeout):
                    events.put(event)
                    if stop_event.is_set():
                        return
            except BridgeError as e:
                logger.warning("Watch for %s failed, relisting in %.0fs: %s", kind.value, self.error_backoff, e)
                stop_event.wait(self.error_backoff)
                self._relist.set()


class PollingStatusSource:
    """Polls each in-flight object every ``interval`` seconds."""

    def __init__(self, control_plane: ControlPlane, records: RecordTable, interval: float, call_timeout: float = 10.0):
        self.control_plane = control_plane
        self.records = records
        self.interval = interval
        self.call_timeout = call_timeout

    def subscribe(self, stop_event: threading.Event) -> Iterator[PhaseEvent]:
        while not stop_event.is_set():
            for record in self.records.in_flight():
                if stop_event.is_set():
                    return
                try:
                    event = self.control_plane.get_phase(record.object_ref, timeout=self.call_timeout)
                except BridgeError as e:
                    logger.warning("Status poll of %s failed: %s", record.object_ref, e)
                    continue
                yield event
            stop_event.wait(self.interval)


def subscribe_job(source: StatusSource, ref: ObjectRef, stop_event: threading.Event) -> Iterator[PhaseEvent]:
    """Events for one object, ending after its first final observation."""
    for event in source.subscribe(stop_event):
        if event.ref != ref:
            continue
        yield event
        if event.phase in (ObservedPhase.SUCCEEDED, ObservedPhase.FAILED, ObservedPhase.MISSING):
            return


def make_status_source(
    config: ReconcileConfig,
    control_plane: ControlPlane,
    records: RecordTable,
    call_timeout: float = 10.0,
) -> StatusSource:
    if config.mode == "poll":
        logger.info("Status source: polling every %.0fs", config.poll_interval)
        return PollingStatusSource(control_plane, records, interval=config.poll_interval, call_timeout=call_timeout)
    # Relist at least twice per staleness window.
    relist_interval = min(float(config.watch_timeout), config.staleness_timeout / 2)
    logger.info("Status source: watch (timeout %ds, relist every %.0fs)", config.watch_timeout, relist_interval)
    return WatchStatusSource(
        control_plane,
        watch_timeout=config.watch_timeout,
        relist_interval=relist_interval,
        call_timeout=call_timeout,
    )
