# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Write-back of terminal job phases to the scheduler's accounting surface.

Two sinks are provided:
- SpoolResultSink: writes results/<key>.phase, which the polling stub turns
  into the Slurm job's exit code (and so into native Slurm accounting)
- HttpAccountingSink: fire-and-forget PUT to an external accounting API

AccountingReporter fans out to the sinks exactly once per (key, phase).

Configuration (in the bridge YAML):
    accounting:
      endpoint: "https://accounting.example.com"
      write_results: true
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol

import requests

from slurmbridge.contract import AccountingPayload, JobPhase

if TYPE_CHECKING:
    from slurmbridge.core.intents import SpoolIntentQueue
    from slurmbridge.core.records import DispatchRecord
    from slurmbridge.core.schema import AccountingConfig
    from slurmbridge.core.stats import BridgeStats

logger = logging.getLogger(__name__)


class AccountingSink(Protocol):
    """Destination for terminal job outcomes."""

    def report(self, record: "DispatchRecord", phase: JobPhase, message: str | None = None) -> bool:
        """Write one outcome. Returns True if it was accepted."""
        ...


class SpoolResultSink:
    """Writes the terminal phase next to the job's spooled intent."""

    def __init__(self, spool: "SpoolIntentQueue"):
        self.spool = spool

    def report(self, record: "DispatchRecord", phase: JobPhase, message: str | None = None) -> bool:
        try:
            self.spool.write_result(record.idempotency_key, phase.value)
            return True
        except OSError as e:
            logger.error("Could not write result for %s: %s", record.idempotency_key, e)
            return False


@dataclass(frozen=True)
class HttpAccountingSink:
    """Fire-and-forget accounting reporter.

    Reports terminal phases to an external API if accounting.endpoint is
    configured. Failures are logged and never raised.

    Usage:
        sink = HttpAccountingSink.from_config(config.accounting)
        sink.report(record, JobPhase.SUCCEEDED)
    """

    api_endpoint: str | None = None
    timeout: float = 5.0

    @classmethod
    def from_config(cls, accounting: "AccountingConfig | None") -> "HttpAccountingSink":
        """Create sink from accounting config (disabled if no endpoint configured)."""
        endpoint = None
        timeout = 5.0
        if accounting and accounting.endpoint:
            endpoint = accounting.endpoint.rstrip("/")
            timeout = accounting.timeout
            logger.info("Accounting reporting enabled: %s", endpoint)

        return cls(api_endpoint=endpoint, timeout=timeout)

    @property
    def enabled(self) -> bool:
        return self.api_endpoint is not None

    def _now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def report(self, record: "DispatchRecord", phase: JobPhase, message: str | None = None) -> bool:
        if not self.enabled:
            return False

        try:
            payload = AccountingPayload(
                job_name=record.job_name,
                phase=phase.value,
                updated_at=self._now_iso(),
                workload=str(record.object_ref) if record.object_ref else None,
                message=message,
                attempts=record.attempts,
            )

            url = f"{self.api_endpoint}/api/jobs/{record.idempotency_key}"
            response = requests.put(url, json=payload.model_dump(exclude_none=True), timeout=self.timeout)

            if response.status_code == 200:
                logger.debug("Accounting reported: %s %s", record.idempotency_key, phase.value)
                return True
            logger.warning("Accounting report failed: HTTP %d", response.status_code)
            return False

        except requests.exceptions.RequestException as e:
            logger.warning("Accounting report error: %s", e)
            return False


class AccountingReporter:
    """Reports each (key, terminal phase) to every sink exactly once."""

    def __init__(self, sinks: list[AccountingSink], stats: "BridgeStats | None" = None):
        self.sinks = list(sinks)
        self.stats = stats
        self._reported: set[tuple[str, JobPhase]] = set()
        self._lock = threading.Lock()

    def report(self, record: "DispatchRecord", phase: JobPhase, message: str | None = None) -> bool:
        """Report a terminal phase. Returns False if it was already reported."""
        token = (record.idempotency_key, phase)
        with self._lock:
            if token in self._reported:
                logger.debug("Skipping duplicate accounting update %s %s", *token)
                return False
            self._reported.add(token)

        logger.info("Job %s (%s) -> %s", record.job_name, record.idempotency_key, phase.value)
        for sink in self.sinks:
            if not sink.report(record, phase, message) and self.stats is not None:
                self.stats.record_failure("accounting")
        return True

    def forget(self, key: str) -> None:
        """Drop dedup state for a purged record."""
        with self._lock:
            self._reported = {token for token in self._reported if token[0] != key}
