# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Submission gate: the scheduler-side hook.

Decides per submission whether a job runs natively, is delegated to the
orchestrator, or is refused. Delegated jobs are enqueued as intents and their
batch script is replaced by a polling stub. No network I/O happens here.
"""

import json
import logging
import shlex
import time
from collections.abc import Callable
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from slurmbridge.contract import HookAction, HookVerdict
from slurmbridge.core.errors import TranslationError
from slurmbridge.core.identity import idempotency_key
from slurmbridge.core.intents import IntentQueue, SpoolIntentQueue
from slurmbridge.core.models import (
    Accept,
    DelegationIntent,
    Delegate,
    GateDecision,
    IntentAction,
    Reject,
    SubmissionDescriptor,
    WorkloadSpec,
)
from slurmbridge.core.schema import BridgeConfig, GateConfig
from slurmbridge.core.stats import BridgeStats
from slurmbridge.core.translator import Translator

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent / "templates"
STUB_TEMPLATE = "poll_stub.sh.j2"


def _template_env() -> Environment:
    env = Environment(loader=FileSystemLoader(str(TEMPLATE_DIR)), keep_trailing_newline=True)
    env.filters["shquote"] = shlex.quote
    return env


class SubmissionGate:
    """Accept / delegate / reject decisions for scheduler submissions.

    Usage:
        gate = SubmissionGate(config.gate, Translator(config.translator), queue, stats, spool_dir)
        verdict = gate.submit(descriptor)
    """

    def __init__(
        self,
        config: GateConfig,
        translator: Translator,
        queue: IntentQueue,
        stats: BridgeStats,
        spool_dir: Path | str,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.translator = translator
        self.queue = queue
        self.stats = stats
        self.spool_dir = Path(spool_dir)
        self.clock = clock
        self._template = _template_env().get_template(STUB_TEMPLATE)

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        queue: IntentQueue | None = None,
        stats: BridgeStats | None = None,
    ) -> "SubmissionGate":
        """Gate writing to the configured spool (or ``queue`` if given)."""
        if queue is None:
            spool = SpoolIntentQueue(config.spool_path)
            spool.ensure()
            queue = spool
        return cls(
            config.gate,
            Translator(config.translator),
            queue,
            stats or BridgeStats(),
            spool_dir=config.spool_path,
        )

    def evaluate(self, descriptor: SubmissionDescriptor) -> GateDecision:
        """Decide what happens to a submission. Pure apart from logging."""
        if not self.config.enabled:
            return Accept()
        if not self.translator.recognizes(descriptor):
            return Accept()

        try:
            spec = self.translator.translate(descriptor)
        except TranslationError as e:
            logger.info("Rejecting job %s from %s: %s", descriptor.job_name, descriptor.user_id, e)
            return Reject(reason=str(e))

        return Delegate(spec=spec, idempotency_key=idempotency_key(descriptor))

    def submit(self, descriptor: SubmissionDescriptor) -> HookVerdict:
        """Hook entry point: evaluate, enqueue if delegated, build the verdict."""
        started = time.perf_counter()
        decision = self.evaluate(descriptor)

        if isinstance(decision, Reject):
            self.stats.record_failure("translation")
            self.stats.record_gate_decision("reject")
            verdict = HookVerdict(action=HookAction.REJECT, message=decision.reason)
        elif isinstance(decision, Delegate):
            verdict = self._delegate(descriptor, decision)
            self.stats.record_gate_decision("delegate")
        else:
            self.stats.record_gate_decision("accept")
            verdict = HookVerdict(action=HookAction.ACCEPT)

        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > self.config.latency_budget_ms:
            logger.warning(
                "Gate decision for %s took %.0fms (budget %dms)",
                descriptor.job_name,
                elapsed_ms,
                self.config.latency_budget_ms,
            )
        return verdict

    def _delegate(self, descriptor: SubmissionDescriptor, decision: Delegate) -> HookVerdict:
        spec = decision.spec
        key = decision.idempotency_key
        intent = DelegationIntent(
            action=IntentAction.DELEGATE,
            idempotency_key=key,
            job_name=descriptor.job_name,
            spec=spec,
            submitted_at=self.clock(),
        )
        if self.queue.put(intent):
            logger.info("Delegated job %s as %s %s/%s", descriptor.job_name, spec.kind.value, spec.namespace, spec.name)
        else:
            logger.info("Job %s (%s) already delegated", descriptor.job_name, key)

        return HookVerdict(
            action=HookAction.ACCEPT,
            message=f"Delegated to {spec.kind.value} {spec.namespace}/{spec.name}",
            script=self.render_stub(spec, key, descriptor.job_name),
            idempotency_key=key,
            workload=f"{spec.namespace}/{spec.name}",
        )

    def render_stub(self, spec: WorkloadSpec, key: str, job_name: str) -> str:
        return self._template.render(
            job_name=" ".join(job_name.split()),
            job_name_json=json.dumps(job_name),
            kind=spec.kind.value,
            namespace=spec.namespace,
            workload=spec.name,
            key=key,
            spool_dir=str(self.spool_dir),
            poll_interval=self.config.stub_poll_interval,
        )
