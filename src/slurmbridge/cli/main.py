# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
slurmbridge command line.

Usage:
    slurmbridge serve -f bridge.yaml
    slurmbridge gate -f bridge.yaml < job.json
    slurmbridge dry-run -f bridge.yaml --input job.json
    slurmbridge cancel -f bridge.yaml --key 3f2a9c0d1e4b5a67
"""

import argparse
import logging
import sys
from pathlib import Path

import yaml
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from slurmbridge.contract import HookAction, SubmissionPayload
from slurmbridge.core.config import load_config
from slurmbridge.core.intents import SpoolIntentQueue, validate_key
from slurmbridge.core.models import Accept, DelegationIntent, Delegate, IntentAction, SubmissionDescriptor
from slurmbridge.core.schema import BridgeConfig
from slurmbridge.logging_utils import setup_logging

console = Console()

EXIT_REJECT = 2


def read_payload(path: Path | None) -> SubmissionPayload:
    """Submission payload JSON from ``path`` or stdin."""
    text = path.read_text() if path is not None else sys.stdin.read()
    return SubmissionPayload.model_validate_json(text)


def cmd_serve(config: BridgeConfig) -> int:
    from slurmbridge.core.bridge import Bridge

    Bridge.from_config(config).run()
    return 0


def cmd_gate(config: BridgeConfig, input_path: Path | None) -> int:
    """Print the HookVerdict JSON on stdout. Exit 0 to accept, 2 to reject."""
    from slurmbridge.core.gate import SubmissionGate

    descriptor = SubmissionDescriptor.from_payload(read_payload(input_path))
    verdict = SubmissionGate.from_config(config).submit(descriptor)
    sys.stdout.write(verdict.model_dump_json(exclude_none=True) + "\n")
    sys.stdout.flush()
    return EXIT_REJECT if verdict.action is HookAction.REJECT else 0


def cmd_dry_run(config: BridgeConfig, input_path: Path | None) -> int:
    from slurmbridge.core.gate import SubmissionGate
    from slurmbridge.core.intents import MemoryIntentQueue
    from slurmbridge.core.kube import build_manifest

    descriptor = SubmissionDescriptor.from_payload(read_payload(input_path))
    gate = SubmissionGate.from_config(config, queue=MemoryIntentQueue())
    decision = gate.evaluate(descriptor)

    console.print()
    console.print(Panel("[bold]🔍 DRY-RUN[/] [dim](nothing is enqueued)[/]", title=descriptor.job_name, border_style="yellow"))

    if isinstance(decision, Accept):
        console.print("[bold green]ACCEPT[/] job runs natively in Slurm")
        return 0
    if not isinstance(decision, Delegate):
        console.print(f"[bold red]REJECT[/] {decision.reason}")
        return EXIT_REJECT

    spec = decision.spec
    table = Table(show_header=False, box=None)
    table.add_row("Decision", "[bold cyan]DELEGATE[/]")
    table.add_row("Idempotency key", decision.idempotency_key)
    table.add_row("Kind", spec.kind.value)
    table.add_row("Workload", f"{spec.namespace}/{spec.name}")
    table.add_row("Image", spec.image)
    table.add_row("Spec hash", spec.spec_hash())
    console.print(table)
    console.print()

    manifest = yaml.safe_dump(build_manifest(spec), sort_keys=False)
    console.print(Panel(Syntax(manifest, "yaml", theme="monokai"), title="Manifest", border_style="cyan"))
    stub = gate.render_stub(spec, decision.idempotency_key, descriptor.job_name)
    console.print(Panel(Syntax(stub, "bash", theme="monokai", line_numbers=True), title="Polling stub", border_style="cyan"))
    return 0


def cmd_cancel(config: BridgeConfig, key: str) -> int:
    spool = SpoolIntentQueue(config.spool_path)
    spool.ensure()
    intent = DelegationIntent(action=IntentAction.CANCEL, idempotency_key=validate_key(key))
    if spool.put(intent):
        console.print(f"[bold green]✅ Cancel requested:[/] {key}")
    else:
        console.print(f"[yellow]Cancel already pending:[/] {key}")
    return 0


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="slurmbridge",
        description="slurmbridge - run Slurm GPU jobs as Kubernetes workloads",
        epilog="""Examples:
  slurmbridge serve -f bridge.yaml                       # Run the daemon
  slurmbridge gate -f bridge.yaml < job.json             # Submission hook
  slurmbridge dry-run -f bridge.yaml --input job.json    # Show the decision
  slurmbridge cancel -f bridge.yaml --key KEY            # Cancel a delegated job
""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common_args(p):
        p.add_argument("-f", "--file", type=Path, required=True, dest="config", help="YAML config file")
        p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    serve_parser = subparsers.add_parser("serve", help="Run the bridge daemon")
    add_common_args(serve_parser)

    gate_parser = subparsers.add_parser("gate", help="Evaluate one submission (hook entry point)")
    add_common_args(gate_parser)
    gate_parser.add_argument("--input", type=Path, help="Submission JSON (default: stdin)")

    dry_run_parser = subparsers.add_parser("dry-run", help="Show the decision and manifest without enqueueing")
    add_common_args(dry_run_parser)
    dry_run_parser.add_argument("--input", type=Path, help="Submission JSON (default: stdin)")

    cancel_parser = subparsers.add_parser("cancel", help="Request cancellation of a delegated job")
    add_common_args(cancel_parser)
    cancel_parser.add_argument("--key", required=True, help="Idempotency key of the job")

    args = parser.parse_args(argv)

    # The hook's stdout carries the verdict.
    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=level, stream=sys.stderr if args.command == "gate" else None)

    if not args.config.exists():
        console.print(f"[bold red]Config not found:[/] {args.config}")
        sys.exit(1)

    try:
        config = load_config(args.config)
        if args.command == "serve":
            code = cmd_serve(config)
        elif args.command == "gate":
            code = cmd_gate(config, args.input)
        elif args.command == "dry-run":
            code = cmd_dry_run(config, args.input)
        else:
            code = cmd_cancel(config, args.key)
    except Exception as e:
        console.print(f"[bold red]Error:[/] {e}")
        logging.debug("Full traceback:", exc_info=True)
        sys.exit(1)

    sys.exit(code)


if __name__ == "__main__":
    main()
