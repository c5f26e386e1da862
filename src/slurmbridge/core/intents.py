# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Delegation intent queues.

The gate runs inside the scheduler's submission path, so it hands work to the
dispatcher through a queue instead of calling the control plane itself.

- MemoryIntentQueue: in-process queue, used when gate and dispatcher share a process
- SpoolIntentQueue: directory spool on a shared filesystem

Spool layout:
    intents/<key>.json     delegate intents waiting for a worker
    cancel/<key>           cancel markers (written by the polling stub or CLI)
    claimed/<key>.json     taken by a worker, not yet acknowledged
    claimed/<key>.cancel   cancel marker taken by a worker
    done/<key>.json        acknowledged delegate intents (dedup ledger)
    results/<key>.phase    terminal phase, read by the polling stub
"""

import contextlib
import logging
import os
import queue
import re
import threading
import time
from pathlib import Path
from typing import Protocol

from slurmbridge.core.models import DelegationIntent, IntentAction

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_key(key: str) -> str:
    """Reject keys that are unsafe to use as file names."""
    if not _KEY_PATTERN.match(key):
        raise ValueError(f"Invalid idempotency key: {key!r}")
    return key


class IntentQueue(Protocol):
    """Queue between the submission gate and the dispatcher workers."""

    def put(self, intent: DelegationIntent) -> bool:
        """Enqueue an intent. Returns False if this key was already enqueued."""
        ...

    def get(self, timeout: float) -> DelegationIntent | None:
        """Take the next intent, waiting up to ``timeout`` seconds."""
        ...

    def ack(self, intent: DelegationIntent) -> None:
        """Mark an intent as handled."""
        ...


class MemoryIntentQueue:
    """In-process intent queue with per-key deduplication."""

    def __init__(self):
        self._queue: queue.Queue[DelegationIntent] = queue.Queue()
        self._seen: set[tuple[IntentAction, str]] = set()
        self._lock = threading.Lock()
        self.acked: list[DelegationIntent] = []

    def put(self, intent: DelegationIntent) -> bool:
        token = (intent.action, intent.idempotency_key)
        with self._lock:
            if token in self._seen:
                return False
            self._seen.add(token)
        self._queue.put(intent)
        return True

    def get(self, timeout: float) -> DelegationIntent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def ack(self, intent: DelegationIntent) -> None:
        with self._lock:
            self.acked.append(intent)

    def __len__(self) -> int:
        return self._queue.qsize()


class SpoolIntentQueue:
    """Filesystem spool shared by the submit host, the daemon and compute nodes.

    All writes are atomic: content goes to a temp file which is then hard
    linked into place. ``os.link`` fails if the target exists, which makes
    enqueueing exclusive per key without any locking.
    """

    def __init__(self, root: Path | str, poll_interval: float = 0.2):
        self.root = Path(root)
        self.poll_interval = poll_interval
        self.intents_dir = self.root / "intents"
        self.cancel_dir = self.root / "cancel"
        self.claimed_dir = self.root / "claimed"
        self.done_dir = self.root / "done"
        self.results_dir = self.root / "results"

    def ensure(self) -> None:
        """Create the spool directories.

        ``cancel/`` is world-writable with the sticky bit because the polling
        stub runs as the job owner.
        """
        for directory in (self.intents_dir, self.claimed_dir, self.done_dir, self.results_dir):
            directory.mkdir(parents=True, exist_ok=True)
        self.cancel_dir.mkdir(parents=True, exist_ok=True)
        with contextlib.suppress(PermissionError):
            os.chmod(self.cancel_dir, 0o1777)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def is_known(self, key: str) -> bool:
        """True if a delegate intent for ``key`` was ever enqueued."""
        name = f"{key}.json"
        return any((d / name).exists() for d in (self.intents_dir, self.claimed_dir, self.done_dir))

    def put(self, intent: DelegationIntent) -> bool:
        key = validate_key(intent.idempotency_key)
        if intent.action is IntentAction.CANCEL:
            return self._write_exclusive(self.cancel_dir / key, intent.to_json())

        if self.is_known(key):
            logger.debug("Intent %s already spooled", key)
            return False
        return self._write_exclusive(self.intents_dir / f"{key}.json", intent.to_json())

    def _write_exclusive(self, target: Path, content: str) -> bool:
        tmp = target.parent / f".{target.name}.{os.getpid()}.{threading.get_ident()}.tmp"
        tmp.write_text(content)
        try:
            os.link(tmp, target)
            return True
        except FileExistsError:
            return False
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def get(self, timeout: float) -> DelegationIntent | None:
        deadline = time.monotonic() + timeout
        while True:
            intent = self._claim_next()
            if intent is not None:
                return intent
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval, remaining))

    def _claim_next(self) -> DelegationIntent | None:
        # Cancels first so a queued delegate for the same key is skipped.
        for marker in sorted(self._list(self.cancel_dir)):
            claimed = self.claimed_dir / f"{marker.name}.cancel"
            if self._rename(marker, claimed):
                return self._read_cancel(claimed, marker.name)

        pending = sorted(self._list(self.intents_dir), key=_mtime)
        for path in pending:
            claimed = self.claimed_dir / path.name
            if self._rename(path, claimed):
                try:
                    return DelegationIntent.from_json(claimed.read_text())
                except (ValueError, KeyError) as e:
                    logger.error("Discarding malformed intent %s: %s", path.name, e)
                    with contextlib.suppress(FileNotFoundError):
                        claimed.unlink()
        return None

    def _read_cancel(self, path: Path, key: str) -> DelegationIntent:
        text = path.read_text().strip()
        if text:
            try:
                return DelegationIntent.from_json(text)
            except (ValueError, KeyError):
                logger.debug("Cancel marker %s is not JSON, using file name", key)
        return DelegationIntent(action=IntentAction.CANCEL, idempotency_key=key)

    def ack(self, intent: DelegationIntent) -> None:
        key = intent.idempotency_key
        if intent.action is IntentAction.CANCEL:
            with contextlib.suppress(FileNotFoundError):
                (self.claimed_dir / f"{key}.cancel").unlink()
            return
        self._rename(self.claimed_dir / f"{key}.json", self.done_dir / f"{key}.json")

    def requeue_orphans(self) -> int:
        """Return claimed-but-unacknowledged intents to the queue.

        Called on daemon start; safe because dispatch is idempotent.
        """
        count = 0
        for path in self._list(self.claimed_dir):
            if path.suffix == ".cancel":
                target = self.cancel_dir / path.stem
            else:
                target = self.intents_dir / path.name
            if self._rename(path, target):
                count += 1
        if count:
            logger.info("Re-queued %d orphaned intents", count)
        return count

    def dispatched_intents(self) -> list[DelegationIntent]:
        """Acknowledged delegate intents from the ``done/`` ledger."""
        intents = []
        for path in sorted(self._list(self.done_dir)):
            try:
                intents.append(DelegationIntent.from_json(path.read_text()))
            except FileNotFoundError:
                continue
            except (ValueError, KeyError) as e:
                logger.warning("Skipping unreadable intent %s: %s", path.name, e)
        return intents

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def write_result(self, key: str, phase: str) -> None:
        target = self.results_dir / f"{validate_key(key)}.phase"
        tmp = self.results_dir / f".{target.name}.{os.getpid()}.{threading.get_ident()}.tmp"
        tmp.write_text(f"{phase}\n")
        os.replace(tmp, target)

    def read_result(self, key: str) -> str | None:
        path = self.results_dir / f"{validate_key(key)}.phase"
        try:
            return path.read_text().strip()
        except FileNotFoundError:
            return None

    def prune(self, max_age: float, now: float | None = None) -> int:
        """Delete done intents and results older than ``max_age`` seconds."""
        now = time.time() if now is None else now
        removed = 0
        for directory in (self.done_dir, self.results_dir):
            for path in self._list(directory):
                if now - _mtime(path) > max_age:
                    with contextlib.suppress(FileNotFoundError):
                        path.unlink()
                        removed += 1
        return removed

    @staticmethod
    def _list(directory: Path) -> list[Path]:
        try:
            return [p for p in directory.iterdir() if not p.name.startswith(".")]
        except FileNotFoundError:
            return []

    @staticmethod
    def _rename(src: Path, dst: Path) -> bool:
        try:
            os.rename(src, dst)
            return True
        except FileNotFoundError:
            return False


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return 0.0
