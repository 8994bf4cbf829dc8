"""
FailsafeAuditQueue -- durable holding area for critical audit entries.

Responsibility:
    When the audit ledger cannot write a critical entry (backend judged
    unhealthy, or the write failed transiently), the entry is appended here
    instead of being lost.  The queue is a JSON-lines file: one serialized
    AuditEntryData per line, flushed and fsync'd before ``enqueue`` returns,
    so it survives a process restart.

Architecture position:
    Kernel > Services -- infrastructure used only by AuditLedger.

Invariants enforced:
    - Entries keep their original occurrence timestamp; the drain replays
      them with that timestamp, not the drain time.
    - FIFO order is preserved across enqueue/replace.

Failure modes:
    - OSError if the file cannot be written.  This is deliberately not
      caught: a failsafe that silently fails is worse than a loud error.
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path

from approval_kernel.domain.audit import AuditEntryData
from approval_kernel.logging_config import get_logger
from approval_kernel.utils.hashing import canonicalize_json

logger = get_logger("services.failsafe_queue")


class FailsafeAuditQueue:
    """Append-only JSONL queue of audit entries awaiting a healthy ledger."""

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def enqueue(self, data: AuditEntryData) -> int:
        """Durably append ``data``; return its 1-based queue position."""
        line = canonicalize_json(data.to_dict())
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
                fh.flush()
                os.fsync(fh.fileno())
            position = self._count_lines()
        logger.warning(
            "audit_entry_queued_failsafe",
            extra={"event": data.to_dict()["event"], "queue_position": position},
        )
        return position

    def pending(self) -> list[AuditEntryData]:
        """All queued entries, oldest first."""
        with self._lock:
            return self._read()

    def replace(self, entries: list[AuditEntryData]) -> None:
        """Atomically rewrite the queue with ``entries`` (used after a drain)."""
        with self._lock:
            if not entries:
                if self._path.exists():
                    self._path.unlink()
                return
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            with tmp.open("w", encoding="utf-8") as fh:
                for entry in entries:
                    fh.write(canonicalize_json(entry.to_dict()) + "\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self._path)

    def __len__(self) -> int:
        with self._lock:
            return self._count_lines()

    def _read(self) -> list[AuditEntryData]:
        if not self._path.exists():
            return []
        entries = []
        with self._path.open("r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    entries.append(AuditEntryData.from_dict(json.loads(line)))
        return entries

    def _count_lines(self) -> int:
        if not self._path.exists():
            return 0
        with self._path.open("r", encoding="utf-8") as fh:
            return sum(1 for line in fh if line.strip())
