"""Admission audit log: append-only JSON Lines with rotation and counters.

Rejections are expected traffic-shaping outcomes. They are recorded here at
low severity so limits can be tuned, never reported as gateway errors.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import threading
from collections import Counter
from pathlib import Path

from src.models import AuditEvent, AuditEventType

logger = logging.getLogger(__name__)


def summarize_audit_log(log_path: Path) -> dict[str, dict[str, int]]:
    """Count events in a log file by event type, then by endpoint class.

    Lines that are not complete JSON events, such as a final line cut short
    by a killed writer, are skipped and reported in a warning.
    """
    summary: dict[str, Counter[str]] = {}
    if not log_path.exists():
        return {}
    skipped = 0
    for line in log_path.read_text().splitlines():
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
            event_type = entry["event_type"]
        except (json.JSONDecodeError, KeyError, TypeError):
            skipped += 1
            continue
        by_class = summary.setdefault(event_type, Counter())
        by_class[entry.get("endpoint_class") or "none"] += 1
    if skipped:
        logger.warning("Skipped %d unreadable line(s) in %s", skipped, log_path)
    return {event_type: dict(counts) for event_type, counts in summary.items()}


class AuditLogger:
    """Append-only structured audit logger with size-based rotation."""

    def __init__(
        self,
        log_path: str,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        self._counts: Counter[AuditEventType] = Counter()
        self._counts_lock = threading.Lock()

    @classmethod
    def from_env(cls, log_path: str) -> AuditLogger:
        """Create AuditLogger with rotation settings from environment variables."""
        max_bytes = int(os.environ.get("AUDIT_LOG_MAX_BYTES", "10485760"))
        backup_count = int(os.environ.get("AUDIT_LOG_BACKUP_COUNT", "5"))
        return cls(log_path=log_path, max_bytes=max_bytes, backup_count=backup_count)

    def counts(self) -> dict[AuditEventType, int]:
        """Events logged by this process, per type."""
        with self._counts_lock:
            return dict(self._counts)

    def _maybe_rotate(self) -> None:
        if not self.log_path.exists():
            return
        if self.log_path.stat().st_size < self._max_bytes:
            return

        oldest = self.log_path.parent / f"{self.log_path.name}.{self._backup_count}"
        if oldest.exists():
            oldest.unlink()

        for i in range(self._backup_count - 1, 0, -1):
            src = self.log_path.parent / f"{self.log_path.name}.{i}"
            if src.exists():
                src.rename(self.log_path.parent / f"{self.log_path.name}.{i + 1}")

        self.log_path.rename(self.log_path.parent / f"{self.log_path.name}.1")

    def log(self, event: AuditEvent) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        line = event.model_dump_json(exclude_none=True)

        # Rotation and write share one lock file so concurrent workers never
        # append to a file that is being renamed.
        lock_file = self.log_path.parent / f".{self.log_path.name}.lock"
        with open(lock_file, "w") as lf:
            fcntl.flock(lf, fcntl.LOCK_EX)
            try:
                self._maybe_rotate()
                with open(self.log_path, "a") as f:
                    f.write(line + "\n")
            finally:
                fcntl.flock(lf, fcntl.LOCK_UN)

        with self._counts_lock:
            self._counts[event.event_type] += 1
