"""Append-only audit ledger for review-field mutations.

Every change to a reviewer-related field on a task is written as one
AuditEntry: first to a bounded in-memory ring buffer, then appended to a
JSONL file on disk. Disk writes are best-effort; a failed append is logged
and never fails the mutation that produced it. Older entries that fall out
of the buffer remain on disk and come back on ``load()``.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from continuum.core.models import AuditEntry, Task, TaskStatus

logger = logging.getLogger("continuum.security.audit")

REVIEW_METADATA_FIELDS = (
    "reviewer_approved",
    "review_state",
    "approved_by",
    "approved_at",
    "review_last_activity_at",
    "entered_validating_at",
    "review_delta_note",
    "approval_rejected",
)


def diff_review_fields(old_task: Task, new_task: Task) -> list[dict[str, Any]]:
    """List the review-relevant field changes between two task states.

    ``status`` is only reported when the task enters or leaves validating.
    Metadata fields are reported as ``metadata.<field>``.
    """
    changes: list[dict[str, Any]] = []

    if old_task.reviewer != new_task.reviewer:
        changes.append({"field": "reviewer", "before": old_task.reviewer, "after": new_task.reviewer})

    if old_task.status != new_task.status and TaskStatus.VALIDATING in (old_task.status, new_task.status):
        changes.append({
            "field": "status",
            "before": old_task.status.value,
            "after": new_task.status.value,
        })

    for field in REVIEW_METADATA_FIELDS:
        before = old_task.metadata.get(field)
        after = new_task.metadata.get(field)
        if before != after:
            changes.append({"field": f"metadata.{field}", "before": before, "after": after})

    return changes


class AuditLedger:
    """Ring buffer + JSONL append log of AuditEntry records."""

    def __init__(self, path: Path, max_in_memory: int = 5000):
        self.path = Path(path)
        self.max_in_memory = max_in_memory
        self._entries: deque[AuditEntry] = deque(maxlen=max_in_memory)
        self._lock = threading.Lock()

    def record(self, entry: AuditEntry) -> None:
        with self._lock:
            self._entries.append(entry)
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(entry.model_dump_json() + "\n")
            except OSError as e:
                logger.error("Failed to write audit entry for %s: %s", entry.task_id, e)

    def record_review_mutation(
        self,
        task_id: str,
        actor: str,
        context: str,
        changes: list[dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Write one entry per change, all sharing a timestamp."""
        written: list[AuditEntry] = []
        for change in changes:
            entry = AuditEntry(
                task_id=task_id,
                actor=actor,
                field=change["field"],
                before=change.get("before"),
                after=change.get("after"),
                context=context,
            )
            if now is not None:
                entry.timestamp = now
            self.record(entry)
            written.append(entry)
        return written

    def load(self) -> int:
        """Replace the in-memory buffer with the tail of the JSONL log.

        Malformed lines are skipped. Returns the number of entries loaded.
        """
        if not self.path.exists():
            return 0

        loaded: list[AuditEntry] = []
        skipped = 0
        with self.path.open(encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    loaded.append(AuditEntry(**json.loads(line)))
                except (json.JSONDecodeError, TypeError, ValidationError):
                    skipped += 1

        with self._lock:
            self._entries = deque(loaded, maxlen=self.max_in_memory)
            count = len(self._entries)
        if skipped:
            logger.warning("Skipped %d malformed audit lines in %s", skipped, self.path)
        logger.info("Loaded %d audit entries from %s", count, self.path)
        return count

    def get_audit_for_task(self, task_id: str) -> list[AuditEntry]:
        """All buffered entries for a task, in write order."""
        with self._lock:
            return [e for e in self._entries if e.task_id == task_id]

    def get_audit_entries(
        self,
        task_id: Optional[str] = None,
        actor: Optional[str] = None,
        field: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[AuditEntry]:
        """Filtered entries, most recent first."""
        with self._lock:
            result = [
                e for e in reversed(self._entries)
                if (task_id is None or e.task_id == task_id)
                and (actor is None or e.actor == actor)
                and (field is None or e.field == field)
                and (since is None or e.timestamp >= since)
            ]
        if limit:
            result = result[:limit]
        return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
