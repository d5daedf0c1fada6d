"""
Durable per-image processing state.

The whole snapshot is rewritten atomically after every mutation. Loading
never fails: a missing or corrupt state file yields an empty store.
"""

import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from auto_installer.atomic import AtomicFileWriter
from auto_installer.errors import describe_error
from auto_installer.logging_utils import fields
from auto_installer.models import (
    ProcessingRecord, RecordStatus, StateSnapshot, utc_now
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 800


class InterruptedAttempt(Exception):
    """Marker for attempts cut short by a daemon crash or kill."""


class StateStore:
    """Identity key → ProcessingRecord mapping backed by a JSON file."""

    def __init__(self, path: Union[str, Path], max_entries: int = DEFAULT_MAX_ENTRIES):
        self.path = Path(path)
        self.max_entries = max_entries
        self.snapshot = StateSnapshot()
        self._lock = threading.Lock()

    @property
    def entries(self) -> Dict[str, ProcessingRecord]:
        return self.snapshot.entries

    def load(self) -> StateSnapshot:
        """Load the snapshot from disk, falling back to an empty store."""
        if not self.path.exists():
            self.snapshot = StateSnapshot()
            return self.snapshot

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            self.snapshot = StateSnapshot.model_validate(raw)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(
                "State file unreadable; starting with empty state",
                extra=fields(statePath=str(self.path), error=str(e)),
            )
            self.snapshot = StateSnapshot()

        return self.snapshot

    def get(self, key: str) -> Optional[ProcessingRecord]:
        return self.snapshot.entries.get(key)

    def put(self, key: str, record: ProcessingRecord) -> None:
        self.snapshot.entries[key] = record

    def remove(self, key: str) -> bool:
        return self.snapshot.entries.pop(key, None) is not None

    def prune(self) -> List[str]:
        """Drop the least recently tried records beyond ``max_entries``."""
        entries = self.snapshot.entries
        if len(entries) <= self.max_entries:
            return []

        epoch = datetime.min.replace(tzinfo=utc_now().tzinfo)
        ordered = sorted(
            entries,
            key=lambda k: entries[k].last_tried_at or epoch,
            reverse=True,
        )
        dropped = ordered[self.max_entries:]
        for key in dropped:
            del entries[key]
        return dropped

    def save(self) -> None:
        """Prune and persist the snapshot atomically."""
        with self._lock:
            now = utc_now()
            previous = self.snapshot.updated_at
            if previous is not None and now <= previous:
                now = previous + timedelta(microseconds=1)
            self.snapshot.updated_at = now

            dropped = self.prune()
            if dropped:
                logger.debug("Pruned state entries", extra=fields(count=len(dropped)))

            data = self.snapshot.model_dump(mode="json", by_alias=True, exclude_none=True)
            AtomicFileWriter(self.path).write_text(json.dumps(data, indent=2) + "\n")

    def recover_stuck(self) -> List[str]:
        """
        Re-admit records left ``running`` by a previous process.

        Only safe while holding the singleton lock: no other process can be
        working on them.

        Returns:
            Keys that were recovered
        """
        recovered = []
        for key, record in self.snapshot.entries.items():
            if record.status != RecordStatus.RUNNING:
                continue
            record.status = RecordStatus.FAIL
            record.retryable = True
            record.next_retry_at = None
            record.result.error = describe_error(
                InterruptedAttempt("attempt interrupted before completion")
            )
            recovered.append(key)

        if recovered:
            logger.warning(
                "Recovered interrupted attempts",
                extra=fields(count=len(recovered), keys=recovered[:20]),
            )
        return recovered

    def stats(self) -> Dict[str, int]:
        """Count records by status."""
        counts = {status.value: 0 for status in RecordStatus}
        for record in self.snapshot.entries.values():
            counts[record.status.value] += 1
        counts["total"] = len(self.snapshot.entries)
        return counts
