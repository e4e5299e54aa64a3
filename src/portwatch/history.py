"""Bounded, persisted log of killed processes."""

import json
import logging
import threading
from collections import Counter, deque
from pathlib import Path

from portwatch.models import KillHistoryEntry
from portwatch.storage import write_json

log = logging.getLogger(__name__)


class KillHistory:
    """
    Append-only kill log capped at ``max_entries``; the oldest entry is evicted first.

    Persistence is best effort: a missing or corrupt file loads as empty and a
    failed save is logged, never raised.
    """

    def __init__(self, max_entries: int = 100, logger: logging.Logger | None = None) -> None:
        self._entries: deque[KillHistoryEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._log = logger or log

    @property
    def max_entries(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, entry: KillHistoryEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> list[KillHistoryEntry]:
        """All entries, oldest first."""
        with self._lock:
            return list(self._entries)

    def recent(self, limit: int) -> list[KillHistoryEntry]:
        if limit <= 0:
            return []
        with self._lock:
            return list(self._entries)[-limit:]

    def by_group(self, group: str) -> list[KillHistoryEntry]:
        return [e for e in self.entries() if e.process_group == group]

    def by_project(self, project: str) -> list[KillHistoryEntry]:
        return [e for e in self.entries() if e.project_name == project]

    def top_offenders(self, limit: int = 5) -> list[tuple[str, int]]:
        """Most frequently killed processes as (display name, count)."""
        counts = Counter(e.display_name() for e in self.entries())
        return counts.most_common(limit)

    def stats(self) -> dict[str, Counter[str]]:
        """Kill counts keyed by ``group``, ``project`` and ``killed_by``."""
        entries = self.entries()
        return {
            "group": Counter(e.process_group or "Other" for e in entries),
            "project": Counter(e.project_name for e in entries if e.project_name),
            "killed_by": Counter(e.killed_by for e in entries),
        }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def save(self, path: Path | None) -> bool:
        if path is None:
            return False
        # The newest snapshot is always the last one written.
        with self._save_lock:
            data = [entry.to_dict() for entry in self.entries()]
            try:
                write_json(path, data)
            except OSError as e:
                self._log.warning("Failed to save history to %s: %s", path, e)
                return False
        return True

    @classmethod
    def load(
        cls, path: Path | None, max_entries: int = 100, logger: logging.Logger | None = None
    ) -> "KillHistory":
        history = cls(max_entries, logger)
        if path is None or not path.is_file():
            return history
        try:
            data = json.loads(path.read_text())
            entries = [KillHistoryEntry.from_dict(item) for item in data]
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            history._log.warning("Ignoring unreadable history file %s: %s", path, e)
            return history
        for entry in entries:
            history.add(entry)
        return history
