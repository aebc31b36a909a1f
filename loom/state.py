"""Process-wide runtime state, passed explicitly to the components that need it.

One RuntimeState is constructed in create_components() and handed to the
tool dispatcher, built-in tools, sub-agent supervisor and session
coordinator. Nothing here is module-global, so tests build a fresh one.
"""

from __future__ import annotations

import itertools
from collections import defaultdict
from pathlib import Path


class FileReadTracker:
    """Remembers which files each session has read, with their mtime at read time.

    write_file uses this to refuse overwriting a file the model has not
    looked at, or one that changed on disk since it was read.
    """

    def __init__(self) -> None:
        self._reads: dict[str, dict[str, float]] = defaultdict(dict)

    def record(self, session_id: str, path: Path) -> None:
        try:
            mtime = path.stat().st_mtime
        except OSError:
            mtime = 0.0
        self._reads[session_id][str(path)] = mtime

    def was_read(self, session_id: str, path: Path) -> bool:
        return str(path) in self._reads.get(session_id, {})

    def is_stale(self, session_id: str, path: Path) -> bool:
        """True if the file was modified after the session last read it."""
        recorded = self._reads.get(session_id, {}).get(str(path))
        if recorded is None:
            return True
        try:
            return path.stat().st_mtime > recorded
        except OSError:
            return False

    def forget(self, session_id: str) -> None:
        self._reads.pop(session_id, None)


class RuntimeState:
    """Explicit store for state shared across sessions of one process."""

    def __init__(self) -> None:
        self.read_tracker = FileReadTracker()
        self._counters: dict[str, itertools.count] = {}

    def next_id(self, prefix: str) -> str:
        """Return a process-unique id such as ``perm-3``."""
        counter = self._counters.setdefault(prefix, itertools.count(1))
        return f"{prefix}-{next(counter)}"

    def forget_session(self, session_id: str) -> None:
        self.read_tracker.forget(session_id)
