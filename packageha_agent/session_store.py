from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("packageha.session_store")


def session_of(key: str) -> str:
    """Session id of a "<session>:<name>" key; session ids may themselves contain colons."""
    return key.rsplit(":", 1)[0]


class SessionStore:
    """Durable key/value blob storage for session memory and catalog caches."""

    def __init__(self, path: Optional[Path] = None, max_sessions: Optional[int] = None) -> None:
        """Purpose: Initialize the store and hydrate from disk if available.
        Inputs/Outputs: Inputs are an optional JSON file path and max_sessions cap; no return.
        Side Effects / State: Loads persisted blobs into an in-memory dict.
        Dependencies: Calls _load.
        Failure Modes: JSON decode errors are logged and leave an empty store.
        If Removed: Sessions cannot resume across requests.
        Testing Notes: Verify a second store on the same path sees earlier writes.
        """
        # Keep configuration and preload persisted blobs if present.
        self._path = path
        self._max_sessions = max_sessions
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        """Purpose: Load persisted blobs from disk into memory.
        Inputs/Outputs: Reads from self._path; no return value.
        Side Effects / State: Populates _data.
        Dependencies: Uses json.loads.
        Failure Modes: Missing file or JSONDecodeError results in an empty store.
        If Removed: Stored sessions are never restored on startup.
        Testing Notes: Corrupt JSON should not crash; valid JSON should hydrate.
        """
        # Read and decode persisted JSON if present.
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("session store file is corrupt path=%s", self._path)
            return
        if isinstance(data, dict):
            self._data = data
        if self._prune_sessions():
            self._persist()

    def _persist(self) -> None:
        """Purpose: Flush the in-memory blobs to disk.
        Inputs/Outputs: Writes to self._path; no return value.
        Side Effects / State: Rewrites the JSON file through a temp file and rename.
        Dependencies: Uses json.dumps, Path.write_text and Path.replace.
        Failure Modes: IO errors raise (not caught here).
        If Removed: Memory is lost when the process restarts.
        Testing Notes: Ensure the file is created and holds the latest values.
        """
        # Serialize and swap the file in one rename.
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(self._path)

    def get(self, key: str) -> Any:
        """Return a deep copy of the stored value, or None."""
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    def put(self, key: str, value: Any) -> None:
        # Re-inserting moves the key to the end, so dict order tracks recency.
        with self._lock:
            self._data.pop(key, None)
            self._data[key] = copy.deepcopy(value)
            self._prune_sessions()
            self._persist()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._persist()

    def delete_session(self, session_id: str) -> None:
        """Drop every key owned by a session (memory and catalog cache)."""
        with self._lock:
            doomed = [key for key in self._data if session_of(key) == session_id]
            for key in doomed:
                del self._data[key]
            if doomed:
                self._persist()

    def _prune_sessions(self) -> bool:
        """Purpose: Enforce max_sessions by dropping the least recently written sessions.
        Inputs/Outputs: No inputs; returns True if any sessions were removed.
        Side Effects / State: Removes every key of the pruned sessions from _data.
        Dependencies: Uses _max_sessions and the insertion order of _data.
        Failure Modes: None; no-op when max_sessions is unset or not exceeded.
        If Removed: One entry per client IP accumulates forever and the file grows unbounded.
        Testing Notes: Set a low max_sessions and verify the oldest session is dropped.
        """
        # A session's recency is the position of its most recently written key.
        if not self._max_sessions or self._max_sessions <= 0:
            return False
        recency: Dict[str, int] = {}
        for position, key in enumerate(self._data):
            recency[session_of(key)] = position
        if len(recency) <= self._max_sessions:
            return False

        keep_ids = set(sorted(recency, key=recency.__getitem__, reverse=True)[: self._max_sessions])
        removed = [key for key in self._data if session_of(key) not in keep_ids]
        for key in removed:
            del self._data[key]
        logger.info("session store pruned sessions=%s keys=%s", len(recency) - len(keep_ids), len(removed))
        return bool(removed)
