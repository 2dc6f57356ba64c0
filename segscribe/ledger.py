"""Durable queue of segment files waiting for (re)transcription."""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Dict, Optional, Set, Union

PathLike = Union[str, Path]


class RetryLedger:
    """Map of segment file path to remote attempt count, persisted as JSON.

    Every mutation holds one lock and rewrites the file atomically, so the
    failure path and the connectivity drain can update it concurrently. On
    construction the ledger is reloaded from disk and entries whose audio file
    has disappeared are dropped.
    """

    VERSION = 1

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._entries: Dict[str, int] = {}
        self.load_all()

    def load_all(self) -> Set[str]:
        with self._lock:
            stored = self._read()
            self._entries = {ref: count for ref, count in stored.items() if Path(ref).is_file()}
            dropped = len(stored) - len(self._entries)
            if dropped:
                logging.info("Dropped %d retry entries whose files no longer exist", dropped)
                self._write_locked()
            return set(self._entries)

    def add(self, ref: PathLike, count: Optional[int] = None) -> int:
        key = str(ref)
        with self._lock:
            if count is None:
                count = self._entries.get(key, 0)
            self._entries[key] = count
            self._write_locked()
            return count

    def increment(self, ref: PathLike) -> int:
        key = str(ref)
        with self._lock:
            count = self._entries.get(key, 0) + 1
            self._entries[key] = count
            self._write_locked()
            return count

    def remove(self, ref: PathLike) -> bool:
        key = str(ref)
        with self._lock:
            if key not in self._entries:
                return False
            del self._entries[key]
            self._write_locked()
            return True

    def count(self, ref: PathLike) -> int:
        with self._lock:
            return self._entries.get(str(ref), 0)

    def entries(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._entries)

    def __contains__(self, ref: object) -> bool:
        with self._lock:
            return str(ref) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _read(self) -> Dict[str, int]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logging.warning("Ignoring unreadable retry ledger %s: %s", self.path, exc)
            return {}
        entries = payload.get("entries") if isinstance(payload, dict) else None
        if not isinstance(entries, dict):
            return {}
        return {str(ref): int(count) for ref, count in entries.items() if isinstance(count, int)}

    def _write_locked(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"version": self.VERSION, "updated_at": int(time.time()), "entries": self._entries}
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        temp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        temp_path.replace(self.path)
