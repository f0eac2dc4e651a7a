"""
Swap record persistence.

Records are stored as their to_dict() form so a reload reproduces them
exactly. The initiator's secret is part of the record (it is needed to
reveal after a restart), so the JSON file is written owner-only.
"""

import os
import json
import logging
import tempfile
import threading
from typing import Dict, List, Optional, Any

from ..core import SwapRecord

log = logging.getLogger(__name__)


class PersistenceStore:
    """Durable storage for SwapRecords."""

    def save(self, record: SwapRecord):
        raise NotImplementedError

    def load(self, swap_id: str) -> Optional[SwapRecord]:
        raise NotImplementedError

    def list_all(self) -> List[SwapRecord]:
        raise NotImplementedError

    def list_active(self) -> List[SwapRecord]:
        """Records the coordinator has not closed yet."""
        return [r for r in self.list_all() if r.is_active()]


class MemoryStore(PersistenceStore):
    """In-process store. Keeps serialized copies so callers never share objects."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def save(self, record: SwapRecord):
        with self._lock:
            self._data[record.swap_id] = record.to_dict()

    def load(self, swap_id: str) -> Optional[SwapRecord]:
        with self._lock:
            data = self._data.get(swap_id)
        return SwapRecord.from_dict(data) if data else None

    def list_all(self) -> List[SwapRecord]:
        with self._lock:
            items = list(self._data.values())
        return [SwapRecord.from_dict(d) for d in items]


class JsonFileStore(PersistenceStore):
    """
    Single JSON file keyed by swap id.

    Every save rewrites the file through a temp file + os.replace, so a crash
    mid-write leaves the previous version intact.
    """

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Any]] = {}
        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return
        with open(self.path, "r") as f:
            self._data = json.load(f)
        log.info(f"Loaded {len(self._data)} swap records from {self.path}")

    def _write(self):
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".swaps-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self._data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def save(self, record: SwapRecord):
        with self._lock:
            self._data[record.swap_id] = record.to_dict()
            self._write()

    def load(self, swap_id: str) -> Optional[SwapRecord]:
        with self._lock:
            data = self._data.get(swap_id)
        return SwapRecord.from_dict(data) if data else None

    def list_all(self) -> List[SwapRecord]:
        with self._lock:
            items = list(self._data.values())
        return [SwapRecord.from_dict(d) for d in items]
