"""
Node Commander — State Store
═══════════════════════════════════════════════════
Durable workload id → {state, containerId} table in one JSON file.

Every write replaces the whole table with write-temp → fsync → rename, so a
crash mid-write leaves the previous table intact. A missing or corrupt file
loads as an empty table. All read-modify-write cycles run under one lock;
readers only ever see a fully persisted table.
"""

import json
import logging
import os
import tempfile
import threading
from typing import Dict, Optional

from .models import StateRecord, WorkloadState

logger = logging.getLogger(__name__)


class StateStore:
    """Owns the state table and its persistence file."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._table: Dict[str, Dict] = self._load()

    # ── Public API ────────────────────────────────────────

    def get(self, volume_id: str) -> StateRecord:
        """Never raises on a missing key: absent → UNKNOWN."""
        with self._lock:
            data = self._table.get(volume_id)
        if data is None:
            return StateRecord(volume_id=volume_id, state=WorkloadState.UNKNOWN)
        return StateRecord.from_dict(volume_id, data)

    def set(self, volume_id: str, state: WorkloadState,
            container_id: Optional[str] = None) -> StateRecord:
        """Overwrite the record and persist the full table before returning."""
        record = StateRecord(volume_id=volume_id, state=state, container_id=container_id)
        with self._lock:
            table = dict(self._table)
            table[volume_id] = record.to_dict()
            self._persist(table)
            self._table = table
        logger.debug(f"[State] {volume_id} → {state.value} ({container_id or '-'})")
        return record

    def delete(self, volume_id: str) -> bool:
        with self._lock:
            if volume_id not in self._table:
                return False
            table = dict(self._table)
            del table[volume_id]
            self._persist(table)
            self._table = table
        logger.info(f"[State] Removed record: {volume_id}")
        return True

    def all(self) -> Dict[str, StateRecord]:
        with self._lock:
            snapshot = dict(self._table)
        return {vid: StateRecord.from_dict(vid, data) for vid, data in snapshot.items()}

    def clear(self) -> int:
        with self._lock:
            count = len(self._table)
            self._persist({})
            self._table = {}
        return count

    # ── Persistence ───────────────────────────────────────

    def _load(self) -> Dict[str, Dict]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read()
            data = json.loads(raw) if raw.strip() else {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[State] Unreadable state file {self.path}, starting empty: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"[State] State file {self.path} is not a mapping, starting empty")
            return {}

        table = {}
        for volume_id, entry in data.items():
            if not isinstance(entry, dict):
                continue
            try:
                WorkloadState(entry.get("state"))
            except ValueError:
                logger.warning(f"[State] Dropping record {volume_id} with unknown state {entry.get('state')!r}")
                continue
            table[volume_id] = {"state": entry["state"], "containerId": entry.get("containerId")}
        return table

    def _persist(self, table: Dict[str, Dict]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=os.path.basename(self.path) + ".", suffix=".tmp", dir=directory
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(table, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
