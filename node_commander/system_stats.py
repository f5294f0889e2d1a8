"""
Node Commander — Host Stats & Dashboard Heartbeat
═══════════════════════════════════════════════════
HostStatsRecorder samples CPU (from /proc/stat deltas) and memory
(/proc/meminfo), keeps a bounded history, and persists it with
write-temp → rename so a crash never leaves a truncated file.

HeartbeatReporter posts the node's status to the remote dashboard.
Failures are logged; the caller's loop keeps running.
"""

import json
import logging
import os
import tempfile
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)


# ── /proc readers ─────────────────────────────────────────

def read_meminfo(proc_root: str = "/proc") -> Dict[str, int]:
    """Fields of /proc/meminfo in kB."""
    info = {}
    with open(os.path.join(proc_root, "meminfo")) as f:
        for line in f:
            parts = line.split()
            if len(parts) >= 2:
                info[parts[0].rstrip(":")] = int(parts[1])
    return info


def read_cpu_times(proc_root: str = "/proc") -> Tuple[int, int]:
    """(idle, total) jiffies from the aggregate cpu line of /proc/stat."""
    with open(os.path.join(proc_root, "stat")) as f:
        for line in f:
            if line.startswith("cpu "):
                values = [int(v) for v in line.split()[1:]]
                idle = values[3] + (values[4] if len(values) > 4 else 0)
                return idle, sum(values)
    raise ValueError("no aggregate cpu line in /proc/stat")


def _parse_ts(value: str) -> Optional[float]:
    try:
        return datetime.fromisoformat(value).timestamp()
    except (TypeError, ValueError):
        return None


# ── Recorder ──────────────────────────────────────────────

class HostStatsRecorder:

    def __init__(self, path: str, max_age: float = 3000, proc_root: str = "/proc", clock=time.time):
        self.path = path
        self.max_age = max_age
        self.proc_root = proc_root
        self._clock = clock
        self._lock = threading.Lock()
        self._last_cpu: Optional[Tuple[int, int]] = None
        self._entries: List[Dict[str, Any]] = self._load()

    def sample(self) -> Dict[str, Any]:
        """One point-in-time reading. CPU is 0.0 until a previous reading exists."""
        mem = read_meminfo(self.proc_root)
        total_mb = mem.get("MemTotal", 0) / 1024
        available_mb = mem.get("MemAvailable", mem.get("MemFree", 0)) / 1024

        idle, total = read_cpu_times(self.proc_root)
        cpu_percent = 0.0
        if self._last_cpu is not None:
            d_idle = idle - self._last_cpu[0]
            d_total = total - self._last_cpu[1]
            if d_total > 0:
                cpu_percent = 100.0 * (d_total - d_idle) / d_total
        self._last_cpu = (idle, total)

        return {
            "timestamp": datetime.fromtimestamp(self._clock(), timezone.utc).isoformat(),
            "ramMax": round(total_mb, 2),
            "ram": round(total_mb - available_mb, 2),
            "coresMax": os.cpu_count() or 1,
            "cores": round(cpu_percent, 2),
        }

    def record(self) -> Dict[str, Any]:
        """Sample, append, prune, persist."""
        entry = self.sample()
        with self._lock:
            entries = self._prune(self._entries + [entry])
            self._persist(entries)
            self._entries = entries
        logger.debug(f"[Stats] Recorded host sample: cpu={entry['cores']}% ram={entry['ram']}MB")
        return entry

    def history(self, period: Optional[float] = None) -> List[Dict[str, Any]]:
        """Entries from the last `period` seconds (all kept entries if None)."""
        with self._lock:
            entries = list(self._entries)
        if not period:
            return entries
        now = self._clock()
        return [e for e in entries if now - (_parse_ts(e.get("timestamp")) or 0) <= period]

    def latest(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._entries[-1] if self._entries else None

    # ── Persistence ───────────────────────────────────────

    def _prune(self, entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        now = self._clock()
        kept = []
        for entry in entries:
            ts = _parse_ts(entry.get("timestamp"))
            if ts is not None and now - ts <= self.max_age:
                kept.append(entry)
        return kept

    def _load(self) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read()
            if not raw.strip():
                logger.warning(f"[Stats] Stats file {self.path} is empty, starting fresh")
                return []
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"[Stats] Error reading stats file {self.path}: {e}")
            return []
        if not isinstance(data, list):
            logger.error(f"[Stats] Expected a list in {self.path}, got {type(data).__name__}")
            return []
        return self._prune([e for e in data if isinstance(e, dict) and e.get("timestamp")])

    def _persist(self, entries: List[Dict[str, Any]]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".stats.", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entries, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


# ── Heartbeat ─────────────────────────────────────────────

class HeartbeatReporter:
    """POSTs status payloads to {remote}/api/nodes/heartbeat."""

    def __init__(self, remote: str, key: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = remote.rstrip("/") + "/api/nodes/heartbeat"
        self.key = key
        self.timeout = timeout
        self._transport = transport

    async def beat(self, payload: Dict[str, Any]) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url, json=payload, headers={"Authorization": f"Bearer {self.key}"}
                )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"[Stats] Heartbeat to {self.url} failed: {e}")
            return False
        logger.debug(f"[Stats] Heartbeat sent ({response.status_code})")
        return True
