"""
Node Commander — Configuration
═══════════════════════════════════════════════════
All settings in one place.

Resolution order per value:
  1. environment variable
  2. key in the YAML file at NODE_CONFIG_PATH (optional)
  3. built-in default
"""

import os
import socket
from dataclasses import dataclass
from typing import Any, Dict

import yaml

NODE_CONFIG_PATH = os.environ.get("NODE_CONFIG_PATH", "config.yaml")


def _load_file_config(path: str) -> Dict[str, Any]:
    """Read the optional YAML config. Missing or unreadable file → empty."""
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        print(f"[Config] Ignoring unreadable config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        print(f"[Config] Ignoring config file {path}: top level is not a mapping")
        return {}
    return data


_file_config = _load_file_config(NODE_CONFIG_PATH)


def _setting(name: str, default: Any) -> str:
    value = os.environ.get(name)
    if value is None:
        value = _file_config.get(name, _file_config.get(name.lower(), default))
    return str(value)


def _int(name: str, default: int) -> int:
    return int(_setting(name, default))


def _float(name: str, default: float) -> float:
    return float(_setting(name, default))


def _bool(name: str, default: bool) -> bool:
    return _setting(name, "true" if default else "false").lower() in ("1", "true", "yes")


# ── Identity / Auth ───────────────────────────────────────

NODE_KEY = _setting("NODE_KEY", "")
NODE_USERNAME = _setting("NODE_USERNAME", "node")
NODE_NAME = _setting("NODE_NAME", socket.gethostname())
NODE_REMOTE = _setting("NODE_REMOTE", "")

# ── Server ────────────────────────────────────────────────

NODE_HOST = _setting("NODE_HOST", "0.0.0.0")
NODE_PORT = _int("NODE_PORT", 3002)

# ── Paths ─────────────────────────────────────────────────

DATA_DIR = _setting("DATA_DIR", "./data")
VOLUMES_DIR = _setting("VOLUMES_DIR", os.path.join(DATA_DIR, "volumes"))
STATE_FILE = _setting("STATE_FILE", os.path.join(DATA_DIR, "states.json"))
STATS_FILE = _setting("STATS_FILE", os.path.join(DATA_DIR, "system_stats.json"))

# ── Workload containers ───────────────────────────────────

CONTAINER_DATA_PATH = _setting("CONTAINER_DATA_PATH", "/app/data")
CONTAINER_NETWORK_MODE = _setting("CONTAINER_NETWORK_MODE", "host")
CONTAINER_STOP_TIMEOUT = _int("CONTAINER_STOP_TIMEOUT", 10)

# ── Telemetry ─────────────────────────────────────────────

STATS_INTERVAL = min(5.0, max(2.0, _float("STATS_INTERVAL", 3.0)))
LOG_TAIL = _int("LOG_TAIL", 25)
AUTH_TIMEOUT = _float("AUTH_TIMEOUT", 10.0)
EXEC_FORWARD_OUTPUT = _bool("EXEC_FORWARD_OUTPUT", False)
VOLUME_SIZE_MAX_DEPTH = max(500, _int("VOLUME_SIZE_MAX_DEPTH", 512))

# ── Retry policy ──────────────────────────────────────────

PULL_MAX_ATTEMPTS = _int("PULL_MAX_ATTEMPTS", 3)
PULL_RETRY_BACKOFF = _float("PULL_RETRY_BACKOFF", 5.0)
DOWNLOAD_MAX_ATTEMPTS = _int("DOWNLOAD_MAX_ATTEMPTS", 3)
DOWNLOAD_RETRY_BACKOFF = _float("DOWNLOAD_RETRY_BACKOFF", 2.0)
DOWNLOAD_TIMEOUT = _float("DOWNLOAD_TIMEOUT", 60.0)

# ── Threads ───────────────────────────────────────────────

STREAM_WORKERS = _int("STREAM_WORKERS", 64)
PULL_WORKERS = _int("PULL_WORKERS", 8)
VOLUME_IO_WORKERS = _int("VOLUME_IO_WORKERS", 4)

# ── Host stats / Heartbeat ────────────────────────────────

HOST_STATS_INTERVAL = _float("HOST_STATS_INTERVAL", 10.0)
HOST_STATS_MAX_AGE = _int("HOST_STATS_MAX_AGE", 3000)
HEARTBEAT_INTERVAL = _float("HEARTBEAT_INTERVAL", 30.0)

# ── Logging ───────────────────────────────────────────────

LOG_LEVEL = _setting("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"


# ── Settings bundle ───────────────────────────────────────

@dataclass
class Settings:
    """The values the app factory hands to components. Defaults come from above."""
    node_key: str = NODE_KEY
    node_username: str = NODE_USERNAME
    node_name: str = NODE_NAME
    node_remote: str = NODE_REMOTE
    volumes_dir: str = VOLUMES_DIR
    state_file: str = STATE_FILE
    stats_file: str = STATS_FILE
    container_data_path: str = CONTAINER_DATA_PATH
    container_network_mode: str = CONTAINER_NETWORK_MODE
    container_stop_timeout: int = CONTAINER_STOP_TIMEOUT
    stats_interval: float = STATS_INTERVAL
    log_tail: int = LOG_TAIL
    auth_timeout: float = AUTH_TIMEOUT
    exec_forward_output: bool = EXEC_FORWARD_OUTPUT
    volume_size_max_depth: int = VOLUME_SIZE_MAX_DEPTH
    pull_max_attempts: int = PULL_MAX_ATTEMPTS
    pull_retry_backoff: float = PULL_RETRY_BACKOFF
    download_max_attempts: int = DOWNLOAD_MAX_ATTEMPTS
    download_retry_backoff: float = DOWNLOAD_RETRY_BACKOFF
    download_timeout: float = DOWNLOAD_TIMEOUT
    stream_workers: int = STREAM_WORKERS
    pull_workers: int = PULL_WORKERS
    volume_io_workers: int = VOLUME_IO_WORKERS
    host_stats_interval: float = HOST_STATS_INTERVAL
    host_stats_max_age: int = HOST_STATS_MAX_AGE
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    background_tasks: bool = True

    @classmethod
    def for_data_dir(cls, data_dir: str, **overrides) -> "Settings":
        """Settings with every persisted path rooted at `data_dir`."""
        values = dict(
            volumes_dir=os.path.join(data_dir, "volumes"),
            state_file=os.path.join(data_dir, "states.json"),
            stats_file=os.path.join(data_dir, "system_stats.json"),
        )
        values.update(overrides)
        return cls(**values)
