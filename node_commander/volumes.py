"""
Node Commander — Volume Directories
═══════════════════════════════════════════════════
One host directory per workload, bind-mounted into its container.

Layout: {VOLUMES_DIR}/{workload_id}

The path is derived from the id alone and must stay inside the base
directory; ids that would escape it are rejected.

Recursive walks (size, placeholder substitution) run on a small pool of
their own so a huge volume never occupies the threads runtime calls need.
"""

import asyncio
import functools
import logging
import os
import re
import shutil
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List

from .errors import ConfigError

logger = logging.getLogger(__name__)

WORKLOAD_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def resolve_inside(base: str, relative: str) -> str:
    """Join `relative` onto `base`; raise ConfigError if it escapes `base`."""
    base_real = os.path.realpath(base)
    target = os.path.realpath(os.path.join(base_real, relative))
    if target != base_real and not target.startswith(base_real + os.sep):
        raise ConfigError(f"Path escapes the volume: {relative!r}")
    return target


class VolumeManager:
    """Creates, sizes and removes workload volume directories."""

    def __init__(self, base_dir: str, max_depth: int = 512, io_workers: int = 4):
        self.base_dir = base_dir
        self.max_depth = max_depth
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, io_workers), thread_name_prefix="volume-io"
        )

    def validate_id(self, workload_id: str) -> str:
        if not workload_id or not WORKLOAD_ID_PATTERN.match(workload_id) or workload_id in (".", ".."):
            raise ConfigError(f"Invalid workload id: {workload_id!r}")
        return workload_id

    def path_for(self, workload_id: str) -> str:
        self.validate_id(workload_id)
        return resolve_inside(self.base_dir, workload_id)

    def ensure(self, workload_id: str) -> str:
        """Create the directory. Idempotent."""
        path = self.path_for(workload_id)
        os.makedirs(path, exist_ok=True)
        return path

    def exists(self, workload_id: str) -> bool:
        return os.path.isdir(self.path_for(workload_id))

    def remove(self, workload_id: str) -> bool:
        """Delete the directory tree. Already gone → False, not an error."""
        path = self.path_for(workload_id)
        if not os.path.exists(path):
            return False
        shutil.rmtree(path)
        logger.info(f"[Volumes] Removed: {path}")
        return True

    def list_ids(self) -> List[str]:
        if not os.path.isdir(self.base_dir):
            return []
        return sorted(
            entry.name for entry in os.scandir(self.base_dir)
            if entry.is_dir(follow_symlinks=False)
        )

    def size_of(self, workload_id: str) -> int:
        return directory_size(self.path_for(workload_id), self.max_depth)

    async def measure(self, workload_id: str) -> int:
        return await self.run_io(self.size_of, workload_id)

    async def run_io(self, fn: Callable, *args) -> Any:
        """Run a blocking filesystem job on the volume pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    def close(self) -> None:
        self._executor.shutdown(wait=False)


def directory_size(root: str, max_depth: int = 512) -> int:
    """
    Total bytes of regular files under `root`. Symlinks are not followed;
    directories deeper than `max_depth` below root are not descended into.
    Entries that vanish mid-walk are skipped.
    """
    total = 0
    stack = [(root, 0)]
    while stack:
        path, depth = stack.pop()
        try:
            entries = list(os.scandir(path))
        except OSError:
            continue
        for entry in entries:
            try:
                if entry.is_symlink():
                    continue
                if entry.is_file(follow_symlinks=False):
                    total += entry.stat(follow_symlinks=False).st_size
                elif entry.is_dir(follow_symlinks=False) and depth < max_depth:
                    stack.append((entry.path, depth + 1))
            except OSError:
                continue
    return total
