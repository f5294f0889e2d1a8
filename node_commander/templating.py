"""
Node Commander — {{variable}} Substitution
═══════════════════════════════════════════════════
Placeholders look like {{name}}. Only names present in the supplied map are
replaced; unknown placeholders stay as they are.

Used for install-script URIs and, after downloads, for the text files in a
workload's volume directory.
"""

import logging
import os
import re
import secrets
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")
BINARY_SNIFF_BYTES = 8192


def render(text: str, variables: Dict[str, str]) -> str:
    if not variables or "{{" not in text:
        return text

    def _replace(match):
        name = match.group(1)
        if name in variables:
            return str(variables[name])
        return match.group(0)

    return PLACEHOLDER.sub(_replace, text)


def pipeline_variables(primary_port: Optional[str], container_id: str) -> Dict[str, str]:
    """Variables the pipeline derives itself after the container exists."""
    return {
        "primaryPort": primary_port or "",
        "containerName": container_id[:12],
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "randomString": secrets.token_urlsafe(12),
    }


def is_binary_file(path: str) -> bool:
    """NUL byte in the first 8 KiB, or not UTF-8 → binary."""
    try:
        with open(path, "rb") as f:
            head = f.read(BINARY_SNIFF_BYTES)
    except OSError:
        return True
    if b"\0" in head:
        return True
    try:
        head.decode("utf-8")
    except UnicodeDecodeError as e:
        # A multi-byte sequence cut at the sniff boundary is still text
        return e.start < len(head) - 3
    return False


def substitute_file(path: str, variables: Dict[str, str]) -> bool:
    """Rewrite one text file in place. Returns True if it changed."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"[Templating] Skipping {path}: {e}")
        return False

    rendered = render(content, variables)
    if rendered == content:
        return False
    with open(path, "w", encoding="utf-8") as f:
        f.write(rendered)
    return True


def substitute_directory(root: str, variables: Dict[str, str], max_depth: int = 512) -> List[str]:
    """
    Apply `variables` to every non-binary regular file under `root`.
    Returns the paths that were rewritten.
    """
    changed = []
    stack = [(root, 0)]
    while stack:
        path, depth = stack.pop()
        try:
            entries = sorted(os.scandir(path), key=lambda e: e.name)
        except OSError:
            continue
        for entry in entries:
            if entry.is_symlink():
                continue
            if entry.is_dir(follow_symlinks=False):
                if depth < max_depth:
                    stack.append((entry.path, depth + 1))
                continue
            if not entry.is_file(follow_symlinks=False) or is_binary_file(entry.path):
                continue
            if substitute_file(entry.path, variables):
                changed.append(entry.path)
                logger.info(f"[Templating] Variables replaced in {os.path.relpath(entry.path, root)}")
    return changed
