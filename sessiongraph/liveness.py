"""Advisory liveness hint for the process producing a transcript.

The producer holds ``<claude_dir>/tasks/<sessionId>/.lock`` while a session
runs. Lock files are orphaned when the producer crashes, so a lock is only
trusted while the log itself is still being modified.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from sessiongraph import config
from sessiongraph.date_utils import file_age_seconds

logger = logging.getLogger("sessiongraph.liveness")


def lock_path(session_id: str, claude_dir: Path | None = None) -> Path:
    return (claude_dir or config.CLAUDE_DIR) / "tasks" / session_id / ".lock"


def has_lock_file(session_id: str, claude_dir: Path | None = None) -> bool:
    if not session_id:
        return False
    return lock_path(session_id, claude_dir).exists()


def _tail_has_compaction(path: Path, tail_bytes: int) -> bool:
    try:
        size = path.stat().st_size
        with path.open("rb") as handle:
            handle.seek(max(0, size - tail_bytes))
            data = handle.read(tail_bytes)
    except OSError as exc:
        logger.debug(f"Could not read tail of {path}: {exc}")
        return False

    for raw in reversed(data.decode("utf-8", errors="replace").split("\n")):
        line = raw.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            # First line is usually cut mid-way by the seek.
            continue
        if isinstance(entry, dict) and entry.get("type") == "system" and entry.get("subtype") == "compact_boundary":
            return True
    return False


def detect_end_reason(
    path: Path | str,
    session_id: str = "",
    claude_dir: Path | None = None,
    now: Optional[datetime] = None,
) -> str:
    """Return "active", "compacted" or "ended" for the transcript at ``path``."""
    log_path = Path(path)
    session_id = session_id or log_path.stem
    age = file_age_seconds(log_path, now)

    if has_lock_file(session_id, claude_dir) and age < config.LOCK_STALE_SECONDS:
        return "active"
    if age < config.ACTIVE_WRITE_SECONDS:
        return "active"
    if _tail_has_compaction(log_path, config.END_REASON_TAIL_BYTES):
        return "compacted"
    return "ended"
