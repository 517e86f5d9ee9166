"""SessionGraph configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


# Where the producer keeps its lock files (<claude_dir>/tasks/<sessionId>/.lock)
CLAUDE_DIR = Path(os.getenv("SESSIONGRAPH_CLAUDE_DIR", str(Path.home() / ".claude")))

# Tailer polling
POLL_INTERVAL_MS = _env_int("SESSIONGRAPH_POLL_INTERVAL_MS", 500)
# Write-stability window: changes are held until the file is quiet this long
WRITE_STABILITY_MS = _env_int("SESSIONGRAPH_WRITE_STABILITY_MS", 200)
DEBOUNCE_MS = _env_int("SESSIONGRAPH_DEBOUNCE_MS", 1600)
# Re-check the file at least this often even without a change event
CATCHUP_INTERVAL_MS = _env_int("SESSIONGRAPH_CATCHUP_INTERVAL_MS", 2000)
RETRY_DELAY_SECONDS = _env_float("SESSIONGRAPH_RETRY_DELAY_SECONDS", 0.5)

# Activity inference
ACTIVITY_STALE_SECONDS = _env_int("SESSIONGRAPH_ACTIVITY_STALE_SECONDS", 5 * 60)
ACTIVITY_SILENCE_SECONDS = _env_int("SESSIONGRAPH_ACTIVITY_SILENCE_SECONDS", 90)

# Liveness hint
LOCK_STALE_SECONDS = _env_int("SESSIONGRAPH_LOCK_STALE_SECONDS", 30 * 60)
ACTIVE_WRITE_SECONDS = _env_int("SESSIONGRAPH_ACTIVE_WRITE_SECONDS", 5 * 60)
END_REASON_TAIL_BYTES = _env_int("SESSIONGRAPH_END_REASON_TAIL_BYTES", 8192)

# Graph building
MAX_USER_TURNS = _env_int("SESSIONGRAPH_MAX_USER_TURNS", 10)
REPLY_SNIPPET_MAX_HOPS = _env_int("SESSIONGRAPH_REPLY_SNIPPET_MAX_HOPS", 20)

# Layout
LAYOUT_INCREMENTAL_RATIO = _env_float("SESSIONGRAPH_LAYOUT_INCREMENTAL_RATIO", 0.3)
LAYOUT_INCREMENTAL_MIN = _env_int("SESSIONGRAPH_LAYOUT_INCREMENTAL_MIN", 20)
LAYOUT_INCREMENTAL_MAX = _env_int("SESSIONGRAPH_LAYOUT_INCREMENTAL_MAX", 200)
LAYOUT_PRUNE_SLACK = _env_int("SESSIONGRAPH_LAYOUT_PRUNE_SLACK", 50)

# Cost estimation (optional YAML override of the built-in price table)
PRICE_TABLE_PATH = os.getenv("SESSIONGRAPH_PRICE_TABLE_PATH", "")

# Server settings
HOST = os.getenv("SESSIONGRAPH_HOST", "127.0.0.1")
PORT = int(os.getenv("SESSIONGRAPH_PORT", "8000"))
RELOAD = _env_bool("SESSIONGRAPH_RELOAD", False)

# CORS
FRONTEND_ORIGIN = os.getenv("SESSIONGRAPH_FRONTEND_ORIGIN", "http://localhost:3000")
