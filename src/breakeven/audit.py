"""Append-only audit log. Every committed ledger mutation is recorded as one JSON line."""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

# Default log location
DEFAULT_LOG_PATH = Path.home() / ".breakeven" / "audit.jsonl"

AuditEvent = Literal[
    "user_created",
    "user_updated",
    "friend_added",
    "friend_updated",
    "friend_linked",
    "friend_deleted",
    "invitation_created",
    "invitation_accepted",
    "invitation_cancelled",
    "invitation_resent",
    "transaction_created",
    "transaction_deleted",
    "settlement_recorded",
]


def get_log_path() -> Path:
    """Get the log file path, respecting BREAKEVEN_AUDIT_PATH env var."""
    env_path = os.environ.get("BREAKEVEN_AUDIT_PATH")
    if env_path:
        return Path(env_path)
    return DEFAULT_LOG_PATH


def ensure_log_dir(log_path: Path) -> None:
    """Ensure the log directory exists."""
    log_path.parent.mkdir(parents=True, exist_ok=True)


def log_event(
    event: AuditEvent,
    user_id: Any,
    details: dict[str, Any] | None = None,
    log_path: Path | None = None,
) -> None:
    """
    Append an audit entry to the log file.

    Args:
        event: What happened
        user_id: The user who made the change
        details: Event-specific fields (ids, amounts); values are stringified if needed
        log_path: Optional custom log path (for testing)
    """
    if log_path is None:
        log_path = get_log_path()

    ensure_log_dir(log_path)

    entry: dict[str, Any] = {
        "ts": datetime.now().isoformat(),
        "event": event,
        "user_id": str(user_id),
    }

    if details:
        entry["details"] = details

    with open(log_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")


def read_log(log_path: Path | None = None, limit: int | None = None) -> list[dict[str, Any]]:
    """
    Read entries from the log file.

    Args:
        log_path: Optional custom log path
        limit: Maximum number of entries to return (from end of file)

    Returns:
        List of log entries as dictionaries
    """
    if log_path is None:
        log_path = get_log_path()

    if not log_path.exists():
        return []

    entries = []
    with open(log_path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                entries.append(json.loads(line))

    if limit is not None:
        return entries[-limit:]
    return entries
