"""Ralph state — run-state persistence, resume decisions, and the working-directory lock."""

from __future__ import annotations

import json
import os
import socket
from pathlib import Path
from typing import Any

from ralph.constants import DONE_FILE, LOCK_FILE, STATE_FILE
from ralph.models import RunState, StateCorrupt
from ralph.utils import _head_commit, _now_ms, _utc_now, _write_json


# ---------------------------------------------------------------------------
# State loading / saving
# ---------------------------------------------------------------------------


def _state_path(repo_root: Path) -> Path:
    return repo_root / STATE_FILE


def load_state(repo_root: Path) -> RunState | None:
    """Return the persisted run state, or None when no state file exists.

    A file that exists but cannot be decoded raises StateCorrupt instead of
    being treated as absent, so a real run's history is never dropped silently.
    """
    path = _state_path(repo_root)
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateCorrupt(f"state file is not valid JSON: {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise StateCorrupt(f"state file could not be read: {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateCorrupt(f"state file must contain an object: {path}")
    return RunState.from_payload(payload)


def save_state(repo_root: Path, state: RunState) -> None:
    _write_json(_state_path(repo_root), state.to_payload())


def clear_state(repo_root: Path) -> bool:
    path = _state_path(repo_root)
    if not path.exists():
        return False
    path.unlink(missing_ok=True)
    return True


def fresh_state(repo_root: Path, plan_file: str) -> RunState:
    return RunState(
        start_time=_now_ms(),
        initial_commit_hash=_head_commit(repo_root),
        iteration_times=[],
        plan_file=plan_file,
    )


def should_resume(existing: RunState | None, *, plan_file: str, reset: bool) -> bool:
    if existing is None or reset:
        return False
    return existing.plan_file == plan_file


# ---------------------------------------------------------------------------
# Completion sentinel
# ---------------------------------------------------------------------------


def consume_done_sentinel(repo_root: Path) -> bool:
    """Delete the done sentinel if present; True only for the call that removed it."""
    sentinel = repo_root / DONE_FILE
    if not sentinel.exists():
        return False
    try:
        sentinel.unlink()
    except FileNotFoundError:
        return False
    return True


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


def _lock_path(repo_root: Path) -> Path:
    return repo_root / LOCK_FILE


def _read_lock_payload(lock_path: Path) -> dict[str, Any]:
    if not lock_path.exists():
        return {}
    try:
        loaded = json.loads(lock_path.read_text(encoding="utf-8"))
    except Exception:
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _write_lock_payload_exclusive(lock_path: Path, payload: dict[str, Any]) -> None:
    rendered = json.dumps(payload, indent=2) + "\n"
    fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(rendered)


def acquire_lock(repo_root: Path, *, command: str = "") -> bool:
    """Create the lock marker; False if any marker already exists.

    Liveness of the holder is not checked. A marker left by a crash must be
    removed by hand (``ralph --unlock``).
    """
    payload: dict[str, Any] = {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "started_at": _utc_now(),
        "command": command,
    }
    try:
        _write_lock_payload_exclusive(_lock_path(repo_root), payload)
    except FileExistsError:
        return False
    return True


def release_lock(repo_root: Path) -> None:
    _lock_path(repo_root).unlink(missing_ok=True)


def inspect_lock(repo_root: Path) -> dict[str, Any] | None:
    """Return the lock payload, or None if no lock exists."""
    lock_path = _lock_path(repo_root)
    if not lock_path.exists():
        return None
    return _read_lock_payload(lock_path)


def break_lock(repo_root: Path) -> str:
    """Forcibly remove a lock file and return an audit message."""
    lock_path = _lock_path(repo_root)
    if not lock_path.exists():
        return "no lock to break"
    payload = _read_lock_payload(lock_path)
    holder_pid = payload.get("pid", "<unknown>")
    holder_host = payload.get("host", "<unknown>")
    started_at = payload.get("started_at", "<unknown>")
    lock_path.unlink(missing_ok=True)
    return f"lock broken: pid={holder_pid}, host={holder_host}, started_at={started_at}"
