"""Steerloop utility functions: timestamps, JSON I/O, and the operations log."""

from __future__ import annotations

import json
import os
import stat
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from steerloop.constants import LOG_RELATIVE_PATH
from steerloop.models import PersistenceFailure, StateError


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _parse_utc(value: str) -> datetime | None:
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _generate_attempt_id() -> str:
    return str(int(datetime.now(timezone.utc).timestamp() * 1000))


# ---------------------------------------------------------------------------
# JSON I/O helpers
# ---------------------------------------------------------------------------


def _file_mode(path: Path) -> int:
    # mkstemp creates 0600 files; keep the mode of the file being replaced.
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return 0o644


def _write_json(path: Path, payload: dict[str, Any], *, atomic: bool = False) -> None:
    rendered = json.dumps(payload, indent=2) + "\n"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if not atomic:
            path.write_text(rendered, encoding="utf-8")
            return
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(rendered)
            os.chmod(temp_name, _file_mode(path))
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
    except OSError as exc:
        raise PersistenceFailure(f"state file could not be written: {path}: {exc}") from exc


def _read_json(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateError(f"state file is not valid JSON: {path}: {exc}") from exc
    except OSError as exc:
        raise PersistenceFailure(f"state file could not be read: {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateError(f"state file must contain an object: {path}")
    return payload


def _remove_file(path: Path) -> bool:
    try:
        if not path.exists():
            return False
        path.unlink()
    except OSError as exc:
        raise PersistenceFailure(f"state file could not be removed: {path}: {exc}") from exc
    return True


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}..."


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _log_path_for(state_path: Path) -> Path:
    return state_path.parent / LOG_RELATIVE_PATH


def _append_log(state_path: Path, message: str) -> None:
    log_path = _log_path_for(state_path)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"{_utc_now()} {_compact_log_text(message, limit=400)}\n")
    except OSError:
        return
