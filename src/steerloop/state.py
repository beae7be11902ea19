"""Steerloop state: document normalisation, the state store, and advisory locking."""

from __future__ import annotations

import abc
import copy
import json
import os
import socket
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from steerloop.constants import (
    ATTEMPT_STATUSES,
    ATTEMPT_TYPES,
    DEFAULT_CHECKPOINT_INTERVAL,
    DEFAULT_COMPLETION_PROMISE,
    DEFAULT_MAX_ITERATIONS,
    METRICS_HISTORY_LIMIT,
)
from steerloop.models import (
    AttemptRecord,
    Decision,
    ErrorRecord,
    InterventionPlan,
    IterationMetrics,
    LoopState,
    PersistenceFailure,
    VerificationStatus,
    _coerce_bool,
    _coerce_float,
    _coerce_int,
    _coerce_optional_str,
    _coerce_positive_int,
)
from steerloop.utils import (
    _append_log,
    _parse_utc,
    _read_json,
    _remove_file,
    _utc_now,
    _write_json,
)


# ---------------------------------------------------------------------------
# Document normalisation
# ---------------------------------------------------------------------------


def _non_negative_int(value: Any) -> int:
    return max(0, _coerce_int(value, default=0))


def _normalize_metrics_entry(raw: Any) -> IterationMetrics | None:
    if not isinstance(raw, dict):
        return None
    return IterationMetrics(
        files_changed=_non_negative_int(raw.get("filesChanged")),
        files_modified=_non_negative_int(raw.get("filesModified")),
        errors_encountered=_non_negative_int(raw.get("errorsEncountered")),
        tests_passed=_non_negative_int(raw.get("testsPassed")),
        tests_failed=_non_negative_int(raw.get("testsFailed")),
        iteration_duration=_non_negative_int(raw.get("iterationDuration")),
        timestamp=str(raw.get("timestamp", "") or ""),
    )


def _normalize_points(raw: Any, *, unique: bool) -> list[int]:
    if not isinstance(raw, list):
        return []
    points: list[int] = []
    for entry in raw:
        value = _coerce_int(entry, default=0)
        if value <= 0:
            continue
        if unique and value in points:
            continue
        points.append(value)
    return sorted(points)


def _normalize_plan(raw: Any) -> InterventionPlan | None:
    if not isinstance(raw, dict):
        return None
    iterations_needed = _coerce_int(raw.get("iterationsNeeded"), default=0)
    if iterations_needed <= 0:
        return None
    return InterventionPlan(
        total_todos=_non_negative_int(raw.get("totalTodos")),
        todos_per_iteration=_coerce_positive_int(raw.get("todosPerIteration"), default=1),
        iterations_needed=iterations_needed,
        # Oracle points may legitimately repeat; user points never do.
        oracle_interventions=_normalize_points(raw.get("oracleInterventions"), unique=False),
        user_interventions=_normalize_points(raw.get("userInterventions"), unique=True),
        created_at=str(raw.get("createdAt", "") or ""),
        updated_at=str(raw.get("updatedAt", "") or ""),
    )


def _normalize_error_entry(raw: Any) -> ErrorRecord | None:
    if not isinstance(raw, dict):
        return None
    return ErrorRecord(
        iteration=_non_negative_int(raw.get("iteration")),
        type=str(raw.get("type", "unknown") or "unknown"),
        description=str(raw.get("description", "") or ""),
        timestamp=str(raw.get("timestamp", "") or ""),
    )


def _normalize_attempt_entry(raw: Any) -> AttemptRecord | None:
    if not isinstance(raw, dict):
        return None
    attempt_type = str(raw.get("type", "direct")).strip().lower()
    if attempt_type not in ATTEMPT_TYPES:
        attempt_type = "direct"
    status = str(raw.get("status", "success")).strip().lower()
    if status not in ATTEMPT_STATUSES:
        status = "success"
    iterations = raw.get("iterations")
    return AttemptRecord(
        id=str(raw.get("id", "") or ""),
        type=attempt_type,
        task=str(raw.get("task", "") or ""),
        status=status,
        completed_at=str(raw.get("completedAt", "") or ""),
        iterations=None if iterations is None else _non_negative_int(iterations),
        error=_coerce_optional_str(raw.get("error")),
    )


def _normalize_decision(raw: Any) -> Decision | None:
    text = str(raw or "").strip().upper()
    if not text:
        return None
    try:
        decision = Decision(text)
    except ValueError:
        return None
    return decision if decision.storable else None


def _normalize_verification_status(raw: Any) -> VerificationStatus | None:
    text = str(raw or "").strip().lower()
    if not text:
        return None
    try:
        return VerificationStatus(text)
    except ValueError:
        return None


def _normalize_records(raw: Any, normalizer: Any) -> list[Any]:
    if not isinstance(raw, list):
        return []
    records = []
    for entry in raw:
        record = normalizer(entry)
        if record is not None:
            records.append(record)
    return records


def _normalize_state(payload: dict[str, Any], *, history_limit: int = METRICS_HISTORY_LIMIT) -> LoopState:
    """Build a LoopState from a raw document; unknown keys are ignored, missing keys default."""
    state = LoopState()
    state.active = _coerce_bool(payload.get("active"), default=False)
    state.paused = _coerce_bool(payload.get("paused"), default=False)
    state.iteration = _non_negative_int(payload.get("iteration"))
    state.max_iterations = _coerce_positive_int(payload.get("maxIterations"), default=DEFAULT_MAX_ITERATIONS)
    state.checkpoint_interval = _coerce_positive_int(
        payload.get("checkpointInterval"), default=DEFAULT_CHECKPOINT_INTERVAL
    )
    state.next_checkpoint_at = _coerce_int(
        payload.get("nextCheckpointAt"), default=state.iteration + state.checkpoint_interval
    )
    state.completion_promise = str(payload.get("completionPromise") or DEFAULT_COMPLETION_PROMISE)
    state.prompt = str(payload.get("prompt", "") or "")
    state.started_at = str(payload.get("startedAt", "") or "")
    state.last_iteration_at = str(payload.get("lastIterationAt", "") or "")
    state.last_checkpoint = _non_negative_int(payload.get("lastCheckpoint"))
    state.intervention_plan = _normalize_plan(payload.get("interventionPlan"))

    metrics = _normalize_records(payload.get("metrics"), _normalize_metrics_entry)
    state.metrics = metrics[-history_limit:]
    state.progress_rate = _coerce_float(payload.get("progressRate"), default=0.0)
    state.error_rate = _coerce_float(payload.get("errorRate"), default=0.0)
    state.convergence_score = _coerce_float(payload.get("convergenceScore"), default=0.0)

    state.oracle_decision = _normalize_decision(payload.get("oracleDecision"))
    state.oracle_decision_at = _coerce_optional_str(payload.get("oracleDecisionAt"))
    state.oracle_decision_reason = _coerce_optional_str(payload.get("oracleDecisionReason"))

    todos_raw = payload.get("completedTodos")
    completed: list[str] = []
    if isinstance(todos_raw, list):
        for entry in todos_raw:
            todo = str(entry).strip()
            if todo and todo not in completed:
                completed.append(todo)
    state.completed_todos = completed
    state.verification_status = _normalize_verification_status(payload.get("verificationStatus"))
    state.terminated_with_reason = _coerce_optional_str(payload.get("terminatedWithReason"))
    state.errors = _normalize_records(payload.get("errors"), _normalize_error_entry)
    state.previous_attempts = _normalize_records(payload.get("previousAttempts"), _normalize_attempt_entry)
    return state


def _ledger_only_state(state: LoopState) -> LoopState:
    """Return an inactive document that keeps only the cross-run ledger of ``state``."""
    return LoopState(
        errors=list(state.errors),
        previous_attempts=list(state.previous_attempts),
    )


# ---------------------------------------------------------------------------
# State stores
# ---------------------------------------------------------------------------


class StateStore(abc.ABC):
    """Load/save access to the single persisted LoopState document.

    Every operation reads, mutates, and saves the whole document. Stores do not
    serialize concurrent callers; the last write wins.
    """

    @abc.abstractmethod
    def exists(self) -> bool:
        """Return whether a document is currently persisted."""

    @abc.abstractmethod
    def load(self) -> LoopState:
        """Return the persisted document, or a default inactive state."""

    @abc.abstractmethod
    def save(self, state: LoopState) -> bool:
        """Persist ``state``; return False when the write was dropped."""

    @abc.abstractmethod
    def delete(self) -> bool:
        """Remove the document; return whether one was removed."""

    def log(self, message: str) -> None:
        return None


class JsonStateStore(StateStore):
    """State store backed by one JSON file.

    Read and write failures are logged and swallowed: ``load`` falls back to the
    default inactive state and ``save`` becomes a no-op. Callers that need
    durability must check the return value of ``save``.
    """

    def __init__(
        self,
        path: Path,
        *,
        atomic: bool = True,
        history_limit: int = METRICS_HISTORY_LIMIT,
    ) -> None:
        self.path = Path(path)
        self.atomic = atomic
        self.history_limit = history_limit

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> LoopState | None:
        """Like ``load`` but distinguishes a missing document and raises on failure."""
        payload = _read_json(self.path)
        if payload is None:
            return None
        return _normalize_state(payload, history_limit=self.history_limit)

    def load(self) -> LoopState:
        try:
            state = self.read()
        except PersistenceFailure as exc:
            self.log(f"persistence failure on load, using default state: {exc}")
            return LoopState()
        return state if state is not None else LoopState()

    def save(self, state: LoopState) -> bool:
        try:
            _write_json(self.path, state.to_dict(), atomic=self.atomic)
        except PersistenceFailure as exc:
            self.log(f"persistence failure on save, state not persisted: {exc}")
            return False
        return True

    def delete(self) -> bool:
        try:
            return _remove_file(self.path)
        except PersistenceFailure as exc:
            self.log(f"persistence failure on delete: {exc}")
            return False

    def log(self, message: str) -> None:
        _append_log(self.path, message)


class MemoryStateStore(StateStore):
    """In-process store holding a serialized copy of the document."""

    def __init__(
        self,
        payload: dict[str, Any] | None = None,
        *,
        history_limit: int = METRICS_HISTORY_LIMIT,
    ) -> None:
        self._payload = copy.deepcopy(payload) if payload is not None else None
        self.history_limit = history_limit
        self.messages: list[str] = []

    def exists(self) -> bool:
        return self._payload is not None

    def load(self) -> LoopState:
        if self._payload is None:
            return LoopState()
        return _normalize_state(copy.deepcopy(self._payload), history_limit=self.history_limit)

    def save(self, state: LoopState) -> bool:
        self._payload = json.loads(json.dumps(state.to_dict()))
        return True

    def delete(self) -> bool:
        existed = self._payload is not None
        self._payload = None
        return existed

    def log(self, message: str) -> None:
        self.messages.append(message)

    @property
    def payload(self) -> dict[str, Any] | None:
        return copy.deepcopy(self._payload)


# ---------------------------------------------------------------------------
# Advisory lock
# ---------------------------------------------------------------------------
#
# The lock file holds the owner's token; only the owner's token releases it.
# A lock older than ``stale_seconds`` (or with no readable acquisition time)
# belongs to a dead command and may be taken over.


def _read_lock(lock_path: Path) -> dict[str, Any]:
    try:
        loaded = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return loaded if isinstance(loaded, dict) else {}


def _lock_age(holder: dict[str, Any], *, now: datetime) -> float | None:
    acquired = _parse_utc(str(holder.get("acquired_at", "")))
    if acquired is None:
        return None
    return max(0.0, (now - acquired).total_seconds())


def _describe_holder(holder: dict[str, Any], age: float | None = None) -> str:
    text = (
        f"pid {holder.get('pid', '?')} on {holder.get('host', '?')} "
        f"running '{holder.get('command', '?')}'"
    )
    if age is not None:
        text += f" for {age:.0f}s"
    return text


def _acquire_lock(
    lock_path: Path,
    *,
    state_file: Path,
    command: str,
    stale_seconds: int,
) -> tuple[str | None, str]:
    """Take the state lock for ``command``; return ``(token, message)``.

    ``token`` is None when another command holds a fresh lock or the lock file
    cannot be created. Pass the token back to ``_release_lock``.
    """
    token = uuid.uuid4().hex
    holder = {
        "token": token,
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "command": command,
        "state_file": str(state_file),
        "acquired_at": _utc_now(),
    }
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        return None, f"cannot create lock directory for {lock_path}: {exc}"

    taken_over: dict[str, Any] | None = None
    for _ in range(3):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            current = _read_lock(lock_path)
            age = _lock_age(current, now=datetime.now(timezone.utc))
            if age is not None and age <= stale_seconds:
                return None, f"state is locked by {_describe_holder(current, age)}"
            try:
                lock_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                return None, f"cannot remove stale lock {lock_path}: {exc}"
            taken_over = current
            continue
        except OSError as exc:
            return None, f"cannot create lock {lock_path}: {exc}"
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(holder, indent=2) + "\n")
        if taken_over is not None:
            return token, f"took over stale lock from {_describe_holder(taken_over)}"
        return token, f"lock taken for '{command}'"
    return None, f"gave up on {lock_path}: stale lock kept reappearing"


def _release_lock(lock_path: Path, token: str) -> bool:
    """Remove the lock if ``token`` still owns it; return whether it was removed."""
    if _read_lock(lock_path).get("token") != token:
        return False
    lock_path.unlink(missing_ok=True)
    return True


def _inspect_lock(lock_path: Path) -> dict[str, Any] | None:
    """Return the lock holder with its ``age_seconds``, or None when unlocked."""
    holder = _read_lock(lock_path)
    if not holder:
        return None
    result = dict(holder)
    result["age_seconds"] = _lock_age(holder, now=datetime.now(timezone.utc))
    return result


def _force_break_lock(lock_path: Path, *, reason: str) -> str:
    if not lock_path.exists():
        return "no lock to break"
    holder = _read_lock(lock_path)
    lock_path.unlink(missing_ok=True)
    return f"lock broken (was held by {_describe_holder(holder)}; reason: {reason})"
