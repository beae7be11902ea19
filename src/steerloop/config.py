from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from steerloop.constants import (
    DEFAULT_HIGH_ERROR_RATE,
    DEFAULT_MIN_CONVERGENCE,
    DEFAULT_MINUTES_PER_ITERATION,
    DEFAULT_NEAR_COMPLETION,
    DEFAULT_NO_PROGRESS_AFTER,
    DEFAULT_STATE_FILE,
    DEFAULT_TODOS_PER_ITERATION,
    DEFAULT_VERIFY_MAX_ERROR_RATE,
    DEFAULT_VERIFY_MIN_CONVERGENCE,
    LOCK_STALE_SECONDS,
    METRICS_HISTORY_LIMIT,
    POLICY_FILE_ENV,
    POLICY_FILE_NAME,
    STATE_FILE_ENV,
)
from steerloop.models import (
    DecisionThresholds,
    LoopPolicy,
    StorageConfig,
    VerificationThresholds,
    _coerce_bool,
    _coerce_float,
    _coerce_positive_int,
)


def _resolve_state_path(explicit: str | None = None) -> Path:
    raw = explicit or os.environ.get(STATE_FILE_ENV, "").strip() or str(DEFAULT_STATE_FILE)
    return Path(raw).expanduser().resolve()


def _resolve_policy_path(state_path: Path, explicit: str | None = None) -> Path:
    raw = explicit or os.environ.get(POLICY_FILE_ENV, "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    return state_path.parent / POLICY_FILE_NAME


def _load_policy_mapping(policy_path: Path) -> dict[str, Any]:
    if not policy_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _section(policy: dict[str, Any], name: str) -> dict[str, Any]:
    section = policy.get(name)
    return section if isinstance(section, dict) else {}


def _load_decision_thresholds(policy: dict[str, Any]) -> DecisionThresholds:
    oracle = _section(policy, "oracle")
    near_completion = _coerce_float(oracle.get("near_completion"), default=DEFAULT_NEAR_COMPLETION)
    if not 0.0 < near_completion <= 1.0:
        near_completion = DEFAULT_NEAR_COMPLETION
    no_progress_after = _coerce_positive_int(
        oracle.get("no_progress_after"), default=DEFAULT_NO_PROGRESS_AFTER
    )
    high_error_rate = _coerce_float(oracle.get("high_error_rate"), default=DEFAULT_HIGH_ERROR_RATE)
    if high_error_rate < 0:
        high_error_rate = DEFAULT_HIGH_ERROR_RATE
    return DecisionThresholds(
        no_progress_after=no_progress_after,
        high_error_rate=high_error_rate,
        near_completion=near_completion,
        min_convergence=DEFAULT_MIN_CONVERGENCE,
    )


def _load_verification_thresholds(policy: dict[str, Any]) -> VerificationThresholds:
    verification = _section(policy, "verification")
    max_error_rate = _coerce_float(
        verification.get("max_error_rate"), default=DEFAULT_VERIFY_MAX_ERROR_RATE
    )
    min_convergence = _coerce_float(
        verification.get("min_convergence"), default=DEFAULT_VERIFY_MIN_CONVERGENCE
    )
    if max_error_rate < 0:
        max_error_rate = DEFAULT_VERIFY_MAX_ERROR_RATE
    if min_convergence < 0:
        min_convergence = DEFAULT_VERIFY_MIN_CONVERGENCE
    return VerificationThresholds(max_error_rate=max_error_rate, min_convergence=min_convergence)


def _load_storage_config(policy: dict[str, Any]) -> StorageConfig:
    storage = _section(policy, "storage")
    return StorageConfig(
        atomic_writes=_coerce_bool(storage.get("atomic_writes"), default=True),
        lock=_coerce_bool(storage.get("lock"), default=False),
        lock_stale_seconds=_coerce_positive_int(
            storage.get("lock_stale_seconds"), default=LOCK_STALE_SECONDS
        ),
    )


def _load_loop_policy(policy_path: Path | None = None) -> LoopPolicy:
    """Return the effective loop policy; every missing or malformed value uses its default."""
    policy = _load_policy_mapping(policy_path) if policy_path is not None else {}
    metrics = _section(policy, "metrics")
    planner = _section(policy, "planner")
    oracle = _section(policy, "oracle")
    return LoopPolicy(
        history_limit=_coerce_positive_int(metrics.get("history_limit"), default=METRICS_HISTORY_LIMIT),
        todos_per_iteration=_coerce_positive_int(
            planner.get("todos_per_iteration"), default=DEFAULT_TODOS_PER_ITERATION
        ),
        minutes_per_iteration=_coerce_positive_int(
            planner.get("minutes_per_iteration"), default=DEFAULT_MINUTES_PER_ITERATION
        ),
        escalation=_coerce_bool(oracle.get("escalation"), default=False),
        decision=_load_decision_thresholds(policy),
        verification=_load_verification_thresholds(policy),
        storage=_load_storage_config(policy),
    )


def _default_loop_policy() -> LoopPolicy:
    return _load_loop_policy(None)
