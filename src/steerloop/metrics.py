"""Rolling progress metrics and checkpoint interval selection."""

from __future__ import annotations

from typing import Any, Sequence

from steerloop.constants import (
    EXCELLENT_CONVERGENCE,
    EXCELLENT_INTERVAL,
    GOOD_CONVERGENCE,
    GOOD_INTERVAL,
    METRICS_HISTORY_LIMIT,
    SLOW_CONVERGENCE,
    SLOW_INTERVAL,
    STALLED_INTERVAL,
    STRUGGLING_INTERVAL,
)
from steerloop.models import (
    InvalidArgument,
    IterationMetrics,
    LoopState,
    MetricsSnapshot,
)

METRIC_FIELDS = (
    "files_changed",
    "files_modified",
    "errors_encountered",
    "tests_passed",
    "tests_failed",
    "iteration_duration",
)


def _metrics_window(state: LoopState) -> list[IterationMetrics]:
    """Return the records the aggregates are computed over: the last ``checkpoint_interval``."""
    interval = max(1, state.checkpoint_interval)
    return state.metrics[-interval:]


def aggregate_metrics(records: Sequence[IterationMetrics]) -> MetricsSnapshot:
    if not records:
        return MetricsSnapshot()
    files_changed = sum(entry.files_changed for entry in records)
    files_modified = sum(entry.files_modified for entry in records)
    errors = sum(entry.errors_encountered for entry in records)
    count = len(records)
    progress_rate = (files_changed + files_modified) / count
    error_rate = errors / count
    # +1 keeps the score finite and softens the penalty for a handful of errors.
    convergence_score = progress_rate / (error_rate + 1)
    return MetricsSnapshot(
        progress_rate=progress_rate,
        error_rate=error_rate,
        convergence_score=convergence_score,
        files_changed=files_changed,
        files_modified=files_modified,
        errors_encountered=errors,
        window_size=count,
    )


def snapshot_for(state: LoopState) -> MetricsSnapshot:
    return aggregate_metrics(_metrics_window(state))


def refresh_aggregates(state: LoopState) -> MetricsSnapshot:
    """Recompute the derived rates on ``state`` from its current window."""
    snapshot = snapshot_for(state)
    state.progress_rate = snapshot.progress_rate
    state.error_rate = snapshot.error_rate
    state.convergence_score = snapshot.convergence_score
    return snapshot


def select_interval(progress_rate: float, convergence_score: float) -> int:
    """Map convergence to the number of iterations until the next mandatory pause."""
    if convergence_score > EXCELLENT_CONVERGENCE:
        return EXCELLENT_INTERVAL
    if convergence_score >= GOOD_CONVERGENCE:
        return GOOD_INTERVAL
    if convergence_score >= SLOW_CONVERGENCE:
        return SLOW_INTERVAL
    if progress_rate > 0:
        return STRUGGLING_INTERVAL
    return STALLED_INTERVAL


def next_checkpoint_interval(state: LoopState) -> int:
    snapshot = snapshot_for(state)
    return select_interval(snapshot.progress_rate, snapshot.convergence_score)


def build_metrics_record(values: dict[str, Any], *, timestamp: str) -> IterationMetrics:
    """Validate reported counts; missing fields are zero, negatives are rejected."""
    parsed: dict[str, int] = {}
    for name in METRIC_FIELDS:
        raw = values.get(name, 0)
        if raw is None:
            raw = 0
        if isinstance(raw, bool):
            raise InvalidArgument(f"{name} must be a non-negative integer, got {raw!r}")
        if isinstance(raw, float):
            if not raw.is_integer():
                raise InvalidArgument(f"{name} must be a non-negative integer, got {raw!r}")
            raw = int(raw)
        try:
            value = int(raw)
        except (TypeError, ValueError) as exc:
            raise InvalidArgument(f"{name} must be a non-negative integer, got {raw!r}") from exc
        if value < 0:
            raise InvalidArgument(f"{name} must be a non-negative integer, got {value}")
        parsed[name] = value
    return IterationMetrics(timestamp=timestamp, **parsed)


def append_metrics(
    state: LoopState,
    record: IterationMetrics,
    *,
    history_limit: int = METRICS_HISTORY_LIMIT,
) -> MetricsSnapshot:
    state.metrics.append(record)
    if len(state.metrics) > history_limit:
        state.metrics = state.metrics[-history_limit:]
    return refresh_aggregates(state)
