"""Steerloop constants: command defaults, scheduling thresholds, and policy defaults."""

from __future__ import annotations

from pathlib import Path

STATE_FILE_ENV = "STEERLOOP_STATE_FILE"
POLICY_FILE_ENV = "STEERLOOP_POLICY_FILE"
DEFAULT_STATE_FILE = Path("~/.config/steerloop/state.json")
POLICY_FILE_NAME = "policy.yaml"
LOG_RELATIVE_PATH = Path("logs") / "steerloop.log"
LOCK_FILE_NAME = "state.lock"

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_CHECKPOINT_INTERVAL = 5
DEFAULT_COMPLETION_PROMISE = "DONE"
DEFAULT_TODOS_PER_ITERATION = 3
DEFAULT_MINUTES_PER_ITERATION = 5
METRICS_HISTORY_LIMIT = 50

# Convergence bands for interval selection; the first band is an exclusive bound.
EXCELLENT_CONVERGENCE = 2.0
GOOD_CONVERGENCE = 1.0
SLOW_CONVERGENCE = 0.5
EXCELLENT_INTERVAL = 7
GOOD_INTERVAL = 5
SLOW_INTERVAL = 3
STRUGGLING_INTERVAL = 2
STALLED_INTERVAL = 1
NEAR_COMPLETION_MAX_INTERVAL = 3

ORACLE_INTERVENTION_POINTS = (0.25, 0.5, 0.75)
USER_INTERVENTION_POINTS = (0.33, 0.66, 1.0)

DEFAULT_NO_PROGRESS_AFTER = 3
DEFAULT_HIGH_ERROR_RATE = 2.0
DEFAULT_NEAR_COMPLETION = 0.80
DEFAULT_MIN_CONVERGENCE = 0.5
DEFAULT_VERIFY_MAX_ERROR_RATE = 1.0
DEFAULT_VERIFY_MIN_CONVERGENCE = 0.5
ESCALATION_EARLY_PROGRESS = 0.25
ESCALATION_STALL_FACTOR = 2

LOCK_STALE_SECONDS = 30 * 60

CHECKPOINT_SIGNAL_TAG = "CHECKPOINT_SIGNAL"
ATTEMPT_TYPES = ("direct", "loop")
ATTEMPT_STATUSES = ("success", "failed", "terminated")
