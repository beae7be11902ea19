"""Steerloop data models: exceptions, enumerations, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from steerloop.constants import (
    CHECKPOINT_SIGNAL_TAG,
    DEFAULT_CHECKPOINT_INTERVAL,
    DEFAULT_COMPLETION_PROMISE,
    DEFAULT_MAX_ITERATIONS,
)


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_int(value: Any, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except Exception:
        return default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    parsed = _coerce_int(value, default=default)
    return parsed if parsed > 0 else default


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class LoopError(RuntimeError):
    """Base class for errors surfaced by loop and oracle commands."""

    code = "LoopError"


class NoActiveLoop(LoopError):
    """Raised when a command needs an active state document and none exists."""

    code = "NoActiveLoop"


class AlreadyActive(LoopError):
    """Raised when start is called while a loop is already active."""

    code = "AlreadyActive"


class LoopPaused(LoopError):
    """Raised when iterate is called on a paused loop."""

    code = "LoopPaused"


class InvalidArgument(LoopError, ValueError):
    code = "InvalidArgument"


class PersistenceFailure(LoopError):
    """Raised when the state document cannot be read or written."""

    code = "PersistenceFailure"


class StateError(PersistenceFailure):
    """Raised when the state document exists but is not a JSON object."""

    code = "StateError"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Decision(str, Enum):
    CONTINUE = "CONTINUE"
    PAUSE = "PAUSE"
    ADJUST = "ADJUST"
    TERMINATE = "TERMINATE"
    # Produced only by the escalation policy; never written to the document.
    ESCALATE = "ESCALATE"

    @property
    def storable(self) -> bool:
        return self is not Decision.ESCALATE

    @classmethod
    def parse(cls, value: Any) -> "Decision":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        try:
            return cls(text)
        except ValueError as exc:
            choices = ", ".join(item.value for item in cls if item.storable)
            raise InvalidArgument(f"decision must be one of {choices}, got '{value}'") from exc


class InterventionType(str, Enum):
    ORACLE = "oracle"
    USER = "user"

    @property
    def action(self) -> "FollowUpAction":
        if self is InterventionType.USER:
            return FollowUpAction.NOTIFY_USER
        return FollowUpAction.INVOKE_ORACLE


class FollowUpAction(str, Enum):
    INVOKE_ORACLE = "INVOKE_ORACLE"
    NOTIFY_USER = "NOTIFY_USER"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REVISION_REQUESTED = "revision_requested"


class LoopPhase(str, Enum):
    INACTIVE = "inactive"
    RUNNING = "running"
    PAUSED = "paused"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


@dataclass
class IterationMetrics:
    files_changed: int = 0
    files_modified: int = 0
    errors_encountered: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    iteration_duration: int = 0
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "filesChanged": self.files_changed,
            "filesModified": self.files_modified,
            "errorsEncountered": self.errors_encountered,
            "testsPassed": self.tests_passed,
            "testsFailed": self.tests_failed,
            "iterationDuration": self.iteration_duration,
            "timestamp": self.timestamp,
        }


@dataclass
class InterventionPlan:
    total_todos: int
    todos_per_iteration: int
    iterations_needed: int
    oracle_interventions: list[int] = field(default_factory=list)
    user_interventions: list[int] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def next_oracle_after(self, iteration: int) -> int | None:
        return next((point for point in self.oracle_interventions if point > iteration), None)

    def next_user_after(self, iteration: int) -> int | None:
        return next((point for point in self.user_interventions if point > iteration), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTodos": self.total_todos,
            "todosPerIteration": self.todos_per_iteration,
            "iterationsNeeded": self.iterations_needed,
            "oracleInterventions": list(self.oracle_interventions),
            "userInterventions": list(self.user_interventions),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class ErrorRecord:
    iteration: int
    type: str
    description: str
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "type": self.type,
            "description": self.description,
            "timestamp": self.timestamp,
        }


@dataclass
class AttemptRecord:
    id: str
    type: str
    task: str
    status: str = "success"
    completed_at: str = ""
    iterations: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "task": self.task,
            "status": self.status,
            "completedAt": self.completed_at,
        }
        if self.iterations is not None:
            payload["iterations"] = self.iterations
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class LoopState:
    """One supervised task, persisted wholesale as a single JSON document."""

    active: bool = False
    paused: bool = False
    iteration: int = 0
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL
    next_checkpoint_at: int = DEFAULT_CHECKPOINT_INTERVAL
    completion_promise: str = DEFAULT_COMPLETION_PROMISE
    prompt: str = ""
    started_at: str = ""
    last_iteration_at: str = ""
    last_checkpoint: int = 0
    intervention_plan: InterventionPlan | None = None
    metrics: list[IterationMetrics] = field(default_factory=list)
    progress_rate: float = 0.0
    error_rate: float = 0.0
    convergence_score: float = 0.0
    oracle_decision: Decision | None = None
    oracle_decision_at: str | None = None
    oracle_decision_reason: str | None = None
    completed_todos: list[str] = field(default_factory=list)
    verification_status: VerificationStatus | None = None
    terminated_with_reason: str | None = None
    errors: list[ErrorRecord] = field(default_factory=list)
    previous_attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def phase(self) -> LoopPhase:
        if not self.active:
            return LoopPhase.INACTIVE
        return LoopPhase.PAUSED if self.paused else LoopPhase.RUNNING

    @property
    def progress_fraction(self) -> float:
        if self.max_iterations <= 0:
            return 0.0
        return self.iteration / self.max_iterations

    def clear_decision(self) -> None:
        self.oracle_decision = None
        self.oracle_decision_at = None
        self.oracle_decision_reason = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "paused": self.paused,
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "checkpointInterval": self.checkpoint_interval,
            "nextCheckpointAt": self.next_checkpoint_at,
            "completionPromise": self.completion_promise,
            "prompt": self.prompt,
            "startedAt": self.started_at,
            "lastIterationAt": self.last_iteration_at,
            "lastCheckpoint": self.last_checkpoint,
            "interventionPlan": self.intervention_plan.to_dict() if self.intervention_plan else None,
            "metrics": [entry.to_dict() for entry in self.metrics],
            "progressRate": self.progress_rate,
            "errorRate": self.error_rate,
            "convergenceScore": self.convergence_score,
            "oracleDecision": self.oracle_decision.value if self.oracle_decision else None,
            "oracleDecisionAt": self.oracle_decision_at,
            "oracleDecisionReason": self.oracle_decision_reason,
            "completedTodos": list(self.completed_todos),
            "verificationStatus": self.verification_status.value if self.verification_status else None,
            "terminatedWithReason": self.terminated_with_reason,
            "errors": [entry.to_dict() for entry in self.errors],
            "previousAttempts": [entry.to_dict() for entry in self.previous_attempts],
        }


# ---------------------------------------------------------------------------
# Iterate results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricsSnapshot:
    progress_rate: float = 0.0
    error_rate: float = 0.0
    convergence_score: float = 0.0
    files_changed: int = 0
    files_modified: int = 0
    errors_encountered: int = 0
    window_size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "progressRate": self.progress_rate,
            "errorRate": self.error_rate,
            "convergenceScore": self.convergence_score,
            "filesChanged": self.files_changed,
            "filesModified": self.files_modified,
            "errorsEncountered": self.errors_encountered,
        }


@dataclass(frozen=True)
class ProgressResult:
    iteration: int
    max_iterations: int
    next_checkpoint_at: int
    kind: str = "progress"

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "nextCheckpointAt": self.next_checkpoint_at,
        }


@dataclass(frozen=True)
class CheckpointSignal:
    """The machine-readable hand-off from the controller to external reviewers."""

    iteration: int
    max_iterations: int
    next_checkpoint_at: int
    intervention_type: InterventionType | None
    metrics: MetricsSnapshot
    action: FollowUpAction
    prompt: str = ""
    message: str = ""
    kind: str = "checkpoint"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "__type": CHECKPOINT_SIGNAL_TAG,
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "nextCheckpointAt": self.next_checkpoint_at,
        }
        if self.intervention_type is not None:
            payload["interventionType"] = self.intervention_type.value
        payload.update(
            {
                "prompt": self.prompt,
                "paused": True,
                "metrics": self.metrics.to_dict(),
                "action": self.action.value,
                "message": self.message,
            }
        )
        return payload


@dataclass(frozen=True)
class CompletionResult:
    iteration: int
    max_iterations: int
    completion_promise: str
    kind: str = "completion"

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "completionPromise": self.completion_promise,
        }


IterateResult = Union[ProgressResult, CheckpointSignal, CompletionResult]


@dataclass(frozen=True)
class DecisionOutcome:
    decision: Decision
    reason: str
    next_interval: int | None = None


@dataclass(frozen=True)
class VerificationCheck:
    name: str
    passed: bool
    required: bool
    detail: str


@dataclass(frozen=True)
class VerificationReport:
    status: VerificationStatus
    checks: tuple[VerificationCheck, ...]
    files_changed: int
    files_modified: int
    total_errors: int

    @property
    def approved(self) -> bool:
        return self.status is VerificationStatus.APPROVED

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "checks": [
                {
                    "name": check.name,
                    "passed": check.passed,
                    "required": check.required,
                    "detail": check.detail,
                }
                for check in self.checks
            ],
            "filesChanged": self.files_changed,
            "filesModified": self.files_modified,
            "totalErrors": self.total_errors,
        }


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecisionThresholds:
    no_progress_after: int
    high_error_rate: float
    near_completion: float
    min_convergence: float


@dataclass(frozen=True)
class VerificationThresholds:
    max_error_rate: float
    min_convergence: float


@dataclass(frozen=True)
class StorageConfig:
    atomic_writes: bool
    lock: bool
    lock_stale_seconds: int


@dataclass(frozen=True)
class LoopPolicy:
    history_limit: int
    todos_per_iteration: int
    minutes_per_iteration: int
    escalation: bool
    decision: DecisionThresholds
    verification: VerificationThresholds
    storage: StorageConfig


# ---------------------------------------------------------------------------
# Command reports
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatusReport:
    phase: LoopPhase
    prompt: str
    iteration: int
    max_iterations: int
    progress: float
    next_checkpoint_at: int
    last_checkpoint: int
    started_at: str
    decision: Decision | None
    decision_reason: str | None
    metrics: MetricsSnapshot
    plan: InterventionPlan | None
    verification_status: VerificationStatus | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "prompt": self.prompt,
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "progress": self.progress,
            "nextCheckpointAt": self.next_checkpoint_at,
            "lastCheckpoint": self.last_checkpoint,
            "startedAt": self.started_at,
            "decision": self.decision.value if self.decision else None,
            "decisionReason": self.decision_reason,
            "metrics": self.metrics.to_dict(),
            "interventionPlan": self.plan.to_dict() if self.plan else None,
            "verificationStatus": self.verification_status.value if self.verification_status else None,
        }


@dataclass(frozen=True)
class ResumeResult:
    iteration: int
    max_iterations: int
    next_checkpoint_at: int
    interval: int
    was_paused: bool
    previous_decision: Decision | None = None
    previous_reason: str | None = None


@dataclass(frozen=True)
class TerminateResult:
    was_active: bool
    iteration: int
    prompt: str
    ledger_kept: bool = False


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command; errors are reported here instead of raised."""

    ok: bool
    command: str
    message: str
    payload: dict[str, Any] | None = None
    error: str | None = None
    warning: str | None = None

    def to_payload(self) -> dict[str, Any]:
        result: dict[str, Any] = {"ok": self.ok, "command": self.command, "message": self.message}
        if self.payload is not None:
            result["payload"] = self.payload
        if self.error is not None:
            result["error"] = self.error
        if self.warning is not None:
            result["warning"] = self.warning
        return result
