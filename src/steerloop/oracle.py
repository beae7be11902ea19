"""Decision engine: rule-based checkpoint reviews, verification, and the attempt ledger."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from steerloop.config import _default_loop_policy
from steerloop.constants import (
    ATTEMPT_STATUSES,
    ATTEMPT_TYPES,
    ESCALATION_EARLY_PROGRESS,
    ESCALATION_STALL_FACTOR,
    NEAR_COMPLETION_MAX_INTERVAL,
    STRUGGLING_INTERVAL,
)
from steerloop.controller import apply_decision, build_status, decision_payload
from steerloop.metrics import select_interval
from steerloop.models import (
    AttemptRecord,
    Decision,
    DecisionOutcome,
    DecisionThresholds,
    ErrorRecord,
    InterventionPlan,
    InvalidArgument,
    LoopPolicy,
    LoopState,
    NoActiveLoop,
    StatusReport,
    VerificationCheck,
    VerificationReport,
    VerificationStatus,
    _coerce_int,
)
from steerloop.planner import (
    apply_plan,
    build_plan,
    calculate_iterations,
    estimate_todo_progress,
    plan_interventions,
)
from steerloop.state import StateStore
from steerloop.utils import _generate_attempt_id, _utc_now


def builder_action(decision: Decision) -> str:
    """Follow-up the builder should take after reading ``decision``."""
    if decision is Decision.CONTINUE:
        return "resume"
    if decision is Decision.PAUSE:
        return "wait for user input"
    if decision is Decision.ADJUST:
        return "update the TODO list, then resume"
    if decision is Decision.TERMINATE:
        return "terminate"
    if decision is Decision.ESCALATE:
        return "wait for an external reviewer"
    raise InvalidArgument(f"unknown decision: {decision!r}")


def decide(
    *,
    progress_rate: float,
    error_rate: float,
    convergence_score: float,
    iteration: int,
    max_iterations: int,
    thresholds: DecisionThresholds | None = None,
) -> DecisionOutcome:
    """Evaluate the checkpoint rules in order; the first matching rule decides."""
    limits = thresholds or _default_loop_policy().decision
    fraction = iteration / max_iterations if max_iterations > 0 else 0.0
    percent = round(fraction * 100)

    if progress_rate == 0 and iteration > limits.no_progress_after:
        return DecisionOutcome(
            Decision.PAUSE,
            f"No progress for {iteration} iterations. Need user guidance.",
        )
    if error_rate > limits.high_error_rate and convergence_score < limits.min_convergence:
        return DecisionOutcome(
            Decision.PAUSE,
            f"High error rate ({error_rate:.1f}/iter) with low convergence.",
        )
    if fraction >= limits.near_completion:
        # Tighten oversight near the finish even when convergence would allow a long gap.
        return DecisionOutcome(
            Decision.CONTINUE,
            f"Near completion ({percent}%).",
            next_interval=min(select_interval(progress_rate, convergence_score), NEAR_COMPLETION_MAX_INTERVAL),
        )
    if convergence_score >= limits.min_convergence:
        return DecisionOutcome(
            Decision.CONTINUE,
            f"Convergence: {convergence_score:.2f}. Progress: {progress_rate:.1f} files/iter.",
            next_interval=select_interval(progress_rate, convergence_score),
        )
    if progress_rate > 0:
        return DecisionOutcome(
            Decision.CONTINUE,
            f"Slow progress ({progress_rate:.1f} files/iter). More checks.",
            next_interval=STRUGGLING_INTERVAL,
        )
    return DecisionOutcome(Decision.PAUSE, "Unable to determine progress. Manual review needed.")


def decide_for_state(state: LoopState, thresholds: DecisionThresholds | None = None) -> DecisionOutcome:
    return decide(
        progress_rate=state.progress_rate,
        error_rate=state.error_rate,
        convergence_score=state.convergence_score,
        iteration=state.iteration,
        max_iterations=state.max_iterations,
        thresholds=thresholds,
    )


def escalation_decision(state: LoopState, thresholds: DecisionThresholds | None = None) -> DecisionOutcome:
    """Escalation policy: defer ambiguous situations to an external reviewer.

    Escalates when progress sits strictly between 0% and 25%, or when more than
    twice the checkpoint interval has passed since the last checkpoint. Anything
    else falls through to the standard rules.
    """
    fraction = state.progress_fraction
    if 0 < fraction < ESCALATION_EARLY_PROGRESS:
        return DecisionOutcome(
            Decision.ESCALATE,
            f"Progress is ambiguous at {round(fraction * 100)}%. Deferring to an external reviewer.",
        )
    since_checkpoint = state.iteration - state.last_checkpoint
    if since_checkpoint > ESCALATION_STALL_FACTOR * state.checkpoint_interval:
        return DecisionOutcome(
            Decision.ESCALATE,
            f"{since_checkpoint} iterations since the last checkpoint "
            f"(interval {state.checkpoint_interval}). Deferring to an external reviewer.",
        )
    return decide_for_state(state, thresholds)


@dataclass(frozen=True)
class ReviewResult:
    outcome: DecisionOutcome
    iteration: int
    max_iterations: int
    next_checkpoint_at: int
    progress_rate: float
    error_rate: float
    convergence_score: float
    todo_progress: int | None
    total_todos: int | None
    recorded: bool
    task_context: str | None = None

    @property
    def action(self) -> str:
        return builder_action(self.outcome.decision)

    def to_payload(self) -> dict[str, Any]:
        return {
            "decision": self.outcome.decision.value,
            "reason": self.outcome.reason,
            "nextInterval": self.outcome.next_interval,
            "recorded": self.recorded,
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "nextCheckpointAt": self.next_checkpoint_at,
            "metrics": {
                "progressRate": self.progress_rate,
                "errorRate": self.error_rate,
                "convergenceScore": self.convergence_score,
            },
            "todoProgress": self.todo_progress,
            "totalTodos": self.total_todos,
            "action": self.action,
            "taskContext": self.task_context,
        }


class DecisionEngine:
    def __init__(self, store: StateStore, *, policy: LoopPolicy | None = None) -> None:
        self.store = store
        self.policy = policy or _default_loop_policy()

    def _load_active(self) -> LoopState:
        state = self.store.load()
        if not state.active:
            raise NoActiveLoop("no active loop")
        return state

    def _load_existing(self) -> LoopState:
        if not self.store.exists():
            raise NoActiveLoop("no state document exists")
        return self.store.load()

    # -- planning -----------------------------------------------------------

    def set_intervention_plan(self, total_todos: Any, todos_per_iteration: Any = None) -> InterventionPlan:
        per_iteration = todos_per_iteration if todos_per_iteration is not None else self.policy.todos_per_iteration
        plan = build_plan(total_todos, per_iteration, timestamp=_utc_now())
        state = self.store.load()
        apply_plan(state, plan)
        self.store.save(state)
        self.store.log(
            f"intervention plan set: todos={plan.total_todos} iterations={plan.iterations_needed} "
            f"oracle={plan.oracle_interventions} user={plan.user_interventions}"
        )
        return plan

    def get_intervention_plan(self) -> dict[str, Any]:
        state = self.store.load()
        plan = state.intervention_plan
        if plan is None:
            return {
                "exists": False,
                "message": "No intervention plan found. Run set_intervention_plan first.",
            }
        return {
            "exists": True,
            "plan": plan.to_dict(),
            "currentIteration": state.iteration,
            "nextOracleIntervention": plan.next_oracle_after(state.iteration),
            "nextUserIntervention": plan.next_user_after(state.iteration),
        }

    def calculate_iterations(self, todo_count: Any, todos_per_iteration: Any = None) -> dict[str, Any]:
        per_iteration = todos_per_iteration if todos_per_iteration is not None else self.policy.todos_per_iteration
        iterations_needed = calculate_iterations(todo_count, per_iteration)
        oracle_points, user_points = plan_interventions(iterations_needed)
        minutes = iterations_needed * self.policy.minutes_per_iteration
        return {
            "todoCount": int(todo_count),
            "todosPerIteration": int(per_iteration),
            "iterationsNeeded": iterations_needed,
            "oracleInterventions": oracle_points,
            "userInterventions": user_points,
            "estimatedDuration": f"{minutes} minutes (approx)",
        }

    # -- decisions ----------------------------------------------------------

    def set_decision(self, decision: Any, reason: str = "") -> LoopState:
        state = self._load_active()
        parsed = Decision.parse(decision)
        apply_decision(state, DecisionOutcome(parsed, str(reason or "")), timestamp=_utc_now())
        self.store.save(state)
        self.store.log(f"oracle decision recorded: {parsed.value} reason={reason or '-'}")
        return state

    def get_decision(self) -> dict[str, Any]:
        return decision_payload(self.store.load())

    def status(self) -> StatusReport:
        return build_status(self.store.load())

    def review(self, task_context: str | None = None, *, escalate: bool | None = None) -> ReviewResult:
        state = self._load_active()
        use_escalation = self.policy.escalation if escalate is None else escalate
        if use_escalation:
            outcome = escalation_decision(state, self.policy.decision)
        else:
            outcome = decide_for_state(state, self.policy.decision)

        recorded = outcome.decision.storable
        if recorded:
            apply_decision(state, outcome, timestamp=_utc_now())
            self.store.save(state)
        self.store.log(
            f"review at iteration {state.iteration}: {outcome.decision.value} "
            f"recorded={recorded} reason={outcome.reason}"
        )
        plan = state.intervention_plan
        return ReviewResult(
            outcome=outcome,
            iteration=state.iteration,
            max_iterations=state.max_iterations,
            next_checkpoint_at=state.next_checkpoint_at,
            progress_rate=state.progress_rate,
            error_rate=state.error_rate,
            convergence_score=state.convergence_score,
            todo_progress=estimate_todo_progress(state),
            total_todos=plan.total_todos if plan is not None else None,
            recorded=recorded,
            task_context=task_context or None,
        )

    # -- verification -------------------------------------------------------

    def verify(self) -> VerificationReport:
        """Check a nominally finished run; only iterations and error rate gate approval."""
        state = self._load_active()
        limits = self.policy.verification
        checks = [
            VerificationCheck(
                name="iterations_complete",
                passed=state.iteration >= state.max_iterations,
                required=True,
                detail=f"{state.iteration}/{state.max_iterations}",
            ),
            VerificationCheck(
                name="error_rate_acceptable",
                passed=state.error_rate < limits.max_error_rate,
                required=True,
                detail=f"{state.error_rate:.2f} errors/iter (limit {limits.max_error_rate:g})",
            ),
            VerificationCheck(
                name="convergence",
                passed=state.convergence_score >= limits.min_convergence,
                required=False,
                detail=f"{state.convergence_score:.2f} (target {limits.min_convergence:g})",
            ),
        ]
        plan = state.intervention_plan
        if plan is not None:
            checks.append(
                VerificationCheck(
                    name="todos_complete",
                    passed=len(state.completed_todos) >= plan.total_todos,
                    required=False,
                    detail=f"{len(state.completed_todos)}/{plan.total_todos}",
                )
            )
        approved = all(check.passed for check in checks if check.required)
        status = VerificationStatus.APPROVED if approved else VerificationStatus.REVISION_REQUESTED
        state.verification_status = status
        self.store.save(state)
        self.store.log(f"verification: {status.value}")
        return VerificationReport(
            status=status,
            checks=tuple(checks),
            files_changed=sum(entry.files_changed for entry in state.metrics),
            files_modified=sum(entry.files_modified for entry in state.metrics),
            total_errors=sum(entry.errors_encountered for entry in state.metrics),
        )

    def complete_todo(self, todo: str) -> list[str]:
        name = str(todo or "").strip()
        if not name:
            raise InvalidArgument("todo identifier must be non-empty")
        state = self._load_active()
        if name not in state.completed_todos:
            state.completed_todos.append(name)
            self.store.save(state)
        return list(state.completed_todos)

    # -- ledger -------------------------------------------------------------

    def purge_state(self) -> bool:
        removed = self.store.delete()
        self.store.log("state purged" if removed else "purge requested with no state present")
        return removed

    def record_attempt(
        self,
        attempt_type: str = "direct",
        task_description: str = "",
        *,
        status: str = "success",
        iterations: int | None = None,
        error: str | None = None,
    ) -> AttemptRecord:
        normalized_type = str(attempt_type or "direct").strip().lower()
        if normalized_type not in ATTEMPT_TYPES:
            raise InvalidArgument(f"attemptType must be one of {', '.join(ATTEMPT_TYPES)}")
        normalized_status = str(status or "success").strip().lower()
        if normalized_status not in ATTEMPT_STATUSES:
            raise InvalidArgument(f"status must be one of {', '.join(ATTEMPT_STATUSES)}")
        run_length = None
        if iterations is not None:
            if isinstance(iterations, bool) or not str(iterations).isdigit():
                raise InvalidArgument(f"iterations must be a non-negative integer, got {iterations!r}")
            run_length = int(iterations)

        now = _utc_now()
        attempt = AttemptRecord(
            id=_generate_attempt_id(),
            type=normalized_type,
            task=str(task_description or ""),
            status=normalized_status,
            completed_at=now,
            iterations=run_length,
            error=error or None,
        )
        if self.store.exists():
            state = self.store.load()
        else:
            state = LoopState(prompt=attempt.task, started_at=now)
        state.previous_attempts.append(attempt)
        self.store.save(state)
        self.store.log(f"attempt recorded: type={attempt.type} status={attempt.status}")
        return attempt

    def record_error(self, iteration: Any, error_type: str = "unknown", error_description: str = "") -> ErrorRecord:
        if isinstance(iteration, bool):
            raise InvalidArgument("iteration must be a non-negative integer")
        try:
            parsed_iteration = int(iteration)
        except (TypeError, ValueError) as exc:
            raise InvalidArgument(f"iteration must be a non-negative integer, got {iteration!r}") from exc
        if parsed_iteration < 0:
            raise InvalidArgument(f"iteration must be a non-negative integer, got {parsed_iteration}")
        state = self._load_existing()
        record = ErrorRecord(
            iteration=parsed_iteration,
            type=str(error_type or "unknown"),
            description=str(error_description or ""),
            timestamp=_utc_now(),
        )
        state.errors.append(record)
        self.store.save(state)
        self.store.log(f"error recorded: iteration={record.iteration} type={record.type}")
        return record

    def get_previous_attempts(self) -> dict[str, Any]:
        state = self.store.load()
        if not state.previous_attempts:
            return {"hasPreviousAttempts": False, "message": "No previous attempts found."}
        return {
            "hasPreviousAttempts": True,
            "count": len(state.previous_attempts),
            "attempts": [entry.to_dict() for entry in state.previous_attempts],
            "errors": [entry.to_dict() for entry in state.errors],
        }

    def terminate_and_clear(self, remaining_checkpoints: Any = 0, reason: str = "User requested") -> LoopState:
        """Soft terminate: record TERMINATE and drop plan checkpoints past the current iteration."""
        state = self._load_existing()
        remaining = max(0, _coerce_int(remaining_checkpoints, default=0))
        reason_text = str(reason or "User requested")
        state.terminated_with_reason = reason_text
        state.oracle_decision = Decision.TERMINATE
        state.oracle_decision_at = _utc_now()
        state.oracle_decision_reason = f"Terminated with {remaining} checkpoints remaining: {reason_text}"
        plan = state.intervention_plan
        if plan is not None:
            plan.oracle_interventions = [point for point in plan.oracle_interventions if point <= state.iteration]
            plan.user_interventions = [point for point in plan.user_interventions if point <= state.iteration]
            plan.updated_at = state.oracle_decision_at
        self.store.save(state)
        self.store.log(f"terminated and cleared at iteration {state.iteration}: {reason_text}")
        return state
