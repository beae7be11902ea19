"""Loop controller: the checkpoint-driven state machine the builder drives.

Phases: inactive -> running -> paused -> (running | terminated). Every command
loads the whole state document from the store, mutates it, and saves it back.
Checkpoints are either listed by an intervention plan or reached dynamically
when ``iteration >= next_checkpoint_at``.
"""

from __future__ import annotations

from typing import Any

from steerloop.config import _default_loop_policy
from steerloop.constants import (
    DEFAULT_CHECKPOINT_INTERVAL,
    DEFAULT_COMPLETION_PROMISE,
    DEFAULT_MAX_ITERATIONS,
)
from steerloop.metrics import (
    append_metrics,
    build_metrics_record,
    refresh_aggregates,
    select_interval,
    snapshot_for,
)
from steerloop.models import (
    AlreadyActive,
    CheckpointSignal,
    CompletionResult,
    Decision,
    DecisionOutcome,
    InterventionType,
    InvalidArgument,
    IterateResult,
    IterationMetrics,
    LoopPaused,
    LoopPolicy,
    LoopState,
    MetricsSnapshot,
    NoActiveLoop,
    ProgressResult,
    ResumeResult,
    StatusReport,
    TerminateResult,
)
from steerloop.planner import first_checkpoint, plan_retarget, upcoming_intervention
from steerloop.state import StateStore, _ledger_only_state
from steerloop.utils import _utc_now


def _require_at_least_one(value: Any, *, name: str) -> int:
    if isinstance(value, bool):
        raise InvalidArgument(f"{name} must be an integer >= 1, got {value!r}")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidArgument(f"{name} must be an integer >= 1, got {value!r}") from exc
    if parsed < 1:
        raise InvalidArgument(f"{name} must be an integer >= 1, got {parsed}")
    return parsed


def apply_decision(state: LoopState, outcome: DecisionOutcome, *, timestamp: str) -> None:
    """Record ``outcome`` on ``state`` and re-target the next checkpoint on CONTINUE.

    With an intervention plan the next plan-listed oracle point wins; the
    outcome's interval (or the scheduler's) is used only in dynamic mode.
    """
    if not outcome.decision.storable:
        raise InvalidArgument(f"decision {outcome.decision.value} cannot be recorded on the loop")
    state.oracle_decision = outcome.decision
    state.oracle_decision_at = timestamp
    state.oracle_decision_reason = outcome.reason
    if outcome.decision is not Decision.CONTINUE:
        return
    if state.intervention_plan is not None:
        next_at, interval = plan_retarget(state)
    else:
        interval = outcome.next_interval or select_interval(state.progress_rate, state.convergence_score)
        next_at = state.iteration + interval
    state.next_checkpoint_at = next_at
    state.checkpoint_interval = interval


def build_status(state: LoopState) -> StatusReport:
    return StatusReport(
        phase=state.phase,
        prompt=state.prompt,
        iteration=state.iteration,
        max_iterations=state.max_iterations,
        progress=state.progress_fraction,
        next_checkpoint_at=state.next_checkpoint_at,
        last_checkpoint=state.last_checkpoint,
        started_at=state.started_at,
        decision=state.oracle_decision,
        decision_reason=state.oracle_decision_reason,
        metrics=snapshot_for(state),
        plan=state.intervention_plan,
        verification_status=state.verification_status,
    )


def decision_payload(state: LoopState) -> dict[str, Any]:
    if not state.active:
        return {"decision": None, "message": "No active loop"}
    return {
        "decision": state.oracle_decision.value if state.oracle_decision else None,
        "nextCheckpointAt": state.next_checkpoint_at,
        "reason": state.oracle_decision_reason,
        "decidedAt": state.oracle_decision_at,
        "currentIteration": state.iteration,
        "interventionPlan": state.intervention_plan.to_dict() if state.intervention_plan else None,
        "metrics": {
            "progressRate": state.progress_rate,
            "errorRate": state.error_rate,
            "convergenceScore": state.convergence_score,
        },
    }


class LoopController:
    def __init__(self, store: StateStore, *, policy: LoopPolicy | None = None) -> None:
        self.store = store
        self.policy = policy or _default_loop_policy()

    # -- helpers ------------------------------------------------------------

    def _load_active(self) -> LoopState:
        state = self.store.load()
        if not state.active:
            raise NoActiveLoop("no active loop; start one first")
        return state

    def _checkpoint(
        self,
        state: LoopState,
        intervention: InterventionType,
        *,
        message: str,
    ) -> CheckpointSignal:
        state.paused = True
        state.last_checkpoint = state.iteration
        snapshot = refresh_aggregates(state)
        self.store.save(state)
        self.store.log(
            f"checkpoint reached: iteration={state.iteration}/{state.max_iterations} "
            f"type={intervention.value} convergence={snapshot.convergence_score:.2f}"
        )
        return CheckpointSignal(
            iteration=state.iteration,
            max_iterations=state.max_iterations,
            next_checkpoint_at=state.next_checkpoint_at,
            intervention_type=intervention,
            metrics=snapshot,
            action=intervention.action,
            prompt=state.prompt,
            message=message,
        )

    # -- commands -----------------------------------------------------------

    def start(
        self,
        prompt: str,
        max_iterations: Any = DEFAULT_MAX_ITERATIONS,
        checkpoint_interval: Any = DEFAULT_CHECKPOINT_INTERVAL,
        completion_promise: str = DEFAULT_COMPLETION_PROMISE,
    ) -> LoopState:
        existing = self.store.load()
        if existing.active:
            raise AlreadyActive(
                f"loop already active at iteration {existing.iteration}/{existing.max_iterations}"
            )
        max_iterations = _require_at_least_one(max_iterations, name="maxIterations")
        checkpoint_interval = _require_at_least_one(checkpoint_interval, name="checkpointInterval")

        plan = existing.intervention_plan
        state = LoopState(
            active=True,
            prompt=str(prompt or ""),
            completion_promise=str(completion_promise or DEFAULT_COMPLETION_PROMISE),
            started_at=_utc_now(),
            max_iterations=max_iterations,
            checkpoint_interval=checkpoint_interval,
            next_checkpoint_at=checkpoint_interval,
            errors=existing.errors,
            previous_attempts=existing.previous_attempts,
        )
        if plan is not None:
            checkpoint = first_checkpoint(plan)
            state.intervention_plan = plan
            state.max_iterations = plan.iterations_needed
            state.checkpoint_interval = checkpoint
            state.next_checkpoint_at = checkpoint
        self.store.save(state)
        self.store.log(
            f"loop started: max_iterations={state.max_iterations} "
            f"first_checkpoint={state.next_checkpoint_at} planned={plan is not None}"
        )
        return state

    def status(self) -> StatusReport:
        return build_status(self.store.load())

    def iterate(self) -> IterateResult:
        state = self._load_active()
        if state.paused:
            pending = state.oracle_decision.value if state.oracle_decision else "none"
            raise LoopPaused(
                f"loop is paused at iteration {state.iteration}/{state.max_iterations} "
                f"(decision: {pending}); resume first"
            )

        plan = state.intervention_plan
        if state.iteration >= state.max_iterations:
            if (
                plan is not None
                and state.iteration in plan.user_interventions
                and state.last_checkpoint != state.iteration
            ):
                return self._checkpoint(
                    state,
                    InterventionType.USER,
                    message=(
                        f"Completion milestone reached at iteration {state.iteration}/"
                        f"{state.max_iterations}. Loop paused for user notification."
                    ),
                )
            return CompletionResult(
                iteration=state.iteration,
                max_iterations=state.max_iterations,
                completion_promise=state.completion_promise,
            )

        state.iteration += 1
        state.last_iteration_at = _utc_now()

        intervention: InterventionType | None = None
        if plan is not None:
            if state.iteration in plan.oracle_interventions:
                intervention = InterventionType.ORACLE
            elif state.iteration in plan.user_interventions:
                intervention = InterventionType.USER
        if intervention is None and state.iteration >= state.next_checkpoint_at:
            intervention = InterventionType.ORACLE

        if intervention is InterventionType.USER:
            return self._checkpoint(
                state,
                intervention,
                message=f"User intervention point {state.iteration} reached. Loop paused for user notification.",
            )
        if intervention is InterventionType.ORACLE:
            return self._checkpoint(
                state,
                intervention,
                message=f"Checkpoint {state.iteration} reached. Loop paused for oracle review.",
            )

        self.store.save(state)
        return ProgressResult(
            iteration=state.iteration,
            max_iterations=state.max_iterations,
            next_checkpoint_at=upcoming_intervention(state),
        )

    def pause(self) -> bool:
        """Pause the loop manually; return False when it was already paused."""
        state = self._load_active()
        if state.paused:
            return False
        state.paused = True
        self.store.save(state)
        self.store.log(f"loop paused manually at iteration {state.iteration}")
        return True

    def resume(self) -> ResumeResult:
        state = self._load_active()
        previous_decision = state.oracle_decision
        previous_reason = state.oracle_decision_reason

        if not state.paused:
            if previous_decision is not None or state.oracle_decision_at is not None:
                state.clear_decision()
                self.store.save(state)
            return ResumeResult(
                iteration=state.iteration,
                max_iterations=state.max_iterations,
                next_checkpoint_at=state.next_checkpoint_at,
                interval=state.checkpoint_interval,
                was_paused=False,
                previous_decision=previous_decision,
                previous_reason=previous_reason,
            )

        if state.intervention_plan is not None:
            next_at, interval = plan_retarget(state)
        else:
            snapshot = refresh_aggregates(state)
            interval = select_interval(snapshot.progress_rate, snapshot.convergence_score)
            next_at = state.iteration + interval
        state.checkpoint_interval = interval
        state.next_checkpoint_at = next_at
        state.paused = False
        state.clear_decision()
        self.store.save(state)
        self.store.log(
            f"loop resumed at iteration {state.iteration}: next_checkpoint={next_at} "
            f"previous_decision={previous_decision.value if previous_decision else 'manual'}"
        )
        return ResumeResult(
            iteration=state.iteration,
            max_iterations=state.max_iterations,
            next_checkpoint_at=next_at,
            interval=interval,
            was_paused=True,
            previous_decision=previous_decision,
            previous_reason=previous_reason,
        )

    def terminate(self) -> TerminateResult:
        """Remove the loop document; the attempt/error ledger survives when non-empty."""
        state = self.store.load()
        ledger_kept = bool(state.errors or state.previous_attempts)
        if ledger_kept:
            self.store.save(_ledger_only_state(state))
        else:
            self.store.delete()
        if state.active:
            self.store.log(f"loop terminated after {state.iteration} iterations")
        return TerminateResult(
            was_active=state.active,
            iteration=state.iteration,
            prompt=state.prompt,
            ledger_kept=ledger_kept,
        )

    def update_metrics(self, **values: Any) -> tuple[IterationMetrics, MetricsSnapshot]:
        state = self._load_active()
        record = build_metrics_record(values, timestamp=_utc_now())
        snapshot = append_metrics(state, record, history_limit=self.policy.history_limit)
        self.store.save(state)
        return record, snapshot

    def check_checkpoint(self) -> dict[str, Any]:
        state = self.store.load()
        if not state.active:
            return {"reached": False, "active": False, "message": "No active loop"}
        return {
            "reached": state.iteration >= state.next_checkpoint_at,
            "active": True,
            "paused": state.paused,
            "currentIteration": state.iteration,
            "nextCheckpointAt": state.next_checkpoint_at,
            "iterationsUntilCheckpoint": state.next_checkpoint_at - state.iteration,
        }

    def check_completion(self, output: str) -> bool:
        """Return whether builder ``output`` carries the loop's completion promise."""
        state = self.store.load()
        promise = state.completion_promise or DEFAULT_COMPLETION_PROMISE
        return promise in str(output or "")

    def get_decision(self) -> dict[str, Any]:
        return decision_payload(self.store.load())

    def set_decision(self, decision: Any, reason: str = "") -> LoopState:
        state = self._load_active()
        parsed = Decision.parse(decision)
        apply_decision(state, DecisionOutcome(parsed, str(reason or "")), timestamp=_utc_now())
        self.store.save(state)
        self.store.log(f"decision recorded: {parsed.value} reason={reason or '-'}")
        return state
