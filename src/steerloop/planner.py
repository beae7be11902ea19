"""Intervention planning: precomputed oracle and user checkpoints for a TODO batch."""

from __future__ import annotations

import math
from typing import Any

from steerloop.constants import (
    DEFAULT_TODOS_PER_ITERATION,
    ORACLE_INTERVENTION_POINTS,
    USER_INTERVENTION_POINTS,
)
from steerloop.models import InterventionPlan, InvalidArgument, LoopState


def _require_positive_int(value: Any, *, name: str) -> int:
    if isinstance(value, bool) or value is None:
        raise InvalidArgument(f"{name} must be a positive integer, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise InvalidArgument(f"{name} must be a positive integer, got {value!r}")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidArgument(f"{name} must be a positive integer, got {value!r}") from exc
    if parsed <= 0:
        raise InvalidArgument(f"{name} must be a positive integer, got {parsed}")
    return parsed


def calculate_iterations(total_todos: Any, todos_per_iteration: Any = DEFAULT_TODOS_PER_ITERATION) -> int:
    total = _require_positive_int(total_todos, name="totalTodos")
    per_iteration = _require_positive_int(todos_per_iteration, name="todosPerIteration")
    return math.ceil(total / per_iteration)


def plan_interventions(iterations_needed: int) -> tuple[list[int], list[int]]:
    """Return ``(oracle_points, user_points)`` for a run of ``iterations_needed``.

    Oracle points at 25/50/75% are kept only strictly inside ``(0, iterations_needed)``
    and are not de-duplicated, so small runs can list the same iteration twice.
    User points at 33/66/100% are de-duplicated and always end on the final iteration.
    """
    oracle_points: list[int] = []
    for fraction in ORACLE_INTERVENTION_POINTS:
        point = math.ceil(iterations_needed * fraction)
        if 0 < point < iterations_needed:
            oracle_points.append(point)

    user_points: list[int] = []
    for fraction in USER_INTERVENTION_POINTS:
        point = math.ceil(iterations_needed * fraction)
        if point > 0 and point not in user_points:
            user_points.append(point)
    return oracle_points, user_points


def build_plan(total_todos: Any, todos_per_iteration: Any, *, timestamp: str) -> InterventionPlan:
    iterations_needed = calculate_iterations(total_todos, todos_per_iteration)
    oracle_points, user_points = plan_interventions(iterations_needed)
    return InterventionPlan(
        total_todos=int(total_todos),
        todos_per_iteration=int(todos_per_iteration),
        iterations_needed=iterations_needed,
        oracle_interventions=oracle_points,
        user_interventions=user_points,
        created_at=timestamp,
        updated_at=timestamp,
    )


def first_checkpoint(plan: InterventionPlan) -> int:
    if plan.oracle_interventions:
        return plan.oracle_interventions[0]
    return plan.iterations_needed


def apply_plan(state: LoopState, plan: InterventionPlan) -> None:
    """Install ``plan`` on ``state``; the plan governs the run length and first checkpoint."""
    state.intervention_plan = plan
    state.max_iterations = plan.iterations_needed
    state.next_checkpoint_at = first_checkpoint(plan)
    state.checkpoint_interval = plan.oracle_interventions[0] if plan.oracle_interventions else 1


def plan_retarget(state: LoopState) -> tuple[int, int]:
    """Return ``(next_checkpoint_at, interval)`` from the plan's next oracle point."""
    plan = state.intervention_plan
    next_oracle = plan.next_oracle_after(state.iteration) if plan is not None else None
    if next_oracle is None:
        return state.iteration + 1, 1
    return next_oracle, next_oracle - state.iteration


def upcoming_intervention(state: LoopState) -> int:
    """Next iteration at which the plan (or dynamic schedule) will pause the loop."""
    plan = state.intervention_plan
    if plan is None:
        return state.next_checkpoint_at
    next_oracle = plan.next_oracle_after(state.iteration)
    if next_oracle is not None:
        return next_oracle
    next_user = plan.next_user_after(state.iteration)
    if next_user is not None:
        return next_user
    return state.max_iterations


def estimate_todo_progress(state: LoopState) -> int | None:
    plan = state.intervention_plan
    if plan is None or plan.iterations_needed <= 0:
        return None
    return round(state.iteration / plan.iterations_needed * plan.total_todos)
