from __future__ import annotations

import pytest

from steerloop.models import InvalidArgument, LoopState
from steerloop.planner import (
    apply_plan,
    build_plan,
    calculate_iterations,
    estimate_todo_progress,
    plan_interventions,
    plan_retarget,
    upcoming_intervention,
)


def test_calculate_iterations_rounds_up() -> None:
    assert calculate_iterations(10, 3) == 4
    assert calculate_iterations(9, 3) == 3
    assert calculate_iterations(1) == 1


@pytest.mark.parametrize(("total", "per"), [(0, 3), (5, 0), (-2, 1), (True, 3), (None, 3), (4, 1.5)])
def test_calculate_iterations_rejects_non_positive_input(total: object, per: object) -> None:
    with pytest.raises(InvalidArgument):
        calculate_iterations(total, per)


def test_plan_for_four_iterations() -> None:
    assert plan_interventions(4) == ([1, 2, 3], [2, 3, 4])


def test_plan_for_ten_iterations() -> None:
    assert plan_interventions(10) == ([3, 5, 8], [4, 7, 10])


def test_small_plan_keeps_duplicate_oracle_points() -> None:
    oracle, user = plan_interventions(2)
    assert oracle == [1, 1]
    assert user == [1, 2]


def test_single_iteration_plan_has_only_the_final_user_point() -> None:
    assert plan_interventions(1) == ([], [1])


def test_apply_plan_sets_run_length_and_first_checkpoint() -> None:
    plan = build_plan(12, 3, timestamp="t")
    state = LoopState(max_iterations=50, next_checkpoint_at=9)
    apply_plan(state, plan)
    assert state.max_iterations == 4
    assert state.next_checkpoint_at == 1
    assert state.checkpoint_interval == 1
    assert plan.created_at == plan.updated_at == "t"


def test_apply_plan_without_oracle_points_checkpoints_at_the_end() -> None:
    plan = build_plan(1, 3, timestamp="t")
    state = LoopState()
    apply_plan(state, plan)
    assert state.max_iterations == 1
    assert state.next_checkpoint_at == 1


def test_retarget_and_upcoming_follow_the_plan() -> None:
    state = LoopState(iteration=2)
    apply_plan(state, build_plan(30, 3, timestamp="t"))
    assert plan_retarget(state) == (3, 1)
    assert upcoming_intervention(state) == 3

    state.iteration = 8
    assert plan_retarget(state) == (9, 1)
    assert upcoming_intervention(state) == 10


def test_upcoming_without_plan_uses_next_checkpoint() -> None:
    state = LoopState(iteration=1, next_checkpoint_at=5)
    assert upcoming_intervention(state) == 5
    assert estimate_todo_progress(state) is None


def test_estimate_todo_progress_scales_iteration() -> None:
    state = LoopState(iteration=2)
    apply_plan(state, build_plan(12, 3, timestamp="t"))
    assert estimate_todo_progress(state) == 6
