"""Tests for the checkpoint-driven loop controller."""

from __future__ import annotations

import pytest

from steerloop.controller import LoopController
from steerloop.models import (
    AlreadyActive,
    CheckpointSignal,
    CompletionResult,
    Decision,
    ErrorRecord,
    FollowUpAction,
    InterventionType,
    InvalidArgument,
    LoopPaused,
    LoopPhase,
    NoActiveLoop,
    ProgressResult,
)
from steerloop.oracle import DecisionEngine
from steerloop.state import MemoryStateStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _controller(store: MemoryStateStore | None = None) -> LoopController:
    return LoopController(store or MemoryStateStore())


def _advance_to_checkpoint(controller: LoopController) -> CheckpointSignal:
    for _ in range(100):
        result = controller.iterate()
        if isinstance(result, CheckpointSignal):
            return result
    raise AssertionError("no checkpoint reached")


# ---------------------------------------------------------------------------
# start / status
# ---------------------------------------------------------------------------


def test_start_uses_defaults() -> None:
    controller = _controller()
    state = controller.start("Write the docs")
    assert state.active is True
    assert state.paused is False
    assert state.iteration == 0
    assert state.max_iterations == 10
    assert state.checkpoint_interval == 5
    assert state.next_checkpoint_at == 5
    assert state.completion_promise == "DONE"
    assert state.started_at

    report = controller.status()
    assert report.phase is LoopPhase.RUNNING
    assert report.prompt == "Write the docs"


def test_start_while_active_leaves_document_unchanged() -> None:
    store = MemoryStateStore()
    controller = _controller(store)
    controller.start("first", 5, 2)
    before = store.payload

    with pytest.raises(AlreadyActive):
        controller.start("second", 9, 3)
    assert store.payload == before


@pytest.mark.parametrize(("max_iterations", "interval"), [(0, 5), (5, 0), (-1, 1), ("ten", 1)])
def test_start_rejects_invalid_bounds(max_iterations: object, interval: object) -> None:
    store = MemoryStateStore()
    with pytest.raises(InvalidArgument):
        _controller(store).start("task", max_iterations, interval)
    assert store.exists() is False


def test_status_without_document_is_inactive() -> None:
    report = _controller().status()
    assert report.phase is LoopPhase.INACTIVE


def test_start_keeps_ledger_from_previous_run() -> None:
    store = MemoryStateStore()
    engine = DecisionEngine(store)
    engine.record_attempt("direct", "first try", status="failed")
    state = _controller(store).start("second try")
    assert len(state.previous_attempts) == 1
    assert state.previous_attempts[0].task == "first try"


# ---------------------------------------------------------------------------
# iterate
# ---------------------------------------------------------------------------


def test_metrics_then_iterate_reaches_checkpoint() -> None:
    store = MemoryStateStore()
    controller = _controller(store)
    controller.start("task", 3, 1)
    controller.update_metrics(files_changed=2)

    signal = controller.iterate()

    assert isinstance(signal, CheckpointSignal)
    assert signal.iteration == 1
    assert signal.intervention_type is InterventionType.ORACLE
    assert signal.action is FollowUpAction.INVOKE_ORACLE
    assert signal.metrics.progress_rate == 2
    assert signal.metrics.error_rate == 0
    assert signal.metrics.convergence_score == 2
    payload = signal.to_payload()
    assert payload["__type"] == "CHECKPOINT_SIGNAL"
    assert payload["paused"] is True

    state = store.load()
    assert state.paused is True
    assert state.last_checkpoint == 1
    assert state.convergence_score == 2


def test_iterate_between_checkpoints_reports_progress() -> None:
    controller = _controller()
    controller.start("task", 10, 5)
    result = controller.iterate()
    assert isinstance(result, ProgressResult)
    assert result.iteration == 1
    assert result.next_checkpoint_at == 5


def test_paused_iterate_does_not_advance() -> None:
    store = MemoryStateStore()
    controller = _controller(store)
    controller.start("task", 3, 1)
    controller.iterate()

    with pytest.raises(LoopPaused):
        controller.iterate()
    assert store.load().iteration == 1


def test_iterate_without_loop_fails() -> None:
    controller = _controller()
    with pytest.raises(NoActiveLoop):
        controller.iterate()
    with pytest.raises(NoActiveLoop):
        controller.update_metrics(files_changed=1)


def test_iterate_at_max_returns_completion() -> None:
    controller = _controller()
    controller.start("task", 2, 5, "FINISHED")
    assert isinstance(controller.iterate(), ProgressResult)
    assert isinstance(controller.iterate(), ProgressResult)

    result = controller.iterate()
    assert isinstance(result, CompletionResult)
    assert result.iteration == 2
    assert result.completion_promise == "FINISHED"


def test_planned_run_pauses_at_every_listed_point() -> None:
    store = MemoryStateStore()
    DecisionEngine(store).set_intervention_plan(12, 3)
    controller = _controller(store)
    state = controller.start("planned")
    assert state.max_iterations == 4
    assert state.next_checkpoint_at == 1

    seen = []
    for _ in range(4):
        signal = controller.iterate()
        assert isinstance(signal, CheckpointSignal)
        seen.append((signal.iteration, signal.intervention_type))
        controller.resume()

    assert seen == [
        (1, InterventionType.ORACLE),
        (2, InterventionType.ORACLE),
        (3, InterventionType.ORACLE),
        (4, InterventionType.USER),
    ]
    assert isinstance(controller.iterate(), CompletionResult)


# ---------------------------------------------------------------------------
# pause / resume / decisions
# ---------------------------------------------------------------------------


def test_pause_is_idempotent() -> None:
    controller = _controller()
    controller.start("task")
    assert controller.pause() is True
    assert controller.pause() is False


def test_resume_clears_decision_and_retargets() -> None:
    store = MemoryStateStore()
    controller = _controller(store)
    controller.start("task", 10, 1)
    controller.update_metrics(files_changed=2)
    controller.iterate()
    controller.set_decision("continue", "looks good")

    result = controller.resume()

    assert result.was_paused is True
    assert result.previous_decision is Decision.CONTINUE
    assert result.previous_reason == "looks good"
    assert result.interval == 5
    assert result.next_checkpoint_at == 6
    state = store.load()
    assert state.paused is False
    assert state.oracle_decision is None
    assert state.oracle_decision_at is None
    assert state.oracle_decision_reason is None


def test_resume_when_running_reports_already_running() -> None:
    controller = _controller()
    controller.start("task")
    result = controller.resume()
    assert result.was_paused is False
    assert result.iteration == 0


def test_set_decision_continue_uses_interval_from_rates() -> None:
    store = MemoryStateStore()
    controller = _controller(store)
    controller.start("task", 20, 1)
    controller.update_metrics(files_changed=5)
    controller.iterate()

    state = controller.set_decision(Decision.CONTINUE, "fast")
    assert state.checkpoint_interval == 7
    assert state.next_checkpoint_at == 8


def test_set_decision_pause_keeps_schedule() -> None:
    controller = _controller()
    controller.start("task", 10, 4)
    state = controller.set_decision("PAUSE", "wait")
    assert state.oracle_decision is Decision.PAUSE
    assert state.next_checkpoint_at == 4


@pytest.mark.parametrize("decision", ["ESCALATE", "MAYBE", ""])
def test_set_decision_rejects_unstorable_values(decision: str) -> None:
    controller = _controller()
    controller.start("task")
    with pytest.raises(InvalidArgument):
        controller.set_decision(decision, "x")


def test_get_decision_without_loop() -> None:
    assert _controller().get_decision() == {"decision": None, "message": "No active loop"}


# ---------------------------------------------------------------------------
# terminate / checks
# ---------------------------------------------------------------------------


def test_terminate_removes_document() -> None:
    store = MemoryStateStore()
    controller = _controller(store)
    controller.start("task")
    controller.iterate()

    result = controller.terminate()
    assert result.was_active is True
    assert result.iteration == 1
    assert result.ledger_kept is False
    assert store.exists() is False


def test_terminate_keeps_ledger() -> None:
    store = MemoryStateStore()
    controller = _controller(store)
    controller.start("task")
    DecisionEngine(store).record_error(0, "build", "broken")

    result = controller.terminate()
    assert result.ledger_kept is True
    state = store.load()
    assert state.active is False
    assert state.errors == [ErrorRecord(iteration=0, type="build", description="broken", timestamp=state.errors[0].timestamp)]


def test_terminate_without_loop() -> None:
    result = _controller().terminate()
    assert result.was_active is False


def test_check_checkpoint_and_completion() -> None:
    controller = _controller()
    assert controller.check_checkpoint()["reached"] is False

    controller.start("task", 10, 2, "ALL-GOOD")
    controller.iterate()
    report = controller.check_checkpoint()
    assert report["reached"] is False
    assert report["iterationsUntilCheckpoint"] == 1

    assert controller.check_completion("work done <promise>ALL-GOOD</promise>") is True
    assert controller.check_completion("still going") is False


def test_check_checkpoint_reports_reached_at_dynamic_checkpoint() -> None:
    controller = _controller()
    controller.start("task", 10, 1)
    controller.iterate()
    report = controller.check_checkpoint()
    assert report["reached"] is True
    assert report["paused"] is True


def test_final_user_point_notifies_once_before_completion() -> None:
    store = MemoryStateStore()
    controller = _controller(store)
    controller.start("task", 10, 5)
    for _ in range(4):
        assert isinstance(controller.iterate(), ProgressResult)
    DecisionEngine(store).set_intervention_plan(12, 3)

    signal = controller.iterate()
    assert isinstance(signal, CheckpointSignal)
    assert signal.intervention_type is InterventionType.USER
    assert signal.action is FollowUpAction.NOTIFY_USER
    state = store.load()
    assert state.iteration == 4
    assert state.last_checkpoint == 4
    assert state.paused is True

    controller.resume()
    result = controller.iterate()
    assert isinstance(result, CompletionResult)
    assert store.load().iteration == 4
