from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import yaml

import steerloop.commands as commands_module
from steerloop.commands import run_loop_command, run_oracle_command
from steerloop.state import JsonStateStore
from steerloop.utils import _utc_now


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("STEERLOOP_STATE_FILE", raising=False)
    monkeypatch.delenv("STEERLOOP_POLICY_FILE", raising=False)


def _state_path(tmp_path: Path) -> Path:
    return tmp_path / "loop" / "state.json"


def _loop(tmp_path: Path, command: str, **params: object):
    return run_loop_command(command, params, state_file=_state_path(tmp_path))


def _oracle(tmp_path: Path, command: str, **params: object):
    return run_oracle_command(command, params, state_file=_state_path(tmp_path))


# ---------------------------------------------------------------------------
# Dict-driven surface
# ---------------------------------------------------------------------------


def test_start_then_status(tmp_path: Path) -> None:
    result = _loop(tmp_path, "start", prompt="Port the importer", maxIterations=3, checkpointInterval=1)
    assert result.ok is True
    assert result.payload["maxIterations"] == 3
    assert "Loop started." in result.message

    status = _loop(tmp_path, "status")
    assert status.ok is True
    assert status.payload["phase"] == "running"
    assert "Port the importer" in status.message


def test_errors_are_reported_not_raised(tmp_path: Path) -> None:
    _loop(tmp_path, "start", prompt="first")
    before = _state_path(tmp_path).read_text(encoding="utf-8")

    result = _loop(tmp_path, "start", prompt="second")
    assert result.ok is False
    assert result.error == "AlreadyActive"
    assert _state_path(tmp_path).read_text(encoding="utf-8") == before

    bad = _loop(tmp_path, "update_metrics", filesChanged=-1)
    assert bad.ok is False
    assert bad.error == "InvalidArgument"


def test_iterate_emits_checkpoint_signal(tmp_path: Path) -> None:
    _loop(tmp_path, "start", prompt="task", maxIterations=3, checkpointInterval=1)
    _loop(tmp_path, "update_metrics", filesChanged=2)

    result = _loop(tmp_path, "iterate")
    assert result.ok is True
    signal = json.loads(result.message)
    assert signal["__type"] == "CHECKPOINT_SIGNAL"
    assert signal["iteration"] == 1
    assert signal["metrics"]["convergenceScore"] == 2

    paused = _loop(tmp_path, "iterate")
    assert paused.ok is False
    assert paused.error == "LoopPaused"


def test_start_rejects_zero_iterations(tmp_path: Path) -> None:
    result = _loop(tmp_path, "start", prompt="task", maxIterations=0)
    assert result.ok is False
    assert result.error == "InvalidArgument"
    assert not _state_path(tmp_path).exists()


def test_terminate_without_loop_is_a_warning(tmp_path: Path) -> None:
    result = _loop(tmp_path, "terminate")
    assert result.ok is True
    assert result.warning == "NoActiveLoop"


def test_unknown_command(tmp_path: Path) -> None:
    result = _loop(tmp_path, "dance")
    assert result.ok is False
    assert result.error == "UnknownCommand"


def test_oracle_review_round(tmp_path: Path) -> None:
    plan = _oracle(tmp_path, "set_intervention_plan", totalTodos=12, todosPerIteration=3)
    assert plan.payload["oracleInterventions"] == [1, 2, 3]
    _loop(tmp_path, "start", prompt="planned")
    _loop(tmp_path, "update_metrics", filesChanged=3)
    signal = json.loads(_loop(tmp_path, "iterate").message)
    assert signal["interventionType"] == "oracle"

    review = _oracle(tmp_path, "review", task_context="first quarter")
    assert review.ok is True
    assert review.payload["decision"] == "CONTINUE"
    assert review.payload["nextCheckpointAt"] == 2

    resumed = _loop(tmp_path, "resume")
    assert resumed.payload["previousDecision"] == "CONTINUE"
    assert _loop(tmp_path, "get_decision").payload["decision"] is None


def test_oracle_ledger_commands(tmp_path: Path) -> None:
    attempt = _oracle(tmp_path, "record_attempt", attemptType="direct", taskDescription="quick fix", status="failed")
    assert attempt.ok is True
    error = _oracle(tmp_path, "record_error", iteration=0, errorType="test", errorDescription="flaky")
    assert error.ok is True

    history = _oracle(tmp_path, "get_previous_attempts")
    assert history.payload["count"] == 1
    assert history.payload["errors"][0]["type"] == "test"

    purge = _oracle(tmp_path, "purge_state")
    assert purge.payload["removed"] is True
    assert not _state_path(tmp_path).exists()


def test_oracle_status_without_state(tmp_path: Path) -> None:
    result = _oracle(tmp_path, "status")
    assert result.ok is True
    assert result.warning == "NoActiveLoop"


def test_operations_are_logged(tmp_path: Path) -> None:
    _loop(tmp_path, "start", prompt="task")
    log_text = (_state_path(tmp_path).parent / "logs" / "steerloop.log").read_text(encoding="utf-8")
    assert "loop started" in log_text


def test_policy_history_limit_applies(tmp_path: Path) -> None:
    state_path = _state_path(tmp_path)
    state_path.parent.mkdir(parents=True)
    (state_path.parent / "policy.yaml").write_text(
        yaml.safe_dump({"metrics": {"history_limit": 2}}), encoding="utf-8"
    )
    _loop(tmp_path, "start", prompt="task", maxIterations=50, checkpointInterval=40)
    for count in range(4):
        _loop(tmp_path, "update_metrics", filesChanged=count)
    assert len(JsonStateStore(state_path).load().metrics) == 2


def test_held_lock_blocks_commands(tmp_path: Path) -> None:
    state_path = _state_path(tmp_path)
    state_path.parent.mkdir(parents=True)
    (state_path.parent / "policy.yaml").write_text(yaml.safe_dump({"storage": {"lock": True}}), encoding="utf-8")

    assert _loop(tmp_path, "start", prompt="task").ok is True
    assert not (state_path.parent / "state.lock").exists()

    (state_path.parent / "state.lock").write_text(
        json.dumps({"pid": os.getpid() + 1, "acquired_at": _utc_now(), "command": "loop iterate"}),
        encoding="utf-8",
    )
    result = _loop(tmp_path, "iterate")
    assert result.ok is False
    assert result.error == "Locked"
    assert json.loads((state_path.parent / "state.lock").read_text(encoding="utf-8"))["pid"] == os.getpid() + 1


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def test_cli_loop_round_trip(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    state_file = str(_state_path(tmp_path))
    assert commands_module.main(["loop", "start", "--prompt", "cli task", "--max-iterations", "2",
                                 "--checkpoint-interval", "1", "--state-file", state_file]) == 0
    assert commands_module.main(["loop", "update_metrics", "--files-changed", "2", "--state-file", state_file]) == 0
    capsys.readouterr()

    assert commands_module.main(["loop", "iterate", "--state-file", state_file]) == 0
    signal = json.loads(capsys.readouterr().out)
    assert signal["__type"] == "CHECKPOINT_SIGNAL"

    assert commands_module.main(["loop", "iterate", "--state-file", state_file]) == 1
    assert "LoopPaused" in capsys.readouterr().err

    assert commands_module.main(["loop", "set_decision", "--decision", "CONTINUE", "--state-file", state_file]) == 0
    assert commands_module.main(["loop", "resume", "--state-file", state_file]) == 0
    assert commands_module.main(["loop", "terminate", "--state-file", state_file]) == 0
    assert not _state_path(tmp_path).exists()


def test_cli_json_output(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    state_file = str(_state_path(tmp_path))
    assert commands_module.main(["oracle", "calculate_iterations", "--todo-count", "10", "--json",
                                 "--state-file", state_file]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["ok"] is True
    assert payload["payload"]["iterationsNeeded"] == 4


def test_cli_without_command_is_usage_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert commands_module.main([]) == 2


def test_cli_lock_status_and_break(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    state_path = _state_path(tmp_path)
    state_file = str(state_path)
    assert commands_module.main(["lock", "status", "--state-file", state_file]) == 0
    assert "no active lock" in capsys.readouterr().out

    state_path.parent.mkdir(parents=True)
    (state_path.parent / "state.lock").write_text(
        json.dumps({"pid": 4242, "acquired_at": "2026-01-01T00:00:00Z", "command": "loop iterate"}),
        encoding="utf-8",
    )
    assert commands_module.main(["lock", "status", "--state-file", state_file]) == 0
    assert "pid: 4242" in capsys.readouterr().out

    assert commands_module.main(["lock", "break", "--reason", "stuck", "--state-file", state_file]) == 0
    assert "lock broken" in capsys.readouterr().out
    assert not (state_path.parent / "state.lock").exists()
