from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable

from steerloop.config import _load_loop_policy, _resolve_policy_path, _resolve_state_path
from steerloop.constants import (
    DEFAULT_CHECKPOINT_INTERVAL,
    DEFAULT_COMPLETION_PROMISE,
    DEFAULT_MAX_ITERATIONS,
    LOCK_FILE_NAME,
)
from steerloop.controller import LoopController
from steerloop.metrics import METRIC_FIELDS
from steerloop.models import (
    CheckpointSignal,
    CommandResult,
    CompletionResult,
    Decision,
    LoopError,
    LoopPolicy,
    NoActiveLoop,
    StatusReport,
)
from steerloop.oracle import DecisionEngine, builder_action
from steerloop.state import (
    JsonStateStore,
    StateStore,
    _acquire_lock,
    _force_break_lock,
    _inspect_lock,
    _release_lock,
)
from steerloop.utils import _append_log, _truncate

LOOP_COMMANDS = (
    "start",
    "status",
    "iterate",
    "pause",
    "resume",
    "terminate",
    "update_metrics",
    "check_checkpoint",
    "check_completion",
    "get_decision",
    "set_decision",
)
ORACLE_COMMANDS = (
    "set_intervention_plan",
    "get_intervention_plan",
    "calculate_iterations",
    "set_decision",
    "get_decision",
    "status",
    "review",
    "verify",
    "complete_todo",
    "purge_state",
    "record_attempt",
    "record_error",
    "get_previous_attempts",
    "terminate_and_clear",
)
# Wire names of the update_metrics arguments, in METRIC_FIELDS order.
METRIC_PARAM_NAMES = (
    "filesChanged",
    "filesModified",
    "errorsEncountered",
    "testsPassed",
    "testsFailed",
    "iterationDuration",
)

Handler = Callable[[Any, dict[str, Any]], CommandResult]


def _dump(payload: dict[str, Any]) -> str:
    return json.dumps(payload, indent=2)


def _param(params: dict[str, Any], key: str, default: Any) -> Any:
    value = params.get(key)
    return default if value is None else value


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def _format_status(report: StatusReport) -> str:
    if report.phase.value == "inactive":
        return "No active loop.\nStart one with: steerloop loop start --prompt \"...\""
    lines = [
        "steerloop status",
        f"task: {_truncate(report.prompt, 80)}",
        f"phase: {report.phase.value}",
        f"progress: {report.iteration}/{report.max_iterations} ({round(report.progress * 100)}%)",
    ]
    if report.phase.value == "running":
        lines.append(f"next_checkpoint: {report.next_checkpoint_at}")
    else:
        lines.append(f"paused_at: {report.iteration} (last checkpoint {report.last_checkpoint})")
    if report.started_at:
        lines.append(f"started_at: {report.started_at}")
    if report.decision is not None:
        lines.append(f"decision: {report.decision.value}")
    elif report.phase.value == "paused":
        lines.append("decision: waiting for review")
    if report.plan is not None:
        plan = report.plan
        lines.append(
            f"plan: {plan.total_todos} todos over {plan.iterations_needed} iterations; "
            f"oracle={plan.oracle_interventions} user={plan.user_interventions}"
        )
        next_oracle = plan.next_oracle_after(report.iteration)
        next_user = plan.next_user_after(report.iteration)
        lines.append(f"next_oracle_review: {next_oracle if next_oracle is not None else 'none'}")
        lines.append(f"next_user_notification: {next_user if next_user is not None else 'none'}")
    if report.metrics.window_size:
        metrics = report.metrics
        lines.append(f"metrics (last {metrics.window_size} iterations):")
        lines.append(f"  files: {metrics.files_changed + metrics.files_modified}")
        lines.append(f"  errors: {metrics.errors_encountered}")
        lines.append(f"  progress_rate: {metrics.progress_rate:.2f} files/iter")
        lines.append(f"  error_rate: {metrics.error_rate:.2f} errors/iter")
        lines.append(f"  convergence: {metrics.convergence_score:.2f}")
    if report.verification_status is not None:
        lines.append(f"verification: {report.verification_status.value}")
    return "\n".join(lines)


def _format_iterate(result: Any) -> str:
    if isinstance(result, CheckpointSignal):
        return _dump(result.to_payload())
    if isinstance(result, CompletionResult):
        return (
            f"All iterations complete ({result.iteration}/{result.max_iterations}).\n"
            f"<promise>{result.completion_promise}</promise>\n"
            "Next: run oracle verification."
        )
    percent = round(result.iteration / result.max_iterations * 100) if result.max_iterations else 0
    return (
        f"Iteration {result.iteration}/{result.max_iterations} ({percent}%).\n"
        f"Next intervention at iteration {result.next_checkpoint_at}.\n"
        "Next: do the work, update_metrics, iterate."
    )


# ---------------------------------------------------------------------------
# Loop command handlers
# ---------------------------------------------------------------------------


def _loop_start(controller: LoopController, params: dict[str, Any]) -> CommandResult:
    state = controller.start(
        params.get("prompt") or "",
        _param(params, "maxIterations", DEFAULT_MAX_ITERATIONS),
        _param(params, "checkpointInterval", DEFAULT_CHECKPOINT_INTERVAL),
        params.get("completionPromise") or DEFAULT_COMPLETION_PROMISE,
    )
    lines = [
        "Loop started.",
        f"task: {state.prompt}",
        f"max_iterations: {state.max_iterations}",
        f"first_checkpoint: {state.next_checkpoint_at}",
        f"completion_signal: <promise>{state.completion_promise}</promise>",
    ]
    if state.intervention_plan is not None:
        plan = state.intervention_plan
        lines.append(f"oracle_interventions: {plan.oracle_interventions}")
        lines.append(f"user_interventions: {plan.user_interventions}")
    return CommandResult(True, "start", "\n".join(lines), payload=state.to_dict())


def _loop_status(controller: LoopController, params: dict[str, Any]) -> CommandResult:
    report = controller.status()
    return CommandResult(True, "status", _format_status(report), payload=report.to_payload())


def _loop_iterate(controller: LoopController, params: dict[str, Any]) -> CommandResult:
    result = controller.iterate()
    return CommandResult(True, "iterate", _format_iterate(result), payload=result.to_payload())


def _loop_pause(controller: LoopController, params: dict[str, Any]) -> CommandResult:
    changed = controller.pause()
    if not changed:
        return CommandResult(True, "pause", "Loop already paused.", warning="AlreadyPaused")
    return CommandResult(True, "pause", "Loop paused. Request an oracle review to continue.")


def _loop_resume(controller: LoopController, params: dict[str, Any]) -> CommandResult:
    result = controller.resume()
    payload = {
        "iteration": result.iteration,
        "maxIterations": result.max_iterations,
        "nextCheckpointAt": result.next_checkpoint_at,
        "interval": result.interval,
        "previousDecision": result.previous_decision.value if result.previous_decision else None,
    }
    if not result.was_paused:
        return CommandResult(
            True,
            "resume",
            f"Loop is already running at iteration {result.iteration}/{result.max_iterations}.",
            payload=payload,
            warning="AlreadyRunning",
        )
    lines = [
        "Loop resumed.",
        f"iteration: {result.iteration}/{result.max_iterations}",
        f"next_checkpoint: {result.next_checkpoint_at} (interval {result.interval})",
        f"previous_decision: {result.previous_decision.value if result.previous_decision else 'manual resume'}",
    ]
    if result.previous_reason:
        lines.append(f"reason: {result.previous_reason}")
    return CommandResult(True, "resume", "\n".join(lines), payload=payload)


def _loop_terminate(controller: LoopController, params: dict[str, Any]) -> CommandResult:
    result = controller.terminate()
    if not result.was_active:
        return CommandResult(True, "terminate", "No active loop to terminate.", warning=NoActiveLoop.code)
    message = (
        f"Loop terminated after {result.iteration} iterations.\n"
        f"task: {_truncate(result.prompt, 60)}"
    )
    if result.ledger_kept:
        message += "\nattempt and error history kept"
    return CommandResult(True, "terminate", message, payload={"iteration": result.iteration})


def _loop_update_metrics(controller: LoopController, params: dict[str, Any]) -> CommandResult:
    values = {field: params.get(name) for field, name in zip(METRIC_FIELDS, METRIC_PARAM_NAMES)}
    record, snapshot = controller.update_metrics(**values)
    message = (
        "Metrics updated.\n"
        f"files: {record.files_changed} changed, {record.files_modified} modified\n"
        f"errors: {record.errors_encountered}\n"
        f"tests: {record.tests_passed} passed, {record.tests_failed} failed\n"
        f"duration: {record.iteration_duration}ms\n"
        f"progress_rate: {snapshot.progress_rate:.2f} files/iter\n"
        f"convergence: {snapshot.convergence_score:.2f}"
    )
    return CommandResult(
        True,
        "update_metrics",
        message,
        payload={"record": record.to_dict(), "metrics": snapshot.to_dict()},
    )


def _loop_check_checkpoint(controller: LoopController, params: dict[str, Any]) -> CommandResult:
    payload = controller.check_checkpoint()
    return CommandResult(True, "check_checkpoint", _dump(payload), payload=payload)


def _loop_check_completion(controller: LoopController, params: dict[str, Any]) -> CommandResult:
    complete = controller.check_completion(params.get("output") or "")
    payload = {"complete": complete}
    return CommandResult(True, "check_completion", _dump(payload), payload=payload)


def _get_decision(component: Any, params: dict[str, Any]) -> CommandResult:
    payload = component.get_decision()
    return CommandResult(True, "get_decision", _dump(payload), payload=payload)


def _set_decision(component: Any, params: dict[str, Any]) -> CommandResult:
    reason = params.get("reason") or ""
    state = component.set_decision(params.get("decision"), reason)
    decision = state.oracle_decision
    lines = [
        "Decision recorded.",
        f"decision: {decision.value}",
        f"reason: {reason or 'not specified'}",
        f"at: {state.oracle_decision_at}",
    ]
    if decision is Decision.CONTINUE:
        lines.append(f"next_checkpoint: {state.next_checkpoint_at} (interval {state.checkpoint_interval})")
    lines.append(f"builder_action: {builder_action(decision)}")
    return CommandResult(
        True,
        "set_decision",
        "\n".join(lines),
        payload={"decision": decision.value, "nextCheckpointAt": state.next_checkpoint_at},
    )


LOOP_HANDLERS: dict[str, Handler] = {
    "start": _loop_start,
    "status": _loop_status,
    "iterate": _loop_iterate,
    "pause": _loop_pause,
    "resume": _loop_resume,
    "terminate": _loop_terminate,
    "update_metrics": _loop_update_metrics,
    "check_checkpoint": _loop_check_checkpoint,
    "check_completion": _loop_check_completion,
    "get_decision": _get_decision,
    "set_decision": _set_decision,
}


# ---------------------------------------------------------------------------
# Oracle command handlers
# ---------------------------------------------------------------------------


def _oracle_set_plan(engine: DecisionEngine, params: dict[str, Any]) -> CommandResult:
    plan = engine.set_intervention_plan(params.get("totalTodos"), params.get("todosPerIteration"))
    message = (
        "Intervention plan created.\n"
        f"total_todos: {plan.total_todos}\n"
        f"todos_per_iteration: {plan.todos_per_iteration}\n"
        f"iterations_needed: {plan.iterations_needed}\n"
        f"oracle_interventions: {plan.oracle_interventions}\n"
        f"user_interventions: {plan.user_interventions}"
    )
    return CommandResult(True, "set_intervention_plan", message, payload=plan.to_dict())


def _oracle_get_plan(engine: DecisionEngine, params: dict[str, Any]) -> CommandResult:
    payload = engine.get_intervention_plan()
    return CommandResult(True, "get_intervention_plan", _dump(payload), payload=payload)


def _oracle_calculate(engine: DecisionEngine, params: dict[str, Any]) -> CommandResult:
    payload = engine.calculate_iterations(params.get("todoCount"), params.get("todosPerIteration"))
    return CommandResult(True, "calculate_iterations", _dump(payload), payload=payload)


def _oracle_status(engine: DecisionEngine, params: dict[str, Any]) -> CommandResult:
    if not engine.store.exists():
        return CommandResult(True, "status", "No loop state found.", warning=NoActiveLoop.code)
    report = engine.status()
    return CommandResult(True, "status", _format_status(report), payload=report.to_payload())


def _oracle_review(engine: DecisionEngine, params: dict[str, Any]) -> CommandResult:
    result = engine.review(params.get("task_context"), escalate=params.get("escalate"))
    lines = [
        "Checkpoint review",
        f"iteration: {result.iteration}/{result.max_iterations}",
        f"convergence: {result.convergence_score:.2f}",
        f"progress_rate: {result.progress_rate:.2f} files/iter",
        f"error_rate: {result.error_rate:.2f} errors/iter",
    ]
    if result.todo_progress is not None:
        lines.append(f"todo_progress: ~{result.todo_progress}/{result.total_todos}")
    if result.task_context:
        lines.append(f"context: {result.task_context}")
    lines.append(f"decision: {result.outcome.decision.value}")
    lines.append(f"reason: {result.outcome.reason}")
    if result.outcome.decision is Decision.CONTINUE:
        lines.append(f"next_checkpoint: {result.next_checkpoint_at}")
    lines.append(f"builder_action: {result.action}")
    return CommandResult(True, "review", "\n".join(lines), payload=result.to_payload())


def _oracle_verify(engine: DecisionEngine, params: dict[str, Any]) -> CommandResult:
    report = engine.verify()
    lines = [f"Verification: {report.status.value.upper()}"]
    for check in report.checks:
        marker = "ok" if check.passed else ("FAIL" if check.required else "warn")
        lines.append(f"  [{marker}] {check.name}: {check.detail}")
    lines.append(f"files_changed: {report.files_changed}")
    lines.append(f"files_modified: {report.files_modified}")
    lines.append(f"total_errors: {report.total_errors}")
    return CommandResult(True, "verify", "\n".join(lines), payload=report.to_payload())


def _oracle_complete_todo(engine: DecisionEngine, params: dict[str, Any]) -> CommandResult:
    completed = engine.complete_todo(params.get("todo") or "")
    return CommandResult(
        True,
        "complete_todo",
        f"{len(completed)} todos completed.",
        payload={"completedTodos": completed},
    )


def _oracle_purge(engine: DecisionEngine, params: dict[str, Any]) -> CommandResult:
    removed = engine.purge_state()
    message = "State purged." if removed else "No state found; nothing to purge."
    return CommandResult(True, "purge_state", message, payload={"removed": removed})


def _oracle_record_attempt(engine: DecisionEngine, params: dict[str, Any]) -> CommandResult:
    attempt = engine.record_attempt(
        params.get("attemptType") or "direct",
        params.get("taskDescription") or "",
        status=params.get("status") or "success",
        iterations=params.get("iterations"),
        error=params.get("error"),
    )
    message = f"Attempt recorded.\ntype: {attempt.type}\ntask: {attempt.task}\nstatus: {attempt.status}"
    return CommandResult(True, "record_attempt", message, payload=attempt.to_dict())


def _oracle_record_error(engine: DecisionEngine, params: dict[str, Any]) -> CommandResult:
    iteration = params.get("iteration")
    record = engine.record_error(
        0 if iteration is None else iteration,
        params.get("errorType") or "unknown",
        params.get("errorDescription") or "",
    )
    message = (
        f"Error recorded.\niteration: {record.iteration}\ntype: {record.type}\n"
        f"description: {record.description}"
    )
    return CommandResult(True, "record_error", message, payload=record.to_dict())


def _oracle_previous_attempts(engine: DecisionEngine, params: dict[str, Any]) -> CommandResult:
    payload = engine.get_previous_attempts()
    return CommandResult(True, "get_previous_attempts", _dump(payload), payload=payload)


def _oracle_terminate_and_clear(engine: DecisionEngine, params: dict[str, Any]) -> CommandResult:
    remaining = params.get("remainingCheckpoints") or 0
    reason = params.get("reason") or "User requested"
    state = engine.terminate_and_clear(remaining, reason)
    message = (
        "Terminated and cleared.\n"
        f"iteration: {state.iteration}/{state.max_iterations}\n"
        f"remaining_checkpoints_cleared: {remaining}\n"
        f"reason: {reason}"
    )
    return CommandResult(True, "terminate_and_clear", message, payload=state.to_dict())


ORACLE_HANDLERS: dict[str, Handler] = {
    "set_intervention_plan": _oracle_set_plan,
    "get_intervention_plan": _oracle_get_plan,
    "calculate_iterations": _oracle_calculate,
    "set_decision": _set_decision,
    "get_decision": _get_decision,
    "status": _oracle_status,
    "review": _oracle_review,
    "verify": _oracle_verify,
    "complete_todo": _oracle_complete_todo,
    "purge_state": _oracle_purge,
    "record_attempt": _oracle_record_attempt,
    "record_error": _oracle_record_error,
    "get_previous_attempts": _oracle_previous_attempts,
    "terminate_and_clear": _oracle_terminate_and_clear,
}


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def _dispatch(
    surface: str,
    handlers: dict[str, Handler],
    component: Any,
    command: str,
    params: dict[str, Any] | None,
    *,
    lock_path: Path | None,
    state_path: Path | None,
    policy: LoopPolicy,
) -> CommandResult:
    handler = handlers.get(command)
    if handler is None:
        return CommandResult(False, command, f"Unknown {surface} command: {command}", error="UnknownCommand")

    token = None
    if policy.storage.lock and lock_path is not None:
        token, lock_message = _acquire_lock(
            lock_path,
            state_file=state_path or lock_path,
            command=f"{surface} {command}",
            stale_seconds=policy.storage.lock_stale_seconds,
        )
        if token is None:
            return CommandResult(False, command, lock_message, error="Locked")
    try:
        return handler(component, dict(params or {}))
    except LoopError as exc:
        return CommandResult(False, command, str(exc), error=exc.code)
    finally:
        if token is not None and lock_path is not None:
            _release_lock(lock_path, token)


def _resolve_runtime(
    state_file: str | Path | None,
    policy_file: str | Path | None,
) -> tuple[Path, LoopPolicy]:
    state_path = _resolve_state_path(str(state_file) if state_file else None)
    policy_path = _resolve_policy_path(state_path, str(policy_file) if policy_file else None)
    return state_path, _load_loop_policy(policy_path)


def run_loop_command(
    command: str,
    params: dict[str, Any] | None = None,
    *,
    state_file: str | Path | None = None,
    policy_file: str | Path | None = None,
    store: StateStore | None = None,
    policy: LoopPolicy | None = None,
) -> CommandResult:
    """Run one loop controller command; errors come back in the result."""
    state_path, loaded_policy = _resolve_runtime(state_file, policy_file)
    policy = policy or loaded_policy
    lock_path = None
    if store is None:
        store = JsonStateStore(state_path, atomic=policy.storage.atomic_writes, history_limit=policy.history_limit)
        lock_path = state_path.parent / LOCK_FILE_NAME
    controller = LoopController(store, policy=policy)
    return _dispatch(
        "loop", LOOP_HANDLERS, controller, command, params,
        lock_path=lock_path, state_path=state_path, policy=policy,
    )


def run_oracle_command(
    command: str,
    params: dict[str, Any] | None = None,
    *,
    state_file: str | Path | None = None,
    policy_file: str | Path | None = None,
    store: StateStore | None = None,
    policy: LoopPolicy | None = None,
) -> CommandResult:
    """Run one decision engine command; errors come back in the result."""
    state_path, loaded_policy = _resolve_runtime(state_file, policy_file)
    policy = policy or loaded_policy
    lock_path = None
    if store is None:
        store = JsonStateStore(state_path, atomic=policy.storage.atomic_writes, history_limit=policy.history_limit)
        lock_path = state_path.parent / LOCK_FILE_NAME
    engine = DecisionEngine(store, policy=policy)
    return _dispatch(
        "oracle", ORACLE_HANDLERS, engine, command, params,
        lock_path=lock_path, state_path=state_path, policy=policy,
    )


# ---------------------------------------------------------------------------
# CLI command handlers
# ---------------------------------------------------------------------------


def _emit(result: CommandResult, *, as_json: bool) -> int:
    if as_json:
        print(_dump(result.to_payload()))
    elif result.ok:
        print(result.message)
    else:
        print(f"steerloop {result.command}: ERROR [{result.error}] {result.message}", file=sys.stderr)
    return 0 if result.ok else 1


def _loop_params(args: argparse.Namespace) -> dict[str, Any]:
    params: dict[str, Any] = {
        "prompt": args.prompt,
        "maxIterations": args.max_iterations,
        "checkpointInterval": args.checkpoint_interval,
        "completionPromise": args.completion_promise,
        "decision": args.decision,
        "reason": args.reason,
        "output": args.output,
    }
    for name in METRIC_PARAM_NAMES:
        params[name] = getattr(args, name)
    return params


def _cmd_loop(args: argparse.Namespace) -> int:
    result = run_loop_command(
        args.loop_command,
        _loop_params(args),
        state_file=args.state_file,
        policy_file=args.policy_file,
    )
    return _emit(result, as_json=args.json)


def _cmd_oracle(args: argparse.Namespace) -> int:
    params = {
        "totalTodos": args.total_todos,
        "todosPerIteration": args.todos_per_iteration,
        "todoCount": args.todo_count,
        "decision": args.decision,
        "reason": args.reason,
        "task_context": args.task_context,
        "escalate": True if args.escalate else None,
        "todo": args.todo,
        "attemptType": args.attempt_type,
        "taskDescription": args.task_description,
        "status": args.attempt_status,
        "iteration": args.iteration,
        "errorType": args.error_type,
        "errorDescription": args.error_description,
        "remainingCheckpoints": args.remaining_checkpoints,
    }
    result = run_oracle_command(
        args.oracle_command,
        params,
        state_file=args.state_file,
        policy_file=args.policy_file,
    )
    return _emit(result, as_json=args.json)


def _cmd_lock(args: argparse.Namespace) -> int:
    state_path = _resolve_state_path(args.state_file)
    lock_path = state_path.parent / LOCK_FILE_NAME

    if args.action == "status":
        info = _inspect_lock(lock_path)
        if info is None:
            print("steerloop lock: no active lock")
            return 0
        print("steerloop lock: active")
        for key in ("pid", "host", "command", "acquired_at", "state_file"):
            print(f"  {key}: {info.get(key, '<unknown>')}")
        age = info.get("age_seconds")
        if age is not None:
            print(f"  age: {age:.0f}s")
        return 0

    if args.action == "break":
        message = _force_break_lock(lock_path, reason=args.reason or "manual break")
        _append_log(state_path, f"lock break: {message}")
        print(f"steerloop lock: {message}")
        return 0

    print(f"steerloop lock: unknown action '{args.action}'", file=sys.stderr)
    return 1


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--state-file",
        default=None,
        help="Path to the loop state JSON (default: $STEERLOOP_STATE_FILE or ~/.config/steerloop/state.json)",
    )
    common.add_argument(
        "--policy-file",
        default=None,
        help="Path to the policy YAML (default: policy.yaml beside the state file)",
    )
    common.add_argument("--json", action="store_true", help="Print the full command result as JSON")

    parser = argparse.ArgumentParser(description="steerloop command line interface")
    subparsers = parser.add_subparsers(dest="command")

    loop = subparsers.add_parser("loop", parents=[common], help="Drive the checkpoint-controlled loop")
    loop.add_argument("loop_command", choices=LOOP_COMMANDS, help="Loop command to run")
    loop.add_argument("--prompt", default="", help="Task prompt (start)")
    loop.add_argument("--max-iterations", type=int, default=DEFAULT_MAX_ITERATIONS, help="Max iterations (start)")
    loop.add_argument(
        "--checkpoint-interval",
        type=int,
        default=DEFAULT_CHECKPOINT_INTERVAL,
        help="Initial checkpoint interval (start)",
    )
    loop.add_argument("--completion-promise", default=DEFAULT_COMPLETION_PROMISE, help="Completion signal (start)")
    for name in METRIC_PARAM_NAMES:
        flag = "--" + "".join(f"-{char.lower()}" if char.isupper() else char for char in name)
        loop.add_argument(flag, dest=name, type=int, default=0, help=f"{name} (update_metrics)")
    loop.add_argument("--decision", default=None, choices=[item.value for item in Decision if item.storable])
    loop.add_argument("--reason", default="", help="Reason for the decision (set_decision)")
    loop.add_argument("--output", default="", help="Builder output to scan (check_completion)")
    loop.set_defaults(handler=_cmd_loop)

    oracle = subparsers.add_parser("oracle", parents=[common], help="Plan interventions and record decisions")
    oracle.add_argument("oracle_command", choices=ORACLE_COMMANDS, help="Oracle action to run")
    oracle.add_argument("--total-todos", type=int, default=None, help="Total TODOs (set_intervention_plan)")
    oracle.add_argument("--todos-per-iteration", type=int, default=None, help="TODOs per iteration")
    oracle.add_argument("--todo-count", type=int, default=None, help="TODO count (calculate_iterations)")
    oracle.add_argument("--decision", default=None, choices=[item.value for item in Decision if item.storable])
    oracle.add_argument("--reason", default="", help="Reason (set_decision, terminate_and_clear)")
    oracle.add_argument("--task-context", default=None, help="Context for review")
    oracle.add_argument("--escalate", action="store_true", help="Use the escalation policy for review")
    oracle.add_argument("--todo", default=None, help="TODO identifier (complete_todo)")
    oracle.add_argument("--attempt-type", default="direct", choices=["direct", "loop"])
    oracle.add_argument("--task-description", default="", help="Task description (record_attempt)")
    oracle.add_argument(
        "--attempt-status",
        default="success",
        choices=["success", "failed", "terminated"],
        help="Attempt outcome (record_attempt)",
    )
    oracle.add_argument("--iteration", type=int, default=None, help="Iteration of the error (record_error)")
    oracle.add_argument("--error-type", default="unknown", help="Error type (record_error)")
    oracle.add_argument("--error-description", default="", help="Error description (record_error)")
    oracle.add_argument("--remaining-checkpoints", type=int, default=0, help="Remaining checkpoints")
    oracle.set_defaults(handler=_cmd_oracle)

    lock = subparsers.add_parser("lock", parents=[common], help="Inspect or break the advisory state lock")
    lock.add_argument("action", choices=["status", "break"], help="Lock action")
    lock.add_argument("--reason", default="", help="Reason recorded when breaking the lock")
    lock.set_defaults(handler=_cmd_lock)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))
