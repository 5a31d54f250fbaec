from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Callable

from ralph.config import _load_ralph_config
from ralph.constants import (
    DEFAULT_MODEL,
    DEFAULT_PLAN_FILE,
    EXIT_ERROR,
    EXIT_OK,
    LOCK_FILE,
    STATE_FILE,
)
from ralph.events import ConsoleRenderer, EventFeed
from ralph.loop import run_ralph
from ralph.models import (
    AgentDispatchFailure,
    ConfigError,
    LockContention,
    PlanNotFound,
    PlanProgress,
    PlanUnreadable,
    RalphError,
    RunState,
    StateCorrupt,
)
from ralph.plan import plan_tasks
from ralph.prompts import render_prompt
from ralph.runners import OpencodeRunner
from ralph.state import break_lock, inspect_lock, load_state
from ralph.utils import _append_log, format_duration


# ---------------------------------------------------------------------------
# Signal handling
# ---------------------------------------------------------------------------


def _install_signal_handlers(cancel_token: threading.Event) -> dict[int, Any]:
    """Route SIGINT/SIGTERM into the cancellation token; returns previous handlers."""

    def _handler(signum: int, frame: Any) -> None:
        if cancel_token.is_set():
            return
        cancel_token.set()
        print("\nralph: cancellation requested; finishing current iteration", file=sys.stderr)

    previous: dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.getsignal(signum)
        signal.signal(signum, _handler)
    return previous


def _restore_signal_handlers(previous: dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


# ---------------------------------------------------------------------------
# Error reporting
# ---------------------------------------------------------------------------


def _error_message(exc: RalphError) -> str:
    if isinstance(exc, LockContention):
        return f"another ralph instance is running (lock: {LOCK_FILE}); remove it with 'ralph --unlock' if that instance is gone"
    if isinstance(exc, StateCorrupt):
        return f"{exc}; run again with --reset to discard it"
    if isinstance(exc, (PlanNotFound, PlanUnreadable)):
        return f"cannot start without a readable plan: {exc}"
    if isinstance(exc, AgentDispatchFailure):
        return f"agent dispatch failed: {exc}"
    if isinstance(exc, ConfigError):
        return f"invalid configuration: {exc}"
    return str(exc)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_status(repo_root: Path, args: argparse.Namespace) -> int:
    print("ralph status")
    lock = inspect_lock(repo_root)
    if lock is None:
        print("lock: none")
    else:
        print("lock: active")
        for key in ("pid", "host", "started_at", "command"):
            print(f"  {key}: {lock.get(key, '<unknown>')}")
    try:
        state = load_state(repo_root)
    except StateCorrupt as exc:
        print(f"ralph status: ERROR {_error_message(exc)}", file=sys.stderr)
        return EXIT_ERROR
    if state is None:
        print("state: none")
    else:
        total_ms = sum(state.iteration_times)
        print(f"state: {STATE_FILE}")
        print(f"  plan_file: {state.plan_file}")
        print(f"  initial_commit: {state.initial_commit_hash or '<none>'}")
        print(f"  iterations: {len(state.iteration_times)}")
        print(f"  total_time: {format_duration(total_ms)}")
    plan_file = str(args.plan)
    try:
        tasks = plan_tasks(repo_root / plan_file)
    except (PlanNotFound, PlanUnreadable) as exc:
        print(f"plan: {exc}")
        return EXIT_OK
    progress = PlanProgress(done=sum(1 for task in tasks if task.checked), total=len(tasks))
    print(f"plan: {plan_file} ({progress.done}/{progress.total} done, {progress.ratio:.0%})")
    for task in tasks:
        if not task.checked:
            print(f"  next: {task.text}")
            break
    return EXIT_OK


def _cmd_unlock(repo_root: Path) -> int:
    message = break_lock(repo_root)
    if message != "no lock to break":
        _append_log(repo_root, f"lock break: {message}")
    print(f"ralph: {message}")
    return EXIT_OK


def _print_start(plan_file: str, model: str) -> Callable[[RunState, bool, PlanProgress], None]:
    def _on_start(state: RunState, resumed: bool, progress: PlanProgress) -> None:
        print("ralph")
        print(f"plan: {plan_file} ({progress.done}/{progress.total} done, {progress.ratio:.0%})")
        print(f"model: {model}")
        if resumed:
            print(f"resuming: {len(state.iteration_times)} iteration(s) already completed")
        else:
            print("starting fresh run")

    return _on_start


def _cmd_run(repo_root: Path, args: argparse.Namespace) -> int:
    try:
        config = _load_ralph_config(repo_root, args.config)
    except ConfigError as exc:
        print(f"ralph: ERROR {_error_message(exc)}", file=sys.stderr)
        return EXIT_ERROR

    plan_file = str(args.plan)
    model = str(args.model)
    prompt = render_prompt(args.prompt or config.prompt_template, plan_file=plan_file)
    max_iterations = config.max_iterations if args.max_iterations is None else args.max_iterations

    feed = EventFeed()
    feed.subscribe(ConsoleRenderer())
    cancel_token = threading.Event()

    def _on_complete() -> None:
        print("ralph: all tasks complete")

    previous_handlers = _install_signal_handlers(cancel_token)
    try:
        outcome = run_ralph(
            repo_root,
            plan_file=plan_file,
            model=model,
            prompt=prompt,
            runner=OpencodeRunner(config),
            feed=feed,
            cancel_token=cancel_token,
            reset=bool(args.reset),
            max_iterations=max_iterations,
            on_complete=_on_complete,
            on_start=_print_start(plan_file, model),
            command=" ".join(sys.argv),
        )
    except RalphError as exc:
        print(f"ralph: ERROR {_error_message(exc)}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        _restore_signal_handlers(previous_handlers)

    print(f"ralph: {outcome.status}: {outcome.message}")
    return outcome.exit_code


def _non_negative_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got '{value}'") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph",
        description="Run a coding agent repeatedly until every task in a plan is checked off",
    )
    parser.add_argument(
        "-p",
        "--plan",
        default=DEFAULT_PLAN_FILE,
        help=f"Path to the plan file (default: {DEFAULT_PLAN_FILE})",
    )
    parser.add_argument(
        "-m",
        "--model",
        default=DEFAULT_MODEL,
        help=f"Model to use in provider/model format (default: {DEFAULT_MODEL})",
    )
    parser.add_argument(
        "--prompt",
        default=None,
        help="Custom prompt template (use {plan} as placeholder)",
    )
    parser.add_argument(
        "-r",
        "--reset",
        action="store_true",
        help="Reset state and start fresh",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML config file (default: .ralph.yaml when present)",
    )
    parser.add_argument(
        "--max-iterations",
        type=_non_negative_int,
        default=None,
        help="Stop after this many iterations in this invocation (0 = unbounded)",
    )
    action = parser.add_mutually_exclusive_group()
    action.add_argument(
        "--status",
        action="store_true",
        help="Show lock, state, and plan progress, then exit",
    )
    action.add_argument(
        "--unlock",
        action="store_true",
        help="Remove a lock left behind by an instance that is no longer running",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    repo_root = Path.cwd()
    if args.status:
        return _cmd_status(repo_root, args)
    if args.unlock:
        return _cmd_unlock(repo_root)
    return _cmd_run(repo_root, args)
