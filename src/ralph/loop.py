"""Ralph iteration loop — drives the agent until the plan completes or the run is cancelled.

Phases: starting -> running -> checking -> (running | completing | aborting)
-> terminated. One control thread owns the RunState for the whole run and
hands it to the state store at each iteration boundary.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Protocol

from ralph.constants import (
    EXIT_CANCELLED,
    EXIT_ITERATION_LIMIT,
    EXIT_OK,
)
from ralph.events import EventFeed
from ralph.models import (
    AgentResult,
    LockContention,
    LoopOutcome,
    PlanProgress,
    RunState,
    SeparatorEvent,
    ToolUseEvent,
)
from ralph.plan import parse_plan
from ralph.state import (
    acquire_lock,
    clear_state,
    consume_done_sentinel,
    fresh_state,
    load_state,
    release_lock,
    save_state,
    should_resume,
)
from ralph.utils import _append_log, _count_commits_since

PHASE_STARTING = "starting"
PHASE_RUNNING = "running"
PHASE_CHECKING = "checking"
PHASE_COMPLETING = "completing"
PHASE_ABORTING = "aborting"
PHASE_TERMINATED = "terminated"


class AgentRunner(Protocol):
    def run(
        self,
        repo_root: Path,
        *,
        plan_file: str,
        model: str,
        prompt: str,
        cancel_token: threading.Event,
        on_event: Callable[[ToolUseEvent], None],
    ) -> AgentResult: ...


class IterationLoop:
    def __init__(
        self,
        repo_root: Path,
        *,
        state: RunState,
        plan_file: str,
        model: str,
        prompt: str,
        runner: AgentRunner,
        feed: EventFeed,
        cancel_token: threading.Event,
        on_complete: Callable[[], None] | None = None,
        max_iterations: int = 0,
    ) -> None:
        self.repo_root = repo_root
        self.state = state
        self.plan_file = plan_file
        self.plan_path = repo_root / plan_file
        self.model = model
        self.prompt = prompt
        self.runner = runner
        self.feed = feed
        self.cancel_token = cancel_token
        self.on_complete = on_complete
        self.max_iterations = max_iterations
        self.phase = PHASE_STARTING
        self.iterations_run = 0
        self._completed = False
        self._commits_seen = 0

    @property
    def iteration(self) -> int:
        return len(self.state.iteration_times) + 1

    def run(self) -> LoopOutcome:
        self._commits_seen = _count_commits_since(self.repo_root, self.state.initial_commit_hash)
        while True:
            if self.cancel_token.is_set():
                return self._abort()

            self.phase = PHASE_RUNNING
            iteration = self.iteration
            _append_log(self.repo_root, f"iteration {iteration} dispatch model={self.model}")
            started = time.monotonic()
            result = self.runner.run(
                self.repo_root,
                plan_file=self.plan_file,
                model=self.model,
                prompt=self.prompt,
                cancel_token=self.cancel_token,
                on_event=self.feed.emit,
            )
            duration_ms = int((time.monotonic() - started) * 1000)
            self.iterations_run += 1

            self.phase = PHASE_CHECKING
            sentinel_seen = consume_done_sentinel(self.repo_root)
            if sentinel_seen:
                _append_log(self.repo_root, f"iteration {iteration} observed done sentinel")
            commit_count = self._checkpoint(iteration, duration_ms, result)

            if self.cancel_token.is_set():
                if sentinel_seen:
                    _append_log(
                        self.repo_root,
                        f"iteration {iteration} done sentinel dropped; cancellation takes precedence",
                    )
                return self._abort()

            progress = parse_plan(self.plan_path)
            _append_log(
                self.repo_root,
                (
                    f"iteration {iteration} checkpoint duration_ms={duration_ms} "
                    f"commits={commit_count} done={progress.done} total={progress.total}"
                ),
            )
            if sentinel_seen or progress.is_complete:
                reason = "done sentinel" if sentinel_seen else "all plan tasks checked"
                return self.complete(reason, progress)

            if self.max_iterations and self.iterations_run >= self.max_iterations:
                self.phase = PHASE_TERMINATED
                message = f"iteration limit reached ({self.max_iterations}); state kept for resume"
                _append_log(self.repo_root, message)
                return LoopOutcome(
                    exit_code=EXIT_ITERATION_LIMIT,
                    status="iteration_limit",
                    iterations=self.iterations_run,
                    message=message,
                )

    def _checkpoint(self, iteration: int, duration_ms: int, result: AgentResult) -> int:
        commits_total = _count_commits_since(self.repo_root, self.state.initial_commit_hash)
        commit_count = max(0, commits_total - self._commits_seen)
        self._commits_seen = commits_total
        self.state.iteration_times.append(duration_ms)
        save_state(self.repo_root, self.state)
        if result.timed_out:
            _append_log(
                self.repo_root,
                f"iteration {iteration} agent timed out with code {result.exit_code}; continuing",
            )
        elif result.exit_code not in (0, None) and not result.interrupted:
            _append_log(
                self.repo_root,
                f"iteration {iteration} agent exited with code {result.exit_code}; continuing",
            )
        self.feed.emit(
            SeparatorEvent(iteration=iteration, duration_ms=duration_ms, commit_count=commit_count)
        )
        return commit_count

    def complete(self, reason: str, progress: PlanProgress) -> LoopOutcome:
        self.phase = PHASE_COMPLETING
        if not self._completed:
            self._completed = True
            if self.on_complete is not None:
                self.on_complete()
        clear_state(self.repo_root)
        self.phase = PHASE_TERMINATED
        message = f"plan complete ({reason}; {progress.done}/{progress.total} tasks)"
        _append_log(self.repo_root, message)
        return LoopOutcome(
            exit_code=EXIT_OK,
            status="completed",
            iterations=self.iterations_run,
            message=message,
        )

    def _abort(self) -> LoopOutcome:
        self.phase = PHASE_ABORTING
        message = "cancelled; state kept for resume"
        _append_log(self.repo_root, f"run {message} after {self.iterations_run} iteration(s)")
        self.phase = PHASE_TERMINATED
        return LoopOutcome(
            exit_code=EXIT_CANCELLED,
            status="cancelled",
            iterations=self.iterations_run,
            message=message,
        )


def prepare_state(repo_root: Path, *, plan_file: str, reset: bool) -> tuple[RunState, bool]:
    """Pick the RunState for this run and report whether it was resumed.

    With ``reset`` the previous record is discarded without being decoded,
    so a corrupt file can always be recovered from.
    """
    if reset:
        if clear_state(repo_root):
            _append_log(repo_root, "state reset requested; previous state discarded")
        return (fresh_state(repo_root, plan_file), False)
    existing = load_state(repo_root)
    if existing is not None and should_resume(existing, plan_file=plan_file, reset=reset):
        _append_log(
            repo_root,
            f"resuming run plan={plan_file} iterations={len(existing.iteration_times)}",
        )
        return (existing, True)
    if existing is not None:
        _append_log(
            repo_root,
            f"state plan mismatch (state={existing.plan_file}, requested={plan_file}); starting fresh",
        )
    return (fresh_state(repo_root, plan_file), False)


def run_ralph(
    repo_root: Path,
    *,
    plan_file: str,
    model: str,
    prompt: str,
    runner: AgentRunner,
    feed: EventFeed,
    cancel_token: threading.Event,
    reset: bool = False,
    max_iterations: int = 0,
    on_complete: Callable[[], None] | None = None,
    on_start: Callable[[RunState, bool, PlanProgress], None] | None = None,
    command: str = "",
) -> LoopOutcome:
    """Run the whole lifecycle: lock, startup checks, iterations, release.

    Startup errors (plan, corrupt state) and mid-run errors propagate to the
    caller after the lock has been released.
    """
    if not acquire_lock(repo_root, command=command):
        raise LockContention("another ralph instance is running in this directory")
    _append_log(repo_root, f"lock acquired command={command}")
    try:
        progress = parse_plan(repo_root / plan_file)
        state, resumed = prepare_state(repo_root, plan_file=plan_file, reset=reset)
        if consume_done_sentinel(repo_root):
            _append_log(repo_root, "removed stale done sentinel left by a previous run")
        if on_start is not None:
            on_start(state, resumed, progress)

        if progress.total == 0:
            message = "plan has no checklist items; nothing to do"
            _append_log(repo_root, message)
            return LoopOutcome(exit_code=EXIT_OK, status="empty", iterations=0, message=message)

        loop = IterationLoop(
            repo_root,
            state=state,
            plan_file=plan_file,
            model=model,
            prompt=prompt,
            runner=runner,
            feed=feed,
            cancel_token=cancel_token,
            on_complete=on_complete,
            max_iterations=max_iterations,
        )
        if progress.is_complete:
            return loop.complete("all plan tasks already checked", progress)
        return loop.run()
    finally:
        release_lock(repo_root)
        _append_log(repo_root, "lock released")
