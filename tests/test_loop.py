"""Integration tests for the iteration loop.

Covers completion via the done sentinel and via the plan, cancellation
precedence, resume and reset decisions, and lock release on every exit path.
"""

from __future__ import annotations

import json
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Callable

import pytest

from ralph.constants import (
    DONE_FILE,
    EXIT_CANCELLED,
    EXIT_ITERATION_LIMIT,
    EXIT_OK,
    LOCK_FILE,
    LOG_FILE,
    STATE_FILE,
)
from ralph.events import EventFeed
from ralph.loop import IterationLoop, prepare_state, run_ralph
from ralph.models import (
    AgentDispatchFailure,
    AgentResult,
    LockContention,
    PlanNotFound,
    RunState,
    SeparatorEvent,
    StateCorrupt,
    ToolUseEvent,
)
from ralph.state import acquire_lock, load_state, save_state
from ralph.utils import _now_ms

OPEN_PLAN = "# Test Completion Plan\n\n## Tasks\n\n- [ ] **Task 1** First test task\n- [ ] **Task 2** Second test task\n"
HALF_PLAN = "# Test Completion Plan\n\n## Tasks\n\n- [x] **Task 1** First test task\n- [ ] **Task 2** Second test task\n"
DONE_PLAN = "# Test Completion Plan\n\n## Tasks\n\n- [x] **Task 1** First test task\n- [x] **Task 2** Second test task\n"

Step = Callable[[Path, threading.Event], None]


class _ScriptedRunner:
    """Fake agent: each call runs the next scripted step, then idles."""

    def __init__(
        self,
        steps: list[Step] | None = None,
        *,
        fail: bool = False,
        result: AgentResult | None = None,
    ) -> None:
        self.steps = list(steps or [])
        self.fail = fail
        self.result = result or AgentResult(exit_code=0)
        self.calls = 0

    def run(self, repo_root, *, plan_file, model, prompt, cancel_token, on_event) -> AgentResult:
        if self.fail:
            raise AgentDispatchFailure("could not start agent 'opencode': not found")
        self.calls += 1
        on_event(ToolUseEvent(icon="$", text=f"call {self.calls}", tool="bash"))
        if self.steps:
            self.steps.pop(0)(repo_root, cancel_token)
        return self.result


def _write_plan(repo: Path, text: str) -> None:
    (repo / "plan.md").write_text(text, encoding="utf-8")


def _check_plan(text: str) -> Step:
    def _step(repo: Path, _token: threading.Event) -> None:
        _write_plan(repo, text)

    return _step


def _create_sentinel(repo: Path, _token: threading.Event) -> None:
    (repo / DONE_FILE).write_text("", encoding="utf-8")


def _noop(_repo: Path, _token: threading.Event) -> None:
    return None


def _run(repo: Path, runner: _ScriptedRunner, **kwargs):
    feed = EventFeed()
    completions: list[int] = []
    cancel_token = kwargs.pop("cancel_token", threading.Event())
    outcome = run_ralph(
        repo,
        plan_file="plan.md",
        model="opencode/test-model",
        prompt="do plan.md",
        runner=runner,
        feed=feed,
        cancel_token=cancel_token,
        on_complete=lambda: completions.append(1),
        **kwargs,
    )
    return outcome, feed, completions


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


def test_loop_runs_until_plan_is_fully_checked(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)
    runner = _ScriptedRunner([_check_plan(HALF_PLAN), _check_plan(DONE_PLAN)])

    outcome, feed, completions = _run(tmp_path, runner)

    assert outcome.exit_code == EXIT_OK
    assert outcome.status == "completed"
    assert outcome.iterations == 2
    assert runner.calls == 2
    assert completions == [1]
    separators = [event for event in feed.events if isinstance(event, SeparatorEvent)]
    assert [event.iteration for event in separators] == [1, 2]
    assert all(event.duration_ms >= 0 for event in separators)
    assert not (tmp_path / STATE_FILE).exists()
    assert not (tmp_path / LOCK_FILE).exists()


def test_loop_completes_on_done_sentinel_and_consumes_it(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)
    runner = _ScriptedRunner([_noop, _create_sentinel])

    outcome, _feed, completions = _run(tmp_path, runner)

    assert outcome.status == "completed"
    assert "done sentinel" in outcome.message
    assert runner.calls == 2
    assert completions == [1]
    assert not (tmp_path / DONE_FILE).exists()


def test_sentinel_and_plan_completion_together_complete_once(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)

    def _both(repo: Path, token: threading.Event) -> None:
        _write_plan(repo, DONE_PLAN)
        _create_sentinel(repo, token)

    outcome, _feed, completions = _run(tmp_path, _ScriptedRunner([_both]))

    assert outcome.exit_code == EXIT_OK
    assert completions == [1]


def test_stale_sentinel_is_removed_before_first_iteration(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)
    (tmp_path / DONE_FILE).write_text("", encoding="utf-8")
    runner = _ScriptedRunner([_noop, _check_plan(DONE_PLAN)])

    outcome, _feed, completions = _run(tmp_path, runner)

    assert outcome.status == "completed"
    assert runner.calls == 2
    assert completions == [1]


def test_already_complete_plan_finishes_without_dispatch(tmp_path: Path) -> None:
    _write_plan(tmp_path, DONE_PLAN)
    runner = _ScriptedRunner()

    outcome, _feed, completions = _run(tmp_path, runner)

    assert outcome.exit_code == EXIT_OK
    assert runner.calls == 0
    assert completions == [1]


def test_empty_plan_is_nothing_to_do(tmp_path: Path) -> None:
    _write_plan(tmp_path, "# Plan\n\nNo tasks yet.\n")
    runner = _ScriptedRunner()

    outcome, _feed, completions = _run(tmp_path, runner)

    assert outcome.exit_code == EXIT_OK
    assert outcome.status == "empty"
    assert runner.calls == 0
    assert completions == []
    assert not (tmp_path / LOCK_FILE).exists()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def test_cancellation_wins_over_completion_at_same_checkpoint(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)

    def _complete_and_cancel(repo: Path, token: threading.Event) -> None:
        _write_plan(repo, DONE_PLAN)
        _create_sentinel(repo, token)
        token.set()

    outcome, _feed, completions = _run(tmp_path, _ScriptedRunner([_complete_and_cancel]))

    assert outcome.exit_code == EXIT_CANCELLED
    assert outcome.status == "cancelled"
    assert completions == []
    assert not (tmp_path / DONE_FILE).exists()
    assert "done sentinel dropped; cancellation takes precedence" in (tmp_path / LOG_FILE).read_text(
        encoding="utf-8"
    )
    assert not (tmp_path / LOCK_FILE).exists()
    state = load_state(tmp_path)
    assert state is not None
    assert len(state.iteration_times) == 1


def test_cancellation_before_dispatch_runs_no_iteration(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)
    cancel_token = threading.Event()
    cancel_token.set()
    runner = _ScriptedRunner()

    outcome, _feed, completions = _run(tmp_path, runner, cancel_token=cancel_token)

    assert outcome.exit_code == EXIT_CANCELLED
    assert runner.calls == 0
    assert completions == []


def test_repeated_cancel_signal_has_no_extra_effect(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)

    def _cancel_twice(_repo: Path, token: threading.Event) -> None:
        token.set()
        token.set()

    runner = _ScriptedRunner([_cancel_twice, _noop])
    outcome, feed, _completions = _run(tmp_path, runner)

    assert outcome.status == "cancelled"
    assert runner.calls == 1
    assert len([event for event in feed.events if isinstance(event, SeparatorEvent)]) == 1


# ---------------------------------------------------------------------------
# Resume / reset
# ---------------------------------------------------------------------------


def _seed_state(repo: Path, *, plan_file: str = "plan.md", times: list[int] | None = None) -> RunState:
    state = RunState(
        start_time=1704067200000,
        initial_commit_hash="",
        iteration_times=list(times if times is not None else [60000, 120000]),
        plan_file=plan_file,
    )
    save_state(repo, state)
    return state


def test_resume_continues_iteration_times(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)
    _seed_state(tmp_path)

    outcome, feed, _completions = _run(tmp_path, _ScriptedRunner([_noop]), max_iterations=1)

    assert outcome.exit_code == EXIT_ITERATION_LIMIT
    state = load_state(tmp_path)
    assert state is not None
    assert state.start_time == 1704067200000
    assert state.iteration_times[:2] == [60000, 120000]
    assert len(state.iteration_times) == 3
    separators = [event for event in feed.events if isinstance(event, SeparatorEvent)]
    assert separators[0].iteration == 3


def test_reset_discards_prior_state(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)
    _seed_state(tmp_path)
    before = _now_ms()

    _run(tmp_path, _ScriptedRunner([_noop]), max_iterations=1, reset=True)

    state = load_state(tmp_path)
    assert state is not None
    assert len(state.iteration_times) == 1
    assert state.start_time >= before


def test_reset_recovers_from_corrupt_state(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)
    (tmp_path / STATE_FILE).write_text("{broken", encoding="utf-8")

    outcome, _feed, _completions = _run(tmp_path, _ScriptedRunner([_noop]), max_iterations=1, reset=True)

    assert outcome.exit_code == EXIT_ITERATION_LIMIT
    assert len(load_state(tmp_path).iteration_times) == 1


def test_plan_mismatch_starts_fresh(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)
    _seed_state(tmp_path, plan_file="other.md")

    state, resumed = prepare_state(tmp_path, plan_file="plan.md", reset=False)

    assert resumed is False
    assert state.iteration_times == []
    assert state.plan_file == "plan.md"


def test_prepare_state_selects_resume_for_matching_plan(tmp_path: Path) -> None:
    seeded = _seed_state(tmp_path)

    state, resumed = prepare_state(tmp_path, plan_file="plan.md", reset=False)

    assert resumed is True
    assert state == seeded


# ---------------------------------------------------------------------------
# Startup and failure paths
# ---------------------------------------------------------------------------


def test_lock_contention_leaves_foreign_lock_in_place(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)
    assert acquire_lock(tmp_path, command="other ralph")
    runner = _ScriptedRunner()

    with pytest.raises(LockContention):
        _run(tmp_path, runner)

    assert runner.calls == 0
    assert json.loads((tmp_path / LOCK_FILE).read_text(encoding="utf-8"))["command"] == "other ralph"


def test_missing_plan_is_fatal_and_releases_lock(tmp_path: Path) -> None:
    with pytest.raises(PlanNotFound):
        _run(tmp_path, _ScriptedRunner())

    assert not (tmp_path / LOCK_FILE).exists()


def test_resumed_state_with_deleted_plan_is_plan_not_found(tmp_path: Path) -> None:
    _seed_state(tmp_path)

    with pytest.raises(PlanNotFound):
        _run(tmp_path, _ScriptedRunner())

    assert load_state(tmp_path) is not None


def test_corrupt_state_without_reset_is_fatal(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)
    (tmp_path / STATE_FILE).write_text("{broken", encoding="utf-8")

    with pytest.raises(StateCorrupt):
        _run(tmp_path, _ScriptedRunner())

    assert not (tmp_path / LOCK_FILE).exists()
    assert (tmp_path / STATE_FILE).read_text(encoding="utf-8") == "{broken"


def test_agent_dispatch_failure_releases_lock(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)

    with pytest.raises(AgentDispatchFailure):
        _run(tmp_path, _ScriptedRunner(fail=True))

    assert not (tmp_path / LOCK_FILE).exists()


def test_plan_deleted_mid_run_is_fatal_and_releases_lock(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)

    def _delete_plan(repo: Path, _token: threading.Event) -> None:
        (repo / "plan.md").unlink()

    with pytest.raises(PlanNotFound):
        _run(tmp_path, _ScriptedRunner([_delete_plan]))

    assert not (tmp_path / LOCK_FILE).exists()
    assert len(load_state(tmp_path).iteration_times) == 1


def test_iteration_loop_state_persisted_before_next_dispatch(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)
    observed: list[int] = []

    def _observe(repo: Path, _token: threading.Event) -> None:
        state = load_state(repo)
        observed.append(len(state.iteration_times) if state else 0)

    loop = IterationLoop(
        tmp_path,
        state=RunState(start_time=_now_ms(), initial_commit_hash="", plan_file="plan.md"),
        plan_file="plan.md",
        model="opencode/test-model",
        prompt="do plan.md",
        runner=_ScriptedRunner([_observe, _observe, _check_plan(DONE_PLAN)]),
        feed=EventFeed(),
        cancel_token=threading.Event(),
    )

    outcome = loop.run()

    assert outcome.status == "completed"
    assert observed == [0, 1]


def test_agent_timeout_is_logged_and_loop_continues(tmp_path: Path) -> None:
    _write_plan(tmp_path, OPEN_PLAN)
    runner = _ScriptedRunner([_noop, _check_plan(DONE_PLAN)], result=AgentResult(exit_code=-15, timed_out=True))

    outcome, _feed, _completions = _run(tmp_path, runner)

    assert outcome.status == "completed"
    assert runner.calls == 2
    log_text = (tmp_path / LOG_FILE).read_text(encoding="utf-8")
    assert "iteration 1 agent timed out with code -15; continuing" in log_text
    assert "agent exited with code" not in log_text


# ---------------------------------------------------------------------------
# Commit metrics
# ---------------------------------------------------------------------------


def _git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        [
            "git",
            "-C",
            str(repo),
            "-c",
            "user.name=Ralph Test",
            "-c",
            "user.email=ralph@example.com",
            "-c",
            "commit.gpgsign=false",
            *args,
        ],
        text=True,
        capture_output=True,
        check=True,
    )
    return completed.stdout.strip()


def _init_repo(repo: Path) -> str:
    _git(repo, "init", "-q")
    _git(repo, "commit", "-q", "--allow-empty", "-m", "initial")
    return _git(repo, "rev-parse", "HEAD")


def _make_commits(count: int, *, then: Step | None = None) -> Step:
    def _step(repo: Path, token: threading.Event) -> None:
        for index in range(count):
            _git(repo, "commit", "-q", "--allow-empty", "-m", f"agent change {index}")
        if then is not None:
            then(repo, token)

    return _step


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_separators_report_commits_made_in_each_iteration(tmp_path: Path) -> None:
    _init_repo(tmp_path)
    _write_plan(tmp_path, OPEN_PLAN)
    runner = _ScriptedRunner([_make_commits(1), _make_commits(2, then=_check_plan(DONE_PLAN))])

    outcome, feed, _completions = _run(tmp_path, runner)

    assert outcome.status == "completed"
    separators = [event for event in feed.events if isinstance(event, SeparatorEvent)]
    assert [(event.iteration, event.commit_count) for event in separators] == [(1, 1), (2, 2)]


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_resumed_run_counts_only_new_commits(tmp_path: Path) -> None:
    initial = _init_repo(tmp_path)
    _write_plan(tmp_path, OPEN_PLAN)
    save_state(
        tmp_path,
        RunState(
            start_time=1704067200000,
            initial_commit_hash=initial,
            iteration_times=[60000],
            plan_file="plan.md",
        ),
    )
    _make_commits(3)(tmp_path, threading.Event())

    outcome, feed, _completions = _run(tmp_path, _ScriptedRunner([_make_commits(1)]), max_iterations=1)

    assert outcome.exit_code == EXIT_ITERATION_LIMIT
    separators = [event for event in feed.events if isinstance(event, SeparatorEvent)]
    assert [(event.iteration, event.commit_count) for event in separators] == [(2, 1)]
    assert load_state(tmp_path).initial_commit_hash == initial
