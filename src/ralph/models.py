"""Ralph data models — exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_non_negative_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed >= 0 else default


class RalphError(RuntimeError):
    """Base class for errors surfaced to the user by the ralph CLI."""


class LockContention(RalphError):
    """Raised when another ralph instance holds the working-directory lock."""


class StateCorrupt(RalphError):
    """Raised when the state record exists but cannot be decoded."""


class PlanNotFound(RalphError):
    """Raised when the plan path does not resolve to a file."""


class PlanUnreadable(RalphError):
    """Raised when the plan file exists but cannot be read as text."""


class AgentDispatchFailure(RalphError):
    """Raised when the external agent cannot be started for an iteration."""


class ConfigError(RalphError):
    """Raised when the config file exists but is not a usable mapping."""


@dataclass
class RunState:
    start_time: int
    initial_commit_hash: str
    iteration_times: list[int] = field(default_factory=list)
    plan_file: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "startTime": self.start_time,
            "initialCommitHash": self.initial_commit_hash,
            "iterationTimes": list(self.iteration_times),
            "planFile": self.plan_file,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RunState":
        """Build a RunState from its JSON form, raising StateCorrupt on bad shapes."""
        required = ("startTime", "initialCommitHash", "iterationTimes", "planFile")
        missing = [key for key in required if key not in payload]
        if missing:
            raise StateCorrupt(f"state record missing required keys: {missing}")
        start_time = payload["startTime"]
        if isinstance(start_time, bool) or not isinstance(start_time, (int, float)):
            raise StateCorrupt("state.startTime must be a number")
        times = payload["iterationTimes"]
        if not isinstance(times, list) or any(
            isinstance(item, bool) or not isinstance(item, (int, float)) for item in times
        ):
            raise StateCorrupt("state.iterationTimes must be a list of numbers")
        commit_hash = payload["initialCommitHash"]
        plan_file = payload["planFile"]
        if not isinstance(commit_hash, str):
            raise StateCorrupt("state.initialCommitHash must be a string")
        if not isinstance(plan_file, str):
            raise StateCorrupt("state.planFile must be a string")
        return cls(
            start_time=int(start_time),
            initial_commit_hash=commit_hash,
            iteration_times=[int(item) for item in times],
            plan_file=plan_file,
        )


@dataclass(frozen=True)
class PlanProgress:
    done: int
    total: int

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.done == self.total

    @property
    def ratio(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.done / self.total


@dataclass(frozen=True)
class PlanTask:
    text: str
    checked: bool
    line_number: int


@dataclass(frozen=True)
class SeparatorEvent:
    """Boundary after a finished iteration."""

    iteration: int
    duration_ms: int
    commit_count: int = 0


@dataclass(frozen=True)
class ToolUseEvent:
    icon: str
    text: str
    tool: str = ""


ToolEvent = Union[SeparatorEvent, ToolUseEvent]


@dataclass(frozen=True)
class RalphConfig:
    agent_command: tuple[str, ...]
    agent_extra_args: tuple[str, ...]
    agent_timeout_seconds: float
    poll_interval_seconds: float
    max_iterations: int
    prompt_template: str


@dataclass(frozen=True)
class AgentResult:
    exit_code: int | None
    interrupted: bool = False
    timed_out: bool = False


@dataclass(frozen=True)
class LoopOutcome:
    exit_code: int
    status: str  # "completed" | "cancelled" | "iteration_limit" | "empty"
    iterations: int
    message: str
