"""Plan tracking: count checklist items in a markdown plan document.

The agent edits the plan while ralph reads it, so every call re-reads the
whole file and never relies on an earlier snapshot.
"""

from __future__ import annotations

from pathlib import Path

from ralph.constants import CHECKLIST_ITEM_PATTERN, FENCE_PATTERN
from ralph.models import PlanNotFound, PlanProgress, PlanTask, PlanUnreadable


def _read_plan_text(path: Path) -> str:
    if not path.exists() or not path.is_file():
        raise PlanNotFound(f"plan file not found: {path}")
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise PlanNotFound(f"plan file not found: {path}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise PlanUnreadable(f"plan file could not be read: {path}: {exc}") from exc


def _parse_tasks(text: str) -> list[PlanTask]:
    tasks: list[PlanTask] = []
    in_fence = False
    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        if FENCE_PATTERN.match(raw_line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = CHECKLIST_ITEM_PATTERN.match(raw_line)
        if not match:
            continue
        tasks.append(
            PlanTask(
                text=(match.group("text") or "").strip(),
                checked=match.group("mark").lower() == "x",
                line_number=line_number,
            )
        )
    return tasks


def plan_tasks(path: Path) -> list[PlanTask]:
    return _parse_tasks(_read_plan_text(path))


def parse_plan(path: Path) -> PlanProgress:
    tasks = plan_tasks(path)
    done = sum(1 for task in tasks if task.checked)
    return PlanProgress(done=done, total=len(tasks))
