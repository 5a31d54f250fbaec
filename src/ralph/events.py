"""Event feed between the iteration loop and the console renderer."""

from __future__ import annotations

import json
import sys
from typing import Any, Callable, TextIO

from ralph.constants import DEFAULT_ICON, TEXT_ICON, TOOL_ICONS
from ralph.models import SeparatorEvent, ToolEvent, ToolUseEvent
from ralph.utils import format_duration

Subscriber = Callable[[ToolEvent], None]


class EventFeed:
    """Append-only, ordered feed of ToolEvents. Subscribers only observe."""

    def __init__(self) -> None:
        self._events: list[ToolEvent] = []
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def emit(self, event: ToolEvent) -> None:
        self._events.append(event)
        for subscriber in self._subscribers:
            subscriber(event)

    @property
    def events(self) -> tuple[ToolEvent, ...]:
        return tuple(self._events)


def tool_icon(tool: str) -> str:
    return TOOL_ICONS.get(tool.strip().lower(), DEFAULT_ICON)


def _tool_description(tool: str, state: dict[str, Any]) -> str:
    title = str(state.get("title") or "").strip()
    if title:
        return title
    tool_input = state.get("input")
    if not isinstance(tool_input, dict):
        tool_input = {}
    for key in ("description", "command", "filePath", "pattern", "url", "query", "prompt"):
        value = str(tool_input.get(key) or "").strip()
        if value:
            return value
    status = str(state.get("status") or "").strip()
    return f"{tool} {status}".strip()


def parse_agent_line(line: str) -> ToolUseEvent | None:
    """Reshape one line of agent output into a ToolUseEvent.

    JSON lines of type ``tool_use`` and ``text`` are recognised; other JSON
    event types carry no user-facing content and yield None. Lines that are
    not JSON are forwarded verbatim.
    """
    stripped = line.strip()
    if not stripped:
        return None
    try:
        data = json.loads(stripped)
    except (json.JSONDecodeError, ValueError):
        return ToolUseEvent(icon=DEFAULT_ICON, text=stripped)
    if not isinstance(data, dict):
        return ToolUseEvent(icon=DEFAULT_ICON, text=stripped)

    part = data.get("part")
    if not isinstance(part, dict):
        part = {}
    event_type = str(data.get("type", ""))
    if event_type == "tool_use":
        tool = str(part.get("tool") or "tool")
        state = part.get("state")
        if not isinstance(state, dict):
            state = {}
        return ToolUseEvent(icon=tool_icon(tool), text=_tool_description(tool, state), tool=tool)
    if event_type == "text":
        text = str(part.get("text") or "").strip()
        if not text:
            return None
        first_line = text.splitlines()[0]
        return ToolUseEvent(icon=TEXT_ICON, text=first_line, tool="text")
    return None


def render_event(event: ToolEvent) -> str:
    if isinstance(event, SeparatorEvent):
        duration = format_duration(event.duration_ms)
        noun = "commit" if event.commit_count == 1 else "commits"
        return (
            f"── iteration {event.iteration} ────────────── "
            f"{duration} · {event.commit_count} {noun} ──"
        )
    return f"{event.icon or DEFAULT_ICON} {event.text}"


class ConsoleRenderer:
    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def __call__(self, event: ToolEvent) -> None:
        stream = self._stream or sys.stdout
        if isinstance(event, SeparatorEvent):
            stream.write("\n" + render_event(event) + "\n\n")
        else:
            stream.write(render_event(event) + "\n")
        stream.flush()
