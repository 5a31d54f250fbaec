"""Ralph constants — well-known file names, defaults, and tool icons."""

from __future__ import annotations

import re

LOCK_FILE = ".ralph-lock"
STATE_FILE = ".ralph-state.json"
DONE_FILE = ".ralph-done"
LOG_FILE = ".ralph.log"
CONFIG_FILE = ".ralph.yaml"

DEFAULT_PLAN_FILE = "plan.md"
DEFAULT_MODEL = "opencode/claude-opus-4-5"
DEFAULT_AGENT_COMMAND = ("opencode", "run", "--format", "json")
DEFAULT_AGENT_TIMEOUT_SECONDS = 0.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_MAX_ITERATIONS = 0

DEFAULT_PROMPT_TEMPLATE = (
    "READ all of {plan}. Pick ONE task. If needed, verify it's not already done. "
    "Implement it, then run the relevant checks and tests. "
    "Mark the task complete in {plan} by changing '- [ ]' to '- [x]', "
    "then commit your changes with a short message. "
    "If every task in {plan} is complete, create an empty file named "
    f"{DONE_FILE} in the working directory and stop. "
    "Do only one task per run."
)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_ITERATION_LIMIT = 3
EXIT_CANCELLED = 130

DEFAULT_ICON = "⚙"
TEXT_ICON = "…"
TOOL_ICONS: dict[str, str] = {
    "read": "◉",
    "write": "✎",
    "edit": "✎",
    "glob": "⌕",
    "grep": "⌕",
    "task": "▶",
    "webfetch": "◎",
    "websearch": "◎",
    "codesearch": "◎",
    "bash": "$",
    "todowrite": "☐",
    "todoread": "☐",
}

CHECKLIST_ITEM_PATTERN = re.compile(
    r"^[ \t]*[-*+][ \t]+\[(?P<mark>[^\]])\](?:[ \t]+(?P<text>.*?))?\s*$"
)
FENCE_PATTERN = re.compile(r"^[ \t]*(```|~~~)")
