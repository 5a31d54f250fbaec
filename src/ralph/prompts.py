from __future__ import annotations

from ralph.constants import DEFAULT_PROMPT_TEMPLATE


def render_prompt(template: str | None, *, plan_file: str) -> str:
    """Substitute ``{plan}`` in the template; other braces are left untouched."""
    text = template if template and template.strip() else DEFAULT_PROMPT_TEMPLATE
    return text.replace("{plan}", plan_file)
