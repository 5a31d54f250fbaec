from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any

import yaml

from ralph.constants import (
    CONFIG_FILE,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_PROMPT_TEMPLATE,
)
from ralph.models import (
    ConfigError,
    RalphConfig,
    _coerce_float,
    _coerce_non_negative_int,
)


def _resolve_config_path(repo_root: Path, config_path: str | None) -> tuple[Path, bool]:
    """Return the config path and whether the user asked for it explicitly."""
    if config_path:
        candidate = Path(config_path).expanduser()
        if not candidate.is_absolute():
            candidate = repo_root / candidate
        return (candidate, True)
    return (repo_root / CONFIG_FILE, False)


def _load_config_mapping(repo_root: Path, config_path: str | None = None) -> dict[str, Any]:
    path, explicit = _resolve_config_path(repo_root, config_path)
    if not path.exists():
        if explicit:
            raise ConfigError(f"config file not found: {path}")
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file is not valid YAML: {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"config file must contain a mapping: {path}")
    return loaded


def _coerce_command(value: Any, *, default: tuple[str, ...]) -> tuple[str, ...]:
    if isinstance(value, str):
        try:
            parts = shlex.split(value)
        except ValueError as exc:
            raise ConfigError(f"agent.command could not be parsed: {exc}") from exc
        return tuple(parts) if parts else default
    if isinstance(value, list):
        parts = [str(item).strip() for item in value if str(item).strip()]
        return tuple(parts) if parts else default
    return default


def _load_ralph_config(repo_root: Path, config_path: str | None = None) -> RalphConfig:
    mapping = _load_config_mapping(repo_root, config_path)
    agent = mapping.get("agent")
    if not isinstance(agent, dict):
        agent = {}
    loop = mapping.get("loop")
    if not isinstance(loop, dict):
        loop = {}

    command = _coerce_command(agent.get("command"), default=DEFAULT_AGENT_COMMAND)
    extra_args = _coerce_command(agent.get("extra_args"), default=())
    timeout_seconds = _coerce_float(
        agent.get("timeout_seconds", DEFAULT_AGENT_TIMEOUT_SECONDS),
        default=DEFAULT_AGENT_TIMEOUT_SECONDS,
    )
    if timeout_seconds < 0:
        timeout_seconds = DEFAULT_AGENT_TIMEOUT_SECONDS
    poll_interval = _coerce_float(
        loop.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS),
        default=DEFAULT_POLL_INTERVAL_SECONDS,
    )
    if poll_interval <= 0:
        poll_interval = DEFAULT_POLL_INTERVAL_SECONDS
    max_iterations = _coerce_non_negative_int(
        loop.get("max_iterations", DEFAULT_MAX_ITERATIONS),
        default=DEFAULT_MAX_ITERATIONS,
    )
    prompt = str(mapping.get("prompt") or "").strip() or DEFAULT_PROMPT_TEMPLATE

    return RalphConfig(
        agent_command=command,
        agent_extra_args=extra_args,
        agent_timeout_seconds=timeout_seconds,
        poll_interval_seconds=poll_interval,
        max_iterations=max_iterations,
        prompt_template=prompt,
    )
