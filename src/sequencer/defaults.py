"""Compiled-in default configuration values for sequencer.

This module is the single source of truth for all default settings.
Other modules should import from here rather than duplicating values.
"""

from __future__ import annotations

from typing import Final

RUNNER_DEFAULTS: Final[dict[str, int | float | bool]] = {
    "max_parallel_stages": 4,
    "default_timeout_seconds": 900,
    "retry_delay_seconds": 2.0,
    "poll_interval_seconds": 0.1,
    "kill_grace_seconds": 5.0,
    "inherit_env": True,
}

# Operator overrides keyed "stage.step" or "stage.*"; empty unless configured.
TIMEOUT_DEFAULTS: Final[dict[str, int]] = {}

STATE_DEFAULTS: Final[dict[str, bool | str]] = {
    "enabled": True,
    "path": ".sequencer/state.db",
}

SUMMARY_DEFAULTS: Final[dict[str, str]] = {
    "path": "",
}

LOGGING_DEFAULTS: Final[dict[str, str]] = {
    "level": "INFO",
}


_BARE_KEY_CHARS = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
)


def _quote_key(key: str) -> str:
    if key and all(c in _BARE_KEY_CHARS for c in key):
        return key
    return f'"{key}"'


def _format_toml_value(value: object) -> str:
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    msg = f"Unsupported type: {type(value)}"
    raise TypeError(msg)


def _section_to_toml(name: str, data: dict[str, object]) -> str:
    lines = [f"[{name}]"]
    for key, value in data.items():
        lines.append(f"{_quote_key(key)} = {_format_toml_value(value)}")
    return "\n".join(lines)


def generate_toml() -> str:
    """Generate a TOML configuration string from compiled-in defaults."""
    sections = [
        _section_to_toml("runner", RUNNER_DEFAULTS),
        _section_to_toml("timeout", TIMEOUT_DEFAULTS),
        _section_to_toml("state", STATE_DEFAULTS),
        _section_to_toml("summary", SUMMARY_DEFAULTS),
        _section_to_toml("logging", LOGGING_DEFAULTS),
    ]
    return "\n\n".join(sections) + "\n"
