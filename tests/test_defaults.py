from __future__ import annotations

import tomllib
from typing import ClassVar

import pytest

from sequencer.defaults import (
    LOGGING_DEFAULTS,
    RUNNER_DEFAULTS,
    STATE_DEFAULTS,
    SUMMARY_DEFAULTS,
    TIMEOUT_DEFAULTS,
    _format_toml_value,
    _quote_key,
    generate_toml,
)

# ---------------------------------------------------------------------------
# Structure & type checks
# ---------------------------------------------------------------------------


class TestRunnerDefaults:
    expected_keys: ClassVar[set[str]] = {
        "max_parallel_stages",
        "default_timeout_seconds",
        "retry_delay_seconds",
        "poll_interval_seconds",
        "kill_grace_seconds",
        "inherit_env",
    }

    def test_keys(self):
        assert set(RUNNER_DEFAULTS) == self.expected_keys

    @pytest.mark.parametrize(
        "key",
        [
            "max_parallel_stages",
            "default_timeout_seconds",
            "retry_delay_seconds",
            "poll_interval_seconds",
            "kill_grace_seconds",
        ],
    )
    def test_numeric_values_are_positive(self, key: str):
        value = RUNNER_DEFAULTS[key]
        assert isinstance(value, (int, float))
        assert not isinstance(value, bool)
        assert value > 0

    def test_inherit_env_is_bool(self):
        assert isinstance(RUNNER_DEFAULTS["inherit_env"], bool)


class TestTimeoutDefaults:
    def test_empty_unless_configured(self):
        assert TIMEOUT_DEFAULTS == {}


class TestStateDefaults:
    def test_keys(self):
        assert set(STATE_DEFAULTS) == {"enabled", "path"}

    def test_path_under_sequencer_dir(self):
        assert str(STATE_DEFAULTS["path"]).startswith(".sequencer/")


class TestSummaryAndLoggingDefaults:
    def test_summary_path_disabled(self):
        assert SUMMARY_DEFAULTS == {"path": ""}

    def test_logging_level(self):
        assert LOGGING_DEFAULTS["level"] == "INFO"


# ---------------------------------------------------------------------------
# TOML helpers
# ---------------------------------------------------------------------------


class TestQuoteKey:
    def test_bare_key(self):
        assert _quote_key("max_parallel_stages") == "max_parallel_stages"

    def test_dotted_key_is_quoted(self):
        assert _quote_key("plan.apply") == '"plan.apply"'

    def test_wildcard_key_is_quoted(self):
        assert _quote_key("deploy.*") == '"deploy.*"'


class TestFormatTomlValue:
    def test_str(self):
        assert _format_toml_value("INFO") == '"INFO"'

    def test_bool_before_int(self):
        assert _format_toml_value(True) == "true"
        assert _format_toml_value(False) == "false"

    def test_numbers(self):
        assert _format_toml_value(4) == "4"
        assert _format_toml_value(2.5) == "2.5"

    def test_unsupported(self):
        with pytest.raises(TypeError):
            _format_toml_value([1, 2])


# ---------------------------------------------------------------------------
# generate_toml()
# ---------------------------------------------------------------------------


class TestGenerateToml:
    def test_returns_str(self):
        assert isinstance(generate_toml(), str)

    def test_contains_all_sections(self):
        parsed = tomllib.loads(generate_toml())
        for section in ("runner", "timeout", "state", "summary", "logging"):
            assert section in parsed

    def test_roundtrip_runner(self):
        parsed = tomllib.loads(generate_toml())
        for key, value in RUNNER_DEFAULTS.items():
            assert parsed["runner"][key] == value

    def test_roundtrip_state(self):
        parsed = tomllib.loads(generate_toml())
        assert parsed["state"] == STATE_DEFAULTS

    def test_timeout_section_empty(self):
        parsed = tomllib.loads(generate_toml())
        assert parsed["timeout"] == {}
