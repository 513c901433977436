from __future__ import annotations

from pathlib import Path

from sequencer.config import (
    SequencerConfig,
    init_config,
    load_config,
    resolve_step_timeout,
)
from sequencer.defaults import (
    LOGGING_DEFAULTS,
    RUNNER_DEFAULTS,
    STATE_DEFAULTS,
    TIMEOUT_DEFAULTS,
    generate_toml,
)


def _write_toml(root: Path, content: str) -> None:
    d = root / ".sequencer"
    d.mkdir()
    (d / "sequencer.toml").write_text(content)


class TestLoadConfigDefaults:
    def test_returns_runner_defaults_when_no_toml(self, tmp_path: Path):
        cfg = load_config(tmp_path)
        assert cfg.runner.max_parallel_stages == RUNNER_DEFAULTS["max_parallel_stages"]
        assert cfg.runner.retry_delay_seconds == RUNNER_DEFAULTS["retry_delay_seconds"]
        assert cfg.runner.inherit_env is True

    def test_returns_timeout_defaults_when_no_toml(self, tmp_path: Path):
        assert load_config(tmp_path).timeouts == TIMEOUT_DEFAULTS

    def test_returns_state_defaults_when_no_toml(self, tmp_path: Path):
        cfg = load_config(tmp_path)
        assert cfg.state.enabled == STATE_DEFAULTS["enabled"]
        assert cfg.state.path == STATE_DEFAULTS["path"]

    def test_dataclass_defaults_match_loaded_defaults(self, tmp_path: Path):
        assert load_config(tmp_path) == SequencerConfig()


class TestLoadConfigPartialOverrides:
    def test_overrides_runner_partially(self, tmp_path: Path):
        _write_toml(tmp_path, "[runner]\nmax_parallel_stages = 8\n")
        cfg = load_config(tmp_path)
        assert cfg.runner.max_parallel_stages == 8
        assert cfg.runner.kill_grace_seconds == RUNNER_DEFAULTS["kill_grace_seconds"]

    def test_timeout_overrides(self, tmp_path: Path):
        _write_toml(tmp_path, '[timeout]\n"apply.apply" = 1800\n"build.*" = 600\n')
        cfg = load_config(tmp_path)
        assert cfg.timeouts == {"apply.apply": 1800, "build.*": 600}

    def test_unquoted_timeout_keys_flattened(self, tmp_path: Path):
        _write_toml(tmp_path, '[timeout]\napply.apply = 1800\nbuild."*" = 600\n')
        cfg = load_config(tmp_path)
        assert cfg.timeouts == {"apply.apply": 1800, "build.*": 600}
        assert resolve_step_timeout(cfg, "apply", "apply", declared=30) == 1800.0
        assert resolve_step_timeout(cfg, "build", "image") == 600.0

    def test_sections_not_overridden_keep_defaults(self, tmp_path: Path):
        _write_toml(tmp_path, '[summary]\npath = "summary.md"\n')
        cfg = load_config(tmp_path)
        assert cfg.summary.path == "summary.md"
        assert cfg.logging.level == LOGGING_DEFAULTS["level"]
        assert cfg.state.enabled is True

    def test_disable_state(self, tmp_path: Path):
        _write_toml(tmp_path, "[state]\nenabled = false\n")
        assert load_config(tmp_path).state.enabled is False


class TestLoadConfigCorruptToml:
    def test_corrupt_toml_returns_defaults(self, tmp_path: Path, capsys):
        _write_toml(tmp_path, "{{{{not valid toml!!!!")
        cfg = load_config(tmp_path)
        assert cfg.runner.max_parallel_stages == RUNNER_DEFAULTS["max_parallel_stages"]
        assert "Warning" in capsys.readouterr().err

    def test_binary_garbage_returns_defaults(self, tmp_path: Path, capsys):
        d = tmp_path / ".sequencer"
        d.mkdir()
        (d / "sequencer.toml").write_bytes(b"\x80\x81\x82\x83")
        cfg = load_config(tmp_path)
        assert cfg.timeouts == TIMEOUT_DEFAULTS
        assert "Warning" in capsys.readouterr().err


class TestInitConfig:
    def test_creates_config_file(self, tmp_path: Path):
        path = init_config(tmp_path)
        assert path == tmp_path / ".sequencer" / "sequencer.toml"
        assert path.read_text() == generate_toml()

    def test_backs_up_existing_file(self, tmp_path: Path):
        _write_toml(tmp_path, "# old config\n")
        init_config(tmp_path)
        d = tmp_path / ".sequencer"
        assert (d / "sequencer.toml.bak").read_text() == "# old config\n"
        assert (d / "sequencer.toml").read_text() == generate_toml()

    def test_generated_file_loads_back(self, tmp_path: Path):
        init_config(tmp_path)
        assert load_config(tmp_path) == SequencerConfig()


class TestResolveStepTimeout:
    def test_exact_match(self):
        cfg = SequencerConfig(timeouts={"apply.apply": 1800, "apply.*": 60})
        assert resolve_step_timeout(cfg, "apply", "apply", declared=30) == 1800.0

    def test_wildcard_match(self):
        cfg = SequencerConfig(timeouts={"apply.*": 60})
        assert resolve_step_timeout(cfg, "apply", "init", declared=30) == 60.0

    def test_declared_when_no_override(self):
        cfg = SequencerConfig()
        assert resolve_step_timeout(cfg, "plan", "plan", declared=45) == 45.0

    def test_fallback_to_runner_default(self):
        cfg = SequencerConfig()
        expected = float(RUNNER_DEFAULTS["default_timeout_seconds"])
        assert resolve_step_timeout(cfg, "plan", "plan") == expected

    def test_other_stage_wildcard_ignored(self):
        cfg = SequencerConfig(timeouts={"build.*": 60})
        assert resolve_step_timeout(cfg, "plan", "plan", declared=5) == 5.0
