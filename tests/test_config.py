"""
Tests for configuration loading and validation.
"""

import pytest
import yaml

from stageflow.utils.config import Config, ModelConfig
from stageflow.utils.errors import InvalidConfigError


@pytest.fixture
def clean_env(monkeypatch):
    """Drop environment overrides so defaults are deterministic."""
    for name in ("LLM_PROVIDER", "STAGEFLOW_SESSION_STORE", "LOG_FORMAT",
                 "STAGEFLOW_CODING_MODEL", "CLAUDE_API_KEY", "OPENAI_COMPATIBLE_API_KEY"):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    """Default values"""

    def test_default_sections(self, clean_env):
        config = Config()

        assert config.llm.provider == "claude"
        assert config.database.session_store == "memory"
        assert config.orchestrator.turn_timeout == 300.0
        assert config.orchestrator.history_window == 20
        assert config.streaming.tag_events is True
        assert config.streaming.terminal_sentinel == "[DONE]"
        config.validate()

    def test_environment_overrides_default(self, monkeypatch):
        monkeypatch.setenv("STAGEFLOW_CODING_MODEL", "local-coder")
        assert ModelConfig().coding == "local-coder"

    def test_model_for_stage(self, clean_env):
        models = ModelConfig(welcome="w", info_collection="i", design="d", coding="c")

        assert models.for_stage("design") == "d"
        assert models.for_stage("coding") == "c"
        assert models.for_stage("unknown") == "w"


class TestLoading:
    """YAML loading"""

    def test_load_from_file_merges_sections(self, tmp_path, clean_env):
        path = tmp_path / ".stageflow.yaml"
        path.write_text(yaml.safe_dump({
            "orchestrator": {"turn_timeout": 42, "history_window": 4},
            "streaming": {"tag_events": False},
            "llm": {"provider": "openai_compatible", "openai_model": "qwen"},
            "unknown_section": {"x": 1},
        }))

        config = Config.load_from_file(path)

        assert config.orchestrator.turn_timeout == 42
        assert config.orchestrator.history_window == 4
        assert config.streaming.tag_events is False
        assert config.llm.provider == "openai_compatible"
        assert config.llm.openai_model == "qwen"
        # Untouched values keep their defaults
        assert config.orchestrator.test_mode_max_tokens == 2048

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.load_from_file(tmp_path / "absent.yaml")

    def test_empty_file_gives_defaults(self, tmp_path, clean_env):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert Config.load_from_file(path).llm.provider == "claude"

    def test_load_default_prefers_cwd(self, tmp_path, monkeypatch, clean_env):
        (tmp_path / ".stageflow.yaml").write_text("orchestrator:\n  history_window: 3\n")
        monkeypatch.chdir(tmp_path)

        assert Config.load_default().orchestrator.history_window == 3

    def test_to_yaml_round_trips_without_secrets(self, clean_env):
        config = Config()
        config.llm.claude_api_key = "sk-secret"
        config.orchestrator.turn_timeout = 12.5

        text = config.to_yaml()
        reloaded = Config.from_dict(yaml.safe_load(text))

        assert "sk-secret" not in text
        assert reloaded.orchestrator.turn_timeout == 12.5


class TestValidation:
    """Config.validate()"""

    @pytest.mark.parametrize("section,key,value", [
        ("llm", "provider", "gpt-cloud"),
        ("database", "session_store", "redis"),
        ("orchestrator", "turn_timeout", 0),
        ("orchestrator", "history_window", -1),
        ("logging", "format", "xml"),
    ])
    def test_invalid_values(self, section, key, value, clean_env):
        config = Config()
        setattr(getattr(config, section), key, value)

        with pytest.raises(InvalidConfigError) as exc_info:
            config.validate()

        assert exc_info.value.context["config_key"] == f"{section}.{key}"

    def test_invalid_file_is_rejected_on_load(self, tmp_path, clean_env):
        path = tmp_path / "bad.yaml"
        path.write_text("database:\n  session_store: sqlite\n")

        with pytest.raises(InvalidConfigError):
            Config.load_from_file(path)
