"""Tests for project configuration loading."""

from pathlib import Path

import pytest
import yaml

from cascade.config import (
    DEFAULT_CONFIG_YAML,
    CascadeConfig,
    ConfigError,
    find_project_root,
    load_config,
)


def _write_config(root: Path, text: str) -> None:
    (root / ".cascade").mkdir(exist_ok=True)
    (root / ".cascade" / "config.yaml").write_text(text)


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path)
        assert config == CascadeConfig()
        assert config.concurrency.busy_policy == "queue"
        assert config.evaluation.alert_threshold == 50

    def test_default_yaml_is_valid(self, tmp_path):
        _write_config(tmp_path, DEFAULT_CONFIG_YAML)
        config = load_config(tmp_path)
        assert config.generation.api_key_env == "CASCADE_GENERATION_API_KEY"
        assert config.sync.enabled is False

    def test_partial_sections(self, tmp_path):
        _write_config(
            tmp_path,
            yaml.safe_dump({"concurrency": {"busy_policy": "reject"}, "default_company_id": "acme"}),
        )
        config = load_config(tmp_path)
        assert config.concurrency.busy_policy == "reject"
        assert config.concurrency.busy_timeout == 300.0
        assert config.default_company_id == "acme"

    def test_invalid_value(self, tmp_path):
        _write_config(tmp_path, yaml.safe_dump({"concurrency": {"busy_policy": "panic"}}))
        with pytest.raises(ConfigError, match="concurrency.busy_policy"):
            load_config(tmp_path)

    def test_invalid_yaml(self, tmp_path):
        _write_config(tmp_path, "evaluation: [unclosed")
        with pytest.raises(ConfigError, match="Could not read"):
            load_config(tmp_path)

    def test_non_mapping(self, tmp_path):
        _write_config(tmp_path, "- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(tmp_path)

    def test_api_key_read_from_environment(self, monkeypatch):
        monkeypatch.setenv("MY_LLM_KEY", "sk-123")
        config = CascadeConfig.model_validate({"generation": {"api_key_env": "MY_LLM_KEY"}})
        assert config.generation.api_key == "sk-123"


class TestProjectRoot:
    def test_finds_parent_with_cascade_dir(self, tmp_path):
        (tmp_path / ".cascade").mkdir()
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_project_root(nested) == tmp_path.resolve()

    def test_falls_back_to_start(self, tmp_path):
        assert find_project_root(tmp_path) == tmp_path.resolve()

    def test_relative_database_path(self, tmp_path):
        assert CascadeConfig().resolve_database_path(tmp_path) == tmp_path / ".cascade" / "state.db"
        absolute = CascadeConfig(database_path=str(tmp_path / "x.db"))
        assert absolute.resolve_database_path(Path("/elsewhere")) == tmp_path / "x.db"
