"""Tests for config models and config file loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from cli.config import load_config_model
from cli.config_models import AppConfig, CurationConfig, LockConfig, ScoringConfig


class TestDefaults:
    def test_defaults(self):
        config = AppConfig()
        assert config.scoring.decay_half_life_days == 90.0
        assert config.scoring.harmful_multiplier == 4.0
        assert config.curation.dedup_similarity_threshold == 0.85
        assert config.lock.stale_threshold == 30.0
        assert config.reflection.validation_enabled is True
        assert config.llm.provider == "auto"

    def test_paths_expanded(self):
        config = AppConfig()
        assert "~" not in str(config.paths.playbook)
        assert config.paths.repo_dir is None

    def test_env_var_api_key(self, monkeypatch):
        monkeypatch.setenv("MY_KEY", "sk-ant-from-env")
        config = AppConfig.from_dict({"llm": {"api_key": "${MY_KEY}"}})
        assert config.llm.api_key == "sk-ant-from-env"


class TestValidation:
    def test_half_life_minimum(self):
        with pytest.raises(ValidationError):
            ScoringConfig(decay_half_life_days=0.5)

    def test_prune_threshold_range(self):
        with pytest.raises(ValidationError):
            ScoringConfig(prune_harmful_threshold=20)

    def test_similarity_fraction(self):
        with pytest.raises(ValidationError):
            CurationConfig(dedup_similarity_threshold=1.5)

    def test_lock_retries(self):
        with pytest.raises(ValidationError):
            LockConfig(retries=0)

    def test_invalid_provider(self):
        with pytest.raises(ValidationError):
            AppConfig.from_dict({"llm": {"provider": "llama"}})

    def test_log_level_normalised(self):
        assert AppConfig.from_dict({"logging": {"level": "debug"}}).logging.level == "DEBUG"


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config_model(tmp_path / "absent.yaml")
        assert config.lock.retries == 20

    def test_reads_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"paths": {"playbook": "~/pb.yaml"}, "lock": {"retries": 7}}))
        config = load_config_model(path)
        assert config.lock.retries == 7
        assert config.paths.playbook == Path("~/pb.yaml").expanduser()

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("lock: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config_model(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config_model(path)

    def test_validation_error_wrapped(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"reflection": {"max_iterations": 50}}))
        with pytest.raises(ValueError, match="Config validation failed"):
            load_config_model(path)
