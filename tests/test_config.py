"""Tests for configuration loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

import docs_research.config as config_module
from docs_research.config import AppSettings, CacheSettings, FetchSettings, PipelineSettings, ValidationSettings


class TestDefaults:
    def test_fetch_defaults(self):
        fetch = FetchSettings()
        assert fetch.concurrency == 8
        assert fetch.per_host_limit == 2
        assert fetch.timeout_seconds == 10.0
        assert fetch.max_attempts == 3
        assert fetch.backoff_base_seconds == 0.5
        assert fetch.backoff_factor == 2.0

    def test_validation_defaults(self):
        validation = ValidationSettings()
        assert validation.completeness_threshold == 0.85
        assert validation.critical_floor == 0.6

    def test_pipeline_defaults(self):
        assert PipelineSettings().run_timeout_seconds == 300.0


class TestEnvironmentOverrides:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for var in ("DOCS_FETCH_CONCURRENCY", "DOCS_CACHE_ENABLED", "DOCS_VALIDATION_CRITICAL_FLOOR", "DOCS_PIPELINE_OUTPUT_DIRECTORY"):
            monkeypatch.delenv(var, raising=False)

    def test_env_prefix_per_section(self, monkeypatch):
        monkeypatch.setenv("DOCS_FETCH_CONCURRENCY", "3")
        monkeypatch.setenv("DOCS_CACHE_ENABLED", "false")
        monkeypatch.setenv("DOCS_VALIDATION_CRITICAL_FLOOR", "0.5")

        settings = AppSettings()

        assert settings.fetch.concurrency == 3
        assert settings.cache.enabled is False
        assert settings.validation.critical_floor == 0.5

    def test_invalid_value_rejected(self, monkeypatch):
        monkeypatch.setenv("DOCS_FETCH_CONCURRENCY", "0")
        with pytest.raises(ValidationError):
            FetchSettings()


class TestPaths:
    def test_cache_path_override(self, tmp_path):
        cache = CacheSettings(path=str(tmp_path / "c.db"))
        assert cache.get_path() == tmp_path / "c.db"

    def test_output_root_override(self, tmp_path):
        settings = AppSettings(pipeline=PipelineSettings(output_directory=str(tmp_path / "out")))
        assert settings.get_output_root() == tmp_path / "out"

    def test_output_root_default(self):
        settings = AppSettings(pipeline=PipelineSettings(output_directory=None))
        assert settings.get_output_root().name == "docs-research-bundles"
        assert isinstance(settings.get_output_root(), Path)


class TestConfigFile:
    def test_file_values_loaded(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.json"
        config_file.write_text('{"fetch": {"concurrency": 4, "max_attempts": 5}}', encoding="utf-8")
        monkeypatch.setattr(config_module, "CONFIG_FILE", config_file)

        settings = AppSettings(**config_module.load_config_file())

        assert settings.fetch.concurrency == 4
        assert settings.fetch.max_attempts == 5

    @pytest.mark.parametrize("content", ["", "   ", "{not json"])
    def test_empty_or_broken_file_ignored(self, tmp_path, monkeypatch, content):
        config_file = tmp_path / "config.json"
        config_file.write_text(content, encoding="utf-8")
        monkeypatch.setattr(config_module, "CONFIG_FILE", config_file)

        assert config_module.load_config_file() == {}

    def test_missing_file_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "absent.json")
        assert config_module.load_config_file() == {}
