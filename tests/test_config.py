"""
Tests for querytrail.core.config — defaults, environment loading, and validation.
"""

from pathlib import Path

import pytest

from querytrail.core.config import QuerytrailConfig
from querytrail.exceptions import ConfigError


class TestDefaults:

    def test_analysis_defaults(self, config):
        assert config.seed_layer == "/repository/"
        assert config.ambiguous_owner_policy == "first"
        assert config.analysis_timeout is None
        assert config.query_tags == frozenset(("select", "insert", "update", "delete"))

    def test_index_dir_is_excluded_from_scans(self, config):
        assert config.index_dir in config.exclude_dirs

    def test_defaults_validate(self, config):
        assert config.validate() is True

    def test_path_helpers(self, config):
        base = Path("/tmp/project/.querytrail")
        assert config.get_cache_path(base) == base / "index.db"
        assert config.get_document_path(base) == base / "analysis.json"


class TestFromEnv:

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("QUERYTRAIL_SEED_LAYER", "/dao/")
        monkeypatch.setenv("QUERYTRAIL_AMBIGUOUS_OWNER", "REJECT")
        monkeypatch.setenv("QUERYTRAIL_TIMEOUT", "2.5")
        monkeypatch.setenv("QUERYTRAIL_WORKERS", "8")
        monkeypatch.setenv("QUERYTRAIL_EDITOR_URL", "http://127.0.0.1:9999")
        monkeypatch.setenv("QUERYTRAIL_LOG_LEVEL", "debug")

        cfg = QuerytrailConfig.from_env()
        assert cfg.seed_layer == "/dao/"
        assert cfg.ambiguous_owner_policy == "reject"
        assert cfg.analysis_timeout == 2.5
        assert cfg.max_concurrent_workers == 8
        assert cfg.editor_url == "http://127.0.0.1:9999"
        assert cfg.log_level == "DEBUG"

    def test_blank_timeout_means_unbounded(self, monkeypatch):
        monkeypatch.setenv("QUERYTRAIL_TIMEOUT", "  ")
        assert QuerytrailConfig.from_env().analysis_timeout is None

    def test_unset_environment_gives_defaults(self, monkeypatch):
        for name in ("QUERYTRAIL_SEED_LAYER", "QUERYTRAIL_AMBIGUOUS_OWNER", "QUERYTRAIL_TIMEOUT"):
            monkeypatch.delenv(name, raising=False)
        cfg = QuerytrailConfig.from_env()
        assert cfg.seed_layer == "/repository/"
        assert cfg.analysis_timeout is None


class TestValidate:

    @pytest.mark.parametrize("overrides", [
        {"ambiguous_owner_policy": "random"},
        {"seed_layer": ""},
        {"max_concurrent_workers": 0},
        {"analysis_timeout": 0},
        {"analysis_timeout": -1.0},
    ])
    def test_invalid_settings_raise(self, overrides):
        with pytest.raises(ConfigError):
            QuerytrailConfig(**overrides).validate()

    def test_config_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            QuerytrailConfig(ambiguous_owner_policy="nope").validate()

    def test_reject_policy_is_valid(self):
        assert QuerytrailConfig(ambiguous_owner_policy="reject").validate()
