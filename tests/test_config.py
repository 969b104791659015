"""Unit tests for the config module."""

import os
from unittest.mock import patch

from pydantic import ValidationError
import pytest

from terrasearch.config import Settings, get_settings


pytestmark = pytest.mark.unit


class TestConfig:
    """Test configuration loading and validation."""

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.db_path == ":memory:"
        assert settings.external_content is True
        assert settings.ranking_mode == "weighted"
        assert settings.cache_ttl == 300
        assert settings.cache_max_size == 1000
        assert settings.cache_table_name == "_query_cache"
        assert settings.chunk_size == 1000
        assert settings.chunk_overlap == 100
        assert settings.distance_weight == 0.0

    @patch.dict(
        os.environ,
        {
            "TERRASEARCH_DB_PATH": "/tmp/search.db",
            "TERRASEARCH_CACHE_TTL": "60",
            "TERRASEARCH_RANKING_MODE": "boosted",
            "TERRASEARCH_EXTERNAL_CONTENT": "false",
        },
        clear=False,
    )
    def test_environment_overrides(self):
        settings = Settings(_env_file=None)
        assert settings.db_path == "/tmp/search.db"
        assert settings.cache_ttl == 60
        assert settings.ranking_mode == "boosted"
        assert settings.external_content is False

    def test_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("TERRASEARCH_BATCH_SIZE=7\nTERRASEARCH_LOG_LEVEL=debug\n")
        settings = Settings(_env_file=env_file)
        assert settings.batch_size == 7
        assert settings.get_log_level() == "DEBUG"

    def test_overlap_must_be_smaller_than_chunk_size(self):
        with pytest.raises(ValidationError, match="chunk_overlap"):
            Settings(_env_file=None, chunk_size=100, chunk_overlap=100)

    def test_cache_table_name_is_validated(self):
        with pytest.raises(ValidationError, match="cache_table_name"):
            Settings(_env_file=None, cache_table_name="cache; DROP TABLE x")

    def test_default_limit_bounded_by_max_limit(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, default_limit=50, max_limit=10)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"ranking_mode": "bm42"},
            {"distance_weight": 1.5},
            {"cache_cleanup_probability": -0.1},
            {"chunk_size": 10},
            {"distance_decay_k": 0},
        ],
    )
    def test_field_constraints(self, overrides):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **overrides)

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

    @patch.dict(os.environ, {"TERRASEARCH_MAX_LIMIT": "50"}, clear=False)
    def test_get_settings_reads_environment(self):
        get_settings.cache_clear()
        assert get_settings().max_limit == 50
