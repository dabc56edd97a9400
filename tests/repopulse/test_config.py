"""Tests for repopulse.config.AnalysisConfig."""
import os
from unittest.mock import patch

import pytest

from repopulse.config import AnalysisConfig
from repopulse.pipeline.freshness import CacheLife


class TestAnalysisConfig:

    def test_defaults(self):
        config = AnalysisConfig()
        assert config.freshness_window_seconds == 7 * 24 * 3600
        assert config.lock_ttl_seconds == 600
        assert config.retry_attempts == 3
        assert config.cache_life == CacheLife(stale=300, revalidate=604800, expire=608400)

    def test_explicit_cache_bands(self):
        config = AnalysisConfig(cache_stale_seconds=10, cache_revalidate_seconds=20, cache_expire_seconds=30)
        assert config.cache_life == CacheLife(10, 20, 30)

    @pytest.mark.parametrize('kwargs', [
        {'freshness_window_seconds': 0},
        {'lock_ttl_seconds': -1},
        {'retry_attempts': 0},
        {'retry_base_delay': -1.0},
        {'stall_after_seconds': -5},
        {'cache_stale_seconds': 100, 'cache_revalidate_seconds': 50},
        {'cache_revalidate_seconds': 100, 'cache_expire_seconds': 50},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            AnalysisConfig(**kwargs)

    def test_from_env(self):
        env = {
            'ANALYSIS_FRESHNESS_SECONDS': '3600',
            'ANALYSIS_LOCK_TTL_SECONDS': '120',
            'ANALYSIS_RETRY_ATTEMPTS': '5',
            'ANALYSIS_RETRY_BASE_DELAY': '0.5',
            'CACHE_STALE_SECONDS': '30',
        }
        with patch.dict(os.environ, env):
            config = AnalysisConfig.from_env()
        assert config.freshness_window_seconds == 3600
        assert config.lock_ttl_seconds == 120
        assert config.retry_attempts == 5
        assert config.retry_base_delay == 0.5
        assert config.cache_life == CacheLife(30, 3600, 7200)

    def test_from_env_rejects_bad_bands(self):
        with patch.dict(os.environ, {'CACHE_REVALIDATE_SECONDS': '10', 'CACHE_STALE_SECONDS': '60'}):
            with pytest.raises(ValueError):
                AnalysisConfig.from_env()
