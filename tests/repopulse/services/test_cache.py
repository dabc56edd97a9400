"""Tests for repopulse.services.cache — tag invalidation and read-through bands."""
import json
from unittest.mock import MagicMock

import pytest
import redis

from repopulse.models.assessment import RepositoryKey
from repopulse.pipeline.freshness import CacheLife
from repopulse.services.cache import (
    RECENT_ANALYSES_TAG, ReadThroughCache, RedisCacheGateway, project_tag,
)

LIFE = CacheLife(stale=10, revalidate=100, expire=1000)


@pytest.fixture
def cache(fake_redis):
    return ReadThroughCache(fake_redis, LIFE, clock=lambda: fake_redis.now)


class _Loader:
    """Callable that returns queued values and counts calls."""

    def __init__(self, *values):
        self.values = list(values)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        value = self.values.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


class TestProjectTag:

    def test_tag_uses_full_name(self):
        assert project_tag(RepositoryKey('octo', 'widgets')) == 'project:octo/widgets'


class TestReadThroughCache:

    def test_miss_loads_and_stores(self, cache, fake_redis):
        loader = _Loader({'score': 0.9})

        assert cache.get_or_load('assessment:octo/widgets', loader) == {'score': 0.9}
        assert loader.calls == 1
        stored = json.loads(fake_redis.get('cache:assessment:octo/widgets'))
        assert stored['value'] == {'score': 0.9}

    def test_fresh_entry_served_without_loading(self, cache, fake_redis):
        loader = _Loader('v1', 'v2')
        cache.get_or_load('k', loader)
        fake_redis.advance(5)

        assert cache.get_or_load('k', loader) == 'v1'
        assert loader.calls == 1

    def test_stale_entry_served_and_refresh_scheduled(self, cache, fake_redis):
        loader = _Loader('v1', 'v2')
        on_stale = MagicMock()
        cache.get_or_load('k', loader)
        fake_redis.advance(50)

        assert cache.get_or_load('k', loader, on_stale=on_stale) == 'v1'
        assert loader.calls == 1
        on_stale.assert_called_once_with()

    def test_repeated_stale_reads_schedule_one_refresh(self, cache, fake_redis):
        loader = _Loader('v1')
        on_stale = MagicMock()
        cache.get_or_load('k', loader)
        fake_redis.advance(50)

        for _ in range(50):
            assert cache.get_or_load('k', loader, on_stale=on_stale) == 'v1'

        assert on_stale.call_count == 1
        assert loader.calls == 1

    def test_refresh_rescheduled_after_stale_period(self, cache, fake_redis):
        cache.get_or_load('k', _Loader('v1'))
        on_stale = MagicMock()
        fake_redis.advance(50)
        cache.get_or_load('k', _Loader(), on_stale=on_stale)

        fake_redis.advance(LIFE.stale + 1)
        cache.get_or_load('k', _Loader(), on_stale=on_stale)

        assert on_stale.call_count == 2

    def test_refresh_markers_are_per_entry(self, cache, fake_redis):
        cache.get_or_load('a', _Loader('va'))
        cache.get_or_load('b', _Loader('vb'))
        on_stale = MagicMock()
        fake_redis.advance(50)

        cache.get_or_load('a', _Loader(), on_stale=on_stale)
        cache.get_or_load('b', _Loader(), on_stale=on_stale)

        assert on_stale.call_count == 2

    def test_stale_refresh_failure_still_serves(self, cache, fake_redis):
        cache.get_or_load('k', _Loader('v1'))
        fake_redis.advance(50)
        on_stale = MagicMock(side_effect=redis.ConnectionError('queue down'))

        assert cache.get_or_load('k', _Loader(), on_stale=on_stale) == 'v1'

    def test_failed_refresh_is_retried_on_next_read(self, cache, fake_redis):
        cache.get_or_load('k', _Loader('v1'))
        fake_redis.advance(50)
        on_stale = MagicMock(side_effect=[redis.ConnectionError('queue down'), None, None])

        cache.get_or_load('k', _Loader(), on_stale=on_stale)
        cache.get_or_load('k', _Loader(), on_stale=on_stale)
        cache.get_or_load('k', _Loader(), on_stale=on_stale)

        assert on_stale.call_count == 2

    def test_revalidate_band_reloads(self, cache, fake_redis):
        loader = _Loader('v1', 'v2')
        cache.get_or_load('k', loader)
        fake_redis.advance(500)

        assert cache.get_or_load('k', loader) == 'v2'
        assert loader.calls == 2

    def test_revalidate_band_serves_old_value_when_reload_fails(self, cache, fake_redis):
        loader = _Loader('v1', RuntimeError('db down'))
        cache.get_or_load('k', loader)
        fake_redis.advance(500)

        assert cache.get_or_load('k', loader) == 'v1'

    def test_expired_entry_is_never_served(self, cache, fake_redis):
        loader = _Loader('v1', RuntimeError('db down'))
        cache.get_or_load('k', loader)
        fake_redis.advance(1000)

        with pytest.raises(RuntimeError):
            cache.get_or_load('k', loader)

    def test_redis_read_failure_falls_back_to_loader(self):
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError('down')
        client.pipeline.side_effect = redis.ConnectionError('down')
        cache = ReadThroughCache(client, LIFE)

        assert cache.get_or_load('k', _Loader('live')) == 'live'

    def test_malformed_entry_is_reloaded(self, cache, fake_redis):
        fake_redis.set('cache:k', 'not json')
        assert cache.get_or_load('k', _Loader('v1')) == 'v1'

    def test_none_is_cached(self, cache):
        loader = _Loader(None, 'later')
        assert cache.get_or_load('k', loader) is None
        assert cache.get_or_load('k', loader) is None
        assert loader.calls == 1


class TestRedisCacheGateway:

    def test_invalidate_drops_tagged_entries(self, cache, fake_redis):
        cache.get_or_load('assessment:octo/widgets', _Loader('a'), tags=['project:octo/widgets'])
        cache.get_or_load('recent:20', _Loader('r'), tags=[RECENT_ANALYSES_TAG])
        cache.get_or_load('assessment:octo/gadgets', _Loader('g'), tags=['project:octo/gadgets'])

        RedisCacheGateway(fake_redis).invalidate({'project:octo/widgets', RECENT_ANALYSES_TAG})

        assert fake_redis.get('cache:assessment:octo/widgets') is None
        assert fake_redis.get('cache:recent:20') is None
        assert fake_redis.get('cache:assessment:octo/gadgets') is not None
        assert fake_redis.smembers('cachetag:recent-analyses') == set()

    def test_invalidate_is_idempotent(self, cache, fake_redis):
        cache.get_or_load('k', _Loader('v'), tags=['t'])
        gateway = RedisCacheGateway(fake_redis)
        gateway.invalidate(['t'])
        gateway.invalidate(['t'])
        assert fake_redis.get('cache:k') is None

    def test_invalidated_entry_reloads(self, cache, fake_redis):
        loader = _Loader('v1', 'v2')
        cache.get_or_load('k', loader, tags=['t'])
        RedisCacheGateway(fake_redis).invalidate(['t'])
        assert cache.get_or_load('k', loader, tags=['t']) == 'v2'

    def test_empty_tags_is_noop(self):
        client = MagicMock()
        RedisCacheGateway(client).invalidate([])
        client.pipeline.assert_not_called()

    def test_store_errors_propagate(self):
        client = MagicMock()
        client.smembers.side_effect = redis.ConnectionError('down')
        with pytest.raises(redis.ConnectionError):
            RedisCacheGateway(client).invalidate(['t'])
