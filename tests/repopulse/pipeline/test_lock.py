"""Tests for repopulse.pipeline.lock — Redis lease lock."""
import threading
from unittest.mock import MagicMock

import pytest
import redis

from repopulse.models.assessment import RepositoryKey
from repopulse.pipeline.errors import LockUnavailableError
from repopulse.pipeline.lock import RunLock

KEY = RepositoryKey('octo', 'widgets')


@pytest.fixture
def lock(fake_redis):
    return RunLock(fake_redis, ttl_seconds=60, clock=lambda: fake_redis.now)


@pytest.fixture
def broken_redis():
    client = MagicMock()
    client.set.side_effect = redis.ConnectionError('connection refused')
    client.eval.side_effect = redis.ConnectionError('connection refused')
    client.get.side_effect = redis.ConnectionError('connection refused')
    return client


class TestAcquire:

    def test_acquire_free_key(self, lock, fake_redis):
        handle = lock.acquire(KEY)
        assert handle is not None
        assert handle.repository == KEY
        assert fake_redis.get('lock:analysis:octo/widgets') == handle.token
        assert handle.expires_at == handle.acquired_at + 60

    def test_second_acquire_is_busy(self, lock):
        assert lock.acquire(KEY) is not None
        assert lock.acquire(KEY) is None

    def test_other_repositories_are_independent(self, lock):
        assert lock.acquire(KEY) is not None
        assert lock.acquire(RepositoryKey('octo', 'gadgets')) is not None

    def test_tokens_are_unique(self, lock):
        first = lock.acquire(KEY)
        lock.release(first)
        second = lock.acquire(KEY)
        assert first.token != second.token

    def test_expired_lease_can_be_taken(self, lock, fake_redis):
        lock.acquire(KEY)
        fake_redis.advance(61)
        assert lock.acquire(KEY) is not None

    def test_concurrent_acquire_has_single_winner(self, lock):
        results = []
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            results.append(lock.acquire(KEY))

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r is not None]
        assert len(results) == 20
        assert len(winners) == 1

    def test_unavailable_store_raises(self, broken_redis):
        with pytest.raises(LockUnavailableError):
            RunLock(broken_redis).acquire(KEY)


class TestRelease:

    def test_release_frees_key(self, lock):
        handle = lock.acquire(KEY)
        assert lock.release(handle) is True
        assert lock.holder(KEY) is None

    def test_double_release_is_noop(self, lock):
        handle = lock.acquire(KEY)
        lock.release(handle)
        assert lock.release(handle) is False

    def test_release_none(self, lock):
        assert lock.release(None) is False

    def test_stale_holder_cannot_release_newer_lease(self, lock, fake_redis):
        old = lock.acquire(KEY)
        fake_redis.advance(61)
        new = lock.acquire(KEY)

        assert lock.release(old) is False
        assert lock.holder(KEY) == new.token

    def test_release_swallows_store_errors(self, lock, broken_redis):
        handle = lock.acquire(KEY)
        assert RunLock(broken_redis).release(handle) is False


class TestRenew:

    def test_renew_extends_lease(self, lock, fake_redis):
        handle = lock.acquire(KEY)
        fake_redis.advance(50)
        renewed = lock.renew(handle)
        assert renewed is not None
        assert renewed.token == handle.token
        fake_redis.advance(50)
        assert lock.holder(KEY) == handle.token

    def test_renew_after_expiry_fails(self, lock, fake_redis):
        handle = lock.acquire(KEY)
        fake_redis.advance(61)
        assert lock.renew(handle) is None

    def test_renew_after_takeover_fails_and_keeps_new_lease(self, lock, fake_redis):
        old = lock.acquire(KEY)
        fake_redis.advance(61)
        new = lock.acquire(KEY)

        assert lock.renew(old) is None
        assert lock.holder(KEY) == new.token

    def test_renew_with_unavailable_store_raises(self, lock, broken_redis):
        handle = lock.acquire(KEY)
        with pytest.raises(LockUnavailableError):
            RunLock(broken_redis).renew(handle)

    def test_handle_for_rebuilds_a_renewable_handle(self, lock):
        handle = lock.acquire(KEY)
        rebuilt = lock.handle_for(KEY, handle.token)
        assert lock.renew(rebuilt) is not None


class TestHolder:

    def test_free_key_has_no_holder(self, lock):
        assert lock.holder(KEY) is None

    def test_holder_unavailable_raises(self, broken_redis):
        with pytest.raises(LockUnavailableError):
            RunLock(broken_redis).holder(KEY)
