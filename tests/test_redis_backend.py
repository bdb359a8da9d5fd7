"""Tests for the Redis sliding-window backend.

Most tests use a MagicMock whose ``eval`` emulates the sliding window
script over plain dict sorted sets, exercising key layout, argument order
and reply decoding. ``TestSlidingWindowScript`` runs the real Lua script
on fakeredis.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
import pytest_asyncio
import redis

from ratewarden.app.exceptions import BackendUnavailableError, InvalidConfigurationError
from ratewarden.app.services.rate_limit import (
    InMemoryBackend,
    RedisBackend,
    SlidingWindowLimiter,
    WindowSnapshot,
)
from ratewarden.app.services.rate_limit.backends.redis_lua import SLIDING_WINDOW_SCRIPT

T0 = 1_700_000_000_000


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_redis():
    """Create a mock Redis client backed by dict sorted sets."""
    client = MagicMock()
    client.zsets = {}
    client.ttls = {}

    async def mock_eval(script, numkeys, key, now, window_start, limit, member, ttl_ms):
        assert script == SLIDING_WINDOW_SCRIPT
        assert numkeys == 1
        zset = client.zsets.setdefault(key, {})
        for m in [m for m, score in zset.items() if score <= window_start]:
            del zset[m]
        count = len(zset)
        if count >= limit:
            oldest = min(zset.values()) if zset else None
            return [0, count, str(oldest).encode() if oldest is not None else b""]
        zset[member] = now
        client.ttls[key] = ttl_ms
        return [1, count + 1, str(min(zset.values())).encode()]

    async def mock_scan_iter(match=None, count=None):
        prefix = match.rstrip("*")
        for key in list(client.zsets):
            if key.startswith(prefix):
                yield key.encode()

    async def mock_zcard(key):
        if isinstance(key, bytes):
            key = key.decode()
        return len(client.zsets.get(key, {}))

    async def mock_delete(*keys):
        removed = 0
        for key in keys:
            if isinstance(key, bytes):
                key = key.decode()
            if client.zsets.pop(key, None) is not None:
                removed += 1
        return removed

    client.eval = AsyncMock(side_effect=mock_eval)
    client.scan_iter = mock_scan_iter
    client.zcard = AsyncMock(side_effect=mock_zcard)
    client.delete = AsyncMock(side_effect=mock_delete)
    client.ping = AsyncMock(return_value=True)
    return client


@pytest.fixture
def backend(mock_redis):
    return RedisBackend(mock_redis, prefix="test:")


# ============================================================================
# Construction
# ============================================================================

class TestConstruction:
    """Tests for backend configuration checks."""

    def test_client_required(self):
        with pytest.raises(InvalidConfigurationError):
            RedisBackend(None)

    def test_timeout_must_be_positive(self, mock_redis):
        with pytest.raises(InvalidConfigurationError):
            RedisBackend(mock_redis, timeout_seconds=0)

    def test_key_layout(self, backend):
        assert backend.make_key("abc", "pro") == "test:pro:abc"


# ============================================================================
# Sliding window
# ============================================================================

class TestHit:
    """Tests for the scripted prune-count-add step."""

    @pytest.mark.asyncio
    async def test_script_arguments(self, backend, mock_redis):
        await backend.hit("abc", limit=5, now_ms=T0, window_ms=60_000, tier="free")

        args = mock_redis.eval.await_args.args
        assert args[2] == "test:free:abc"
        assert args[3] == T0
        assert args[4] == T0 - 60_000
        assert args[5] == 5
        assert args[6].startswith(f"{T0}-")
        assert args[7] == 120_000

    @pytest.mark.asyncio
    async def test_same_millisecond_requests_both_count(self, backend):
        first = await backend.hit("abc", limit=5, now_ms=T0, window_ms=1000)
        second = await backend.hit("abc", limit=5, now_ms=T0, window_ms=1000)

        assert first == WindowSnapshot(admitted=True, count=1, oldest_ms=T0)
        assert second == WindowSnapshot(admitted=True, count=2, oldest_ms=T0)

    @pytest.mark.asyncio
    async def test_denied_reply_decoding(self, backend):
        await backend.hit("abc", limit=1, now_ms=T0, window_ms=1000)
        snapshot = await backend.hit("abc", limit=1, now_ms=T0 + 10, window_ms=1000)

        assert snapshot == WindowSnapshot(admitted=False, count=1, oldest_ms=T0)

    @pytest.mark.asyncio
    async def test_empty_oldest_decodes_to_none(self, backend, mock_redis):
        mock_redis.eval = AsyncMock(return_value=[0, 0, b""])

        snapshot = await backend.hit("abc", limit=0, now_ms=T0, window_ms=1000)

        assert snapshot.oldest_ms is None

    @pytest.mark.asyncio
    async def test_cleanup_is_noop(self, backend):
        assert await backend.cleanup(T0, 1000) == 0


# ============================================================================
# Error mapping
# ============================================================================

class TestErrors:
    """Tests that store failures surface as BackendUnavailableError."""

    @pytest.mark.asyncio
    async def test_connection_error(self, backend, mock_redis):
        mock_redis.eval = AsyncMock(side_effect=redis.ConnectionError("Connection refused"))

        with pytest.raises(BackendUnavailableError) as exc_info:
            await backend.hit("abc", limit=5, now_ms=T0, window_ms=1000)

        assert exc_info.value.status_code == 503
        assert exc_info.value.operation == "hit"
        assert isinstance(exc_info.value.__cause__, redis.ConnectionError)

    @pytest.mark.asyncio
    async def test_timeout(self, mock_redis):
        async def slow_eval(*args):
            await asyncio.sleep(1)

        mock_redis.eval = AsyncMock(side_effect=slow_eval)
        backend = RedisBackend(mock_redis, prefix="test:", timeout_seconds=0.01)

        with pytest.raises(BackendUnavailableError, match="timed out"):
            await backend.hit("abc", limit=5, now_ms=T0, window_ms=1000)

    @pytest.mark.asyncio
    async def test_is_ready_false_when_ping_fails(self, backend, mock_redis):
        mock_redis.ping = AsyncMock(side_effect=redis.ConnectionError("down"))

        assert await backend.is_ready() is False

    @pytest.mark.asyncio
    async def test_is_ready(self, backend):
        assert await backend.is_ready() is True


# ============================================================================
# Maintenance
# ============================================================================

class TestMaintenance:
    """Tests for stats and reset over scanned keys."""

    @pytest.mark.asyncio
    async def test_get_stats(self, backend, mock_redis):
        await backend.hit("a", limit=5, now_ms=T0, window_ms=1000)
        await backend.hit("a", limit=5, now_ms=T0 + 1, window_ms=1000)
        await backend.hit("b", limit=5, now_ms=T0, window_ms=1000)
        mock_redis.zsets["other:free:c"] = {"m": T0}

        stats = await backend.get_stats()

        assert stats.total_identities == 2
        assert stats.total_requests == 3

    @pytest.mark.asyncio
    async def test_reset_single_identity(self, backend, mock_redis):
        await backend.hit("a", limit=5, now_ms=T0, window_ms=1000, tier="pro")
        await backend.hit("b", limit=5, now_ms=T0, window_ms=1000, tier="pro")

        await backend.reset("a", tier="pro")

        assert "test:pro:a" not in mock_redis.zsets
        assert "test:pro:b" in mock_redis.zsets

    @pytest.mark.asyncio
    async def test_reset_all_keeps_foreign_keys(self, backend, mock_redis):
        await backend.hit("a", limit=5, now_ms=T0, window_ms=1000)
        mock_redis.zsets["other:free:c"] = {"m": T0}

        await backend.reset()

        assert list(mock_redis.zsets) == ["other:free:c"]

    @pytest.mark.asyncio
    async def test_close_leaves_client_open(self, backend, mock_redis):
        await backend.close()
        mock_redis.aclose.assert_not_called()


# ============================================================================
# Backend equivalence
# ============================================================================

class TestBackendEquivalence:
    """Both backends give identical decisions for the same request sequence."""

    @pytest.mark.asyncio
    async def test_same_decisions(self, backend):
        offsets = [0, 100, 200, 300, 950, 1000, 1150, 1999, 2500, 2501]
        times = iter(offsets * 2)

        def clock():
            return T0 + next(times)

        memory = SlidingWindowLimiter(InMemoryBackend(), window_ms=1000, clock=clock)
        shared = SlidingWindowLimiter(backend, window_ms=1000, clock=clock)

        memory_decisions = [await memory.check("k", limit=3) for _ in offsets]
        shared_decisions = [await shared.check("k", limit=3) for _ in offsets]

        assert memory_decisions == shared_decisions
        assert [d.allowed for d in memory_decisions] == [
            True, True, True, False, False, True, True, True, True, True,
        ]


# ============================================================================
# Real script (fakeredis with Lua)
# ============================================================================

@pytest_asyncio.fixture
async def fake_redis():
    """In-process Redis that executes the Lua script for real."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())
    yield client
    await client.aclose()


@pytest.fixture
def scripted_backend(fake_redis):
    return RedisBackend(fake_redis, prefix="test:")


class TestSlidingWindowScript:
    """Runs SLIDING_WINDOW_SCRIPT itself rather than a Python stand-in."""

    @pytest.mark.asyncio
    async def test_matches_memory_backend(self, scripted_backend):
        offsets = [0, 0, 100, 200, 300, 950, 1000, 1150, 1999, 2500, 2501]
        times = iter(offsets * 2)

        def clock():
            return T0 + next(times)

        memory = SlidingWindowLimiter(InMemoryBackend(), window_ms=1000, clock=clock)
        shared = SlidingWindowLimiter(scripted_backend, window_ms=1000, clock=clock)

        memory_decisions = [await memory.check("k", limit=3) for _ in offsets]
        shared_decisions = [await shared.check("k", limit=3) for _ in offsets]

        assert shared_decisions == memory_decisions
        assert [d.allowed for d in shared_decisions] == [
            True, True, True, False, False, False, True, True, True, True, True,
        ]

    @pytest.mark.asyncio
    async def test_entry_expires_exactly_at_window_length(self, scripted_backend):
        first = await scripted_backend.hit("k", limit=1, now_ms=T0, window_ms=1000)
        just_inside = await scripted_backend.hit("k", limit=1, now_ms=T0 + 999, window_ms=1000)
        at_boundary = await scripted_backend.hit("k", limit=1, now_ms=T0 + 1000, window_ms=1000)

        assert first == WindowSnapshot(admitted=True, count=1, oldest_ms=T0)
        assert just_inside == WindowSnapshot(admitted=False, count=1, oldest_ms=T0)
        assert at_boundary == WindowSnapshot(admitted=True, count=1, oldest_ms=T0 + 1000)

    @pytest.mark.asyncio
    async def test_same_millisecond_requests_both_count(self, scripted_backend, fake_redis):
        await scripted_backend.hit("k", limit=5, now_ms=T0, window_ms=1000)
        second = await scripted_backend.hit("k", limit=5, now_ms=T0, window_ms=1000)

        assert second == WindowSnapshot(admitted=True, count=2, oldest_ms=T0)
        assert await fake_redis.zcard("test:default:k") == 2

    @pytest.mark.asyncio
    async def test_admission_sets_ttl_of_two_windows(self, scripted_backend, fake_redis):
        await scripted_backend.hit("k", limit=5, now_ms=T0, window_ms=1000)

        ttl = await fake_redis.pttl("test:default:k")

        assert 1000 < ttl <= 2000

    @pytest.mark.asyncio
    async def test_denied_request_is_not_stored(self, scripted_backend, fake_redis):
        for offset in (0, 10):
            await scripted_backend.hit("k", limit=2, now_ms=T0 + offset, window_ms=1000)

        denied = await scripted_backend.hit("k", limit=2, now_ms=T0 + 20, window_ms=1000)

        assert denied == WindowSnapshot(admitted=False, count=2, oldest_ms=T0)
        stored = await fake_redis.zrange("test:default:k", 0, -1, withscores=True)
        assert [score for _, score in stored] == [T0, T0 + 10]

    @pytest.mark.asyncio
    async def test_zero_limit_denies_with_empty_history(self, scripted_backend, fake_redis):
        snapshot = await scripted_backend.hit("k", limit=0, now_ms=T0, window_ms=1000)

        assert snapshot == WindowSnapshot(admitted=False, count=0, oldest_ms=None)
        assert await fake_redis.exists("test:default:k") == 0
