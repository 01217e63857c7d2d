import asyncio

import pytest
import structlog
from structlog.testing import capture_logs

from communityhub.service import runtime as runtime_module
from communityhub.storage.redis_cache import RedisCache, SyncRedisCache


class _RecordingCache(RedisCache):
    """Async cache double; skips the real pool setup."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.closed = False

    async def close(self) -> None:
        self.closed = True
        if self.error is not None:
            raise self.error


class _SyncClient:
    closed = False

    def close(self):
        self.closed = True


@pytest.fixture
def runtime_log(monkeypatch):
    with capture_logs() as entries:
        monkeypatch.setattr(
            runtime_module, "logger", structlog.get_logger(runtime_module.__name__)
        )
        yield entries


def test_close_without_running_loop_finishes_inline():
    cache = _RecordingCache()
    assert runtime_module._close_cache(cache) is None
    assert cache.closed


def test_sync_cache_closes_client():
    client = _SyncClient()
    assert runtime_module._close_cache(SyncRedisCache("redis://fake", client=client)) is None
    assert client.closed


async def test_close_inside_loop_keeps_task_until_done():
    cache = _RecordingCache()
    task = runtime_module._close_cache(cache)

    assert task in runtime_module._pending_cache_closes
    await task
    await asyncio.sleep(0)

    assert cache.closed
    assert task not in runtime_module._pending_cache_closes


async def test_close_failure_inside_loop_is_logged(runtime_log):
    cache = _RecordingCache(ConnectionError("connection reset"))
    task = runtime_module._close_cache(cache)

    await asyncio.gather(task, return_exceptions=True)
    await asyncio.sleep(0)

    assert task not in runtime_module._pending_cache_closes
    [entry] = [e for e in runtime_log if e["event"] == "runtime_cache_close_failed"]
    assert entry["error"] == "connection reset"
