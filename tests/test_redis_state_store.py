import json

from redis.exceptions import ResponseError

from communityhub.service.state_store import OAuthState, RedisStateStore
from communityhub.storage.redis_cache import SyncRedisCache

T0 = 1_700_000_000.0


class FakeRedis:
    """Dict-backed stand-in for the handful of commands the cache issues."""

    def __init__(self, *, supports_getdel: bool = True):
        self.data = {}
        self.ttls = {}
        self.supports_getdel = supports_getdel
        self.eval_calls = 0

    def ping(self):
        return True

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex
        return True

    def get(self, key):
        return self.data.get(key)

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    def getdel(self, key):
        if not self.supports_getdel:
            raise ResponseError("unknown command 'GETDEL'")
        return self.data.pop(key, None)

    def eval(self, script, numkeys, key):
        self.eval_calls += 1
        return self.data.pop(key, None)

    def close(self):
        pass


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _store(fake: FakeRedis, clock: FakeClock) -> RedisStateStore:
    return RedisStateStore(SyncRedisCache("redis://fake", client=fake), 600, clock=clock)


async def test_put_sets_native_ttl_under_prefix():
    fake = FakeRedis()
    store = _store(fake, FakeClock())
    await store.put("abc", OAuthState(nonce="n", created_at=T0, return_to="/x"))

    assert fake.ttls == {"auth:oauth:abc": 600}
    assert json.loads(fake.data["auth:oauth:abc"]) == {
        "nonce": "n",
        "created_at": T0,
        "return_to": "/x",
    }


async def test_pop_is_single_use():
    fake = FakeRedis()
    store = _store(fake, FakeClock())
    await store.put("abc", OAuthState(nonce="n", created_at=T0))

    assert (await store.pop("abc")).nonce == "n"
    assert await store.pop("abc") is None


async def test_pop_falls_back_to_script_without_getdel():
    fake = FakeRedis(supports_getdel=False)
    store = _store(fake, FakeClock())
    await store.put("abc", OAuthState(nonce="n", created_at=T0))

    assert (await store.pop("abc")).nonce == "n"
    assert fake.eval_calls == 1
    assert "auth:oauth:abc" not in fake.data


async def test_stale_entry_is_dropped_on_read():
    fake = FakeRedis()
    clock = FakeClock()
    store = _store(fake, clock)
    await store.put("abc", OAuthState(nonce="n", created_at=T0))
    clock.now = T0 + 11 * 60

    assert await store.get("abc") is None
    assert fake.data == {}


async def test_corrupt_payload_is_absent():
    fake = FakeRedis()
    fake.data["auth:oauth:abc"] = "{not json"
    store = _store(fake, FakeClock())
    assert await store.pop("abc") is None


async def test_delete_and_sweep():
    fake = FakeRedis()
    store = _store(fake, FakeClock())
    await store.put("abc", OAuthState(nonce="n", created_at=T0))
    await store.delete("abc")
    assert fake.data == {}
    # Redis expires keys itself
    assert await store.sweep() == 0
