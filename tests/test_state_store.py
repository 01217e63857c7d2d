"""Tests for the in-process OAuth state store."""

import asyncio

import pytest

from communityhub.service.state_store import InMemoryStateStore, OAuthState

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStateStore(600, sweep_interval_seconds=300, clock=clock)


async def test_put_then_get_returns_entry(store):
    data = OAuthState(nonce="n-1", created_at=T0, return_to="/posts")
    await store.put("s-1", data)
    assert await store.get("s-1") == data


async def test_entry_older_than_ttl_is_absent_and_evicted(store, clock):
    await store.put("s-1", OAuthState(nonce="n-1", created_at=T0))
    clock.now = T0 + 11 * 60
    assert await store.get("s-1") is None
    assert len(store) == 0


async def test_entry_at_ttl_boundary_is_still_live(store, clock):
    await store.put("s-1", OAuthState(nonce="n-1", created_at=T0))
    clock.now = T0 + 10 * 60
    assert await store.get("s-1") is not None


async def test_pop_is_single_use(store):
    await store.put("s-1", OAuthState(nonce="n-1", created_at=T0))
    first = await store.pop("s-1")
    assert first is not None and first.nonce == "n-1"
    assert await store.pop("s-1") is None
    assert await store.get("s-1") is None


async def test_pop_of_expired_entry_fails_closed(store, clock):
    await store.put("s-1", OAuthState(nonce="n-1", created_at=T0))
    clock.now = T0 + 11 * 60
    assert await store.pop("s-1") is None
    assert len(store) == 0


async def test_delete_removes_entry(store):
    await store.put("s-1", OAuthState(nonce="n-1", created_at=T0))
    await store.delete("s-1")
    assert await store.get("s-1") is None
    # deleting an unknown key is a no-op
    await store.delete("missing")


async def test_sweep_removes_only_expired_entries(store, clock):
    await store.put("old", OAuthState(nonce="n-old", created_at=T0))
    clock.now = T0 + 8 * 60
    await store.put("fresh", OAuthState(nonce="n-fresh", created_at=clock.now))
    clock.now = T0 + 11 * 60

    removed = await store.sweep()

    assert removed == 1
    assert await store.get("fresh") is not None
    assert len(store) == 1


async def test_put_triggers_sweep_once_interval_elapsed(store, clock):
    await store.put("orphan", OAuthState(nonce="n", created_at=T0))
    clock.now = T0 + 11 * 60
    await store.put("new", OAuthState(nonce="n2", created_at=clock.now))
    # the orphan was swept by the put without anyone reading it
    assert len(store) == 1


def test_maybe_cleanup_waits_for_interval(store, clock):
    assert store.maybe_cleanup() == 0
    clock.now = T0 + 100
    assert store.maybe_cleanup() == 0


async def test_concurrent_logins_use_independent_entries(store):
    await asyncio.gather(
        *(store.put(f"s-{i}", OAuthState(nonce=f"n-{i}", created_at=T0)) for i in range(50))
    )
    assert len(store) == 50
    popped = await asyncio.gather(*(store.pop(f"s-{i}") for i in range(50)))
    assert [p.nonce for p in popped] == [f"n-{i}" for i in range(50)]


def test_oauth_state_payload_round_trip():
    data = OAuthState(nonce="n", created_at=T0, return_to="/communities/gaming")
    assert OAuthState.from_payload(data.to_payload()) == data


@pytest.mark.parametrize(
    "payload",
    [{}, {"nonce": "n"}, {"nonce": "n", "created_at": "not-a-number"}, {"created_at": T0}],
)
def test_oauth_state_from_bad_payload_is_none(payload):
    assert OAuthState.from_payload(payload) is None
