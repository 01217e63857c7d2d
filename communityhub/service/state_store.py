"""Short-lived OAuth state storage.

A state token is written when a login starts and consumed exactly once when
the provider redirects back. Entries older than the TTL are treated as absent
and evicted on read; a periodic sweep removes orphans whose callback never
arrived.

``InMemoryStateStore`` is process-local and therefore unsafe behind more than
one worker; ``RedisStateStore`` externalises the map for horizontally scaled
deployments.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from communityhub.logging import get_logger
from communityhub.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Clock = Callable[[], float]

DEFAULT_STATE_TTL_SECONDS = 10 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60


@dataclass(frozen=True)
class OAuthState:
    nonce: str
    created_at: float
    return_to: str = "/"

    def to_payload(self) -> Dict[str, Any]:
        return {"nonce": self.nonce, "created_at": self.created_at, "return_to": self.return_to}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> Optional["OAuthState"]:
        try:
            return cls(
                nonce=str(payload["nonce"]),
                created_at=float(payload["created_at"]),
                return_to=str(payload.get("return_to") or "/"),
            )
        except (KeyError, TypeError, ValueError):
            return None


class StateStore(Protocol):
    ttl_seconds: int

    async def put(self, state: str, data: OAuthState) -> None: ...

    async def get(self, state: str) -> Optional[OAuthState]: ...

    async def delete(self, state: str) -> None: ...

    async def pop(self, state: str) -> Optional[OAuthState]: ...

    async def sweep(self) -> int: ...


class InMemoryStateStore:
    """Process-local state map guarded by a lock."""

    backend = "memory"

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
        *,
        sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[str, OAuthState] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expired(self, data: OAuthState, now: float) -> bool:
        return now - data.created_at > self.ttl_seconds

    async def put(self, state: str, data: OAuthState) -> None:
        with self._lock:
            self._entries[state] = data
        self.maybe_cleanup()

    async def get(self, state: str) -> Optional[OAuthState]:
        with self._lock:
            data = self._entries.get(state)
            if data is None:
                return None
            if self._expired(data, self._clock()):
                del self._entries[state]
                return None
            return data

    async def delete(self, state: str) -> None:
        with self._lock:
            self._entries.pop(state, None)

    async def pop(self, state: str) -> Optional[OAuthState]:
        with self._lock:
            data = self._entries.pop(state, None)
        if data is None or self._expired(data, self._clock()):
            return None
        return data

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, data in self._entries.items() if self._expired(data, now)]
            for key in expired:
                del self._entries[key]
            self._last_sweep = now
        if expired:
            logger.debug("oauth_state_sweep", removed=len(expired))
        return len(expired)

    def maybe_cleanup(self) -> int:
        """Sweep only when the interval has elapsed since the last sweep."""
        if self._clock() - self._last_sweep >= self.sweep_interval_seconds:
            return self.cleanup_expired()
        return 0

    async def sweep(self) -> int:
        return self.cleanup_expired()


class RedisStateStore:
    """State map kept in Redis; keys carry a native TTL."""

    backend = "redis"

    def __init__(
        self,
        cache: RedisCache | SyncRedisCache,
        ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
        *,
        clock: Clock = time.time,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _live(self, payload: Optional[Dict[str, Any]]) -> Optional[OAuthState]:
        if payload is None:
            return None
        data = OAuthState.from_payload(payload)
        # Redis TTL is authoritative, this guards against clock drift on writers
        if data is None or self._clock() - data.created_at > self.ttl_seconds:
            return None
        return data

    async def put(self, state: str, data: OAuthState) -> None:
        await self.cache.set_oauth_state(state, data.to_payload(), self.ttl_seconds)

    async def get(self, state: str) -> Optional[OAuthState]:
        payload = await self.cache.get_oauth_state(state)
        data = self._live(payload)
        if payload is not None and data is None:
            await self.cache.delete_oauth_state(state)
        return data

    async def delete(self, state: str) -> None:
        await self.cache.delete_oauth_state(state)

    async def pop(self, state: str) -> Optional[OAuthState]:
        return self._live(await self.cache.pop_oauth_state(state))

    async def sweep(self) -> int:
        return 0


__all__ = [
    "OAuthState",
    "StateStore",
    "InMemoryStateStore",
    "RedisStateStore",
    "DEFAULT_STATE_TTL_SECONDS",
]
