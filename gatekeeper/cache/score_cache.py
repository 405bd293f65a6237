"""
FairScore cache.

Two backends share one contract:
- RedisScoreCache: redis.asyncio, shared across processes
- MemoryScoreCache: thread-safe in-process LRU

Entries carry their own logical expiry. The stored copy is kept for a grace
window past that expiry so a stale score can still stand in for the provider
when it is down: get() returns only fresh entries, get_stale() returns any.
Backend errors are logged and treated as a miss.
"""
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, asdict
from threading import Lock
from typing import Callable, Optional, Protocol

import redis.asyncio as aioredis

from gatekeeper.logging_config import mask_wallet

logger = logging.getLogger(__name__)

KEY_PREFIX = "fairscore"
STALE_GRACE_SECONDS = 24 * 3600


@dataclass
class CachedScore:
    score: int
    cached_at: float
    expires_at: float
    tier: Optional[str] = None

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class ScoreCache(Protocol):
    async def get(self, wallet: str) -> Optional[CachedScore]: ...

    async def get_stale(self, wallet: str) -> Optional[CachedScore]: ...

    async def set(self, wallet: str, score: int, ttl: int, tier: Optional[str] = None) -> bool: ...

    async def delete(self, wallet: str) -> bool: ...

    async def ping(self) -> bool: ...


class RedisScoreCache:
    """Redis-based score cache with TTL support."""

    def __init__(
        self,
        url: str = "redis://localhost:6379",
        prefix: str = KEY_PREFIX,
        client=None,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url
        self.prefix = prefix
        self._client = client
        self._clock = clock

    async def _get_client(self):
        if self._client is None:
            self._client = aioredis.from_url(self.url, decode_responses=True)
        return self._client

    def _make_key(self, wallet: str) -> str:
        return f"{self.prefix}:{wallet}"

    async def _load(self, wallet: str) -> Optional[CachedScore]:
        client = await self._get_client()
        try:
            data = await client.get(self._make_key(wallet))
        except Exception as e:
            logger.error(f"Redis get error: {e}")
            return None
        if not data:
            return None
        try:
            return CachedScore(**json.loads(data))
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable cache entry for {mask_wallet(wallet)}: {e}")
            return None

    async def get(self, wallet: str) -> Optional[CachedScore]:
        entry = await self._load(wallet)
        if entry is None or not entry.is_fresh(self._clock()):
            return None
        logger.info(f"FairScore cache hit for {mask_wallet(wallet)}")
        return entry

    async def get_stale(self, wallet: str) -> Optional[CachedScore]:
        return await self._load(wallet)

    async def set(self, wallet: str, score: int, ttl: int, tier: Optional[str] = None) -> bool:
        client = await self._get_client()
        now = self._clock()
        entry = CachedScore(score=score, cached_at=now, expires_at=now + ttl, tier=tier)
        try:
            await client.setex(
                self._make_key(wallet),
                ttl + STALE_GRACE_SECONDS,
                json.dumps(asdict(entry)),
            )
        except Exception as e:
            logger.error(f"Redis set error: {e}")
            return False
        logger.info(f"FairScore cached for {mask_wallet(wallet)} (score={score}, ttl={ttl})")
        return True

    async def delete(self, wallet: str) -> bool:
        client = await self._get_client()
        try:
            await client.delete(self._make_key(wallet))
            return True
        except Exception as e:
            logger.error(f"Redis delete error: {e}")
            return False

    async def ping(self) -> bool:
        client = await self._get_client()
        try:
            return bool(await client.ping())
        except Exception:
            return False

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None


class MemoryScoreCache:
    """Thread-safe in-process LRU score cache."""

    def __init__(self, maxsize: int = 10000, clock: Callable[[], float] = time.time):
        self.maxsize = maxsize
        self._clock = clock
        self._entries: "OrderedDict[str, CachedScore]" = OrderedDict()
        self._lock = Lock()

    def _load(self, wallet: str) -> Optional[CachedScore]:
        with self._lock:
            entry = self._entries.get(wallet)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at + STALE_GRACE_SECONDS:
                del self._entries[wallet]
                return None
            self._entries.move_to_end(wallet)
            return entry

    async def get(self, wallet: str) -> Optional[CachedScore]:
        entry = self._load(wallet)
        if entry is None or not entry.is_fresh(self._clock()):
            return None
        return entry

    async def get_stale(self, wallet: str) -> Optional[CachedScore]:
        return self._load(wallet)

    async def set(self, wallet: str, score: int, ttl: int, tier: Optional[str] = None) -> bool:
        now = self._clock()
        with self._lock:
            if wallet in self._entries:
                self._entries.move_to_end(wallet)
            elif len(self._entries) >= self.maxsize:
                self._entries.popitem(last=False)
            self._entries[wallet] = CachedScore(score=score, cached_at=now, expires_at=now + ttl, tier=tier)
        return True

    async def delete(self, wallet: str) -> bool:
        with self._lock:
            return self._entries.pop(wallet, None) is not None

    async def ping(self) -> bool:
        return True

    def __len__(self):
        return len(self._entries)
