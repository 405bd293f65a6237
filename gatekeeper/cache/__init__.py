"""FairScore caching with tier-dependent TTLs and a stale fallback window."""

from .score_cache import (
    CachedScore,
    MemoryScoreCache,
    RedisScoreCache,
    ScoreCache,
    STALE_GRACE_SECONDS,
)

__all__ = [
    "CachedScore",
    "MemoryScoreCache",
    "RedisScoreCache",
    "ScoreCache",
    "STALE_GRACE_SECONDS",
]
