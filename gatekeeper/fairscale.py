"""
FairScale reputation API client.

Provides:
- Live FairScore lookups with a per-request timeout
- Retry with exponential backoff (2s, 4s, 8s) for timeouts, 429 and 5xx
- A circuit breaker that fails fast while the provider is down
- Cache-aside lookups with tier-dependent TTLs
- Stale-cache fallback when the provider cannot answer

A score is never invented: if the provider fails and nothing is cached the
lookup raises ScoreUnavailableError. Substituting zero would deny access
because of an outage rather than a bad reputation.

Usage:
    async with FairScaleClient(api_url, api_key, cache=cache) as client:
        score = await client.score_for_with_cache(wallet)
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

from gatekeeper.cache import ScoreCache
from gatekeeper.errors import (
    ProviderError,
    RetryableProviderError,
    ScoreUnavailableError,
)
from gatekeeper.logging_config import mask_wallet
from gatekeeper.resilience import CircuitBreaker, CircuitBreakerConfig, RetryConfig, retry_with_backoff
from gatekeeper.tiers import tier_hint, ttl_for_score

logger = logging.getLogger(__name__)

PROVIDER_NAME = "fairscale"
DEFAULT_API_URL = "https://api.fairscale.xyz"
DEFAULT_TIMEOUT = 5.0
BATCH_SIZE = 10
BATCH_COOLDOWN = 1.0


@dataclass
class ScoreLookup:
    """Per-wallet result of a batch lookup."""
    wallet: str
    score: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_score(payload: Any) -> int:
    """Extract the numeric score from a FairScale response body."""
    if not isinstance(payload, dict):
        raise ProviderError("Malformed FairScale response", provider=PROVIDER_NAME)
    value = payload.get("fair_score", payload.get("score"))
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ProviderError("Malformed FairScale response: missing numeric score", provider=PROVIDER_NAME)
    return int(round(value))


class FairScaleClient:
    """Resilient async client for the FairScale score endpoint."""

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        api_key: str = "",
        cache: Optional[ScoreCache] = None,
        breaker: Optional[CircuitBreaker] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = DEFAULT_TIMEOUT,
        deadline: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Args:
            api_url: Base URL of the FairScale API
            api_key: Value for the `fairkey` header
            cache: Score cache used for cache-aside and failure fallback
            breaker: Circuit breaker for this provider (one is created if omitted)
            retry_config: Retry policy for retryable failures
            timeout: Per-request timeout in seconds
            deadline: Upper bound in seconds for a whole live fetch, retries included
            sleep: Backoff sleep, injectable for tests
            session: Existing aiohttp session to reuse
        """
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.cache = cache
        self.breaker = breaker or CircuitBreaker(PROVIDER_NAME, CircuitBreakerConfig())
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self.deadline = deadline
        self._sleep = sleep
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "FairScaleClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Live fetch
    # ------------------------------------------------------------------

    async def _request_score(self, wallet: str) -> int:
        """One HTTP round trip. Raises RetryableProviderError or ProviderError."""
        session = await self._get_session()
        url = f"{self.api_url}/fairScore"
        try:
            async with session.get(
                url,
                params={"wallet": wallet},
                headers={"fairkey": self.api_key or ""},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status == 429 or resp.status >= 500:
                    raise RetryableProviderError(
                        f"FairScale returned HTTP {resp.status}",
                        provider=PROVIDER_NAME,
                        status=resp.status,
                    )
                if resp.status >= 400:
                    raise ProviderError(
                        f"FairScale returned HTTP {resp.status}",
                        provider=PROVIDER_NAME,
                        status=resp.status,
                    )
                try:
                    payload = await resp.json(content_type=None)
                except ValueError as e:
                    raise ProviderError(f"Malformed FairScale response: {e}", provider=PROVIDER_NAME)
        except asyncio.TimeoutError:
            raise RetryableProviderError(
                f"FairScale request timed out after {self.timeout}s", provider=PROVIDER_NAME
            )
        except aiohttp.ClientError as e:
            raise RetryableProviderError(f"FairScale connection error: {e}", provider=PROVIDER_NAME)

        score = parse_score(payload)
        logger.info(f"FairScale API success for {mask_wallet(wallet)} (score={score})")
        return score

    async def _fetch_live(self, wallet: str) -> int:
        """Circuit breaker around retry-with-backoff around one request."""
        return await self.breaker.execute(
            retry_with_backoff,
            self._request_score,
            wallet,
            config=self.retry_config,
            sleep=self._sleep,
        )

    async def _live_or_fallback(self, wallet: str) -> Tuple[int, bool]:
        """Returns (score, live). live is False when a cached score stood in."""
        try:
            if self.deadline:
                score = await asyncio.wait_for(self._fetch_live(wallet), timeout=self.deadline)
            else:
                score = await self._fetch_live(wallet)
            return score, True
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.error(f"FairScale API error for {mask_wallet(wallet)}: {e}")

        cached = await self.cache.get_stale(wallet) if self.cache else None
        if cached is not None:
            logger.warning(
                f"Using cached FairScore for {mask_wallet(wallet)} due to API error (score={cached.score})"
            )
            return cached.score, False

        raise ScoreUnavailableError(
            "FairScale service unavailable. Please try again later.",
            provider=PROVIDER_NAME,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def score_for(self, wallet: str) -> int:
        """
        Live FairScore with stale-cache fallback.

        Raises:
            ScoreUnavailableError: Provider failed and nothing is cached
        """
        score, _ = await self._live_or_fallback(wallet)
        return score

    async def score_for_with_cache(self, wallet: str) -> int:
        """Cache-aside FairScore: a fresh cache entry skips the provider entirely."""
        if self.cache:
            cached = await self.cache.get(wallet)
            if cached is not None:
                return cached.score

        score, live = await self._live_or_fallback(wallet)
        if live and self.cache:
            await self.cache.set(wallet, score, ttl_for_score(score), tier_hint(score).value)
        return score

    async def batch_scores(
        self,
        wallets: List[str],
        batch_size: int = BATCH_SIZE,
        cooldown: float = BATCH_COOLDOWN,
    ) -> Dict[str, ScoreLookup]:
        """
        Look up many wallets, at most `batch_size` at a time, pausing between batches.

        Failed lookups are reported per wallet and never replaced by a default score.
        """
        results: Dict[str, ScoreLookup] = {}

        async def lookup(address: str) -> None:
            try:
                results[address] = ScoreLookup(address, score=await self.score_for_with_cache(address))
            except ProviderError as e:
                logger.error(f"Batch fetch error for {mask_wallet(address)}: {e}")
                results[address] = ScoreLookup(address, error=str(e))

        for i in range(0, len(wallets), batch_size):
            await asyncio.gather(*(lookup(w) for w in wallets[i:i + batch_size]))
            if i + batch_size < len(wallets):
                await self._sleep(cooldown)

        return results

    async def invalidate(self, wallet: str) -> None:
        if self.cache:
            await self.cache.delete(wallet)
            logger.info(f"FairScore cache invalidated for {mask_wallet(wallet)}")

    def circuit_breaker_status(self) -> Dict[str, Any]:
        """{"state": ..., "healthy": state != OPEN} for health checks."""
        return self.breaker.get_status()
