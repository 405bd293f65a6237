"""
Wires settings into a ready-to-use LifecycleEngine.

Usage:
    settings = load_settings()
    services = build_services(settings)
    try:
        summary = await services.engine.recheck_all()
    finally:
        await services.close()
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from gatekeeper.audit import AuditLogger
from gatekeeper.cache import RedisScoreCache, ScoreCache
from gatekeeper.config import Settings
from gatekeeper.database import Database
from gatekeeper.fairscale import FairScaleClient
from gatekeeper.health import HealthReport, check_health
from gatekeeper.lifecycle import LifecycleEngine
from gatekeeper.notifications import LogOnlyAccessController, TelegramAccessController
from gatekeeper.resilience import CircuitBreaker, CircuitBreakerConfig
from gatekeeper.siws import SIWSVerifier

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    database: Database
    cache: ScoreCache
    scores: FairScaleClient
    access: Union[TelegramAccessController, LogOnlyAccessController]
    engine: LifecycleEngine

    async def start(self) -> None:
        if isinstance(self.access, TelegramAccessController):
            await self.access.start()

    async def health(self) -> HealthReport:
        telegram = self.access.ping if isinstance(self.access, TelegramAccessController) else None
        return await check_health(
            self.scores,
            cache=self.cache,
            database=self.database.ping,
            telegram=telegram,
        )

    async def close(self) -> None:
        await self.scores.close()
        close_cache = getattr(self.cache, "close", None)
        if close_cache is not None:
            await close_cache()
        if isinstance(self.access, TelegramAccessController):
            await self.access.close()


def build_services(settings: Settings, cache: Optional[ScoreCache] = None) -> Services:
    """Construct every collaborator from settings. No network I/O happens here."""
    database = Database(settings.database_path)
    cache = cache if cache is not None else RedisScoreCache(settings.redis_url)
    scores = FairScaleClient(
        api_url=settings.fairscale_api_url,
        api_key=settings.fairscale_api_key,
        cache=cache,
        breaker=CircuitBreaker("fairscale", CircuitBreakerConfig()),
        deadline=settings.score_deadline_seconds,
    )

    if settings.telegram_bot_token:
        access = TelegramAccessController.from_token(settings.telegram_bot_token)
    else:
        logger.warning("TELEGRAM_BOT_TOKEN is not set; access changes and notifications are log-only")
        access = LogOnlyAccessController()

    engine = LifecycleEngine(
        verifier=SIWSVerifier(database.nonces),
        scores=scores,
        communities=database.communities,
        memberships=database.memberships,
        access=access,
        audit=AuditLogger(database.audit),
        max_concurrency=settings.recheck_concurrency,
    )
    return Services(
        settings=settings,
        database=database,
        cache=cache,
        scores=scores,
        access=access,
        engine=engine,
    )
