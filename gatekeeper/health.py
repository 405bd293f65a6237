"""
Health check - status of the score provider circuit, cache, database and Telegram.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from gatekeeper import __version__
from gatekeeper.cache import ScoreCache
from gatekeeper.fairscale import FairScaleClient

logger = logging.getLogger(__name__)

Check = Callable[[], Union[bool, Awaitable[bool]]]


class HealthStatus(str, Enum):
    """Health status levels."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    """Health status of a single component."""
    name: str
    healthy: bool
    message: str = ""
    latency_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthReport:
    status: HealthStatus
    version: str
    timestamp: str
    components: List[ComponentHealth]

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


async def _run_check(name: str, check: Check) -> ComponentHealth:
    start = time.monotonic()
    try:
        result = check()
        if asyncio.iscoroutine(result):
            result = await result
        healthy = bool(result)
        message = "connected" if healthy else "disconnected"
    except Exception as e:
        logger.warning(f"Health check {name} raised: {e}")
        healthy, message = False, str(e)
    return ComponentHealth(
        name=name,
        healthy=healthy,
        message=message,
        latency_ms=round((time.monotonic() - start) * 1000, 2),
    )


async def check_health(
    scores: FairScaleClient,
    cache: Optional[ScoreCache] = None,
    database: Optional[Check] = None,
    telegram: Optional[Check] = None,
) -> HealthReport:
    """
    Aggregate component health.

    The report is unhealthy when the database is down, degraded when any
    other component (open circuit, cache, Telegram) is down.
    """
    circuit = scores.circuit_breaker_status()
    components = [
        ComponentHealth(
            name="fairscale",
            healthy=circuit["healthy"],
            message=f"circuit {circuit['state']}",
            metadata=circuit,
        )
    ]

    checks: Dict[str, Check] = {}
    if cache is not None:
        checks["cache"] = cache.ping
    if database is not None:
        checks["database"] = database
    if telegram is not None:
        checks["telegram"] = telegram

    components.extend(await asyncio.gather(*(_run_check(n, c) for n, c in checks.items())))

    if any(c.name == "database" and not c.healthy for c in components):
        status = HealthStatus.UNHEALTHY
    elif all(c.healthy for c in components):
        status = HealthStatus.HEALTHY
    else:
        status = HealthStatus.DEGRADED

    report = HealthReport(
        status=status,
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        components=components,
    )
    log = logger.info if status == HealthStatus.HEALTHY else logger.warning
    log(f"Health check: {status.value}")
    return report
