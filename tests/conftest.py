"""
Gatekeeper Test Configuration

Shared fixtures: temporary SQLite databases, an in-memory score cache,
controllable clocks, real Ed25519 keys for SIWS messages and a recording
access controller.
"""

from datetime import datetime, timezone
from typing import List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest
from nacl.signing import SigningKey
from solders.pubkey import Pubkey

from gatekeeper.cache import MemoryScoreCache
from gatekeeper.database import Database
from gatekeeper.types import CommunityPolicy, TierThresholds


class FakeClock:
    """Monotonic-style clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.delays: List[float] = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)


class RecordingAccess:
    """AccessController that records every call."""

    def __init__(self):
        self.granted: List[Tuple[int, int]] = []
        self.evicted: List[Tuple[int, int]] = []
        self.notified: List[Tuple[int, str]] = []

    async def grant_access(self, chat_id: int, participant_id: int) -> None:
        self.granted.append((chat_id, participant_id))

    async def evict(self, chat_id: int, participant_id: int) -> None:
        self.evicted.append((chat_id, participant_id))

    async def notify(self, participant_id: int, text: str) -> None:
        self.notified.append((participant_id, text))


def build_siws_message(
    address: str,
    nonce: str = "abc123nonce",
    issued_at: Optional[datetime] = None,
    expiration_time: Optional[datetime] = None,
    not_before: Optional[datetime] = None,
    domain: str = "gatekeeper.example",
) -> str:
    issued_at = issued_at or datetime.now(timezone.utc)
    lines = [
        f"{domain} wants you to sign in with your Solana account:",
        address,
        "",
        "Verify wallet ownership to join the community.",
        "",
        f"URI: https://{domain}/verify",
        "Version: 1",
        "Chain ID: mainnet",
        f"Nonce: {nonce}",
        f"Issued At: {issued_at.isoformat().replace('+00:00', 'Z')}",
    ]
    if expiration_time is not None:
        lines.append(f"Expiration Time: {expiration_time.isoformat().replace('+00:00', 'Z')}")
    if not_before is not None:
        lines.append(f"Not Before: {not_before.isoformat().replace('+00:00', 'Z')}")
    return "\n".join(lines)


class Wallet:
    """A real Ed25519 keypair with its base58 Solana address."""

    def __init__(self):
        self.signing_key = SigningKey.generate()
        self.address = str(Pubkey.from_bytes(bytes(self.signing_key.verify_key)))

    def sign(self, message: str) -> bytes:
        return self.signing_key.sign(message.encode("utf-8")).signature


@pytest.fixture
def db(tmp_path) -> Database:
    return Database(tmp_path / "gatekeeper.db")


@pytest.fixture
def thresholds() -> TierThresholds:
    return TierThresholds(bronze=300, silver=500, gold=700)


@pytest.fixture
def community(db, thresholds) -> CommunityPolicy:
    policy = CommunityPolicy(
        id="dao-alpha",
        chat_id=-100123,
        name="DAO Alpha",
        thresholds=thresholds,
        auto_evict=True,
    )
    return db.communities.save(policy)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def memory_cache(clock) -> MemoryScoreCache:
    return MemoryScoreCache(clock=clock)


@pytest.fixture
def access() -> RecordingAccess:
    return RecordingAccess()


@pytest.fixture
def wallet() -> Wallet:
    return Wallet()


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now(now):
    return lambda: now


# Mock Redis client
@pytest.fixture
def mock_redis():
    redis = AsyncMock()
    redis.get.return_value = None
    redis.setex.return_value = True
    redis.delete.return_value = 1
    redis.ping.return_value = True
    return redis
