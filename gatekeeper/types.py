"""Type definitions for the gatekeeper data model."""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    NONE = "none"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class AuditAction(str, Enum):
    VERIFIED = "verified"
    REJECTED = "rejected"
    EVICTED = "evicted"
    PROMOTED = "promoted"
    DEMOTED = "demoted"
    UNCHANGED = "unchanged"


class AuditSource(str, Enum):
    CRON = "cron"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class TierThresholds:
    """Inclusive lower bounds per tier. Callers keep bronze <= silver <= gold."""
    bronze: int
    silver: int
    gold: int


@dataclass
class CommunityPolicy:
    """A gated community and its tier policy."""
    id: str
    chat_id: int
    name: str
    thresholds: TierThresholds
    auto_evict: bool = False


@dataclass
class Membership:
    """One participant's membership in one community."""
    community_id: str
    participant_id: int
    wallet_address: str
    score: int = 0
    tier: Tier = Tier.NONE
    last_checked: Optional[datetime] = None
    joined_at: Optional[datetime] = None
    username: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one lifecycle transition."""
    community_id: str
    participant_id: int
    action: AuditAction
    source: AuditSource
    old_score: Optional[int] = None
    new_score: Optional[int] = None
    old_tier: Optional[Tier] = None
    new_tier: Optional[Tier] = None
    details: str = ""
    membership_id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["action"] = self.action.value
        d["source"] = self.source.value
        d["old_tier"] = self.old_tier.value if self.old_tier else None
        d["new_tier"] = self.new_tier.value if self.new_tier else None
        d["created_at"] = self.created_at.isoformat()
        return d


@dataclass
class VerificationResult:
    """Result of a proof-of-ownership check."""
    valid: bool
    error: Optional[str] = None


@dataclass
class VerifyOutcome:
    """What the verification flow reports back to the caller."""
    success: bool
    score: Optional[int] = None
    tier: Optional[Tier] = None
    error: Optional[str] = None
    required: Optional[int] = None
    access_granted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"success": self.success, "access_granted": self.access_granted}
        if self.score is not None:
            d["score"] = self.score
        if self.tier is not None:
            d["tier"] = self.tier.value
        if self.error:
            d["error"] = self.error
        if self.required is not None:
            d["required"] = self.required
        return d


@dataclass
class MemberOutcome:
    """Per-member result of a re-check. Failures are values, not exceptions."""
    community_id: str
    participant_id: int
    ok: bool
    action: Optional[AuditAction] = None
    old_score: Optional[int] = None
    new_score: Optional[int] = None
    old_tier: Optional[Tier] = None
    new_tier: Optional[Tier] = None
    error: Optional[str] = None


@dataclass
class RecheckSummary:
    """Aggregate result of a bulk re-check."""
    total: int = 0
    checked: int = 0
    evicted: int = 0
    promoted: int = 0
    demoted: int = 0
    unchanged: int = 0
    failed: int = 0
    execution_time_ms: int = 0
    timestamp: str = ""

    def add(self, outcome: MemberOutcome) -> "RecheckSummary":
        if not outcome.ok:
            self.failed += 1
            return self
        self.checked += 1
        if outcome.action == AuditAction.EVICTED:
            self.evicted += 1
        elif outcome.action == AuditAction.PROMOTED:
            self.promoted += 1
        elif outcome.action == AuditAction.DEMOTED:
            self.demoted += 1
        else:
            self.unchanged += 1
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
