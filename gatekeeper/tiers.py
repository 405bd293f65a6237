"""Tier policy: map a FairScore onto a community's tier bands."""
from gatekeeper.types import Tier, TierThresholds

# Cache TTLs by score band (seconds). High-reputation wallets move slowly.
GOLD_BAND_TTL = 6 * 3600
SILVER_BAND_TTL = 3 * 3600
DEFAULT_TTL = 1 * 3600

GOLD_BAND_FLOOR = 700
SILVER_BAND_FLOOR = 500


def calculate_tier(score: int, thresholds: TierThresholds) -> Tier:
    """Highest band whose inclusive lower bound the score reaches."""
    if score >= thresholds.gold:
        return Tier.GOLD
    if score >= thresholds.silver:
        return Tier.SILVER
    if score >= thresholds.bronze:
        return Tier.BRONZE
    return Tier.NONE


def ttl_for_score(score: int) -> int:
    """Cache lifetime for a freshly fetched score."""
    if score >= GOLD_BAND_FLOOR:
        return GOLD_BAND_TTL
    if score >= SILVER_BAND_FLOOR:
        return SILVER_BAND_TTL
    return DEFAULT_TTL


def tier_hint(score: int) -> Tier:
    """Global tier label stored alongside cached scores."""
    return calculate_tier(score, TierThresholds(bronze=0, silver=SILVER_BAND_FLOOR, gold=GOLD_BAND_FLOOR))
