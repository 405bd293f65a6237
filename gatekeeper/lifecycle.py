"""
Membership lifecycle engine.

Two flows share one tier state machine:

verify
    Proof of ownership, then score, then tier, then persist and grant or
    deny access. Rejections come back as VerifyOutcome values with a
    distinct reason.

recheck_all / recheck_member
    Fetch a fresh score for existing members, persist the new score and
    tier, classify the transition (evicted, promoted, demoted, unchanged)
    and run its side effects. One member's failure never aborts the run:
    every member yields a MemberOutcome and the bulk run folds them into a
    RecheckSummary.

Side effects (grant, evict, notify, audit) are best-effort and logged.

Usage:
    engine = LifecycleEngine(
        verifier=SIWSVerifier(db.nonces),
        scores=FairScaleClient(api_url, api_key, cache=cache),
        communities=db.communities,
        memberships=db.memberships,
        access=TelegramAccessController.from_token(token),
        audit=AuditLogger(db.audit),
    )
    outcome = await engine.verify(wallet, message, signature, participant_id, "dao-alpha")
    summary = await engine.recheck_all()
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from gatekeeper.audit import AuditLogger
from gatekeeper.database.contracts import CommunityStore, MembershipStore
from gatekeeper.errors import ERROR_MESSAGES, NotFoundError, ScoreUnavailableError
from gatekeeper.fairscale import FairScaleClient
from gatekeeper.logging_config import CorrelationContext, mask_wallet
from gatekeeper.notifications import (
    AccessController,
    best_effort,
    demotion_message,
    promotion_message,
    rejection_message,
    removal_message,
    welcome_message,
)
from gatekeeper.siws import SIWSVerifier
from gatekeeper.tiers import calculate_tier
from gatekeeper.types import (
    AuditAction,
    AuditEntry,
    AuditSource,
    CommunityPolicy,
    MemberOutcome,
    Membership,
    RecheckSummary,
    Tier,
    VerifyOutcome,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 10
BATCH_COOLDOWN = 1.0


def classify_transition(
    old_score: int,
    old_tier: Tier,
    new_score: int,
    new_tier: Tier,
    auto_evict: bool,
) -> AuditAction:
    """
    Classify one re-check result.

    evicted   new tier is none and the community auto-evicts
    promoted  tier changed and the score went up
    demoted   tier changed and the score did not go up
    unchanged anything else
    """
    if new_tier == Tier.NONE and auto_evict:
        return AuditAction.EVICTED
    if new_tier != old_tier:
        return AuditAction.PROMOTED if new_score > old_score else AuditAction.DEMOTED
    return AuditAction.UNCHANGED


class LifecycleEngine:
    """Verification and tier re-check orchestration."""

    def __init__(
        self,
        verifier: SIWSVerifier,
        scores: FairScaleClient,
        communities: CommunityStore,
        memberships: MembershipStore,
        access: AccessController,
        audit: Optional[AuditLogger] = None,
        max_concurrency: int = 1,
        batch_cooldown: float = BATCH_COOLDOWN,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            verifier: SIWS proof-of-ownership verifier
            scores: Resilient FairScale client
            communities: Community policy store
            memberships: Membership store
            access: Grants, evicts and notifies participants
            audit: Audit sink; transitions are only logged when omitted
            max_concurrency: Members re-checked at once (1 means sequential, capped at 10)
            batch_cooldown: Pause between parallel batches in seconds
            clock: Timestamp source for last_checked
            sleep: Cooldown sleep, injectable for tests
        """
        self.verifier = verifier
        self.scores = scores
        self.communities = communities
        self.memberships = memberships
        self.access = access
        self.audit = audit
        self.max_concurrency = max(1, min(max_concurrency, MAX_BATCH_SIZE))
        self.batch_cooldown = batch_cooldown
        self._clock = clock
        self._sleep = sleep

    def _record(self, entry: AuditEntry) -> None:
        if self.audit is not None:
            self.audit.record(entry)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(
        self,
        wallet_address: str,
        message: str,
        signature: bytes,
        participant_id: int,
        community_id: str,
        username: Optional[str] = None,
    ) -> VerifyOutcome:
        """
        Verify a wallet for a community and grant or deny access.

        Persistence failures propagate as DatabaseError.
        """
        with CorrelationContext(participant_id=participant_id):
            logger.info(
                f"Verification request for {mask_wallet(wallet_address)} "
                f"(participant={participant_id}, community={community_id})"
            )

            community = self.communities.get(community_id)
            if community is None:
                logger.warning(f"Verification for unknown community {community_id}")
                return VerifyOutcome(success=False, error=ERROR_MESSAGES["COMMUNITY_NOT_FOUND"])

            result = self.verifier.verify(wallet_address, message, signature, participant_id)
            if not result.valid:
                return VerifyOutcome(success=False, error=result.error)

            try:
                score = await self.scores.score_for_with_cache(wallet_address)
            except ScoreUnavailableError as e:
                logger.error(f"No score available for {mask_wallet(wallet_address)}: {e}")
                return VerifyOutcome(success=False, error=ERROR_MESSAGES["SCORE_UNAVAILABLE"])

            tier = calculate_tier(score, community.thresholds)
            previous = self.memberships.get(community_id, participant_id)
            membership = self.memberships.upsert(Membership(
                community_id=community_id,
                participant_id=participant_id,
                wallet_address=wallet_address,
                username=username,
                score=score,
                tier=tier,
                last_checked=self._clock(),
            ))

            granted = tier != Tier.NONE
            self._record(AuditEntry(
                membership_id=membership.id,
                community_id=community_id,
                participant_id=participant_id,
                action=AuditAction.VERIFIED if granted else AuditAction.REJECTED,
                source=AuditSource.SYSTEM,
                old_score=previous.score if previous else None,
                new_score=score,
                old_tier=previous.tier if previous else None,
                new_tier=tier,
                details=f"Wallet verification: score {score}, tier {tier.value}",
            ))

            if granted:
                await best_effort(
                    self.access.grant_access(community.chat_id, participant_id), "grant access"
                )
                await best_effort(
                    self.access.notify(participant_id, welcome_message(score, tier)), "welcome notice"
                )
                logger.info(f"Access granted (tier={tier.value}, score={score})")
                return VerifyOutcome(success=True, score=score, tier=tier, access_granted=True)

            required = community.thresholds.bronze
            await best_effort(
                self.access.notify(participant_id, rejection_message(score, required)), "rejection notice"
            )
            logger.info(f"Access denied, score too low (score={score}, required={required})")
            return VerifyOutcome(
                success=False,
                score=score,
                tier=Tier.NONE,
                error=ERROR_MESSAGES["SCORE_TOO_LOW"],
                required=required,
            )

    # ------------------------------------------------------------------
    # Re-checks
    # ------------------------------------------------------------------

    async def _apply_side_effects(
        self,
        action: AuditAction,
        member: Membership,
        community: CommunityPolicy,
        new_score: int,
        new_tier: Tier,
    ) -> bool:
        """Returns False only when an eviction did not go through."""
        pid = member.participant_id
        if action == AuditAction.EVICTED:
            if not await best_effort(self.access.evict(community.chat_id, pid), "evict"):
                return False
            await best_effort(
                self.access.notify(pid, removal_message(community.name, new_score, community.thresholds.bronze)),
                "removal notice",
            )
            return True
        # Members coming up from tier none get no promotion notice
        if member.tier == Tier.NONE:
            return True
        if action == AuditAction.PROMOTED:
            await best_effort(
                self.access.notify(pid, promotion_message(member.tier, new_tier, new_score)), "promotion notice"
            )
        elif action == AuditAction.DEMOTED:
            await best_effort(
                self.access.notify(pid, demotion_message(member.tier, new_tier, new_score)), "demotion notice"
            )
        return True

    async def _transition(
        self,
        member: Membership,
        community: CommunityPolicy,
        source: AuditSource,
    ) -> MemberOutcome:
        """Fetch, persist, classify, audit and notify for one member. Raises on failure."""
        old_score, old_tier = member.score, member.tier

        new_score = await self.scores.score_for_with_cache(member.wallet_address)
        new_tier = calculate_tier(new_score, community.thresholds)
        self.memberships.update_score(member.id, new_score, new_tier, self._clock())

        action = classify_transition(old_score, old_tier, new_score, new_tier, community.auto_evict)
        applied = await self._apply_side_effects(action, member, community, new_score, new_tier)
        details = f"{source.value} re-check: {old_tier.value} -> {new_tier.value}"
        if not applied:
            details += " (eviction failed, membership kept for retry)"
        self._record(AuditEntry(
            membership_id=member.id,
            community_id=community.id,
            participant_id=member.participant_id,
            action=action,
            source=source,
            old_score=old_score,
            new_score=new_score,
            old_tier=old_tier,
            new_tier=new_tier,
            details=details,
        ))

        if not applied:
            logger.warning(
                f"Eviction of {member.participant_id} from {community.id} failed; "
                f"membership kept so the next re-check retries"
            )
            return MemberOutcome(
                community_id=community.id,
                participant_id=member.participant_id,
                ok=False,
                action=action,
                old_score=old_score,
                new_score=new_score,
                old_tier=old_tier,
                new_tier=new_tier,
                error="Eviction failed",
            )
        if action == AuditAction.EVICTED:
            self.memberships.delete(member.id)

        logger.info(
            f"Re-checked {member.participant_id} in {community.id}: {action.value} "
            f"({old_score}/{old_tier.value} -> {new_score}/{new_tier.value})"
        )
        return MemberOutcome(
            community_id=community.id,
            participant_id=member.participant_id,
            ok=True,
            action=action,
            old_score=old_score,
            new_score=new_score,
            old_tier=old_tier,
            new_tier=new_tier,
        )

    async def _recheck_one(self, member: Membership, community: CommunityPolicy) -> MemberOutcome:
        with CorrelationContext(participant_id=member.participant_id):
            try:
                return await self._transition(member, community, AuditSource.CRON)
            except Exception as e:
                logger.error(f"Error re-checking member {member.id} ({member.participant_id}): {e}")
                return MemberOutcome(
                    community_id=community.id,
                    participant_id=member.participant_id,
                    ok=False,
                    old_score=member.score,
                    old_tier=member.tier,
                    error=str(e),
                )

    async def _run(self, pairs: List[Tuple[Membership, CommunityPolicy]]) -> List[MemberOutcome]:
        if self.max_concurrency == 1:
            return [await self._recheck_one(m, c) for m, c in pairs]

        outcomes: List[MemberOutcome] = []
        size = self.max_concurrency
        for i in range(0, len(pairs), size):
            batch = pairs[i:i + size]
            outcomes.extend(await asyncio.gather(*(self._recheck_one(m, c) for m, c in batch)))
            if i + size < len(pairs):
                await self._sleep(self.batch_cooldown)
        return outcomes

    async def recheck_all(self) -> RecheckSummary:
        """
        Re-check every membership.

        Loading the membership list may raise; after that, per-member
        failures are counted in `failed` and never abort the run.
        """
        started = time.monotonic()
        with CorrelationContext():
            pairs = self.memberships.list_with_policies()
            summary = RecheckSummary(total=len(pairs))
            if not pairs:
                logger.info("No members to re-check")
            else:
                logger.info(f"Re-checking {len(pairs)} members (concurrency={self.max_concurrency})")
                for outcome in await self._run(pairs):
                    summary.add(outcome)

            summary.execution_time_ms = int((time.monotonic() - started) * 1000)
            summary.timestamp = self._clock().isoformat()
            logger.info(f"Re-check complete: {summary.to_dict()}")
            return summary

    async def recheck_member(
        self,
        community_id: str,
        participant_id: int,
        source: AuditSource = AuditSource.ADMIN,
    ) -> MemberOutcome:
        """
        Re-check one member on demand.

        Raises:
            NotFoundError: Unknown community or membership
            ScoreUnavailableError: No live or cached score
        """
        with CorrelationContext(participant_id=participant_id):
            community = self.communities.get(community_id)
            if community is None:
                raise NotFoundError(ERROR_MESSAGES["COMMUNITY_NOT_FOUND"], {"community_id": community_id})
            member = self.memberships.get(community_id, participant_id)
            if member is None:
                raise NotFoundError(
                    "Member not found",
                    {"community_id": community_id, "participant_id": participant_id},
                )
            logger.info(f"Re-checking single member {participant_id} in {community_id}")
            return await self._transition(member, community, source)

    def circuit_breaker_status(self) -> Dict[str, Any]:
        return self.scores.circuit_breaker_status()
