"""
Tests for the membership lifecycle engine.

Runs against a real SQLite database and in-memory cache; only the FairScale
HTTP round trip and Telegram are faked.
"""
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import RecordingSleep, build_siws_message
from gatekeeper.audit import AuditLogger
from gatekeeper.errors import ERROR_MESSAGES, NotFoundError, ProviderError, ScoreUnavailableError
from gatekeeper.fairscale import FairScaleClient
from gatekeeper.lifecycle import LifecycleEngine, classify_transition
from gatekeeper.resilience import CircuitBreaker
from gatekeeper.siws import SIWSVerifier
from gatekeeper.types import AuditAction, AuditSource, CommunityPolicy, Membership, Tier


def make_engine(db, cache, access, fixed_now, clock, scores=None, **kwargs):
    client = FairScaleClient(
        cache=cache,
        breaker=CircuitBreaker("fairscale", clock=clock),
        sleep=RecordingSleep(),
    )
    if scores is not None:
        client._request_score = scores
    return LifecycleEngine(
        verifier=SIWSVerifier(db.nonces, clock=fixed_now),
        scores=client,
        communities=db.communities,
        memberships=db.memberships,
        access=access,
        audit=AuditLogger(db.audit),
        clock=fixed_now,
        **kwargs,
    )


def scores_by_wallet(mapping):
    async def fetch(wallet):
        value = mapping[wallet]
        if isinstance(value, Exception):
            raise value
        return value
    return AsyncMock(side_effect=fetch)


def add_member(db, participant_id, wallet, score, tier, community_id="dao-alpha"):
    return db.memberships.upsert(Membership(
        community_id=community_id,
        participant_id=participant_id,
        wallet_address=wallet,
        score=score,
        tier=tier,
    ))


class TestClassifyTransition:

    @pytest.mark.parametrize("old_score,old_tier,new_score,new_tier,auto_evict,expected", [
        (400, Tier.BRONZE, 600, Tier.SILVER, True, AuditAction.PROMOTED),
        (600, Tier.SILVER, 400, Tier.BRONZE, True, AuditAction.DEMOTED),
        (400, Tier.BRONZE, 100, Tier.NONE, True, AuditAction.EVICTED),
        (400, Tier.BRONZE, 100, Tier.NONE, False, AuditAction.DEMOTED),
        (100, Tier.NONE, 50, Tier.NONE, False, AuditAction.UNCHANGED),
        (550, Tier.SILVER, 560, Tier.SILVER, True, AuditAction.UNCHANGED),
        (500, Tier.BRONZE, 500, Tier.SILVER, True, AuditAction.DEMOTED),
    ])
    def test_rules(self, old_score, old_tier, new_score, new_tier, auto_evict, expected):
        assert classify_transition(old_score, old_tier, new_score, new_tier, auto_evict) == expected


class TestVerify:

    @pytest.mark.asyncio
    async def test_grants_access_above_bronze(self, db, community, memory_cache, access, fixed_now, clock, wallet, now):
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=AsyncMock(return_value=620))
        message = build_siws_message(wallet.address, issued_at=now)

        outcome = await engine.verify(wallet.address, message, wallet.sign(message), 555, "dao-alpha")

        assert outcome.success is True
        assert outcome.score == 620
        assert outcome.tier == Tier.SILVER
        assert access.granted == [(community.chat_id, 555)]
        assert len(access.notified) == 1
        member = db.memberships.get("dao-alpha", 555)
        assert member.tier == Tier.SILVER
        assert member.wallet_address == wallet.address
        assert db.audit.list_for_participant("dao-alpha", 555)[0].action == AuditAction.VERIFIED

    @pytest.mark.asyncio
    async def test_score_too_low_reports_required(self, db, community, memory_cache, access, fixed_now, clock, wallet, now):
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=AsyncMock(return_value=120))
        message = build_siws_message(wallet.address, issued_at=now)

        outcome = await engine.verify(wallet.address, message, wallet.sign(message), 555, "dao-alpha")

        assert outcome.success is False
        assert outcome.error == ERROR_MESSAGES["SCORE_TOO_LOW"]
        assert outcome.required == 300
        assert outcome.tier == Tier.NONE
        assert access.granted == []
        assert "300+" in access.notified[0][1]
        assert db.audit.list_for_participant("dao-alpha", 555)[0].action == AuditAction.REJECTED

    @pytest.mark.asyncio
    async def test_failed_proof_skips_score_fetch(self, db, community, memory_cache, access, fixed_now, clock, wallet, now):
        fetch = AsyncMock(return_value=900)
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=fetch)
        message = build_siws_message(wallet.address, issued_at=now - timedelta(minutes=30))

        outcome = await engine.verify(wallet.address, message, wallet.sign(message), 555, "dao-alpha")

        assert outcome.error == ERROR_MESSAGES["EXPIRED"]
        fetch.assert_not_awaited()
        assert db.memberships.get("dao-alpha", 555) is None

    @pytest.mark.asyncio
    async def test_unknown_community(self, db, memory_cache, access, fixed_now, clock, wallet, now):
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=AsyncMock(return_value=900))
        message = build_siws_message(wallet.address, issued_at=now)

        outcome = await engine.verify(wallet.address, message, wallet.sign(message), 555, "nope")

        assert outcome.error == ERROR_MESSAGES["COMMUNITY_NOT_FOUND"]

    @pytest.mark.asyncio
    async def test_provider_outage_without_cache(self, db, community, memory_cache, access, fixed_now, clock, wallet, now):
        engine = make_engine(
            db, memory_cache, access, fixed_now, clock,
            scores=AsyncMock(side_effect=ProviderError("HTTP 400")),
        )
        message = build_siws_message(wallet.address, issued_at=now)

        outcome = await engine.verify(wallet.address, message, wallet.sign(message), 555, "dao-alpha")

        assert outcome.success is False
        assert outcome.error == ERROR_MESSAGES["SCORE_UNAVAILABLE"]
        assert db.memberships.get("dao-alpha", 555) is None
        assert access.notified == []

    @pytest.mark.asyncio
    async def test_telegram_failure_does_not_fail_verification(self, db, community, memory_cache, fixed_now, clock, wallet, now):
        access = MagicMock()
        access.grant_access = AsyncMock(side_effect=RuntimeError("Forbidden: bot is not an admin"))
        access.notify = AsyncMock(side_effect=RuntimeError("chat not found"))
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=AsyncMock(return_value=720))
        message = build_siws_message(wallet.address, issued_at=now)

        outcome = await engine.verify(wallet.address, message, wallet.sign(message), 555, "dao-alpha")

        assert outcome.success is True
        assert outcome.tier == Tier.GOLD


class TestRecheckAll:

    @pytest.mark.asyncio
    async def test_promotion(self, db, community, memory_cache, access, fixed_now, clock):
        add_member(db, 1, "wallet-one", 400, Tier.BRONZE)
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=scores_by_wallet({"wallet-one": 600}))

        summary = await engine.recheck_all()

        assert summary.total == 1
        assert summary.checked == 1
        assert summary.promoted == 1
        member = db.memberships.get("dao-alpha", 1)
        assert (member.score, member.tier) == (600, Tier.SILVER)
        entry = db.audit.list_for_participant("dao-alpha", 1)[0]
        assert entry.action == AuditAction.PROMOTED
        assert entry.source == AuditSource.CRON
        assert (entry.old_score, entry.new_score) == (400, 600)
        assert (entry.old_tier, entry.new_tier) == (Tier.BRONZE, Tier.SILVER)
        assert len(access.notified) == 1
        assert "Tier Promotion" in access.notified[0][1]

    @pytest.mark.asyncio
    async def test_eviction(self, db, community, memory_cache, access, fixed_now, clock):
        add_member(db, 1, "wallet-one", 400, Tier.BRONZE)
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=scores_by_wallet({"wallet-one": 100}))

        summary = await engine.recheck_all()

        assert summary.evicted == 1
        assert access.evicted == [(community.chat_id, 1)]
        assert len(access.notified) == 1
        assert access.notified[0][0] == 1
        assert "Removed from Group" in access.notified[0][1]
        assert db.memberships.get("dao-alpha", 1) is None
        assert db.audit.list_for_participant("dao-alpha", 1)[0].action == AuditAction.EVICTED

    @pytest.mark.asyncio
    async def test_failed_eviction_keeps_membership(self, db, community, memory_cache, access, fixed_now, clock):
        add_member(db, 1, "wallet-one", 400, Tier.BRONZE)
        access.evict = AsyncMock(side_effect=RuntimeError("Forbidden: bot is not an admin"))
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=scores_by_wallet({"wallet-one": 100}))

        summary = await engine.recheck_all()

        assert summary.evicted == 0
        assert summary.failed == 1
        assert access.notified == []
        member = db.memberships.get("dao-alpha", 1)
        assert member is not None
        # The new score is still stored so the next run classifies it as an eviction again
        assert (member.score, member.tier) == (100, Tier.NONE)
        entry = db.audit.list_for_participant("dao-alpha", 1)[0]
        assert "eviction failed" in entry.details

    @pytest.mark.asyncio
    async def test_failed_eviction_retried_next_run(self, db, community, memory_cache, access, fixed_now, clock):
        add_member(db, 1, "wallet-one", 400, Tier.BRONZE)
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=scores_by_wallet({"wallet-one": 100}))
        real_evict = access.evict
        access.evict = AsyncMock(side_effect=RuntimeError("Forbidden"))
        await engine.recheck_all()

        access.evict = real_evict
        summary = await engine.recheck_all()

        assert summary.evicted == 1
        assert access.evicted == [(community.chat_id, 1)]
        assert db.memberships.get("dao-alpha", 1) is None

    @pytest.mark.asyncio
    async def test_unchanged_is_silent(self, db, community, memory_cache, access, fixed_now, clock):
        add_member(db, 1, "wallet-one", 550, Tier.SILVER)
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=scores_by_wallet({"wallet-one": 560}))

        summary = await engine.recheck_all()

        assert summary.unchanged == 1
        assert access.notified == []
        assert db.memberships.get("dao-alpha", 1).score == 560

    @pytest.mark.asyncio
    async def test_demotion_notice(self, db, community, memory_cache, access, fixed_now, clock):
        add_member(db, 1, "wallet-one", 750, Tier.GOLD)
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=scores_by_wallet({"wallet-one": 520}))

        summary = await engine.recheck_all()

        assert summary.demoted == 1
        assert "Tier Change" in access.notified[0][1]

    @pytest.mark.asyncio
    async def test_rise_from_none_is_silent(self, db, thresholds, memory_cache, access, fixed_now, clock):
        db.communities.save(CommunityPolicy(
            id="dao-alpha", chat_id=-1, name="No Evict", thresholds=thresholds, auto_evict=False,
        ))
        add_member(db, 1, "wallet-one", 100, Tier.NONE)
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=scores_by_wallet({"wallet-one": 450}))

        summary = await engine.recheck_all()

        assert summary.promoted == 1
        assert access.notified == []

    @pytest.mark.asyncio
    async def test_empty_membership_set(self, db, memory_cache, access, fixed_now, clock):
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=AsyncMock())

        summary = await engine.recheck_all()

        assert summary.to_dict() | {"execution_time_ms": 0, "timestamp": ""} == {
            "total": 0, "checked": 0, "evicted": 0, "promoted": 0, "demoted": 0,
            "unchanged": 0, "failed": 0, "execution_time_ms": 0, "timestamp": "",
        }

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_run(self, db, community, memory_cache, access, fixed_now, clock):
        add_member(db, 1, "wallet-one", 400, Tier.BRONZE)
        add_member(db, 2, "wallet-two", 400, Tier.BRONZE)
        add_member(db, 3, "wallet-three", 550, Tier.SILVER)
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=scores_by_wallet({
            "wallet-one": 600,
            "wallet-two": ProviderError("HTTP 404"),
            "wallet-three": 560,
        }))

        summary = await engine.recheck_all()

        assert summary.total == 3
        assert summary.checked == 2
        assert summary.failed == 1
        assert summary.promoted == 1
        assert summary.unchanged == 1
        # Failed member keeps the old score rather than a substituted zero
        assert db.memberships.get("dao-alpha", 2).score == 400

    @pytest.mark.asyncio
    async def test_stale_cache_keeps_member_checked(self, db, community, memory_cache, access, fixed_now, clock):
        add_member(db, 1, "wallet-one", 400, Tier.BRONZE)
        await memory_cache.set("wallet-one", 410, ttl=60)
        clock.advance(120)
        engine = make_engine(
            db, memory_cache, access, fixed_now, clock,
            scores=AsyncMock(side_effect=ProviderError("HTTP 401")),
        )

        summary = await engine.recheck_all()

        assert summary.unchanged == 1
        assert db.memberships.get("dao-alpha", 1).score == 410

    @pytest.mark.asyncio
    async def test_parallel_batches_with_cooldown(self, db, community, memory_cache, access, fixed_now, clock):
        wallets = {}
        for pid in range(1, 13):
            add_member(db, pid, f"wallet-{pid}", 550, Tier.SILVER)
            wallets[f"wallet-{pid}"] = 560
        cooldown = RecordingSleep()
        engine = make_engine(
            db, memory_cache, access, fixed_now, clock,
            scores=scores_by_wallet(wallets),
            max_concurrency=5,
            batch_cooldown=0.5,
            sleep=cooldown,
        )

        summary = await engine.recheck_all()

        assert summary.unchanged == 12
        assert cooldown.delays == [0.5, 0.5]

    def test_concurrency_is_capped(self, db, memory_cache, access, fixed_now, clock):
        engine = make_engine(db, memory_cache, access, fixed_now, clock, max_concurrency=50)
        assert engine.max_concurrency == 10


class TestRecheckMember:

    @pytest.mark.asyncio
    async def test_admin_recheck(self, db, community, memory_cache, access, fixed_now, clock):
        add_member(db, 1, "wallet-one", 400, Tier.BRONZE)
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=scores_by_wallet({"wallet-one": 720}))

        outcome = await engine.recheck_member("dao-alpha", 1)

        assert outcome.ok is True
        assert outcome.action == AuditAction.PROMOTED
        assert outcome.new_tier == Tier.GOLD
        assert db.audit.list_for_participant("dao-alpha", 1)[0].source == AuditSource.ADMIN

    @pytest.mark.asyncio
    async def test_unknown_member(self, db, community, memory_cache, access, fixed_now, clock):
        engine = make_engine(db, memory_cache, access, fixed_now, clock, scores=AsyncMock())

        with pytest.raises(NotFoundError):
            await engine.recheck_member("dao-alpha", 999)

    @pytest.mark.asyncio
    async def test_score_unavailable_propagates(self, db, community, memory_cache, access, fixed_now, clock):
        add_member(db, 1, "wallet-one", 400, Tier.BRONZE)
        engine = make_engine(
            db, memory_cache, access, fixed_now, clock,
            scores=AsyncMock(side_effect=ProviderError("HTTP 400")),
        )

        with pytest.raises(ScoreUnavailableError):
            await engine.recheck_member("dao-alpha", 1)


class TestCircuitStatus:

    def test_delegates_to_client(self, db, memory_cache, access, fixed_now, clock):
        engine = make_engine(db, memory_cache, access, fixed_now, clock)
        assert engine.circuit_breaker_status() == {"state": "CLOSED", "healthy": True}
