"""
Gatekeeper - reputation-gated community access.

Verifies Solana wallet ownership via signed Sign-In-With-Solana messages,
looks up the wallet's FairScore reputation, derives a membership tier from
per-community thresholds and keeps tiers synchronized over time.

Entry points:
    from gatekeeper.bootstrap import build_services

    engine = build_services(settings).engine
    outcome = await engine.verify(wallet, message, signature, participant_id, community_id)
    summary = await engine.recheck_all()
"""

__version__ = "1.0.0"
