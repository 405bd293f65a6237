"""
Command line entry point.

    gatekeeper recheck                        re-check every member (cron)
    gatekeeper recheck-member COMMUNITY USER  re-check one member (admin)
    gatekeeper health                         component health report
    gatekeeper prune-nonces [--hours N]       drop used nonces past retention

Output is JSON on stdout. Exit status is non-zero on failure.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from typing import List, Optional

from gatekeeper.bootstrap import Services, build_services
from gatekeeper.config import load_settings
from gatekeeper.database import Database
from gatekeeper.errors import GatekeeperError, ValidationError
from gatekeeper.health import HealthStatus
from gatekeeper.logging_config import setup_logging
from gatekeeper.types import utcnow

logger = logging.getLogger(__name__)


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _recheck(services: Services, args) -> int:
    summary = await services.engine.recheck_all()
    _emit(summary.to_dict())
    return 0 if summary.failed == 0 else 1


async def _recheck_member(services: Services, args) -> int:
    outcome = await services.engine.recheck_member(args.community_id, args.participant_id)
    _emit({
        "community_id": outcome.community_id,
        "participant_id": outcome.participant_id,
        "action": outcome.action.value if outcome.action else None,
        "old_score": outcome.old_score,
        "new_score": outcome.new_score,
        "old_tier": outcome.old_tier.value if outcome.old_tier else None,
        "new_tier": outcome.new_tier.value if outcome.new_tier else None,
    })
    return 0


async def _health(services: Services, args) -> int:
    report = await services.health()
    _emit(report.to_dict())
    return 0 if report.status == HealthStatus.HEALTHY else 1


async def _run(command, settings, args) -> int:
    services = build_services(settings)
    try:
        await services.start()
        return await command(services, args)
    finally:
        await services.close()


def cmd_prune_nonces(settings, args) -> int:
    hours = args.hours if args.hours is not None else settings.nonce_retention_hours
    if hours < 1:
        raise ValidationError("Retention must be at least 1 hour", {"hours": hours})
    cutoff = utcnow() - timedelta(hours=hours)
    removed = Database(settings.database_path).nonces.prune_older_than(cutoff)
    _emit({"removed": removed, "cutoff": cutoff.isoformat()})
    return 0


ASYNC_COMMANDS = {
    "recheck": _recheck,
    "recheck-member": _recheck_member,
    "health": _health,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gatekeeper")
    parser.add_argument("--env-file", default=None)
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("recheck")

    member_parser = subparsers.add_parser("recheck-member")
    member_parser.add_argument("community_id")
    member_parser.add_argument("participant_id", type=int)

    subparsers.add_parser("health")

    prune_parser = subparsers.add_parser("prune-nonces")
    prune_parser.add_argument("--hours", type=int, default=None)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env_file)
        setup_logging(
            settings.log_level,
            json_format=settings.log_format == "json",
            stream=sys.stderr,
        )

        if args.command == "prune-nonces":
            return cmd_prune_nonces(settings, args)
        return asyncio.run(_run(ASYNC_COMMANDS[args.command], settings, args))
    except GatekeeperError as e:
        logger.error(f"{args.command} failed: {e}")
        _emit({"error": e.to_dict()})
        return 2


if __name__ == "__main__":
    sys.exit(main())
