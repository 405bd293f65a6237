"""
Telegram access control and member notifications.

The lifecycle engine talks to an AccessController: grant access to a group,
evict from a group, and send a direct message. TelegramAccessController is
the python-telegram-bot implementation:

- grant_access unbans the participant (only if banned) so they can (re)join
- evict bans the participant from the group chat
- notify sends an HTML direct message, at most one per second per chat, and
  retries once after a Telegram flood-control (RetryAfter) response

All side effects are best-effort from the engine's point of view; wrap calls
in `best_effort` so a Telegram failure never aborts a verification or a
re-check.
"""

import asyncio
import html
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import RetryAfter

from gatekeeper.types import Tier

logger = logging.getLogger(__name__)

PER_CHAT_INTERVAL = 1.0


class AccessController(Protocol):
    async def grant_access(self, chat_id: int, participant_id: int) -> None: ...

    async def evict(self, chat_id: int, participant_id: int) -> None: ...

    async def notify(self, participant_id: int, text: str) -> None: ...


async def best_effort(awaitable: Awaitable[Any], what: str) -> bool:
    """Await a side effect; log and swallow any failure. Returns success."""
    try:
        await awaitable
        return True
    except Exception as e:
        logger.error(f"Side effect failed ({what}): {e}")
        return False


# =============================================================================
# Message templates
# =============================================================================

def _tier_label(tier: Tier) -> str:
    return tier.value.upper()


def welcome_message(score: int, tier: Tier) -> str:
    return (
        "<b>✅ Verification Successful!</b>\n\n"
        "Your wallet has been verified and you've been granted access to the group.\n\n"
        f"<b>Your FairScore:</b> {score} / 1000\n"
        f"<b>Your Tier:</b> {_tier_label(tier)}\n\n"
        "Welcome to the community! 🎉"
    )


def rejection_message(score: int, required: int) -> str:
    return (
        "<b>❌ Verification Failed</b>\n\n"
        "Your FairScore is below the minimum threshold for this group.\n\n"
        f"<b>Your FairScore:</b> {score} / 1000\n"
        f"<b>Required:</b> {required}+\n\n"
        "Build your on-chain reputation and verify your wallet again once your score improves."
    )


def promotion_message(old_tier: Tier, new_tier: Tier, score: int) -> str:
    return (
        "<b>🎉 Tier Promotion!</b>\n\n"
        "Congratulations! Your on-chain reputation has improved.\n\n"
        f"<b>Previous Tier:</b> {_tier_label(old_tier)}\n"
        f"<b>New Tier:</b> {_tier_label(new_tier)}\n"
        f"<b>Current FairScore:</b> {score} / 1000"
    )


def demotion_message(old_tier: Tier, new_tier: Tier, score: int) -> str:
    return (
        "<b>⚠️ Tier Change</b>\n\n"
        "Your reputation score has changed.\n\n"
        f"<b>Previous Tier:</b> {_tier_label(old_tier)}\n"
        f"<b>New Tier:</b> {_tier_label(new_tier)}\n"
        f"<b>Current FairScore:</b> {score} / 1000\n\n"
        "<b>Tip:</b> Focus on quality on-chain interactions to improve your score."
    )


def removal_message(group_name: str, score: int, threshold: int) -> str:
    return (
        "<b>❌ Removed from Group</b>\n\n"
        f"You have been removed from <b>{html.escape(group_name)}</b>.\n\n"
        "<b>Reason:</b> FairScore below minimum threshold\n\n"
        f"<b>Your FairScore:</b> {score} / 1000\n"
        f"<b>Required:</b> {threshold}+\n\n"
        "Improve your FairScore and use /verify again to rejoin the group."
    )


# =============================================================================
# Telegram implementation
# =============================================================================

class TelegramAccessController:
    """AccessController backed by a python-telegram-bot Bot."""

    def __init__(
        self,
        bot: Bot,
        per_chat_interval: float = PER_CHAT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.bot = bot
        self.per_chat_interval = per_chat_interval
        self._clock = clock
        self._sleep = sleep
        self._last_sent: Dict[int, float] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_token(cls, token: str, **kwargs) -> "TelegramAccessController":
        return cls(Bot(token=token), **kwargs)

    async def start(self) -> None:
        await self.bot.initialize()

    async def close(self) -> None:
        await self.bot.shutdown()

    async def grant_access(self, chat_id: int, participant_id: int) -> None:
        await self.bot.unban_chat_member(chat_id=chat_id, user_id=participant_id, only_if_banned=True)
        logger.info(f"Access granted to {participant_id} in chat {chat_id}")

    async def evict(self, chat_id: int, participant_id: int) -> None:
        await self.bot.ban_chat_member(chat_id=chat_id, user_id=participant_id)
        logger.info(f"Participant {participant_id} removed from chat {chat_id}")

    async def _wait_for_slot(self, chat_id: int) -> None:
        """Reserve the next send slot for chat_id, then sleep until it comes up.

        The sleep happens outside the lock so a wait on one chat never holds
        up sends to other chats.
        """
        async with self._lock:
            now = self._clock()
            last = self._last_sent.get(chat_id)
            slot = now if last is None else max(now, last + self.per_chat_interval)
            self._last_sent[chat_id] = slot
        wait = slot - now
        if wait > 0:
            await self._sleep(wait)

    async def notify(self, participant_id: int, text: str) -> None:
        await self._wait_for_slot(participant_id)
        try:
            await self.bot.send_message(chat_id=participant_id, text=text, parse_mode=ParseMode.HTML)
        except RetryAfter as e:
            wait_time = _retry_after_seconds(e)
            logger.warning(f"Rate limited sending to {participant_id}, retrying in {wait_time}s")
            await self._sleep(wait_time)
            await self.bot.send_message(chat_id=participant_id, text=text, parse_mode=ParseMode.HTML)
        logger.info(f"Notification sent to {participant_id}")

    async def ping(self) -> bool:
        """True when the bot token is accepted by Telegram."""
        try:
            await self.bot.get_me()
            return True
        except Exception as e:
            logger.warning(f"Telegram ping failed: {e}")
            return False


def _retry_after_seconds(error: RetryAfter) -> float:
    value: Optional[Any] = error.retry_after
    # Newer python-telegram-bot releases report a timedelta
    if hasattr(value, "total_seconds"):
        value = value.total_seconds()
    return float(value or 30) + 1


class LogOnlyAccessController:
    """AccessController used when no bot token is configured. Side effects are only logged."""

    async def grant_access(self, chat_id: int, participant_id: int) -> None:
        logger.warning(f"No Telegram bot configured; not granting {participant_id} access to {chat_id}")

    async def evict(self, chat_id: int, participant_id: int) -> None:
        logger.warning(f"No Telegram bot configured; not removing {participant_id} from {chat_id}")

    async def notify(self, participant_id: int, text: str) -> None:
        logger.info(f"No Telegram bot configured; dropping notification to {participant_id}")
