"""
Repository implementations over SQLite.

Each repository handles one table and maps rows to the dataclasses in
gatekeeper.types.

Usage:
    from gatekeeper.database.repositories import MembershipRepository

    repo = MembershipRepository(pool)
    member = repo.get("dao-alpha", 123456)
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Generic, List, Optional, Tuple, TypeVar

from gatekeeper.database.sqlite_pool import SQLitePool
from gatekeeper.types import (
    AuditAction,
    AuditEntry,
    AuditSource,
    CommunityPolicy,
    Membership,
    Tier,
    TierThresholds,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class BaseRepository(ABC, Generic[T]):
    """
    Base repository holding the pool and the row mapper.

    Subclasses define `table_name` and `_row_to_entity(row)`.
    """

    table_name: str = ""

    def __init__(self, pool: SQLitePool):
        self.pool = pool

    @abstractmethod
    def _row_to_entity(self, row: sqlite3.Row) -> T:
        """Convert a database row to a domain entity."""

    def count(self) -> int:
        with self.pool.get_connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM {self.table_name}").fetchone()
            return row[0] if row else 0


# =============================================================================
# Communities
# =============================================================================

class CommunityRepository(BaseRepository[CommunityPolicy]):
    table_name = "communities"

    def _row_to_entity(self, row) -> CommunityPolicy:
        return CommunityPolicy(
            id=row["id"],
            chat_id=row["chat_id"],
            name=row["name"],
            thresholds=TierThresholds(
                bronze=row["bronze_threshold"],
                silver=row["silver_threshold"],
                gold=row["gold_threshold"],
            ),
            auto_evict=bool(row["auto_evict"]),
        )

    def get(self, community_id: str) -> Optional[CommunityPolicy]:
        with self.pool.get_connection() as conn:
            row = conn.execute(
                "SELECT id, chat_id, name, bronze_threshold, silver_threshold, gold_threshold, auto_evict "
                "FROM communities WHERE id = ?",
                (community_id,),
            ).fetchone()
            return self._row_to_entity(row) if row else None

    def save(self, community: CommunityPolicy) -> CommunityPolicy:
        """Insert or replace a community's policy."""
        t = community.thresholds
        with self.pool.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO communities
                    (id, chat_id, name, bronze_threshold, silver_threshold, gold_threshold, auto_evict, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    chat_id = excluded.chat_id,
                    name = excluded.name,
                    bronze_threshold = excluded.bronze_threshold,
                    silver_threshold = excluded.silver_threshold,
                    gold_threshold = excluded.gold_threshold,
                    auto_evict = excluded.auto_evict
                """,
                (
                    community.id, community.chat_id, community.name,
                    t.bronze, t.silver, t.gold, int(community.auto_evict),
                    utcnow().isoformat(),
                ),
            )
        logger.info(f"Saved community {community.id} ({community.name})")
        return community


# =============================================================================
# Memberships
# =============================================================================

_MEMBERSHIP_COLUMNS = (
    "m.id, m.community_id, m.participant_id, m.username, m.wallet_address, "
    "m.score, m.tier, m.last_checked, m.joined_at"
)


class MembershipRepository(BaseRepository[Membership]):
    table_name = "memberships"

    def _row_to_entity(self, row) -> Membership:
        return Membership(
            id=row["id"],
            community_id=row["community_id"],
            participant_id=row["participant_id"],
            username=row["username"],
            wallet_address=row["wallet_address"],
            score=row["score"],
            tier=Tier(row["tier"]),
            last_checked=_from_iso(row["last_checked"]),
            joined_at=_from_iso(row["joined_at"]),
        )

    def get(self, community_id: str, participant_id: int) -> Optional[Membership]:
        with self.pool.get_connection() as conn:
            row = conn.execute(
                f"SELECT {_MEMBERSHIP_COLUMNS} FROM memberships m "
                "WHERE m.community_id = ? AND m.participant_id = ?",
                (community_id, participant_id),
            ).fetchone()
            return self._row_to_entity(row) if row else None

    def upsert(self, membership: Membership) -> Membership:
        """
        Create or update the (community, participant) membership.

        joined_at is kept from the first insert.
        """
        now = utcnow()
        with self.pool.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO memberships
                    (community_id, participant_id, username, wallet_address, score, tier, last_checked, joined_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(community_id, participant_id) DO UPDATE SET
                    username = excluded.username,
                    wallet_address = excluded.wallet_address,
                    score = excluded.score,
                    tier = excluded.tier,
                    last_checked = excluded.last_checked
                """,
                (
                    membership.community_id,
                    membership.participant_id,
                    membership.username,
                    membership.wallet_address,
                    membership.score,
                    membership.tier.value,
                    _to_iso(membership.last_checked or now),
                    _to_iso(membership.joined_at or now),
                ),
            )
            row = conn.execute(
                f"SELECT {_MEMBERSHIP_COLUMNS} FROM memberships m "
                "WHERE m.community_id = ? AND m.participant_id = ?",
                (membership.community_id, membership.participant_id),
            ).fetchone()
        return self._row_to_entity(row)

    def list_with_policies(self) -> List[Tuple[Membership, CommunityPolicy]]:
        """Every membership joined with its community's policy."""
        with self.pool.get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_MEMBERSHIP_COLUMNS},
                       c.id AS c_id, c.chat_id, c.name,
                       c.bronze_threshold, c.silver_threshold, c.gold_threshold, c.auto_evict
                FROM memberships m
                JOIN communities c ON c.id = m.community_id
                ORDER BY m.id
                """
            ).fetchall()

        pairs = []
        for row in rows:
            policy = CommunityPolicy(
                id=row["c_id"],
                chat_id=row["chat_id"],
                name=row["name"],
                thresholds=TierThresholds(
                    bronze=row["bronze_threshold"],
                    silver=row["silver_threshold"],
                    gold=row["gold_threshold"],
                ),
                auto_evict=bool(row["auto_evict"]),
            )
            pairs.append((self._row_to_entity(row), policy))
        return pairs

    def update_score(self, membership_id: int, score: int, tier: Tier, last_checked: datetime) -> None:
        with self.pool.get_connection() as conn:
            conn.execute(
                "UPDATE memberships SET score = ?, tier = ?, last_checked = ? WHERE id = ?",
                (score, tier.value, _to_iso(last_checked), membership_id),
            )

    def delete(self, membership_id: int) -> bool:
        with self.pool.get_connection() as conn:
            cursor = conn.execute("DELETE FROM memberships WHERE id = ?", (membership_id,))
            return cursor.rowcount > 0


# =============================================================================
# Nonces
# =============================================================================

class NonceRepository:
    """Consumed SIWS nonces. The primary key makes consumption atomic."""

    table_name = "used_nonces"

    def __init__(self, pool: SQLitePool):
        self.pool = pool

    def exists(self, nonce: str) -> bool:
        with self.pool.get_connection() as conn:
            row = conn.execute("SELECT 1 FROM used_nonces WHERE nonce = ?", (nonce,)).fetchone()
            return row is not None

    def insert_if_absent(self, nonce: str, participant_id: int) -> bool:
        with self.pool.get_connection() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO used_nonces (nonce, participant_id, used_at) VALUES (?, ?, ?)",
                (nonce, participant_id, utcnow().isoformat()),
            )
            return cursor.rowcount == 1

    def prune_older_than(self, cutoff: datetime) -> int:
        with self.pool.get_connection() as conn:
            cursor = conn.execute("DELETE FROM used_nonces WHERE used_at < ?", (cutoff.isoformat(),))
            removed = cursor.rowcount
        if removed:
            logger.info(f"Pruned {removed} used nonces older than {cutoff.isoformat()}")
        return removed


# =============================================================================
# Audit log
# =============================================================================

class AuditRepository(BaseRepository[AuditEntry]):
    """Append-only audit trail. No update or delete."""

    table_name = "audit_log"

    def _row_to_entity(self, row) -> AuditEntry:
        return AuditEntry(
            membership_id=row["membership_id"],
            community_id=row["community_id"],
            participant_id=row["participant_id"],
            action=AuditAction(row["action"]),
            source=AuditSource(row["source"]),
            old_score=row["old_score"],
            new_score=row["new_score"],
            old_tier=Tier(row["old_tier"]) if row["old_tier"] else None,
            new_tier=Tier(row["new_tier"]) if row["new_tier"] else None,
            details=row["details"] or "",
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def insert(self, entry: AuditEntry) -> int:
        d = entry.to_dict()
        with self.pool.get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO audit_log
                    (membership_id, community_id, participant_id, action, source,
                     old_score, new_score, old_tier, new_tier, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    d["membership_id"], d["community_id"], d["participant_id"],
                    d["action"], d["source"], d["old_score"], d["new_score"],
                    d["old_tier"], d["new_tier"], d["details"], d["created_at"],
                ),
            )
            return cursor.lastrowid

    def list_for_participant(self, community_id: str, participant_id: int, limit: int = 50) -> List[AuditEntry]:
        with self.pool.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_log WHERE community_id = ? AND participant_id = ? "
                "ORDER BY id DESC LIMIT ?",
                (community_id, participant_id, limit),
            ).fetchall()
            return [self._row_to_entity(row) for row in rows]

    def recent(self, limit: int = 100) -> List[AuditEntry]:
        with self.pool.get_connection() as conn:
            rows = conn.execute("SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [self._row_to_entity(row) for row in rows]
