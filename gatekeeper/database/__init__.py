"""
Persistence layer for communities, memberships, used nonces and the audit log.

Usage:
    from gatekeeper.database import Database

    db = Database("data/gatekeeper.db")
    member = db.memberships.get("dao-alpha", 123456)
"""

from pathlib import Path
from typing import Union

from .contracts import AuditStore, CommunityStore, MembershipStore, NonceStore
from .repositories import (
    AuditRepository,
    CommunityRepository,
    MembershipRepository,
    NonceRepository,
)
from .sqlite_pool import SCHEMA, SQLitePool


class Database:
    """One SQLite file with its schema applied and a repository per table."""

    def __init__(self, db_path: Union[str, Path], timeout: float = 10.0):
        self.pool = SQLitePool(db_path, timeout=timeout)
        self.pool.init_schema()
        self.communities = CommunityRepository(self.pool)
        self.memberships = MembershipRepository(self.pool)
        self.nonces = NonceRepository(self.pool)
        self.audit = AuditRepository(self.pool)

    def ping(self) -> bool:
        return self.pool.ping()


__all__ = [
    "Database",
    "SQLitePool",
    "SCHEMA",
    "CommunityRepository",
    "MembershipRepository",
    "NonceRepository",
    "AuditRepository",
    "CommunityStore",
    "MembershipStore",
    "NonceStore",
    "AuditStore",
]
