"""Store contracts consumed by the verifier and the lifecycle engine."""
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from gatekeeper.types import AuditEntry, CommunityPolicy, Membership, Tier


class CommunityStore(Protocol):
    def get(self, community_id: str) -> Optional[CommunityPolicy]: ...


class MembershipStore(Protocol):
    def get(self, community_id: str, participant_id: int) -> Optional[Membership]: ...

    def upsert(self, membership: Membership) -> Membership: ...

    def list_with_policies(self) -> List[Tuple[Membership, CommunityPolicy]]: ...

    def update_score(self, membership_id: int, score: int, tier: Tier, last_checked: datetime) -> None: ...

    def delete(self, membership_id: int) -> bool: ...


class NonceStore(Protocol):
    def exists(self, nonce: str) -> bool: ...

    def insert_if_absent(self, nonce: str, participant_id: int) -> bool:
        """False when the nonce is already recorded."""
        ...

    def prune_older_than(self, cutoff: datetime) -> int: ...


class AuditStore(Protocol):
    def insert(self, entry: AuditEntry) -> int: ...
