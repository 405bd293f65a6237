"""
Sign-In-With-Solana (SIWS) proof-of-ownership verification.

A wallet proves key ownership by signing a human-readable message that embeds
a one-time nonce and an issue timestamp. Verification is, in order:

1. parse the message (nonce and issued-at are mandatory)
2. freshness: issued-at within +/-10 minutes of now
3. replay: nonce not seen before (advisory lookup)
4. Ed25519 signature over the raw message bytes
5. record the nonce; the store's uniqueness constraint is authoritative, so a
   conflict here is a replay even though step 3 passed

Every rejection carries a distinct reason string from ERROR_MESSAGES.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import urlparse

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey
from solders.pubkey import Pubkey

from gatekeeper.database.contracts import NonceStore
from gatekeeper.errors import ERROR_MESSAGES
from gatekeeper.logging_config import mask_wallet
from gatekeeper.types import VerificationResult, utcnow

logger = logging.getLogger(__name__)

FRESHNESS_WINDOW = timedelta(minutes=10)
SIGNATURE_LENGTH = 64

_FIELD_LABELS = (
    ("URI:", "uri"),
    ("Version:", "version"),
    ("Chain ID:", "chain_id"),
    ("Nonce:", "nonce"),
    ("Issued At:", "issued_at"),
    ("Expiration Time:", "expiration_time"),
    ("Not Before:", "not_before"),
)
_DOMAIN_SUFFIX = " wants you to sign in"


@dataclass
class SIWSMessage:
    """Fields of a parsed SIWS message. Optional fields may be None."""
    domain: Optional[str] = None
    uri: Optional[str] = None
    version: Optional[str] = None
    chain_id: Optional[str] = None
    nonce: Optional[str] = None
    issued_at: Optional[str] = None
    expiration_time: Optional[str] = None
    not_before: Optional[str] = None


def parse_siws_message(message: str) -> SIWSMessage:
    """Best-effort line scan of a SIWS message."""
    parsed = SIWSMessage()
    lines = message.split("\n")

    for line in lines:
        for label, attr in _FIELD_LABELS:
            if label in line:
                setattr(parsed, attr, line.split(label, 1)[1].strip() or None)
                break

    first = lines[0].strip() if lines else ""
    if _DOMAIN_SUFFIX in first:
        parsed.domain = first.split(_DOMAIN_SUFFIX, 1)[0].strip() or None
    elif parsed.uri:
        parsed.domain = urlparse(parsed.uri).hostname or "unknown"

    return parsed


def parse_timestamp(value: str) -> datetime:
    """ISO 8601 timestamp; a trailing Z and naive values are read as UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def verify_solana_signature(public_key: str, message: str, signature: bytes) -> bool:
    """Ed25519 check of `signature` over the UTF-8 message. Fails closed."""
    try:
        key_bytes = bytes(Pubkey.from_string(public_key))
    except Exception as e:
        logger.warning(f"Malformed public key {mask_wallet(public_key)}: {e}")
        return False

    try:
        signature = bytes(signature)
    except (TypeError, ValueError) as e:
        logger.warning(f"Malformed signature for {mask_wallet(public_key)}: {e}")
        return False
    if len(signature) != SIGNATURE_LENGTH:
        logger.warning(f"Signature has {len(signature)} bytes, expected {SIGNATURE_LENGTH}")
        return False

    try:
        VerifyKey(key_bytes).verify(message.encode("utf-8"), signature)
        return True
    except BadSignatureError:
        return False


class SIWSVerifier:
    """Verifies signed SIWS messages against a nonce store."""

    def __init__(
        self,
        nonce_store: NonceStore,
        freshness_window: timedelta = FRESHNESS_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.nonce_store = nonce_store
        self.freshness_window = freshness_window
        self._clock = clock

    def _reject(self, reason: str, **context) -> VerificationResult:
        logger.warning(f"SIWS verification rejected: {reason} {context or ''}".rstrip())
        return VerificationResult(valid=False, error=reason)

    def verify(
        self,
        public_key: str,
        message: str,
        signature: bytes,
        participant_id: int,
    ) -> VerificationResult:
        """
        Verify a signed SIWS message.

        Storage failures other than a nonce conflict propagate as DatabaseError.
        """
        parsed = parse_siws_message(message)
        if not parsed.nonce or not parsed.issued_at:
            return self._reject(ERROR_MESSAGES["INVALID_FORMAT"])

        try:
            issued_at = parse_timestamp(parsed.issued_at)
            expiration = parse_timestamp(parsed.expiration_time) if parsed.expiration_time else None
            not_before = parse_timestamp(parsed.not_before) if parsed.not_before else None
        except ValueError:
            return self._reject(ERROR_MESSAGES["INVALID_FORMAT"])

        now = self._clock()
        drift = abs(now - issued_at)
        if drift > self.freshness_window:
            return self._reject(ERROR_MESSAGES["EXPIRED"], drift_seconds=int(drift.total_seconds()))
        if expiration is not None and now >= expiration:
            return self._reject(ERROR_MESSAGES["EXPIRED"])
        if not_before is not None and now < not_before:
            return self._reject(ERROR_MESSAGES["NOT_YET_VALID"])

        if self.nonce_store.exists(parsed.nonce):
            return self._reject(ERROR_MESSAGES["NONCE_REUSE"], nonce=parsed.nonce)

        if not verify_solana_signature(public_key, message, signature):
            return self._reject(ERROR_MESSAGES["INVALID_SIGNATURE"], public_key=mask_wallet(public_key))

        if not self.nonce_store.insert_if_absent(parsed.nonce, participant_id):
            return self._reject(ERROR_MESSAGES["NONCE_REUSE"], nonce=parsed.nonce, race=True)

        logger.info(
            f"SIWS verification successful for {mask_wallet(public_key)} (participant={participant_id})"
        )
        return VerificationResult(valid=True)
