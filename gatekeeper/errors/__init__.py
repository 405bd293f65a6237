"""
Error handling and exception classes.

Exceptions are for failures the caller cannot turn into a user-facing answer
(provider outages without a cached score, storage failures, bad config).
Verification rejections are not exceptions: they come back as values carrying
one of the ERROR_MESSAGES strings below.
"""

from gatekeeper.errors.exceptions import (
    GatekeeperError, ValidationError, NotFoundError, ProviderError,
    RetryableProviderError, CircuitOpenError, ScoreUnavailableError,
    DatabaseError, ConfigurationError,
)

ERROR_MESSAGES = {
    "INVALID_FORMAT": "Invalid message format",
    "EXPIRED": "Message expired",
    "NOT_YET_VALID": "Message not yet valid",
    "NONCE_REUSE": "Nonce already used",
    "INVALID_SIGNATURE": "Invalid signature",
    "SCORE_TOO_LOW": "Your FairScore is below the minimum threshold. Build your on-chain reputation and try again.",
    "SCORE_UNAVAILABLE": "Reputation service is temporarily unavailable. Please try again later.",
    "COMMUNITY_NOT_FOUND": "Community not found",
}

__all__ = [
    "GatekeeperError", "ValidationError", "NotFoundError", "ProviderError",
    "RetryableProviderError", "CircuitOpenError", "ScoreUnavailableError",
    "DatabaseError", "ConfigurationError", "ERROR_MESSAGES",
]
