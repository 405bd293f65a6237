"""Custom exception hierarchy."""
from typing import Optional, Dict, Any


class GatekeeperError(Exception):
    """Base exception for all gatekeeper errors."""
    code: str = "SYS_001"
    status_code: int = 500

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(GatekeeperError):
    """Input validation failed."""
    code = "VAL_001"
    status_code = 400


class NotFoundError(GatekeeperError):
    """Resource not found."""
    code = "SYS_002"
    status_code = 404


class ProviderError(GatekeeperError):
    """External reputation provider error that will not resolve on retry."""
    code = "PROV_001"
    status_code = 503

    def __init__(self, message: str, provider: str = None, status: Optional[int] = None):
        super().__init__(message, {"provider": provider, "status": status})
        self.provider = provider
        self.status = status


class RetryableProviderError(ProviderError):
    """Timeout, connection failure, 429 or 5xx from the provider."""
    code = "PROV_002"


class CircuitOpenError(ProviderError):
    """Circuit breaker is open - provider calls fail fast."""
    code = "PROV_003"


class ScoreUnavailableError(ProviderError):
    """No live score and no cached score to fall back on."""
    code = "PROV_004"


class DatabaseError(GatekeeperError):
    """Database operation error."""
    code = "DB_001"
    status_code = 500


class ConfigurationError(GatekeeperError):
    """Configuration error."""
    code = "CFG_001"
    status_code = 500
