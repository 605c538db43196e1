"""
ChainTrust — Errors

Every failure the engine surfaces is a ChainTrustError. EvidenceNotFound is the
odd one out: it means an external check completed and the expected proof was
absent, and verifiers turn it into an unsuccessful result rather than an error.
"""
from typing import Optional


class ChainTrustError(Exception):
    pass


class ValidationError(ChainTrustError):
    """Malformed address or input. Never retried."""


class AuthorizationError(ChainTrustError):
    """Caller is not allowed to perform an owner-only action."""


class NotFoundError(ChainTrustError):
    """Unknown entity, challenge, proof, task or alert."""


class ChallengeExpiredError(ChainTrustError):
    """Challenge was used after expires_at and has been deleted."""


class RateLimitError(ChainTrustError):
    def __init__(self, action_class: str, limit: int, retry_after: int):
        self.action_class = action_class
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {action_class} ({limit}/window). Retry in {retry_after}s"
        )


class TransportError(ChainTrustError):
    """An external evidence check failed to complete."""

    def __init__(self, source: str, message: str, status_code: Optional[int] = None):
        self.source = source
        self.status_code = status_code
        super().__init__(f"{source}: {message}")


class EvidenceNotFound(ChainTrustError):
    """An external evidence check completed but the proof was absent."""

    def __init__(self, source: str, reference: str, message: str = ""):
        self.source = source
        self.reference = reference
        super().__init__(message or f"{source}: no evidence for {reference}")
