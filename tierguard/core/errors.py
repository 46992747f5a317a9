from __future__ import annotations


class TierguardError(Exception):
    """Base error for tierguard."""


class SignatureVerificationError(TierguardError):
    """Webhook authenticity could not be established."""

    reason = "invalid_signature"


class InvalidSignatureError(SignatureVerificationError):
    """Signature header missing, malformed, or not matching the body."""


class StaleSignatureError(SignatureVerificationError):
    """Signed timestamp falls outside the freshness window."""

    reason = "stale_signature"


class MalformedEventError(TierguardError):
    """Webhook body is not a provider event we can identify."""


class StorageFailureError(TierguardError):
    """Storage operation failed after bounded retries."""


class InvalidTransitionError(TierguardError):
    """Event implies a transition the current status does not allow."""

    def __init__(self, current: str, event_type: str) -> None:
        super().__init__(f"cannot apply {event_type} to subscription in status {current}")
        self.current = current
        self.event_type = event_type


class UnknownJobTypeError(TierguardError):
    """Job type has no registered handler."""


class CatalogError(TierguardError):
    """Tier catalog configuration is invalid."""


class CircuitOpenError(TierguardError):
    """Dependency circuit breaker refuses calls until its cooldown elapses."""

    def __init__(self, dependency: str) -> None:
        super().__init__(f"{dependency} is temporarily unavailable")
        self.dependency = dependency
