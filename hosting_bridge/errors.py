"""
Hosting Bridge Error Taxonomy
=============================

Every failure the provisioning workflow can surface is one of these.
Each error carries a stable ``kind`` (written into billing metadata and API
responses), a ``retryable`` flag, and a ``user_message`` that is safe to show
to a customer. The constructor ``message`` may contain provider detail and is
only ever logged.
"""

from typing import Optional, Dict, Any


class ProvisioningError(Exception):
    """Base exception for the provisioning workflow."""

    kind: str = "ProvisioningError"
    retryable: bool = False
    user_message: str = "Server provisioning failed. Please contact support."

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Safe, client-facing representation (no provider payloads)."""
        return {
            "error": self.user_message,
            "kind": self.kind,
            "retryable": self.retryable,
        }


class InvalidInput(ProvisioningError):
    """Malformed email, missing checkout field, bad configuration value."""
    kind = "InvalidInput"
    user_message = "The request contained invalid data."


class MissingCustomerContact(InvalidInput):
    """Payment session carries no usable customer email."""
    kind = "MissingCustomerContact"
    user_message = "No customer email was found for this payment."


class InvalidSignature(ProvisioningError):
    """Webhook authenticity check failed."""
    kind = "InvalidSignature"
    user_message = "Invalid signature"


class SessionNotFound(ProvisioningError):
    """Billing provider has no session with this id."""
    kind = "SessionNotFound"
    user_message = "Session not found"


class DependencyTimeout(ProvisioningError):
    """Billing or panel call exceeded its timeout."""
    kind = "DependencyTimeout"
    retryable = True
    user_message = "An upstream service timed out. Please try again shortly."

    def __init__(self, service: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__(f"[{service}] {message}", details)


class DependencyUnavailable(ProvisioningError):
    """Billing or panel call failed (connection error, 5xx, unexpected 4xx)."""
    kind = "DependencyUnavailable"
    retryable = True
    user_message = "An upstream service is unavailable. Please try again shortly."

    def __init__(
        self,
        service: str,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.service = service
        self.status_code = status_code
        super().__init__(f"[{service}] {message}", details)


class DependencyConflict(ProvisioningError):
    """External service reported a state conflict (duplicate account, claimed allocation)."""
    kind = "DependencyConflict"
    retryable = True
    user_message = "A conflicting request is in progress. Please try again shortly."

    def __init__(self, service: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__(f"[{service}] {message}", details)


class CapacityExceeded(ProvisioningError):
    """Node is at its configured instance ceiling."""
    kind = "CapacityExceeded"
    retryable = True
    user_message = "We are at capacity right now. Please try again later."

    def __init__(self, node_id: int, current: int, maximum: int):
        self.node_id = node_id
        self.current = current
        self.maximum = maximum
        super().__init__(
            f"Node {node_id} at capacity ({current}/{maximum})",
            {"current": current, "max": maximum},
        )


class NoCapacity(ProvisioningError):
    """No free network allocation left on the node."""
    kind = "NoCapacity"
    retryable = True
    user_message = "No server ports are free right now. Please try again later."


class OwnershipDefect(ProvisioningError):
    """Instance exists but owner/access assignment failed. Recorded, never raised to callers."""
    kind = "OwnershipDefect"


class PersistenceDegraded(ProvisioningError):
    """Durable metadata write failed; record lives only in process memory."""
    kind = "PersistenceDegraded"


class Unauthorized(ProvisioningError):
    """Management call without a valid admin key."""
    kind = "Unauthorized"
    user_message = "Unauthorized"


class ResourceNotFound(ProvisioningError):
    """Panel has no server with this id."""
    kind = "ResourceNotFound"
    user_message = "Server not found"


# Failed records of these kinds are not retried by the status endpoint.
TERMINAL_FAILURE_KINDS = frozenset({
    InvalidInput.kind,
    MissingCustomerContact.kind,
})


def as_provisioning_error(exc: Exception) -> ProvisioningError:
    """Return ``exc`` if it is already in the taxonomy, else wrap it in the base class."""
    if isinstance(exc, ProvisioningError):
        return exc
    return ProvisioningError(f"{type(exc).__name__}: {exc}")
