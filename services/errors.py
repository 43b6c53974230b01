"""Exception hierarchy for the stealth link engine.

Every failure the engine can produce is one of these classes. Each carries a
stable ``kind`` string, the HTTP status it maps to at the action endpoint, and
whether a *manual* retry makes sense for the user.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class StealthLinkError(Exception):
    """Base exception for all stealth link errors."""

    kind: str = "unknown"
    http_status: int = 500
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


# ---------------------------------------------------------------------------
# Invalid input (local, never retried)
# ---------------------------------------------------------------------------

class InvalidInputError(StealthLinkError):
    kind = "invalid_input"
    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.field = field
        self.value = value


class InvalidAmountError(InvalidInputError):
    kind = "invalid_amount"


class InvalidAddressError(InvalidInputError):
    kind = "invalid_address"


class InvalidHandleError(InvalidInputError):
    kind = "invalid_handle"


# ---------------------------------------------------------------------------
# Resolution failures
# ---------------------------------------------------------------------------

class ResolutionError(StealthLinkError):
    kind = "resolution_failure"
    http_status = 400

    def __init__(self, message: str, name: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.name = name


class DomainResolutionError(ResolutionError):
    kind = "domain_unresolved"


class HandleNotRegisteredError(ResolutionError):
    kind = "handle_not_registered"


class HandleAlreadyRegisteredError(ResolutionError):
    kind = "handle_already_registered"
    http_status = 409


class UnauthorizedError(StealthLinkError):
    kind = "unauthorized"
    http_status = 403


# ---------------------------------------------------------------------------
# Operator / availability
# ---------------------------------------------------------------------------

class ConfigurationError(StealthLinkError):
    kind = "configuration"
    http_status = 500


class TreeIncompatibilityError(StealthLinkError):
    kind = "tree_incompatible"
    http_status = 503
    retryable = True


class NoCompatibleTreeError(TreeIncompatibilityError):
    kind = "no_compatible_tree"


class NoFundsError(StealthLinkError):
    kind = "no_funds"
    http_status = 404


# ---------------------------------------------------------------------------
# Proof / protocol (surfaced with logs, not auto-retried)
# ---------------------------------------------------------------------------

class ProtocolError(StealthLinkError):
    kind = "protocol"
    http_status = 502

    def __init__(self, message: str, logs: Optional[List[str]] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.logs = list(logs or [])


class MalformedAccountError(ProtocolError):
    kind = "malformed_account"


class ProofError(ProtocolError):
    kind = "proof_rejected"


class TransactionFailedError(ProtocolError):
    kind = "transaction_failed"

    def __init__(self, message: str, signature: Optional[str] = None,
                 logs: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, logs=logs, details=details)
        self.signature = signature


class TransactionExpiredError(StealthLinkError):
    """Blockhash window elapsed before the signature was observed."""

    kind = "transaction_expired"
    http_status = 504
    retryable = True

    def __init__(self, message: str, signature: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.signature = signature


# ---------------------------------------------------------------------------
# Transient network
# ---------------------------------------------------------------------------

class TransientNetworkError(StealthLinkError):
    kind = "network"
    http_status = 503
    retryable = True

    def __init__(self, message: str, endpoint: Optional[str] = None,
                 status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status_code = status_code


class RateLimitedError(TransientNetworkError):
    kind = "rate_limited"
    http_status = 429


class ServiceUnavailableError(TransientNetworkError):
    kind = "service_unavailable"


class NetworkError(TransientNetworkError):
    kind = "network"


class RpcError(StealthLinkError):
    """JSON-RPC error that does not match a transient class; surfaced verbatim."""

    kind = "unknown"
    http_status = 502

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = code
        self.data = data


# ---------------------------------------------------------------------------
# Identity / session
# ---------------------------------------------------------------------------

class IdentityDerivationError(StealthLinkError):
    kind = "identity_derivation"
    http_status = 400


class InvalidTransitionError(StealthLinkError):
    kind = "invalid_transition"
    http_status = 409


class ConcurrentFlowError(InvalidTransitionError):
    kind = "concurrent_flow"


class SessionClosedError(StealthLinkError):
    kind = "session_closed"
    http_status = 410


class SigningError(StealthLinkError):
    """Wallet refused, or the transaction is missing a required signature."""

    kind = "signing_rejected"
    http_status = 400
