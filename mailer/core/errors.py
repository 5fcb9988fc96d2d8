"""
Error taxonomy for the campaign engine

Every error carries a stable ``kind`` and an HTTP status so admin-facing
endpoints can return structured payloads.
"""
from typing import Any, Dict


class MailerError(Exception):
    """Base class for all campaign engine errors"""
    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(MailerError):
    """Malformed campaign or schedule configuration"""
    kind = "validation_error"
    status_code = 422


class InvalidStateError(MailerError):
    """Operation attempted in the wrong lifecycle state"""
    kind = "invalid_state"
    status_code = 409


class ConflictError(MailerError):
    """Concurrent mutation guard tripped"""
    kind = "conflict"
    status_code = 409


class NotFoundError(MailerError):
    kind = "not_found"
    status_code = 404


class AuthenticationError(MailerError):
    kind = "unauthenticated"
    status_code = 401


class PermissionDeniedError(MailerError):
    kind = "forbidden"
    status_code = 403


class TransportError(MailerError):
    """Mail send failure for a single recipient"""
    kind = "transport_error"
    status_code = 502


class TransportUnavailableError(TransportError):
    """The transport itself is unreachable; aborts the whole batch"""
    kind = "transport_unavailable"
    status_code = 503


class SuppressionError(MailerError):
    """Recipient skipped because the address is suppressed"""
    kind = "suppressed"
    status_code = 409

    def __init__(self, email: str, reason: str):
        super().__init__(f"{email} is suppressed: {reason}")
        self.email = email
        self.reason = reason
