"""Error taxonomy shared by the hub and the client library.

Every error carries an ``ErrorCode`` so it can travel over the wire as an
``error`` frame and be rebuilt on the other side.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    AUTH_EXPIRED = "AUTH_EXPIRED"  # token invalid or expired; re-authenticate
    FORBIDDEN = "FORBIDDEN"  # not a member (or not an admin) of the room
    NOT_FOUND = "NOT_FOUND"  # room no longer exists
    NOT_CONNECTED = "NOT_CONNECTED"  # local send with no live session
    TRANSPORT_FAILURE = "TRANSPORT_FAILURE"  # network-level drop or refused upgrade
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"  # undecodable frame or event body


class RealtimeError(Exception):
    """Base class for all realtime errors."""

    code: ErrorCode = ErrorCode.TRANSPORT_FAILURE

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code.value)
        self.message = message or self.code.value
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RealtimeError":
        """Rebuild the matching subclass from a wire ``error`` payload."""
        try:
            code = ErrorCode(data.get("code"))
        except ValueError:
            code = ErrorCode.TRANSPORT_FAILURE
        error_cls = _ERRORS_BY_CODE.get(code, TransportFailure)
        return error_cls(str(data.get("message") or ""), data.get("details") or {})


class AuthExpired(RealtimeError):
    code = ErrorCode.AUTH_EXPIRED


class Forbidden(RealtimeError):
    code = ErrorCode.FORBIDDEN


class NotFound(RealtimeError):
    code = ErrorCode.NOT_FOUND


class NotConnected(RealtimeError):
    code = ErrorCode.NOT_CONNECTED


class TransportFailure(RealtimeError):
    code = ErrorCode.TRANSPORT_FAILURE


class MalformedPayload(RealtimeError):
    code = ErrorCode.MALFORMED_PAYLOAD


_ERRORS_BY_CODE = {
    ErrorCode.AUTH_EXPIRED: AuthExpired,
    ErrorCode.FORBIDDEN: Forbidden,
    ErrorCode.NOT_FOUND: NotFound,
    ErrorCode.NOT_CONNECTED: NotConnected,
    ErrorCode.TRANSPORT_FAILURE: TransportFailure,
    ErrorCode.MALFORMED_PAYLOAD: MalformedPayload,
}


def is_reauth_required(error: BaseException) -> bool:
    """True when the user must go back through the authentication flow."""
    return isinstance(error, (AuthExpired, Forbidden))


def is_transient(error: BaseException) -> bool:
    """True for failures that should surface as a reconnecting indicator."""
    return isinstance(error, (TransportFailure, NotConnected))


__all__ = [
    "ErrorCode",
    "RealtimeError",
    "AuthExpired",
    "Forbidden",
    "NotFound",
    "NotConnected",
    "TransportFailure",
    "MalformedPayload",
    "is_reauth_required",
    "is_transient",
]
