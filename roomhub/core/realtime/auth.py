"""Bearer token verification for the session handshake.

Tokens are issued by the external auth service; the hub only checks signature
and expiry and reads the ``sub`` claim as the user id.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from roomhub.core.errors import AuthExpired


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    expires_at: Optional[float] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def token_from_handshake(
    headers: Mapping[str, str], query_params: Mapping[str, str]
) -> Optional[str]:
    """Header first, ``?token=`` query parameter as fallback (browsers cannot set headers)."""
    token = extract_bearer_token(headers.get("authorization"))
    if token:
        return token
    query_token = query_params.get("token")
    if isinstance(query_token, str) and query_token.strip():
        return query_token.strip()
    return None


class TokenVerifier:
    """Validates HS/RS signed JWTs issued by the auth service."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    def verify(self, token: Optional[str]) -> TokenClaims:
        if not token:
            raise AuthExpired("Missing bearer token")
        try:
            payload: dict[str, Any] = jwt.decode(
                token, self.secret, algorithms=[self.algorithm]
            )
        except ExpiredSignatureError as exc:
            raise AuthExpired("Token expired") from exc
        except JWTError as exc:
            raise AuthExpired("Invalid bearer token") from exc

        subject = payload.get("sub")
        if not subject:
            raise AuthExpired("Invalid token claims")

        exp = payload.get("exp")
        expires_at = float(exp) if isinstance(exp, (int, float)) else None
        return TokenClaims(user_id=str(subject), expires_at=expires_at)
