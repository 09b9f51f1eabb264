"""Bearer-token identity verification.

The account service signs an HS256 JWT at login with two claims::

    {"userId": "<id>", "name": "<display name>", "exp": ...}

The chat service only needs to verify that token and read the identity out
of it. ``issue_token`` produces the same shape for local tooling and tests.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from app.chat.errors import AuthenticationError

logger = logging.getLogger(__name__)

AUTH_REQUIRED = "Authentication required"
INVALID_TOKEN = "Invalid token"


@dataclass(frozen=True)
class Identity:
    """A verified user: the only thing the chat service knows about accounts."""
    user_id: str
    name: str


class TokenVerifier:
    """Verifies bearer tokens and yields the Identity they carry."""

    def __init__(self, secret_key: str, algorithm: str = "HS256"):
        self.secret_key = secret_key
        self.algorithm = algorithm

    def verify(self, token: Optional[str]) -> Identity:
        """Validate a credential.

        Raises:
            AuthenticationError: "Authentication required" when no token was
                presented, "Invalid token" when it fails verification or does
                not carry a userId.
        """
        if not token:
            raise AuthenticationError(AUTH_REQUIRED)
        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.PyJWTError as e:
            logger.info(f"[Auth] Token rejected: {e}")
            raise AuthenticationError(INVALID_TOKEN) from e

        user_id = claims.get("userId")
        if user_id in (None, ""):
            logger.info("[Auth] Token rejected: userId claim missing")
            raise AuthenticationError(INVALID_TOKEN)
        user_id = str(user_id)
        return Identity(user_id=user_id, name=str(claims.get("name") or user_id))

    def issue_token(self, identity: Identity, expires_in_minutes: int = 60) -> str:
        """Sign a token for ``identity`` that :meth:`verify` accepts."""
        now = datetime.now(timezone.utc)
        payload = {
            "userId": identity.user_id,
            "name": identity.name,
            "iat": now,
            "exp": now + timedelta(minutes=expires_in_minutes),
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None
