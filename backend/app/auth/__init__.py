"""Authentication module.

Verifies the bearer tokens issued by the account service at login. The chat
service consumes identities only; it never creates accounts.

Services:
    - TokenVerifier: JWT verification into an Identity (userId, name).
"""
from .service import Identity, TokenVerifier, bearer_token

__all__ = ["Identity", "TokenVerifier", "bearer_token"]
