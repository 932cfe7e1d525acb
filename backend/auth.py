"""SafeRoute Backend: Bearer credential verification (HS256 JWT)"""

import logging
import time
from typing import Optional

import jwt
from fastapi import Header

from config import JWT_ALGORITHM, JWT_SECRET
from errors import AuthenticationError

logger = logging.getLogger("saferoute.auth")


class CredentialVerifier:
    """Turns a signed token into a subject id, or raises AuthenticationError."""

    def __init__(self, secret: str = JWT_SECRET, algorithm: str = JWT_ALGORITHM):
        self.secret = secret
        self.algorithm = algorithm
        if not secret:
            logger.warning("JWT_SECRET is not set; every credential will be rejected")

    def verify(self, token: Optional[str]) -> str:
        if not token:
            raise AuthenticationError("Token required")
        if not self.secret:
            raise AuthenticationError("Invalid token")
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.PyJWTError as e:
            logger.warning(f"Token verification failed: {e}")
            raise AuthenticationError("Invalid or expired token") from e

        subject = claims.get("userId", claims.get("sub"))
        if subject is None or subject == "":
            raise AuthenticationError("Token has no subject")
        return str(subject)

    def issue(self, subject: str, ttl_seconds: int = 3600, **claims) -> str:
        """Sign a token for `subject`. Used by tooling and tests."""
        if not self.secret:
            raise AuthenticationError("Cannot issue tokens without JWT_SECRET")
        now = int(time.time())
        payload = {"sub": str(subject), "userId": subject, "iat": now, "exp": now + ttl_seconds, **claims}
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)


verifier = CredentialVerifier()


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def require_bearer(authorization: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency: the authenticated subject id for the request."""
    return verifier.verify(bearer_token(authorization))
