"""
Identity tokens for the real-time channel.

Connections present a signed JWT (HS256 by default). The `sub` claim is the
identity used as partition key for likes, recently viewed and carts. The
engine never looks inside the identity itself.
"""

import time
from typing import Any, Dict, Optional

import jwt

from engagement.config import EngineConfig
from engagement.errors import InvalidIdentity


class TokenVerifier:

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    @classmethod
    def from_config(cls, config: EngineConfig) -> "TokenVerifier":
        return cls(config.jwt_secret, config.jwt_algorithm)

    def verify(self, token: Optional[str]) -> str:
        """Return the identity carried by `token` or raise InvalidIdentity."""
        if not token:
            raise InvalidIdentity("no token provided")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise InvalidIdentity("token expired")
        except jwt.InvalidTokenError as e:
            raise InvalidIdentity(f"malformed token ({type(e).__name__})")

        subject = payload.get("sub")
        if not subject:
            raise InvalidIdentity("token has no subject")
        return str(subject)

    def issue(self, identity: str, ttl_seconds: Optional[int] = 3600, **claims: Any) -> str:
        """Sign a token for `identity`. Used by tooling and tests."""
        payload: Dict[str, Any] = {"sub": identity, "iat": int(time.time()), **claims}
        if ttl_seconds is not None:
            payload["exp"] = int(time.time()) + ttl_seconds
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)
