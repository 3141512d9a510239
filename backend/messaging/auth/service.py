"""JWT verification for incoming connections.

Tokens are issued elsewhere (the marketplace login flow); this service only
verifies the signature and expiry and extracts the user identity.
"""
import logging
from typing import Iterable, Optional

import jwt

from messaging.errors import Unauthenticated

logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "


class TokenAuthenticator:
    """Resolves a bearer token to a user identity."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        identity_claims: Iterable[str] = ("userId", "_id", "sub"),
        leeway_seconds: int = 0,
    ) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._identity_claims = tuple(identity_claims)
        self._leeway = leeway_seconds

    @classmethod
    def from_config(cls, config) -> "TokenAuthenticator":
        return cls(
            secret_key=config.secrets.jwt.secret_key,
            algorithm=config.secrets.jwt.algorithm,
            identity_claims=config.auth.identity_claims,
            leeway_seconds=config.auth.leeway_seconds,
        )

    def authenticate(self, token: Optional[str]) -> str:
        """Verify *token* and return the user id it was issued for.

        Raises:
            Unauthenticated: Token missing, invalid, expired, or without an
                identity claim.
        """
        if not token:
            raise Unauthenticated("Authentication token required")

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                leeway=self._leeway,
            )
        except jwt.ExpiredSignatureError as exc:
            raise Unauthenticated("Token expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.debug("[Auth] Rejected token: %s", exc)
            raise Unauthenticated("Invalid token") from exc

        for claim in self._identity_claims:
            value = payload.get(claim)
            if value:
                return str(value)
        raise Unauthenticated("Token carries no user identity")

    def authenticate_header(self, authorization: Optional[str]) -> str:
        """Authenticate an ``Authorization: Bearer <token>`` header value."""
        if not authorization or not authorization.lower().startswith(BEARER_PREFIX):
            raise Unauthenticated("Authentication token required")
        return self.authenticate(authorization[len(BEARER_PREFIX):].strip())

    def issue(self, user_id: str, **claims) -> str:
        """Sign a token for *user_id*. Used by tests and local tooling."""
        payload = {self._identity_claims[0]: user_id, **claims}
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
