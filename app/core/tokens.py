"""
Temporary API Tokens

Short-lived HS256 JWTs signed with a shared secret. Verification checks the
signature, issuer and expiry; there is no revocation list.
"""

from __future__ import annotations
import logging
import secrets
import time
from typing import Any, Callable, Dict, Optional

import jwt

from app.core.config import Config, config

logger = logging.getLogger("functions.tokens")

TOKEN_ISSUER = "anki-pai-api-service"
TOKEN_ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL_SECONDS = 3600


class TokenService:
    """Issues and verifies signed, time-boxed tokens."""

    def __init__(
        self,
        secret: str,
        issuer: str = TOKEN_ISSUER,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret
        self.issuer = issuer
        self._clock = clock

    @classmethod
    def from_config(cls, cfg: Config = config) -> "TokenService":
        secret = cfg.resolve("api.token", "secret", "API_TOKEN_SECRET")
        if not secret:
            logger.warning(
                "API_TOKEN_SECRET is not configured; using a random secret. "
                "Tokens will not verify on other instances or after a restart."
            )
            secret = secrets.token_hex(32)
        return cls(secret)

    def issue(
        self,
        subject: str,
        claims: Optional[Dict[str, Any]] = None,
        expires_in: int = DEFAULT_TOKEN_TTL_SECONDS,
    ) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "sub": subject,
            "iat": now,
            "exp": now + expires_in,
        }
        payload.update(claims or {})
        return jwt.encode(payload, self._secret, algorithm=TOKEN_ALGORITHM)

    def verify(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the payload of a valid token, or None."""
        if not isinstance(token, str):
            return None

        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                issuer=self.issuer,
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            logger.info("Token rejected: expired")
            return None
        except jwt.PyJWTError as e:
            logger.warning(f"Token rejected: {e}")
            return None


# Secret resolved once at import, shared by every request in the process
token_service = TokenService.from_config()
