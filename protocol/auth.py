"""
Decision Core — Bearer Credentials

Every protocol call carries a short-lived HS256 JWT proving who sent
it, who it is for, and which message it covers:

    sub  sender agent id
    aud  recipient agent id
    mid  message id
    iat  issued at
    exp  expiry (iat + ttl)

The shared signing key comes from CC_SIGNING_KEY via engine.secrets
and is never logged.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from engine.secrets import SIGNING_KEY_NAME, get_secret
from protocol.errors import AuthenticationError

logger = logging.getLogger("decision_core.protocol.auth")

JWT_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ["sub", "aud", "mid", "iat", "exp"]


def load_signing_key() -> str:
    """Read the shared signing key; refuse to run without one."""
    key = get_secret(SIGNING_KEY_NAME)
    if not key:
        raise ValueError(f"{SIGNING_KEY_NAME} is not set")
    return key


class TokenSigner:
    """Issues bearer credentials for outbound messages."""

    def __init__(self, secret: str, ttl_seconds: int = 300):
        if not secret:
            raise ValueError("signing key must not be empty")
        self._secret = secret
        self.ttl_seconds = ttl_seconds

    def sign(self, sender_id: str, recipient_id: str, message_id: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": sender_id,
            "aud": recipient_id,
            "mid": message_id,
            "iat": now,
            "exp": now + timedelta(seconds=self.ttl_seconds),
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)


class TokenVerifier:
    """Verifies bearer credentials addressed to one agent."""

    def __init__(self, secret: str, audience: str, leeway_seconds: int = 5):
        if not secret:
            raise ValueError("signing key must not be empty")
        self._secret = secret
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    def verify(self, token: str, sender_id: str, message_id: str) -> dict[str, Any]:
        """
        Decode and check a credential against the message it came with.

        Raises:
            AuthenticationError: bad signature, expired, wrong audience,
                or claims that do not match the envelope.
        """
        if not token:
            raise AuthenticationError("missing bearer credential")
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                audience=self.audience,
                leeway=self.leeway_seconds,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("credential expired")
        except jwt.InvalidAudienceError:
            raise AuthenticationError(f"credential is not addressed to {self.audience}")
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"invalid credential: {e}")

        if claims["sub"] != sender_id:
            logger.warning("Credential subject does not match sender %s", sender_id)
            raise AuthenticationError("credential subject does not match sender")
        if claims["mid"] != message_id:
            raise AuthenticationError("credential does not cover this message")
        return claims
