"""Signing and verification of gateway deliveries."""

from __future__ import annotations

import base64
import hashlib
import logging
import time
import uuid
from typing import Mapping, Optional

import jwt

from ..config import SigningConfig
from ..constants import SIGNATURE_ISSUER, SIGNATURE_TTL
from ..exceptions import AuthError

logger = logging.getLogger(__name__)


def body_digest(body: str | bytes) -> str:
    """URL-safe, unpadded base64 SHA-256 of the request body."""
    raw = body.encode("utf-8") if isinstance(body, str) else body
    digest = hashlib.sha256(raw).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class SignatureReceiver:
    """Verifies HS256 delivery signatures against the current or next key.

    Signatures are produced with ``current_key``, falling back to ``next_key``
    only when no current key is configured. Receivers also accept
    ``next_key`` so a sender can be moved to the new key before it becomes
    current.
    """

    def __init__(
        self,
        current_key: Optional[str],
        next_key: Optional[str] = None,
        leeway: int = 0,
    ) -> None:
        if not current_key and not next_key:
            raise ValueError("at least one signing key is required")
        self.current_key = current_key
        self.next_key = next_key
        self.leeway = leeway

    @classmethod
    def from_config(cls, config: SigningConfig) -> Optional["SignatureReceiver"]:
        if not config.enabled:
            return None
        return cls(config.current_key, config.next_key)

    def _keys(self) -> list[str]:
        return [key for key in (self.current_key, self.next_key) if key]

    def sign(self, body: str | bytes, url: Optional[str] = None) -> str:
        """Produce a signature for ``body`` addressed to ``url``."""
        now = int(time.time())
        claims = {
            "iss": SIGNATURE_ISSUER,
            "iat": now,
            "nbf": now,
            "exp": now + SIGNATURE_TTL,
            "jti": str(uuid.uuid4()),
            "body": body_digest(body),
        }
        if url:
            claims["sub"] = url
        return jwt.encode(claims, self._keys()[0], algorithm="HS256")

    def verify(
        self, signature: Optional[str], body: str | bytes, url: Optional[str] = None
    ) -> Mapping:
        """Validate ``signature`` and return its claims.

        Raises:
            AuthError: missing signature, bad key, expired token, or a
                body/url that does not match the signed claims.
        """
        if not signature:
            raise AuthError("missing signature header")

        last_error: Exception | None = None
        for key in self._keys():
            try:
                claims = jwt.decode(
                    signature,
                    key,
                    algorithms=["HS256"],
                    issuer=SIGNATURE_ISSUER,
                    leeway=self.leeway,
                )
            except jwt.InvalidTokenError as exc:
                last_error = exc
                continue
            if claims.get("body") != body_digest(body):
                raise AuthError("signature body hash mismatch")
            if url and claims.get("sub") != url:
                raise AuthError("signature subject does not match url")
            return claims

        logger.warning(f"Rejected delivery signature: {last_error}")
        raise AuthError(f"invalid signature: {last_error}")
