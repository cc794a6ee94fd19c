from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Optional

from authcore.logging import get_logger
from authcore.service.errors import InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)

TOKEN_HASH_LENGTH = 32


def token_hash(token: str) -> str:
    """Fixed-length lookup key for a bearer token (truncated SHA-256 hex)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:TOKEN_HASH_LENGTH]


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """HS256 access tokens.

    ``verify`` raises :class:`TokenExpiredError` only for a token whose
    signature, issuer and audience all check out but whose ``exp`` has
    passed; every other failure raises :class:`InvalidTokenError`.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        expires_in_seconds: int = 7 * 24 * 3600,
        leeway_seconds: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.expires_in_seconds = expires_in_seconds
        self.leeway_seconds = leeway_seconds

    def _signature(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode("utf-8"), hashlib.sha256).digest()
        )

    def sign(self, claims: dict[str, Any], *, expires_in_seconds: Optional[int] = None) -> str:
        now = int(time.time())
        ttl = self.expires_in_seconds if expires_in_seconds is None else expires_in_seconds
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + ttl,
            "jti": claims.get("jti") or str(uuid.uuid4()),
            "token_type": "access",
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":"), default=str).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def _split(self, token: str) -> tuple[dict[str, Any], dict[str, Any], str, str]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
            header = json.loads(_decode_segment(header_b64))
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError, AttributeError) as exc:
            raise InvalidTokenError("malformed token") from exc
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise InvalidTokenError("malformed token")
        return header, payload, f"{header_b64}.{payload_b64}", sig_b64

    def verify(self, token: str) -> dict[str, Any]:
        header, payload, signing_input, sig_b64 = self._split(token)
        # Reject alg=none and friends before touching the signature
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidTokenError("unsupported token algorithm")
        if not hmac.compare_digest(self._signature(signing_input), sig_b64):
            raise InvalidTokenError("invalid token signature")
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("invalid token issuer")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise InvalidTokenError("invalid token audience")
        if payload.get("token_type") != "access" or not payload.get("sub"):
            raise InvalidTokenError("invalid token claims")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError("invalid token expiry") from exc
        if exp_ts <= time.time() - self.leeway_seconds:
            raise TokenExpiredError("token expired")
        return payload

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Read claims without verifying anything. Never use for authorization."""
        try:
            return self._split(token)[1]
        except InvalidTokenError:
            return None

    def seconds_until_expiry(self, token: str) -> int:
        payload = self.decode(token) or {}
        try:
            return max(0, int(float(payload.get("exp", 0)) - time.time()))
        except (TypeError, ValueError):
            return 0
