"""Signed, time-bound bearer tokens (HS256 JWT).

The codec is a pure function of ``(token, now, secret)``: it holds no state
beyond its configuration and never touches a store. Revocation is checked by
the caller before ``verify`` runs.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from taskman.logging import get_logger

logger = get_logger(__name__)


class TokenError(Exception):
    """Token failed verification; ``reason`` is a stable machine-readable code."""

    reason = "invalid"

    def __init__(self, message: str = "invalid token") -> None:
        super().__init__(message)
        self.message = message


class MalformedToken(TokenError):
    reason = "malformed"


class BadSignature(TokenError):
    reason = "bad_signature"


class TokenExpired(TokenError):
    reason = "expired"


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    iat: int
    exp: int
    iss: str
    aud: str
    jti: str

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)


def token_fingerprint(token: str) -> str:
    """Short, non-reversible handle for a token, safe to log."""
    return hashlib.sha256(token.encode()).hexdigest()[:12]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(
        self, subject_id: str, ttl: timedelta, *, now: Optional[datetime] = None
    ) -> str:
        issued = int((now or _now()).timestamp())
        payload = {
            "sub": subject_id,
            "iat": issued,
            "exp": issued + int(ttl.total_seconds()),
            "iss": self.issuer,
            "aud": self.audience,
            "jti": secrets.token_hex(16),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _split(self, token: str) -> tuple[str, str, str]:
        # Header values arrive latin-1 decoded; a valid token is always pure ASCII
        if not isinstance(token, str) or not token.isascii():
            raise MalformedToken()
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedToken()
        return parts[0], parts[1], parts[2]

    def _load_json(self, segment: str) -> dict[str, Any]:
        try:
            value = json.loads(self._decode_segment(segment))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise MalformedToken() from exc
        if not isinstance(value, dict):
            raise MalformedToken()
        return value

    def verify(self, token: str, *, now: Optional[datetime] = None) -> TokenClaims:
        """Return the claims of ``token`` or raise a ``TokenError`` subclass.

        Checks run in this order: structure and header algorithm, signature,
        payload claims, then expiry. A token exactly at its ``exp`` second is
        already expired.
        """

        header_b64, payload_b64, sig_b64 = self._split(token)

        # Only HS256 is accepted so an attacker cannot pick the algorithm
        header = self._load_json(header_b64)
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=str(header.get("alg")))
            raise MalformedToken()

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise BadSignature()

        payload = self._load_json(payload_b64)
        if payload.get("iss") != self.issuer:
            raise MalformedToken()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise MalformedToken()

        sub = payload.get("sub")
        exp = payload.get("exp")
        iat = payload.get("iat", 0)
        if not isinstance(sub, str) or not sub:
            raise MalformedToken()
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise MalformedToken()
        if isinstance(iat, bool) or not isinstance(iat, (int, float)):
            raise MalformedToken()

        current = (now or _now()).timestamp()
        if current >= exp + self.leeway_seconds:
            raise TokenExpired()

        return TokenClaims(
            sub=sub,
            iat=int(iat),
            exp=int(exp),
            iss=payload["iss"],
            aud=self.audience,
            jti=str(payload.get("jti", "")),
        )

    def unverified_expiry(self, token: str) -> Optional[datetime]:
        """Read ``exp`` without checking the signature, or None if unreadable.

        Only used to decide how long a revocation entry must be kept.
        """

        try:
            _, payload_b64, _ = self._split(token)
            exp = self._load_json(payload_b64).get("exp")
        except MalformedToken:
            return None
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        try:
            return datetime.fromtimestamp(exp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
