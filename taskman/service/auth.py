from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from taskman.config import Settings
from taskman.logging import get_logger
from taskman.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
)
from taskman.service.tokens import TokenClaims, TokenCodec, TokenError, token_fingerprint
from taskman.storage.errors import ConstraintViolation
from taskman.storage.models import User

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


class RevocationStore(Protocol):
    async def revoke(self, token: str, expires_at: Optional[datetime] = None) -> None: ...

    async def is_revoked(self, token: str) -> bool: ...

    async def prune(self, now: Optional[datetime] = None) -> int: ...


# Gate rejection reasons and the message each one surfaces to clients
_REJECTION_MESSAGES = {
    "token_required": "token required",
    "token_revoked": "token revoked",
    "token_malformed": "invalid token",
    "token_bad_signature": "invalid token",
    "token_expired": "invalid token",
    "user_not_found": "user no longer exists",
}


@dataclass
class AuthOutcome:
    """Result of running a request through the authentication gate.

    Exactly one of ``user`` or ``reason`` is set.
    """

    user: Optional[User] = None
    claims: Optional[TokenClaims] = None
    token: Optional[str] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.user is not None

    @property
    def message(self) -> Optional[str]:
        return _REJECTION_MESSAGES.get(self.reason) if self.reason else None

    def raise_for_failure(self) -> None:
        if self.ok:
            return
        detail = {"reason": self.reason}
        if self.reason == "user_not_found":
            raise NotFoundError(self.message, detail=detail)
        raise AuthenticationError(self.message or "invalid token", detail=detail)


class AuthService:
    """Signup, login, logout and per-request bearer token authentication."""

    def __init__(
        self,
        store: CredentialStore,
        revocations: RevocationStore,
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.store = store
        self.revocations = revocations
        self.settings = settings
        self.codec = codec or TokenCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.jwt_leeway_seconds,
        )
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
            type=Type.ID,
        )
        # Verified against for unknown emails so both login failure paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def _hash_password(self, password: str) -> tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        token = token.strip()
        return token or None

    async def signup(self, username: str, email: str, password: str) -> User:
        try:
            existing = self.store.get_user_by_email(email)
        except Exception as exc:
            self.logger.error("signup_failed", error=str(exc))
            raise ServerError("error creating user") from exc
        if existing:
            raise ConflictError(
                "user already exists, please login", detail={"field": "email"}
            )
        try:
            pwd_hash, algo = self._hash_password(password)
            # User and hash go in together; a rejected write leaves nothing behind
            user = self.store.create_user(username, email, pwd_hash, algo)
        except ConstraintViolation as exc:
            raise ConflictError(
                "user already exists, please login", detail=exc.detail
            ) from exc
        except Exception as exc:
            self.logger.error("signup_failed", error=str(exc))
            raise ServerError("error creating user") from exc
        self.logger.info("user_signed_up", user_id=user.id)
        return user

    async def login(self, email: str, password: str) -> str:
        try:
            user = self.store.get_user_by_email(email)
        except Exception as exc:
            self.logger.error("login_lookup_failed", error=str(exc))
            raise ServerError("error logging in") from exc

        if user is None:
            self._verify_hash(self._dummy_hash, password)
            valid = False
        elif user.password_algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user.id, algo=user.password_algo)
            valid = False
        else:
            valid = self._verify_hash(user.password_hash, password)

        if not valid:
            self.logger.info("login_failed")
            raise AuthenticationError("invalid credentials")

        token = self.codec.issue(user.id, self.access_token_ttl)
        self.logger.info(
            "login_succeeded", user_id=user.id, token_fingerprint=token_fingerprint(token)
        )
        return token

    async def logout(self, token: str, expires_at: Optional[datetime] = None) -> None:
        """Revoke ``token``. Revoking an already revoked token is a no-op."""

        if expires_at is None:
            expires_at = self.codec.unverified_expiry(token)
        if expires_at is not None:
            # Verification accepts the token until exp plus leeway; keep the entry as long
            expires_at += timedelta(seconds=self.codec.leeway_seconds)
        try:
            await self.revocations.revoke(token, expires_at)
        except Exception as exc:
            self.logger.error("logout_failed", error=str(exc))
            raise ServerError("error logging out") from exc
        self.logger.info("token_revoked", token_fingerprint=token_fingerprint(token))

    async def authenticate(self, authorization: Optional[str]) -> AuthOutcome:
        """Resolve a request's ``Authorization`` header to a user.

        Steps run strictly in order and stop at the first failure: token
        present, token not revoked, token verifies, subject still exists.
        Revocation is checked before the signature so a revoked token is
        reported as revoked even when it is otherwise valid.
        """

        token = self._extract_bearer(authorization)
        if token is None:
            return self._reject("token_required")

        fingerprint = token_fingerprint(token)
        try:
            revoked = await self.revocations.is_revoked(token)
        except Exception as exc:
            self.logger.error("revocation_check_failed", token_fingerprint=fingerprint, error=str(exc))
            raise ServerError("authentication error") from exc
        if revoked:
            return self._reject("token_revoked", fingerprint)

        try:
            claims = self.codec.verify(token)
        except TokenError as exc:
            return self._reject(f"token_{exc.reason}", fingerprint)

        try:
            user = self.store.get_user(claims.sub)
        except Exception as exc:
            self.logger.error("subject_lookup_failed", user_id=claims.sub, error=str(exc))
            raise ServerError("authentication error") from exc
        if user is None:
            return self._reject("user_not_found", fingerprint)

        return AuthOutcome(user=user, claims=claims, token=token)

    def _reject(self, reason: str, fingerprint: Optional[str] = None) -> AuthOutcome:
        self.logger.info("auth_rejected", token_reason=reason, token_fingerprint=fingerprint)
        return AuthOutcome(reason=reason)

    async def prune_revocations(self, now: Optional[datetime] = None) -> int:
        """Drop revocation entries whose token has expired on its own."""

        removed = await self.revocations.prune(now)
        if removed:
            self.logger.info("revocations_pruned", count=removed)
        return removed
