from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol, Tuple

from chatauth.config import Settings
from chatauth.logging import get_logger
from chatauth.service.errors import (
    InvalidCredentialsError,
    RequestTimeoutError,
    StoreUnavailableError,
    UnauthenticatedError,
)
from chatauth.service.passwords import PasswordService
from chatauth.service.tokens import InvalidTokenError, TokenClaims, TokenCodec, TokenKind
from chatauth.storage.errors import StoreUnavailable
from chatauth.storage.models import TokenPair, UserCredential

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def create_user(
        self, email: str, password_hash: str, full_name: str = ""
    ) -> UserCredential: ...

    def get_user(self, user_id: str) -> Optional[UserCredential]: ...

    def get_user_by_email(self, email: str) -> Optional[UserCredential]: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> bool: ...

    def store_token_pair(self, user_id: str, access_token: str, refresh_token: str) -> bool: ...

    def rotate_token_pair(
        self,
        user_id: str,
        expected_refresh_token: str,
        access_token: str,
        refresh_token: str,
    ) -> bool: ...

    def mark_logged_out(self, user_id: str) -> bool: ...

    def set_one_time_password(self, user_id: str, token: str) -> bool: ...

    def consume_one_time_password(self, user_id: str, expected_token: str) -> bool: ...

    def verify_connection(self) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    status: str
    token_expires_at: Optional[datetime] = None


def _same_token(stored: Optional[str], presented: Optional[str]) -> bool:
    if not stored or not presented:
        return False
    return hmac.compare_digest(stored.encode(), presented.encode())


class AuthService:
    """Issues, rotates and revokes access/refresh token pairs.

    Each identity holds at most one valid pair: the one currently written on
    its credential row. A token is only honoured when it verifies, has not
    expired, and equals that stored value while the row is not logged out.
    Every rejection reaches the caller as ``UnauthenticatedError``; the reason
    is logged.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        passwords: Optional[PasswordService] = None,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords or PasswordService()
        self.codec = codec or TokenCodec(
            settings.auth.signing_secret, issuer=settings.auth.issuer
        )
        self.access_ttl = timedelta(minutes=settings.auth.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.auth.refresh_token_ttl_minutes)
        self.one_time_password_ttl = timedelta(
            minutes=settings.auth.one_time_password_ttl_minutes
        )
        self.timeout = settings.server.request_timeout_secs
        self.logger = logger

    def _now(self) -> datetime:
        # Whole seconds, matching the precision of the encoded iat/exp claims
        return datetime.now(timezone.utc).replace(microsecond=0)

    async def _store_call(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking store call in a worker thread, bounded by the request timeout.

        A cancelled caller does not interrupt the thread, so the single
        statement it is executing either lands whole or not at all.
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), self.timeout)
        except asyncio.TimeoutError:
            self.logger.error("store_call_timeout", operation=operation, timeout=self.timeout)
            raise StoreUnavailableError("credential store unavailable") from None
        except StoreUnavailable as exc:
            self.logger.error("store_call_failed", operation=operation, error=exc.message)
            raise StoreUnavailableError("credential store unavailable") from exc

    async def _offload(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), self.timeout)
        except asyncio.TimeoutError:
            self.logger.error("offload_timeout", operation=operation, timeout=self.timeout)
            raise RequestTimeoutError("request timed out") from None

    def _reject(
        self, reason: str, *, kind: TokenKind, user_id: Optional[str] = None
    ) -> UnauthenticatedError:
        self.logger.warning(
            "token_rejected", reason=reason, token_kind=kind.value, user_id=user_id
        )
        return UnauthenticatedError("invalid token")

    def _decode(self, token: Optional[str], kind: TokenKind) -> TokenClaims:
        if not token:
            raise self._reject("missing", kind=kind)
        try:
            return self.codec.decode(token, expected_kind=kind)
        except InvalidTokenError as exc:
            user_id = exc.claims.identity if exc.claims else None
            raise self._reject(exc.reason, kind=kind, user_id=user_id) from None

    def _mint_pair(self, user_id: str) -> TokenPair:
        now = self._now()
        access_expires_at = now + self.access_ttl
        refresh_expires_at = now + self.refresh_ttl
        return TokenPair(
            access_token=self.codec.encode(
                user_id, access_expires_at, TokenKind.ACCESS, issued_at=now
            ),
            access_expires_at=access_expires_at,
            refresh_token=self.codec.encode(
                user_id, refresh_expires_at, TokenKind.REFRESH, issued_at=now
            ),
            refresh_expires_at=refresh_expires_at,
            issued_at=now,
        )

    async def register(self, email: str, password: str, full_name: str = "") -> UserCredential:
        password_hash = await self._offload("hash_password", self.passwords.hash, password)
        user = await self._store_call(
            "create_user", self.store.create_user, email, password_hash, full_name
        )
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def login(self, identifier: str, password: str) -> Tuple[UserCredential, TokenPair]:
        user = await self._store_call(
            "get_user_by_email", self.store.get_user_by_email, identifier
        )
        if not user:
            await self._offload("verify_password", self.passwords.verify_dummy, password)
            self.logger.info("login_rejected", reason="unknown_identity")
            raise InvalidCredentialsError("invalid email or password")

        verified = await self._offload(
            "verify_password", self.passwords.verify, password, user.password_hash
        )
        if not verified:
            self.logger.info("login_rejected", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError("invalid email or password")
        if not user.is_active:
            self.logger.info("login_rejected", reason="inactive", user_id=user.id)
            raise InvalidCredentialsError("invalid email or password")

        if self.passwords.needs_rehash(user.password_hash):
            new_hash = await self._offload("hash_password", self.passwords.hash, password)
            await self._store_call(
                "update_password_hash", self.store.update_password_hash, user.id, new_hash
            )
            self.logger.info("password_rehashed", user_id=user.id)

        pair = await self.issue(user.id)
        return user, pair

    async def issue(self, user_id: str) -> TokenPair:
        """Start a fresh session, superseding any pair issued before."""
        pair = self._mint_pair(user_id)
        stored = await self._store_call(
            "store_token_pair",
            self.store.store_token_pair,
            user_id,
            pair.access_token,
            pair.refresh_token,
        )
        if not stored:
            raise self._reject("unknown_identity", kind=TokenKind.ACCESS, user_id=user_id)
        self.logger.info(
            "tokens_issued",
            user_id=user_id,
            access_expires_at=pair.access_expires_at.isoformat(),
            refresh_expires_at=pair.refresh_expires_at.isoformat(),
        )
        return pair

    async def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        """Exchange the current refresh token for a new pair.

        The presented token is single-use: the write is conditioned on it
        still being the stored value, so a replayed or concurrently reused
        token loses even before it expires.
        """
        kind = TokenKind.REFRESH
        claims = self._decode(refresh_token, kind)
        user = await self._store_call("get_user", self.store.get_user, claims.identity)
        if not user:
            raise self._reject("unknown_identity", kind=kind, user_id=claims.identity)
        if user.is_logged_out:
            raise self._reject("revoked", kind=kind, user_id=user.id)
        if not _same_token(user.refresh_token, refresh_token):
            raise self._reject("superseded", kind=kind, user_id=user.id)
        if not user.is_active:
            raise self._reject("inactive", kind=kind, user_id=user.id)

        pair = self._mint_pair(user.id)
        rotated = await self._store_call(
            "rotate_token_pair",
            self.store.rotate_token_pair,
            user.id,
            refresh_token,
            pair.access_token,
            pair.refresh_token,
        )
        if not rotated:
            raise self._reject("superseded", kind=kind, user_id=user.id)
        self.logger.info(
            "tokens_rotated",
            user_id=user.id,
            refresh_expires_at=pair.refresh_expires_at.isoformat(),
        )
        return pair

    async def revoke(self, user_id: str) -> None:
        """Log the identity out. Revoking an already revoked session succeeds."""
        found = await self._store_call("mark_logged_out", self.store.mark_logged_out, user_id)
        if not found:
            raise self._reject("unknown_identity", kind=TokenKind.ACCESS, user_id=user_id)
        self.logger.info("session_revoked", user_id=user_id)

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        """Resolve a protected request's access token to its identity."""
        kind = TokenKind.ACCESS
        claims = self._decode(access_token, kind)
        user = await self._store_call("get_user", self.store.get_user, claims.identity)
        if not user:
            raise self._reject("unknown_identity", kind=kind, user_id=claims.identity)
        if user.is_logged_out:
            raise self._reject("revoked", kind=kind, user_id=user.id)
        if not _same_token(user.access_token, access_token):
            raise self._reject("superseded", kind=kind, user_id=user.id)
        if not user.is_active:
            raise self._reject("inactive", kind=kind, user_id=user.id)
        return AuthContext(
            user_id=user.id,
            email=user.email,
            status=user.status.value,
            token_expires_at=claims.expires_at,
        )

    async def logout(self, access_token: Optional[str]) -> str:
        """Revoke the session an access token belongs to and return its identity.

        Repeating a logout with the same token is a no-op success. A token that
        was superseded by a later login is rejected so it cannot end the newer
        session.
        """
        kind = TokenKind.ACCESS
        claims = self._decode(access_token, kind)
        user = await self._store_call("get_user", self.store.get_user, claims.identity)
        if not user:
            raise self._reject("unknown_identity", kind=kind, user_id=claims.identity)
        if user.is_logged_out:
            self.logger.info("logout_already_revoked", user_id=user.id)
            return user.id
        if not _same_token(user.access_token, access_token):
            raise self._reject("superseded", kind=kind, user_id=user.id)
        await self.revoke(user.id)
        return user.id

    async def issue_one_time_password(self, user_id: str) -> Tuple[str, datetime]:
        now = self._now()
        expires_at = now + self.one_time_password_ttl
        token = self.codec.encode(
            user_id, expires_at, TokenKind.ONE_TIME_PASSWORD, issued_at=now
        )
        stored = await self._store_call(
            "set_one_time_password", self.store.set_one_time_password, user_id, token
        )
        if not stored:
            raise self._reject(
                "unknown_identity", kind=TokenKind.ONE_TIME_PASSWORD, user_id=user_id
            )
        self.logger.info("one_time_password_issued", user_id=user_id)
        return token, expires_at

    async def consume_one_time_password(self, token: Optional[str]) -> AuthContext:
        kind = TokenKind.ONE_TIME_PASSWORD
        claims = self._decode(token, kind)
        user = await self._store_call("get_user", self.store.get_user, claims.identity)
        if not user:
            raise self._reject("unknown_identity", kind=kind, user_id=claims.identity)
        if not user.is_active:
            raise self._reject("inactive", kind=kind, user_id=user.id)
        # Revoke clears the stored value, so a logged-out session fails here too
        consumed = await self._store_call(
            "consume_one_time_password",
            self.store.consume_one_time_password,
            user.id,
            token,
        )
        if not consumed:
            raise self._reject("superseded", kind=kind, user_id=user.id)
        self.logger.info("one_time_password_consumed", user_id=user.id)
        return AuthContext(
            user_id=user.id,
            email=user.email,
            status=user.status.value,
            token_expires_at=claims.expires_at,
        )
