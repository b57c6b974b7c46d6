from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from chatauth.logging import get_logger

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    ONE_TIME_PASSWORD = "one_time_password"


class InvalidTokenError(Exception):
    """The token cannot be trusted.

    Callers treat every instance the same way; ``reason`` (``malformed``,
    ``bad_signature``, ``expired``, ``wrong_kind``...) exists for logging.
    """

    def __init__(self, reason: str, claims: Optional["TokenClaims"] = None) -> None:
        super().__init__("invalid token")
        self.reason = reason
        self.claims = claims


@dataclass(frozen=True)
class TokenClaims:
    identity: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    token_id: str
    issuer: str


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """HS256 compact JWTs carrying an identity, a kind and an expiry."""

    def __init__(self, secret: str, *, issuer: str = "chatauth") -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._key = secret.encode("utf-8")
        self.issuer = issuer

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        return _encode_segment(digest)

    def encode(
        self,
        identity: str,
        expiry: datetime,
        kind: TokenKind,
        *,
        issued_at: Optional[datetime] = None,
    ) -> str:
        issued = issued_at or datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "sub": str(identity),
            "kind": TokenKind(kind).value,
            "iat": int(issued.timestamp()),
            "exp": int(expiry.timestamp()),
            # Unique per token so two pairs minted in the same second differ
            "jti": uuid.uuid4().hex,
        }
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(
        self,
        token: str,
        *,
        expected_kind: Optional[TokenKind] = None,
        now: Optional[datetime] = None,
    ) -> TokenClaims:
        if not isinstance(token, str):
            raise InvalidTokenError("malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed") from None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise InvalidTokenError("bad_algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            raise InvalidTokenError("bad_signature")

        try:
            payload: Any = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed") from None
        claims = self._claims_from_payload(payload)

        if expected_kind is not None and claims.kind != expected_kind:
            raise InvalidTokenError("wrong_kind", claims)
        current = now or datetime.now(timezone.utc)
        if claims.expires_at <= current:
            raise InvalidTokenError("expired", claims)
        return claims

    def _claims_from_payload(self, payload: Any) -> TokenClaims:
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed")
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("bad_issuer")
        subject = payload.get("sub")
        token_id = payload.get("jti")
        if not isinstance(subject, str) or not subject or not isinstance(token_id, str):
            raise InvalidTokenError("malformed")
        try:
            kind = TokenKind(payload.get("kind"))
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            raise InvalidTokenError("malformed") from None
        return TokenClaims(
            identity=subject,
            kind=kind,
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=token_id,
            issuer=self.issuer,
        )
