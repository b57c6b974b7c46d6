from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import Response

from chatauth.storage.models import TokenPair

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

SameSite = Literal["strict", "lax", "none"]


@dataclass(frozen=True)
class CookieAttributes:
    secure: bool
    same_site: SameSite
    http_only: bool = True
    domain: Optional[str] = None
    path: str = "/"


def cookie_attributes(environment: str, *, domain: Optional[str] = None) -> CookieAttributes:
    """Cookie flags for the given runtime environment.

    Only production demands ``Secure`` so that local development over plain
    HTTP keeps working. Tokens are never readable from script.
    """
    is_production = (environment or "").strip().lower() == "production"
    return CookieAttributes(
        secure=is_production,
        same_site="lax",
        http_only=True,
        domain=domain or None,
    )


def _max_age(expires_at: datetime) -> int:
    remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
    return max(int(remaining), 0)


def apply_auth_cookies(response: Response, pair: TokenPair, attributes: CookieAttributes) -> None:
    for name, value, expires_at in (
        (ACCESS_COOKIE, pair.access_token, pair.access_expires_at),
        (REFRESH_COOKIE, pair.refresh_token, pair.refresh_expires_at),
    ):
        response.set_cookie(
            name,
            value,
            max_age=_max_age(expires_at),
            path=attributes.path,
            domain=attributes.domain,
            secure=attributes.secure,
            httponly=attributes.http_only,
            samesite=attributes.same_site,
        )


def clear_auth_cookies(response: Response, attributes: CookieAttributes) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path=attributes.path,
            domain=attributes.domain,
            secure=attributes.secure,
            httponly=attributes.http_only,
            samesite=attributes.same_site,
        )
