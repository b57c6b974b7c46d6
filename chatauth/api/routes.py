from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Request, Response

from chatauth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    OneTimePasswordResponse,
    OneTimePasswordVerifyRequest,
    RegisterRequest,
    RegisterResponse,
    TokenRefreshRequest,
    UserResponse,
)
from chatauth.logging import get_logger
from chatauth.service.auth import AuthContext
from chatauth.service.runtime import Runtime
from chatauth.service.session_policy import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    apply_auth_cookies,
    clear_auth_cookies,
)
from chatauth.storage.models import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def _access_token(authorization: Optional[str], cookie_value: Optional[str]) -> Optional[str]:
    # An explicit Authorization header wins over the browser cookie
    return _bearer_token(authorization) or cookie_value


def _auth_response(user_id: str, pair: TokenPair) -> AuthResponse:
    return AuthResponse(
        user_id=user_id,
        access_token=pair.access_token,
        access_expires_at=pair.access_expires_at,
        refresh_token=pair.refresh_token,
        refresh_expires_at=pair.refresh_expires_at,
        token_type=pair.token_type,
    )


async def get_current_user(
    runtime: Runtime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    """Guard for protected routes; raises 401 unless the access token is current."""
    return await runtime.auth.authenticate(_access_token(authorization, access_token))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create a credential record.

    Raises:
        409: If the email is already registered
    """
    user = await runtime.auth.register(body.email, body.password, body.full_name)
    return Envelope(status="ok", data=RegisterResponse(user_id=user.id, email=user.email))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest, response: Response, runtime: Runtime = Depends(get_runtime)
):
    """Verify email and password, then start a session.

    The token pair is returned in the body and also set as HTTP-only cookies.

    Raises:
        401: If the email is unknown, the password is wrong, or the user is inactive
    """
    user, pair = await runtime.auth.login(body.email, body.password)
    apply_auth_cookies(response, pair, runtime.cookies)
    return Envelope(status="ok", data=_auth_response(user.id, pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    runtime: Runtime = Depends(get_runtime),
):
    token = (body.refresh_token if body else None) or refresh_cookie
    pair = await runtime.auth.refresh(token)
    claims = runtime.auth.codec.decode(pair.access_token)
    apply_auth_cookies(response, pair, runtime.cookies)
    return Envelope(status="ok", data=_auth_response(claims.identity, pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    runtime: Runtime = Depends(get_runtime),
):
    user_id = await runtime.auth.logout(_access_token(authorization, access_token))
    clear_auth_cookies(response, runtime.cookies)
    return Envelope(status="ok", data=LogoutResponse(user_id=user_id))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_current_user)):
    return Envelope(
        status="ok",
        data=UserResponse(
            user_id=principal.user_id, email=principal.email, status=principal.status
        ),
    )


@router.post("/auth/one-time-password", response_model=Envelope, tags=["auth"])
async def issue_one_time_password(
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    token, expires_at = await runtime.auth.issue_one_time_password(principal.user_id)
    return Envelope(
        status="ok", data=OneTimePasswordResponse(token=token, expires_at=expires_at)
    )


@router.post("/auth/one-time-password/verify", response_model=Envelope, tags=["auth"])
async def verify_one_time_password(
    body: OneTimePasswordVerifyRequest, runtime: Runtime = Depends(get_runtime)
):
    """Consume a one-time password. Each token is accepted at most once."""
    ctx = await runtime.auth.consume_one_time_password(body.token)
    return Envelope(
        status="ok",
        data=UserResponse(user_id=ctx.user_id, email=ctx.email, status=ctx.status),
    )
