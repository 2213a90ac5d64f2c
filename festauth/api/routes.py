from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from festauth.api.schemas import (
    AuthResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
    VerifyEmailRequest,
)
from festauth.logging import email_fingerprint
from festauth.service.auth import AuthResult, MessageResult
from festauth.service.errors import AuthError, AuthErrorKind, TokenFailure
from festauth.service.runtime import check_rate_limit, get_runtime
from festauth.service.tokens import AccessClaims

router = APIRouter(prefix="/v1")

RATE_LIMIT_WINDOW_SECONDS = 60


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.headers())


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one request from ``key``'s bucket or raise 429."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, RATE_LIMIT_WINDOW_SECONDS, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={**info.headers(), "Retry-After": str(max(1, reset_seconds))},
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    # Peer address only; a proxy must rewrite it (uvicorn --proxy-headers).
    return request.client.host if request.client else None


def _email_key(email: str) -> str:
    return email_fingerprint(email or "")


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.user_id,
        email=result.email,
        display_name=result.display_name,
        user_type=result.user_type,
        access_token=result.access_token,
        access_token_expires_at=result.access_token_expires_at,
        refresh_token=result.refresh_token,
        refresh_token_expires_at=result.refresh_token_expires_at,
        token_type=result.token_type,
    )


def _message(result: MessageResult) -> Envelope:
    return Envelope(status="ok", data=MessageResponse(message=result.message))


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_claims(authorization: Optional[str] = Header(None)) -> AccessClaims:
    token = _extract_bearer(authorization)
    if token is None:
        raise AuthError(
            AuthErrorKind.INVALID_ACCESS_TOKEN,
            "missing bearer token",
            reason=TokenFailure.MALFORMED,
        )
    return get_runtime().auth.authenticate_access_token(token)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an unverified account and send the verification email.

    No tokens are issued; login stays blocked until the address is verified.
    """
    runtime = get_runtime()
    client_ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"register:{client_ip}",
        runtime.settings.register_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.display_name,
        body.user_type,
        client_ip=client_ip,
    )
    return Envelope(
        status="ok",
        data=UserResponse(
            user_id=result.user_id,
            email=result.email,
            display_name=result.display_name,
            user_type=result.user_type,
            email_verified=result.email_verified,
            created_at=result.created_at,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for an access token and refresh token.

    Raises:
        401: invalid credentials
        403: email not verified
        423: account locked
        429: rate limit exceeded
    """
    runtime = get_runtime()
    client_ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{client_ip}:{_email_key(body.email)}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password, client_ip=client_ip)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request, response: Response):
    """Rotate a refresh token. The presented token stops working immediately."""
    runtime = get_runtime()
    client_ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"refresh:{client_ip}",
        runtime.settings.refresh_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.refresh_session(body.refresh_token, client_ip=client_ip)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
    )
    await runtime.auth.logout(body.refresh_token)
    return Response(status_code=204)


@router.post("/auth/logout-all", status_code=204, tags=["auth"])
async def logout_all(claims: AccessClaims = Depends(get_claims)):
    runtime = get_runtime()
    await runtime.auth.logout_all(claims.user_id)
    return Response(status_code=204)


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{_client_ip(request)}",
        runtime.settings.verify_rate_limit_per_minute,
        response=response,
    )
    return _message(await runtime.auth.verify_email(body.token))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{_client_ip(request)}:{_email_key(body.email)}",
        runtime.settings.verify_rate_limit_per_minute,
        response=response,
    )
    return _message(await runtime.auth.request_email_verification(body.email))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{_client_ip(request)}:{_email_key(body.email)}",
        runtime.settings.reset_rate_limit_per_minute,
        response=response,
    )
    return _message(await runtime.auth.forgot_password(body.email))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        response=response,
    )
    return _message(await runtime.auth.reset_password(body.token, body.new_password))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: AccessClaims = Depends(get_claims)):
    return Envelope(
        status="ok",
        data=MeResponse(
            user_id=claims.user_id,
            email=claims.email,
            user_type=claims.user_type,
            expires_at=claims.expires_at,
        ),
    )
