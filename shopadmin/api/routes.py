from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from shopadmin.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
)
from shopadmin.logging import get_logger
from shopadmin.service.auth import AuthContext, role_allows
from shopadmin.service.errors import RateLimitedError
from shopadmin.service.runtime import Runtime
from shopadmin.storage.models import TokenPair

logger = get_logger(__name__)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise _http_error("service_unavailable", "service starting", status_code=503)
    return runtime


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def enforce_api_rate_limit(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> None:
    # Keyed on the route template so path parameters do not mint new keys
    route = request.scope.get("route")
    route_path = getattr(route, "path", request.url.path)
    decision = await runtime.rate_limiter.check(f"api:{_client_ip(request)}:{route_path}")
    if not decision.allowed:
        raise RateLimitedError(
            "rate limit exceeded", retry_after_seconds=decision.retry_after_seconds
        )


router = APIRouter(prefix="/v1", dependencies=[Depends(enforce_api_rate_limit)])


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_session_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    """Resolve the caller from a session token (Bearer header or cookie)."""
    token = _extract_bearer(authorization) or request.cookies.get("session_token")
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    payload = await runtime.tokens.verify_token(token)
    return AuthContext(
        user_id=payload["userId"],
        role=str(payload.get("role", "customer")),
        session_id=payload["sessionId"],
        token_type="session",
    )


async def get_access_principal(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    """Resolve the caller from a stateless access token."""
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return runtime.tokens.verify_access_token(token)


def require_role(required: str):
    async def _guard(principal: AuthContext = Depends(get_access_principal)) -> AuthContext:
        if not role_allows(principal.role, required):
            logger.warning(
                "role_check_failed", user_id=principal.user_id, role=principal.role, required=required
            )
            raise _http_error("forbidden", f"{required} access required", status_code=403)
        return principal

    return _guard


def _auth_response(user_id: str, role: str, tokens: TokenPair, **session_fields) -> AuthResponse:
    return AuthResponse(
        user_id=user_id,
        role=role,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
        **session_fields,
    )


def _apply_auth_cookies(
    response: Response,
    runtime: Runtime,
    tokens: TokenPair,
    *,
    session_token: Optional[str] = None,
    session_expires_at: Optional[datetime] = None,
    csrf_token: Optional[str] = None,
) -> None:
    secure = runtime.settings.cookie_secure
    if session_token and session_expires_at:
        response.set_cookie(
            "session_token",
            session_token,
            httponly=True,
            secure=secure,
            samesite="lax",
            expires=session_expires_at,
            path="/",
        )
    if csrf_token and session_expires_at:
        # Readable by scripts so they can echo it in X-CSRF-Token
        response.set_cookie(
            "csrf_token",
            csrf_token,
            httponly=False,
            secure=secure,
            samesite="lax",
            expires=session_expires_at,
            path="/",
        )
    response.set_cookie(
        "refresh_token",
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=runtime.settings.refresh_token_ttl_minutes * 60,
        path="/v1/auth",
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with email and password.

    Returns an access/refresh token pair plus a session token and sets them as
    cookies.

    Raises:
        401: If credentials are invalid
        429: If too many attempts came from this address
    """
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_auth_cookies(
        response,
        runtime,
        result.tokens,
        session_token=result.session_token,
        session_expires_at=result.session.expires_at,
        csrf_token=result.session.csrf_token,
    )
    return Envelope(
        status="ok",
        data=_auth_response(
            result.user.id,
            result.user.role,
            result.tokens,
            session_id=result.session.id,
            session_token=result.session_token,
            session_expires_at=result.session.expires_at,
            csrf_token=result.session.csrf_token,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: TokenRefreshRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Exchange a refresh token for a new pair; the presented token stops working."""
    user, tokens = await runtime.tokens.refresh_tokens(body.refresh_token)
    _apply_auth_cookies(response, runtime, tokens)
    return Envelope(status="ok", data=_auth_response(user.id, user.role, tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_session_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.tokens.invalidate_token(principal.session_id)
    refresh_revoked = 0
    if body and body.refresh_token:
        refresh_revoked = int(await runtime.tokens.revoke_refresh_token(body.refresh_token))
    response.delete_cookie("session_token", path="/")
    response.delete_cookie("csrf_token", path="/")
    response.delete_cookie("refresh_token", path="/v1/auth")
    return Envelope(
        status="ok",
        data=LogoutResponse(sessions_revoked=1, refresh_tokens_revoked=refresh_revoked),
    )


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    response: Response,
    principal: AuthContext = Depends(get_session_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Sign out every session and refresh token of the caller."""
    sessions_revoked, tokens_revoked = await runtime.tokens.invalidate_user_sessions(
        principal.user_id
    )
    response.delete_cookie("session_token", path="/")
    response.delete_cookie("csrf_token", path="/")
    response.delete_cookie("refresh_token", path="/v1/auth")
    return Envelope(
        status="ok",
        data=LogoutResponse(
            sessions_revoked=sessions_revoked, refresh_tokens_revoked=tokens_revoked
        ),
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(
    principal: AuthContext = Depends(get_session_principal),
    runtime: Runtime = Depends(get_runtime),
):
    sessions = await runtime.tokens.list_sessions(principal.user_id)
    match = next((s for s in sessions if s.id == principal.session_id), None)
    if match is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return Envelope(
        status="ok",
        data=SessionResponse(
            id=match.id,
            user_id=match.user_id,
            created_at=match.created_at,
            expires_at=match.expires_at,
            user_agent=match.user_agent,
            ip_addr=match.ip_addr,
            current=True,
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    principal: AuthContext = Depends(get_session_principal),
    runtime: Runtime = Depends(get_runtime),
):
    sessions = await runtime.tokens.list_sessions(principal.user_id)
    items = [
        SessionResponse(
            id=s.id,
            user_id=s.user_id,
            created_at=s.created_at,
            expires_at=s.expires_at,
            user_agent=s.user_agent,
            ip_addr=s.ip_addr,
            current=s.id == principal.session_id,
        )
        for s in sorted(sessions, key=lambda s: s.created_at, reverse=True)
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/admin/rate-limits/{key:path}", response_model=Envelope, tags=["admin"])
async def reset_rate_limit(
    key: str = Path(..., min_length=1, max_length=256),
    principal: AuthContext = Depends(require_role("admin")),
    runtime: Runtime = Depends(get_runtime),
):
    """Clear the recorded attempts for a limiter key (e.g. ``login:203.0.113.7``)."""
    await runtime.rate_limiter.reset_limit(key)
    await runtime.login_limiter.reset_limit(key)
    logger.info("rate_limit_reset", key=key, admin_id=principal.user_id)
    return Envelope(
        status="ok",
        data={"key": key, "reset_at": datetime.now(timezone.utc).isoformat()},
    )
