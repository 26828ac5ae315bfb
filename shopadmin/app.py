from __future__ import annotations

import asyncio
import contextlib
import hmac
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shopadmin.api.error_handling import _error_response, register_exception_handlers
from shopadmin.api.routes import router
from shopadmin.config import Settings
from shopadmin.logging import get_logger, set_correlation_id
from shopadmin.service.errors import AuthenticationError, StoreUnavailableError
from shopadmin.service.runtime import Runtime
from shopadmin.storage.postgres import PostgresStore

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
# Neither route reads the session cookie
_CSRF_EXEMPT_PATHS = {"/v1/auth/login", "/v1/auth/refresh"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; stop the sweeper and close stores on shutdown."""
    runtime: Optional[Runtime] = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = Runtime(app.state.settings)
        app.state.runtime = runtime
    sweeper = asyncio.create_task(runtime.run_sweeper())
    logger.info("app_started", version=__version__)

    yield

    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    try:
        await runtime.close()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))
    app.state.runtime = None


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_origins:
        return settings.cors_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def health(request: Request) -> JSONResponse:
    """Report store and cache reachability."""
    runtime: Optional[Runtime] = getattr(request.app.state, "runtime", None)
    if runtime is None:
        return JSONResponse(status_code=503, content={"status": "starting"})

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    if isinstance(runtime.store, PostgresStore):
        store = runtime.store

        def _db_probe() -> None:
            with store._connect("health_check") as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.redis is not None:
        redis_ok = await _run_bounded("redis", runtime.redis.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        redis_ok = True
        checks["redis"] = {"status": "not_configured"}

    healthy = db_ok and redis_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """Assemble the API. A prebuilt ``runtime`` is used as-is instead of building one."""
    settings = settings or (runtime.settings if runtime else Settings.from_env())
    app = FastAPI(title="Shop Admin Auth", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-CSRF-Token"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def enforce_csrf_token(request: Request, call_next):
        # Only cookie-authenticated, state-changing requests need the token
        if request.method.upper() in _CSRF_SAFE_METHODS:
            return await call_next(request)
        if request.headers.get("Authorization") or request.url.path in _CSRF_EXEMPT_PATHS:
            return await call_next(request)
        session_cookie = request.cookies.get("session_token")
        runtime: Optional[Runtime] = getattr(request.app.state, "runtime", None)
        if not session_cookie or runtime is None:
            return await call_next(request)
        header_token = request.headers.get("X-CSRF-Token")
        cookie_token = request.cookies.get("csrf_token")
        if (
            not header_token
            or not cookie_token
            or not hmac.compare_digest(header_token.encode(), cookie_token.encode())
        ):
            logger.warning("csrf_token_missing_or_mismatched", path=request.url.path)
            return _error_response(403, "missing or invalid CSRF token", code="forbidden")
        try:
            payload = await runtime.tokens.verify_token(session_cookie)
            expected = await runtime.tokens.session_csrf_token(payload["sessionId"])
        except AuthenticationError as exc:
            logger.warning("csrf_validation_failed", error_type=type(exc).__name__)
            return _error_response(403, "invalid session for CSRF check", code="forbidden")
        except StoreUnavailableError as exc:
            return _error_response(exc.status_code, exc.message, code=exc.error_code)
        if not expected or not hmac.compare_digest(expected.encode(), header_token.encode()):
            logger.warning("csrf_token_not_bound_to_session", path=request.url.path)
            return _error_response(403, "missing or invalid CSRF token", code="forbidden")
        return await call_next(request)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Reuse the caller's X-Request-ID or mint one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], include_in_schema=False)
    return app


app = create_app()
