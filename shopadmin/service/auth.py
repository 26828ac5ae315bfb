from __future__ import annotations

import asyncio
import contextlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from redis.exceptions import RedisError

from shopadmin.config import Settings
from shopadmin.logging import get_logger
from shopadmin.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidSessionError,
    InvalidSignatureError,
    RateLimitedError,
    StoreUnavailableError,
    ValidationError,
)
from shopadmin.service.rate_limiter import RateLimitDecision
from shopadmin.service.tokens import TokenSigner
from shopadmin.storage.errors import ConstraintViolation, StoreOperationError
from shopadmin.storage.models import (
    ROLES,
    RefreshTokenRecord,
    SessionInfo,
    TokenPair,
    User,
    hash_token,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

PASSWORD_ALGO = "argon2id"

# Failures that mean the backing store could not answer, as opposed to a
# definite "not found"
_STORE_FAILURES = (asyncio.TimeoutError, RedisError, OSError, StoreOperationError)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        role: str = "customer",
        full_name: Optional[str] = None,
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def save_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, token_hash: str) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...


class SessionCache(Protocol):
    async def cache_session(self, session: SessionInfo, ttl_seconds: int) -> None: ...

    async def get_session_user(self, session_id: str) -> Optional[str]: ...

    async def get_session_meta(self, session_id: str) -> Optional[dict]: ...

    async def revoke_session(self, session_id: str) -> None: ...

    async def list_user_sessions(self, user_id: str) -> List[str]: ...

    async def revoke_user_sessions(self, user_id: str) -> int: ...


class Limiter(Protocol):
    async def check(self, key: str) -> RateLimitDecision: ...

    async def reset_limit(self, key: str) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: Optional[str] = None
    token_type: str = "access"


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair
    session_token: str
    session: SessionInfo


def role_allows(role: str, required: str) -> bool:
    """Admins pass every role check; everyone else needs an exact match."""
    return role == required or role == "admin"


def _from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class TokenManager:
    """Issues, verifies and revokes credentials.

    Two kinds of token come out of here, all signed with the one secret held
    by ``signer``:

    * session tokens (``generate_token``) carry ``userId`` and ``sessionId``
      and are only valid while the session cache still holds that id;
    * token pairs (``generate_tokens``) made of a stateless access token and a
      refresh token whose hash is persisted in the durable store.

    Every cache or store call is bounded by ``store_timeout`` seconds. A call
    that times out or errors raises :class:`StoreUnavailableError` so that
    verification never succeeds without an answer from the store.
    """

    def __init__(
        self,
        signer: TokenSigner,
        store: AuthStore,
        cache: SessionCache,
        *,
        access_ttl_seconds: int = 15 * 60,
        session_ttl_seconds: int = 24 * 60 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        store_timeout: float = 2.0,
    ) -> None:
        self.signer = signer
        self.store = store
        self.cache = cache
        self.access_ttl_seconds = access_ttl_seconds
        self.session_ttl_seconds = session_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.store_timeout = store_timeout
        self.logger = logger

    @classmethod
    def from_settings(
        cls, settings: Settings, store: AuthStore, cache: SessionCache
    ) -> "TokenManager":
        signer = TokenSigner(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )
        return cls(
            signer,
            store,
            cache,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            session_ttl_seconds=settings.session_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_minutes * 60,
            store_timeout=settings.store_timeout_seconds,
        )

    async def bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a cache/store call under the store timeout, failing closed."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.store_timeout)
        except _STORE_FAILURES as exc:
            self.logger.error(
                "auth_store_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailableError(
                "authentication store unavailable", detail={"operation": operation}
            ) from exc

    async def call_store(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking durable-store method in a worker thread, bounded."""
        return await self.bounded(operation, asyncio.to_thread(func, *args))

    # session-bound tokens
    async def generate_token(
        self,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        csrf_token: Optional[str] = None,
    ) -> str:
        session_id = SessionInfo.new_id()
        token, payload = self.signer.issue(
            {
                "userId": user_id,
                "sessionId": session_id,
                "jti": session_id,
                "token_type": "session",
            },
            ttl_seconds=self.session_ttl_seconds,
        )
        session = SessionInfo(
            id=session_id,
            user_id=user_id,
            created_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
            user_agent=user_agent,
            ip_addr=ip_addr,
            csrf_token=csrf_token or secrets.token_urlsafe(32),
        )
        # Written after signing with the same TTL, so the cache entry never
        # expires before the token does
        await self.bounded(
            "cache_session", self.cache.cache_session(session, self.session_ttl_seconds)
        )
        self.logger.info("session_issued", user_id=user_id, session_id=session_id)
        return token

    async def verify_token(self, token: str) -> Dict[str, Any]:
        payload = self.signer.decode(token)
        session_id = payload.get("sessionId")
        if payload.get("token_type") != "session" or not isinstance(session_id, str):
            raise InvalidSignatureError("invalid token")
        stored_user = await self.bounded(
            "get_session_user", self.cache.get_session_user(session_id)
        )
        if stored_user is None or stored_user != payload.get("userId"):
            self.logger.info("session_not_found", session_id=session_id)
            raise InvalidSessionError("session expired or revoked")
        return payload

    async def invalidate_token(self, session_id: str) -> None:
        await self.bounded("revoke_session", self.cache.revoke_session(session_id))
        self.logger.info("session_invalidated", session_id=session_id)

    async def session_csrf_token(self, session_id: str) -> Optional[str]:
        meta = await self.bounded("get_session_meta", self.cache.get_session_meta(session_id))
        token = meta.get("csrf_token") if isinstance(meta, dict) else None
        return token if isinstance(token, str) and token else None

    async def list_sessions(self, user_id: str) -> List[SessionInfo]:
        session_ids = await self.bounded(
            "list_user_sessions", self.cache.list_user_sessions(user_id)
        )
        sessions: List[SessionInfo] = []
        for session_id in session_ids:
            meta = await self.bounded(
                "get_session_meta", self.cache.get_session_meta(session_id)
            )
            if not meta:
                continue
            try:
                sessions.append(SessionInfo.from_meta(session_id, meta))
            except (KeyError, TypeError, ValueError):
                self.logger.warning("session_meta_invalid", session_id=session_id)
        return sessions

    # token pairs
    async def generate_tokens(self, user: User) -> TokenPair:
        access_token, access_payload = self.signer.issue(
            {
                "userId": user.id,
                "role": user.role,
                "jti": str(uuid.uuid4()),
                "token_type": "access",
            },
            ttl_seconds=self.access_ttl_seconds,
        )
        refresh_jti = str(uuid.uuid4())
        refresh_token, refresh_payload = self.signer.issue(
            {"userId": user.id, "jti": refresh_jti, "token_type": "refresh"},
            ttl_seconds=self.refresh_ttl_seconds,
        )
        record = RefreshTokenRecord(
            token_hash=hash_token(refresh_token),
            user_id=user.id,
            jti=refresh_jti,
            expires_at=_from_timestamp(refresh_payload["exp"]),
            created_at=_from_timestamp(refresh_payload["iat"]),
        )
        await self.call_store("save_refresh_token", self.store.save_refresh_token, record)
        self.logger.info("token_pair_issued", user_id=user.id, refresh_jti=refresh_jti)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=_from_timestamp(access_payload["exp"]),
            refresh_expires_at=record.expires_at,
        )

    def verify_access_token(self, token: str) -> AuthContext:
        """Signature and expiry only; no store round-trip."""
        payload = self.signer.decode(token)
        user_id = payload.get("userId")
        if payload.get("token_type") != "access" or not isinstance(user_id, str):
            raise InvalidSignatureError("invalid token")
        return AuthContext(user_id=user_id, role=str(payload.get("role", "customer")))

    async def refresh_tokens(self, refresh_token: str) -> Tuple[User, TokenPair]:
        """Rotate a refresh token: the presented one is revoked before a new pair is issued."""
        payload = self.signer.decode(refresh_token)
        if payload.get("token_type") != "refresh":
            raise InvalidSignatureError("invalid token")
        token_hash = hash_token(refresh_token)
        record = await self.call_store(
            "get_refresh_token", self.store.get_refresh_token, token_hash
        )
        if record is None or record.user_id != payload.get("userId"):
            raise InvalidSessionError("refresh token not recognised")
        if record.revoked_at is not None:
            self.logger.warning(
                "refresh_token_reuse_detected", user_id=record.user_id, jti=record.jti
            )
            raise InvalidSessionError("refresh token revoked")
        if not record.is_active(utcnow()):
            raise InvalidSessionError("refresh token expired")
        revoked = await self.call_store(
            "revoke_refresh_token", self.store.revoke_refresh_token, token_hash
        )
        if not revoked:
            # Lost a race with a concurrent rotation of the same token
            raise InvalidSessionError("refresh token revoked")
        user = await self.call_store("get_user", self.store.get_user, record.user_id)
        if user is None or not user.is_active:
            raise InvalidSessionError("account unavailable")
        return user, await self.generate_tokens(user)

    async def revoke_refresh_token(self, refresh_token: str) -> bool:
        revoked = await self.call_store(
            "revoke_refresh_token", self.store.revoke_refresh_token, hash_token(refresh_token)
        )
        if revoked:
            self.logger.info("refresh_token_revoked")
        return revoked

    async def invalidate_user_sessions(self, user_id: str) -> Tuple[int, int]:
        """Drop every cached session and refresh token of a user."""
        sessions_revoked = await self.bounded(
            "revoke_user_sessions", self.cache.revoke_user_sessions(user_id)
        )
        tokens_revoked = await self.call_store(
            "revoke_user_refresh_tokens", self.store.revoke_user_refresh_tokens, user_id
        )
        self.logger.info(
            "user_sessions_invalidated",
            user_id=user_id,
            sessions_revoked=sessions_revoked,
            tokens_revoked=tokens_revoked,
        )
        return sessions_revoked, tokens_revoked


class AuthService:
    """Password login on top of :class:`TokenManager` and the login limiter."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenManager,
        login_limiter: Limiter,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.login_limiter = login_limiter
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against on unknown or inactive accounts so every miss costs one argon2 check
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def _verify_dummy(self, password: str) -> None:
        with contextlib.suppress(VerifyMismatchError):
            self._pwd_hasher.verify(self._dummy_hash, password)

    def set_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        if not password:
            raise ValidationError("password required", detail={"field": "password"})
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def create_user(
        self,
        email: str,
        password: str,
        *,
        role: str = "customer",
        full_name: Optional[str] = None,
    ) -> User:
        if role not in ROLES:
            raise ValidationError("unknown role", detail={"role": role})
        try:
            user = self.store.create_user(email, role=role, full_name=full_name)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.set_password(user.id, password)
        self.logger.info("user_created", user_id=user.id, role=role)
        return user

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        limit_key = f"login:{ip_addr or 'unknown'}"
        decision = await self.login_limiter.check(limit_key)
        if not decision.allowed:
            self.logger.warning("login_rate_limited", ip_addr=ip_addr)
            raise RateLimitedError(retry_after_seconds=decision.retry_after_seconds)

        user = await self.tokens.call_store("get_user_by_email", self.store.get_user_by_email, email)
        verified = False
        if user is not None and user.is_active:
            verified = await self.tokens.bounded(
                "verify_password", asyncio.to_thread(self.verify_password, user.id, password)
            )
        else:
            await asyncio.to_thread(self._verify_dummy, password)
        if user is None or not verified:
            # Same error for unknown email, inactive account and wrong password
            self.logger.info("login_failed", ip_addr=ip_addr)
            raise AuthenticationError("invalid credentials")

        await self.login_limiter.reset_limit(limit_key)
        tokens = await self.tokens.generate_tokens(user)
        csrf_token = secrets.token_urlsafe(32)
        session_token = await self.tokens.generate_token(
            user.id, user_agent=user_agent, ip_addr=ip_addr, csrf_token=csrf_token
        )
        session_payload = self.tokens.signer.decode(session_token)
        session = SessionInfo(
            id=session_payload["sessionId"],
            user_id=user.id,
            created_at=_from_timestamp(session_payload["iat"]),
            expires_at=_from_timestamp(session_payload["exp"]),
            user_agent=user_agent,
            ip_addr=ip_addr,
            csrf_token=csrf_token,
        )
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return LoginResult(user=user, tokens=tokens, session_token=session_token, session=session)
