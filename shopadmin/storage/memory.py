from __future__ import annotations

import json
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from shopadmin.logging import get_logger
from shopadmin.storage.errors import ConstraintViolation
from shopadmin.storage.models import RefreshTokenRecord, SessionInfo, User, utcnow


class MemoryStore:
    """In-memory durable store for users, credentials and refresh tokens.

    Used by tests and single-process development; PostgresStore is the
    production equivalent.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so helpers can be composed under one acquisition
        self._data_lock = threading.RLock()

    # user / auth
    def create_user(
        self,
        email: str,
        *,
        role: str = "customer",
        full_name: Optional[str] = None,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                role=role,
                full_name=full_name,
                is_active=is_active,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": record.user_id}
                )
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token already stored", {"jti": record.jti})
            self.refresh_tokens[record.token_hash] = record

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            # Hand out copies so callers cannot mutate stored state
            return replace(record) if record else None

    def revoke_refresh_token(self, token_hash: str) -> bool:
        """Mark a token revoked. Returns True only for the call that revoked it."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.revoked_at is not None:
                return False
            record.revoked_at = utcnow()
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        now = utcnow()
        revoked = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and record.revoked_at is None:
                    record.revoked_at = now
                    revoked += 1
        return revoked

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = True
    ) -> List[RefreshTokenRecord]:
        now = utcnow()
        with self._data_lock:
            records = [
                replace(r)
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and (not active_only or r.is_active(now))
            ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                h for h, r in self.refresh_tokens.items()
                if r.expires_at <= now or r.revoked_at is not None
            ]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
        if stale:
            self.logger.debug("refresh_tokens_purged", purged=len(stale))
        return len(stale)


class MemoryCache:
    """Session cache with per-key TTL, mirroring the RedisCache session API.

    Expiry is checked lazily on read against an injectable monotonic clock, so
    tests can move time forward without sleeping.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, float]] = {}
        self._user_sessions: Dict[str, set[str]] = {}
        self._lock = threading.RLock()

    def _get_live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._values.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._values[key] = (value, self._clock() + max(1, ttl_seconds))

    def verify_connection(self) -> None:
        return None

    async def cache_session(self, session: SessionInfo, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"auth:session:{session.id}", session.user_id, ttl_seconds)
            self._set(
                f"auth:session_meta:{session.id}", json.dumps(session.to_meta()), ttl_seconds
            )
            self._user_sessions.setdefault(session.user_id, set()).add(session.id)

    async def get_session_user(self, session_id: str) -> Optional[str]:
        with self._lock:
            return self._get_live(f"auth:session:{session_id}")

    async def get_session_meta(self, session_id: str) -> Optional[dict]:
        with self._lock:
            raw = self._get_live(f"auth:session_meta:{session_id}")
        if not raw:
            return None
        return json.loads(raw)

    async def revoke_session(self, session_id: str) -> None:
        with self._lock:
            entry = self._values.pop(f"auth:session:{session_id}", None)
            self._values.pop(f"auth:session_meta:{session_id}", None)
            if entry is not None:
                members = self._user_sessions.get(entry[0])
                if members is not None:
                    members.discard(session_id)

    async def list_user_sessions(self, user_id: str) -> List[str]:
        with self._lock:
            members = self._user_sessions.get(user_id, set())
            live = [sid for sid in members if self._get_live(f"auth:session:{sid}")]
            # Drop ids whose session entries expired on their own
            self._user_sessions[user_id] = set(live)
            return sorted(live)

    async def revoke_user_sessions(self, user_id: str) -> int:
        with self._lock:
            members = self._user_sessions.pop(user_id, set())
            revoked = 0
            for session_id in members:
                if self._values.pop(f"auth:session:{session_id}", None) is not None:
                    revoked += 1
                self._values.pop(f"auth:session_meta:{session_id}", None)
            return revoked

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._user_sessions.clear()
