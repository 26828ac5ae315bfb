"""Tests for session-bound tokens, token pairs and refresh rotation.

Covers:
- generate_token / verify_token / invalidate_token round trips
- Session cache expiry and revocation
- Fail-closed behaviour on slow or failing stores
- Stateless access tokens and durable refresh tokens
- Refresh rotation, reuse and bulk invalidation
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from shopadmin.service.auth import TokenManager
from shopadmin.service.errors import (
    InvalidSessionError,
    InvalidSignatureError,
    StoreUnavailableError,
    TokenExpiredError,
)
from shopadmin.service.tokens import TokenSigner
from shopadmin.storage.errors import StoreOperationError
from shopadmin.storage.memory import MemoryCache, MemoryStore
from shopadmin.storage.models import hash_token


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def tokens(settings, store, cache):
    return TokenManager.from_settings(settings, store, cache)


@pytest.fixture
def user(store):
    return store.create_user("owner@example.com", role="vendor")


class TestSessionTokens:
    async def test_round_trip(self, tokens):
        token = await tokens.generate_token("u1")
        payload = await tokens.verify_token(token)

        assert payload["userId"] == "u1"
        assert payload["sessionId"]
        assert payload["token_type"] == "session"

    async def test_each_call_creates_a_new_session(self, tokens):
        first = await tokens.verify_token(await tokens.generate_token("u1"))
        second = await tokens.verify_token(await tokens.generate_token("u1"))
        assert first["sessionId"] != second["sessionId"]

    async def test_token_lifetime_matches_session_ttl(self, tokens, settings):
        payload = await tokens.verify_token(await tokens.generate_token("u1"))
        assert payload["exp"] - payload["iat"] == settings.session_token_ttl_minutes * 60

    async def test_invalidated_session_rejected_before_expiry(self, tokens):
        token = await tokens.generate_token("u1")
        session_id = (await tokens.verify_token(token))["sessionId"]

        await tokens.invalidate_token(session_id)

        with pytest.raises(InvalidSessionError):
            await tokens.verify_token(token)

    async def test_invalidate_is_idempotent(self, tokens, cache):
        token = await tokens.generate_token("u1")
        session_id = (await tokens.verify_token(token))["sessionId"]

        await tokens.invalidate_token(session_id)
        await tokens.invalidate_token(session_id)

        assert await cache.get_session_user(session_id) is None

    async def test_invalidate_unknown_session(self, tokens):
        await tokens.invalidate_token("does-not-exist")

    async def test_each_session_gets_its_own_csrf_token(self, tokens):
        first = (await tokens.verify_token(await tokens.generate_token("u1")))["sessionId"]
        second = (await tokens.verify_token(await tokens.generate_token("u1")))["sessionId"]

        first_csrf = await tokens.session_csrf_token(first)
        assert first_csrf
        assert first_csrf != await tokens.session_csrf_token(second)

        await tokens.invalidate_token(first)
        assert await tokens.session_csrf_token(first) is None

    async def test_store_side_expiry_rejected(self, tokens, clock, settings):
        token = await tokens.generate_token("u1")
        clock.advance(settings.session_token_ttl_minutes * 60 + 1)
        with pytest.raises(InvalidSessionError):
            await tokens.verify_token(token)

    async def test_expired_token_never_reaches_store(self, settings, store, cache):
        signer_clock = MagicMock(return_value=1_000_000.0)
        signer = TokenSigner(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=signer_clock,
        )
        manager = TokenManager(signer, store, cache, session_ttl_seconds=60)
        token = await manager.generate_token("u1")

        signer_clock.return_value = 1_000_060.0
        manager.cache = AsyncMock()
        with pytest.raises(TokenExpiredError):
            await manager.verify_token(token)
        manager.cache.get_session_user.assert_not_called()

    async def test_tampered_token_rejected(self, tokens):
        token = await tokens.generate_token("u1")
        header, payload, signature = token.split(".")
        with pytest.raises(InvalidSignatureError):
            await tokens.verify_token(f"{header}.{payload}.{signature[::-1]}")

    async def test_access_token_is_not_a_session_token(self, tokens, user):
        pair = await tokens.generate_tokens(user)
        with pytest.raises(InvalidSignatureError):
            await tokens.verify_token(pair.access_token)

    async def test_session_owner_must_match(self, tokens, cache):
        token = await tokens.generate_token("u1")
        payload = await tokens.verify_token(token)
        # Simulate a cache entry rebound to another principal
        await cache.revoke_session(payload["sessionId"])
        cache._set(f"auth:session:{payload['sessionId']}", "u2", 60)
        with pytest.raises(InvalidSessionError):
            await tokens.verify_token(token)


class TestFailClosed:
    async def test_slow_store_times_out(self, tokens):
        token = await tokens.generate_token("u1")

        async def _hang(_session_id):
            await asyncio.sleep(5)

        tokens.store_timeout = 0.05
        tokens.cache = MagicMock()
        tokens.cache.get_session_user = _hang
        with pytest.raises(StoreUnavailableError):
            await tokens.verify_token(token)

    async def test_store_error_fails_closed(self, tokens):
        token = await tokens.generate_token("u1")
        tokens.cache = AsyncMock()
        tokens.cache.get_session_user.side_effect = RedisConnectionError("redis down")
        with pytest.raises(StoreUnavailableError):
            await tokens.verify_token(token)

    async def test_issue_fails_when_cache_write_fails(self, tokens):
        tokens.cache = AsyncMock()
        tokens.cache.cache_session.side_effect = RedisConnectionError("redis down")
        with pytest.raises(StoreUnavailableError):
            await tokens.generate_token("u1")

    async def test_invalidate_surfaces_store_failure(self, tokens):
        tokens.cache = AsyncMock()
        tokens.cache.revoke_session.side_effect = RedisConnectionError("redis down")
        with pytest.raises(StoreUnavailableError):
            await tokens.invalidate_token("s1")

    async def test_durable_store_failure(self, tokens, user):
        tokens.store = MagicMock()
        tokens.store.save_refresh_token.side_effect = StoreOperationError("save_refresh_token")
        with pytest.raises(StoreUnavailableError):
            await tokens.generate_tokens(user)


class TestTokenPairs:
    async def test_access_token_verified_without_store(self, tokens, user):
        pair = await tokens.generate_tokens(user)
        tokens.store = MagicMock()
        tokens.cache = MagicMock()

        ctx = tokens.verify_access_token(pair.access_token)

        assert ctx.user_id == user.id
        assert ctx.role == "vendor"
        tokens.store.assert_not_called()
        assert not tokens.cache.method_calls

    async def test_access_token_lifetime(self, tokens, user, settings):
        pair = await tokens.generate_tokens(user)
        assert pair.refresh_expires_at - pair.access_expires_at > timedelta(days=6)
        payload = tokens.signer.decode(pair.access_token)
        assert payload["exp"] - payload["iat"] == settings.access_token_ttl_minutes * 60
        assert "sessionId" not in payload

    async def test_refresh_token_persisted_by_hash(self, tokens, store, user):
        pair = await tokens.generate_tokens(user)

        record = store.get_refresh_token(hash_token(pair.refresh_token))

        assert record is not None
        assert record.user_id == user.id
        assert record.expires_at == pair.refresh_expires_at
        assert pair.refresh_token not in store.refresh_tokens

    async def test_refresh_token_is_not_an_access_token(self, tokens, user):
        pair = await tokens.generate_tokens(user)
        with pytest.raises(InvalidSignatureError):
            tokens.verify_access_token(pair.refresh_token)


class TestRefreshRotation:
    async def test_rotation_issues_new_pair_and_revokes_old(self, tokens, store, user):
        pair = await tokens.generate_tokens(user)

        refreshed_user, new_pair = await tokens.refresh_tokens(pair.refresh_token)

        assert refreshed_user.id == user.id
        assert new_pair.refresh_token != pair.refresh_token
        old = store.get_refresh_token(hash_token(pair.refresh_token))
        assert old.revoked_at is not None

    async def test_refresh_token_is_single_use(self, tokens, user):
        pair = await tokens.generate_tokens(user)
        await tokens.refresh_tokens(pair.refresh_token)
        with pytest.raises(InvalidSessionError):
            await tokens.refresh_tokens(pair.refresh_token)

    async def test_concurrent_rotation_admits_one(self, tokens, user):
        pair = await tokens.generate_tokens(user)
        results = await asyncio.gather(
            tokens.refresh_tokens(pair.refresh_token),
            tokens.refresh_tokens(pair.refresh_token),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, InvalidSessionError)]
        assert len(successes) == 1
        assert len(failures) == 1

    async def test_unknown_refresh_token(self, tokens, user):
        forged, _ = tokens.signer.issue(
            {"userId": user.id, "jti": "nope", "token_type": "refresh"}, ttl_seconds=60
        )
        with pytest.raises(InvalidSessionError):
            await tokens.refresh_tokens(forged)

    async def test_access_token_cannot_refresh(self, tokens, user):
        pair = await tokens.generate_tokens(user)
        with pytest.raises(InvalidSignatureError):
            await tokens.refresh_tokens(pair.access_token)

    async def test_revoked_refresh_token(self, tokens, user):
        pair = await tokens.generate_tokens(user)
        assert await tokens.revoke_refresh_token(pair.refresh_token) is True
        assert await tokens.revoke_refresh_token(pair.refresh_token) is False
        with pytest.raises(InvalidSessionError):
            await tokens.refresh_tokens(pair.refresh_token)

    async def test_inactive_user_cannot_refresh(self, tokens, store, user):
        pair = await tokens.generate_tokens(user)
        store.users[user.id].is_active = False
        with pytest.raises(InvalidSessionError):
            await tokens.refresh_tokens(pair.refresh_token)


class TestBulkInvalidation:
    async def test_invalidate_user_sessions(self, tokens, user):
        session_tokens = [await tokens.generate_token(user.id) for _ in range(3)]
        pair = await tokens.generate_tokens(user)
        other = await tokens.generate_token("someone-else")

        sessions_revoked, tokens_revoked = await tokens.invalidate_user_sessions(user.id)

        assert sessions_revoked == 3
        assert tokens_revoked == 1
        for token in session_tokens:
            with pytest.raises(InvalidSessionError):
                await tokens.verify_token(token)
        with pytest.raises(InvalidSessionError):
            await tokens.refresh_tokens(pair.refresh_token)
        assert (await tokens.verify_token(other))["userId"] == "someone-else"

    async def test_list_sessions(self, tokens, user):
        await tokens.generate_token(user.id, user_agent="pytest", ip_addr="10.0.0.1")
        await tokens.generate_token(user.id)
        await tokens.generate_token("someone-else")

        sessions = await tokens.list_sessions(user.id)

        assert len(sessions) == 2
        assert {s.user_id for s in sessions} == {user.id}
        assert "pytest" in {s.user_agent for s in sessions}

    async def test_list_sessions_skips_invalidated(self, tokens, user):
        token = await tokens.generate_token(user.id)
        await tokens.generate_token(user.id)
        session_id = (await tokens.verify_token(token))["sessionId"]
        await tokens.invalidate_token(session_id)

        sessions = await tokens.list_sessions(user.id)

        assert [s.id for s in sessions] != [session_id]
        assert len(sessions) == 1
