import os
import stat

import pytest
from pydantic import ValidationError

from shopadmin.config import Settings, get_settings, reset_settings_cache


def test_defaults_match_documented_values(settings):
    assert settings.access_token_ttl_minutes == 15
    assert settings.session_token_ttl_minutes == 24 * 60
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.rate_limit_window_ms == 60_000
    assert settings.rate_limit_max_requests == 100
    assert settings.login_rate_limit_max_requests == 5
    assert settings.store_timeout_seconds == 2.0


def test_short_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_generated_secret_is_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    secret_path = tmp_path / ".jwt_secret"
    assert first.jwt_secret == second.jwt_secret
    assert len(first.jwt_secret) >= 32
    assert secret_path.read_text().strip() == first.jwt_secret
    assert stat.S_IMODE(os.stat(secret_path).st_mode) == 0o600


def test_access_ttl_cannot_exceed_refresh_ttl(settings):
    with pytest.raises(ValidationError):
        Settings(
            jwt_secret=settings.jwt_secret,
            access_token_ttl_minutes=120,
            refresh_token_ttl_minutes=60,
        )


def test_negative_limits_rejected(settings):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=settings.jwt_secret, rate_limit_max_requests=-1)


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "7")
    monkeypatch.setenv("STORE_TIMEOUT_SECONDS", "0.5")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://admin.example.com, https://ops.example.com")
    reset_settings_cache()

    settings = get_settings()

    assert settings.rate_limit_max_requests == 7
    assert settings.store_timeout_seconds == 0.5
    assert settings.cors_origins == ["https://admin.example.com", "https://ops.example.com"]
    assert get_settings() is settings
