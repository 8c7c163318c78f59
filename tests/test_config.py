import pytest
from pydantic import ValidationError

from sakalsense.config import AUTH_COOKIE, PREFIX_TO_ROLE, SESSION_LIMIT, Role, Settings


def test_role_slugs_round_trip():
    for role in Role:
        assert Role.from_slug(role.slug) is role
    with pytest.raises(ValueError):
        Role.from_slug("superuser")


def test_role_tables_cover_every_role():
    assert SESSION_LIMIT == {Role.USER: 1, Role.ADMIN: 2, Role.ADMINISTRATOR: 2}
    assert set(AUTH_COOKIE) == set(Role)
    assert set(PREFIX_TO_ROLE.values()) == set(Role)


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("SESSION_TTL_SECONDS", "120")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com")
    monkeypatch.setenv("APP_ENV", "production")

    settings = Settings.from_env()

    assert settings.session_ttl_seconds == 120
    assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]
    assert settings.cookie_secure
    assert settings.db_pool_max_size == 20


def test_jwt_secret_required_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.delenv("JWT_SECRET", raising=False)

    with pytest.raises(ValidationError):
        Settings.from_env()


def test_test_mode_generates_secret():
    settings = Settings(test_mode=True)
    assert len(settings.jwt_secret) >= 32


def test_non_positive_ttl_rejected():
    with pytest.raises(ValidationError):
        Settings(test_mode=True, session_ttl_seconds=0)
