"""Unit tests for core/config.py -- Settings validation.

Covers:
- Defaults for token and lockout policy
- DEBUG mode auto-generates SECRET_KEY; production mode requires it
- Short keys and non-positive policy values are rejected
- Environment variables override defaults
"""

import pytest

from core.config import Settings, get_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("SECRET_KEY", "LOCKOUT_THRESHOLD", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    def test_defaults(self):
        settings = Settings(debug=True, _env_file=None)
        assert settings.access_token_expire_minutes == 15
        assert settings.refresh_token_expire_days == 7
        assert settings.password_reset_expire_minutes == 30
        assert settings.lockout_threshold == 5
        assert settings.lockout_minutes == 15
        assert settings.jwt_algorithm == "HS256"
        assert settings.disclose_lockout_remaining is True

    def test_debug_generates_secret_key(self):
        settings = Settings(debug=True, _env_file=None)
        assert len(settings.secret_key) >= 32

    def test_production_requires_secret_key(self):
        with pytest.raises(ValueError, match="SECRET_KEY is required"):
            Settings(debug=False, _env_file=None)

    def test_short_secret_key_rejected(self):
        with pytest.raises(ValueError, match="at least 32"):
            Settings(debug=True, secret_key="short", _env_file=None)

    @pytest.mark.parametrize("field", ["lockout_threshold", "lockout_minutes", "refresh_token_expire_days"])
    def test_non_positive_policy_rejected(self, field):
        with pytest.raises(ValueError):
            Settings(debug=True, _env_file=None, **{field: 0})

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "3")
        monkeypatch.setenv("SECRET_KEY", "e" * 40)
        settings = get_settings()
        assert settings.lockout_threshold == 3
        assert settings.secret_key == "e" * 40
        assert get_settings() is settings
