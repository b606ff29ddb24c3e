import pytest
from pydantic import ValidationError

from tokenwarden.config import Settings, get_settings, reset_settings_cache

ACCESS_SECRET = "config-test-access-secret-0123456789abcdef"
RESET_SECRET = "config-test-reset-secret-fedcba9876543210"


def test_from_env_reads_aliases(monkeypatch):
    monkeypatch.setenv("TOKEN_EXPIRY_HOURS", "2")
    monkeypatch.setenv("REFRESH_TOKEN_TTL_DAYS", "7")
    monkeypatch.setenv("REJECT_SUPERSEDED_REFRESH_TOKENS", "false")

    settings = Settings.from_env()

    assert settings.access_token_ttl_hours == 2
    assert settings.refresh_token_ttl_days == 7
    assert settings.reject_superseded_refresh_tokens is False


def test_defaults():
    settings = Settings(jwt_secret=ACCESS_SECRET, reset_token_secret=RESET_SECRET)

    assert settings.access_token_ttl_hours == 24
    assert settings.refresh_token_ttl_days == 30
    assert settings.reset_token_ttl_hours == 1
    assert settings.token_leeway_seconds == 0
    assert settings.reject_superseded_refresh_tokens is True
    assert settings.expose_reset_token is False


def test_api_prefix_is_stripped():
    settings = Settings(api_prefix="/v2/", jwt_secret=ACCESS_SECRET, reset_token_secret=RESET_SECRET)
    assert settings.api_prefix == "v2"


def test_cors_origins_split():
    settings = Settings(
        cors_allow_origins="https://a.example, https://b.example,",
        jwt_secret=ACCESS_SECRET,
        reset_token_secret=RESET_SECRET,
    )
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_secrets_must_differ():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=ACCESS_SECRET, reset_token_secret=ACCESS_SECRET)


@pytest.mark.parametrize("field", ["access_token_ttl_hours", "refresh_token_ttl_days"])
def test_non_positive_lifetimes_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=ACCESS_SECRET, reset_token_secret=RESET_SECRET, **{field: 0})


def test_missing_secret_is_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(reset_token_secret=RESET_SECRET)
    second = Settings(reset_token_secret=RESET_SECRET)

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    secret_file = tmp_path / ".jwt_secret"
    assert secret_file.read_text() == first.jwt_secret
    assert secret_file.stat().st_mode & 0o777 == 0o600


def test_short_persisted_secret_is_replaced(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    (tmp_path / ".reset_token_secret").write_text("short")

    settings = Settings(jwt_secret=ACCESS_SECRET)

    assert settings.reset_token_secret != "short"
    assert (tmp_path / ".reset_token_secret").read_text() == settings.reset_token_secret


def test_settings_cache(monkeypatch):
    reset_settings_cache()
    cached = get_settings()
    assert get_settings() is cached

    monkeypatch.setenv("TOKEN_EXPIRY_HOURS", "3")
    reset_settings_cache()
    assert get_settings().access_token_ttl_hours == 3
    reset_settings_cache()
