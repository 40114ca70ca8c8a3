import pytest
from pydantic import ValidationError

from rentease.config import Settings, get_settings, reset_settings_cache

SECRETS = {"jwt_secret": "a" * 40, "jwt_refresh_secret": "b" * 40}


def test_defaults():
    settings = Settings(**SECRETS)

    assert settings.access_token_ttl_seconds == 3600
    assert settings.refresh_token_ttl_seconds == 5 * 3600
    assert settings.session_ttl_seconds == 5 * 3600
    assert settings.otp_ttl_seconds == 600
    assert settings.max_otp_attempts == 8
    assert settings.max_resend_attempts == 1
    assert settings.password_change_cooldown_days == 3
    assert settings.is_production is False
    assert settings.cors_allow_origins == [settings.frontend_url]


def test_production_flag_is_case_insensitive():
    assert Settings(environment="Production", **SECRETS).is_production is True


def test_shared_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="same" * 10, jwt_refresh_secret="same" * 10)


@pytest.mark.parametrize(
    "field", ["access_token_ttl_seconds", "session_ttl_seconds", "max_otp_attempts"]
)
def test_non_positive_values_rejected(field):
    with pytest.raises(ValidationError):
        Settings(**{field: 0}, **SECRETS)


def test_negative_cooldown_rejected():
    with pytest.raises(ValidationError):
        Settings(password_change_cooldown_days=-1, **SECRETS)


def test_cors_origins_split():
    settings = Settings(cors_allow_origins="https://a.test, https://b.test,", **SECRETS)
    assert settings.cors_allow_origins == ["https://a.test", "https://b.test"]


def test_generated_secrets_are_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings()
    second = Settings()

    assert first.jwt_secret == second.jwt_secret
    assert first.jwt_refresh_secret == second.jwt_refresh_secret
    assert first.jwt_secret != first.jwt_refresh_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret
    assert (tmp_path / ".jwt_refresh_secret").exists()


def test_short_persisted_secret_is_replaced(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    (tmp_path / ".jwt_secret").write_text("short")

    settings = Settings(jwt_refresh_secret="b" * 40)

    assert settings.jwt_secret != "short"
    assert len(settings.jwt_secret) >= 32


def test_from_env_reads_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_SECRET", "c" * 40)
    monkeypatch.setenv("JWT_REFRESH_SECRET", "d" * 40)
    monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "120")
    monkeypatch.setenv("TRUST_PROXY", "true")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://x.test")

    settings = Settings.from_env()

    assert settings.access_token_ttl_seconds == 120
    assert settings.trust_proxy is True
    assert settings.cors_allow_origins == ["https://x.test"]


def test_from_env_falls_back_to_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("FRONTEND_URL", raising=False)
    (tmp_path / ".env").write_text("FRONTEND_URL=https://app.rentease.test\n")

    settings = Settings.from_env()

    assert settings.frontend_url == "https://app.rentease.test"


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("GLOBAL_RATE_LIMIT", "7")
    reset_settings_cache()
    assert get_settings().global_rate_limit == 7
    reset_settings_cache()
