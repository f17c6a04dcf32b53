"""
tests/test_config.py -- Settings normalization and link building.
"""

from __future__ import annotations

from core.config import Settings, get_settings


def test_defaults() -> None:
    settings = Settings(_env_file=None, auth_bearer_tokens=[])
    assert settings.auth_code_ttl_seconds == 600
    assert settings.access_token_ttl_seconds == 7 * 24 * 3600
    assert settings.session_cookie_name == "gptauth_session"
    assert settings.login_rate_limit


def test_url_base_trailing_slash_removed() -> None:
    settings = Settings(url_base="https://auth.example.com/")
    assert settings.url_base == "https://auth.example.com"
    assert settings.verify_link("abc") == "https://auth.example.com/web/signup.html?token=abc"
    assert settings.update_link("abc") == "https://auth.example.com/web/update.html?token=abc"


def test_custom_routes() -> None:
    settings = Settings(url_base="https://a.example", route_verify="/v/{code}", route_update="/u?t={code}")
    assert settings.verify_link("x") == "https://a.example/v/x"
    assert settings.update_link("x") == "https://a.example/u?t=x"


def test_bearer_tokens_are_trimmed() -> None:
    settings = Settings(auth_bearer_tokens=[" alpha ", "", "  ", "beta"])
    assert settings.auth_bearer_tokens == ["alpha", "beta"]


def test_bearer_tokens_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_BEARER_TOKENS", '["one", "two"]')
    assert Settings().auth_bearer_tokens == ["one", "two"]


def test_empty_allow_list_warns_outside_debug(caplog) -> None:
    with caplog.at_level("WARNING", logger="gptauth.config"):
        Settings(debug=False, auth_bearer_tokens=[])
    assert "AUTH_BEARER_TOKENS is empty" in caplog.text


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()
