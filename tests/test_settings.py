import pytest
from pydantic import ValidationError

from sheetgate.app.core.config import Settings


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('["http://localhost:5173"]', ["http://localhost:5173"]),
        ("https://a.example, https://b.example", ["https://a.example", "https://b.example"]),
        ("chrome-extension://abc https://a.example", ["chrome-extension://abc", "https://a.example"]),
        ("*", ["*"]),
        ("[]", []),
        ("", []),
    ],
)
def test_cors_origins_parsing_variants(monkeypatch, raw: str, expected: list[str]) -> None:
    monkeypatch.setenv("CORS_ORIGINS", raw)

    settings = Settings(_env_file=None)
    assert settings.cors_origins == expected


def test_cors_origins_deduplicates(monkeypatch) -> None:
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example,https://a.example")
    assert Settings(_env_file=None).cors_origins == ["https://a.example"]


@pytest.mark.parametrize(
    ("redis_url", "backend", "expected"),
    [
        ("redis://localhost:6379/0", "auto", "redis"),
        ("", "auto", "none"),
        ("redis://localhost:6379/0", "memory", "memory"),
        ("", "NONE", "none"),
    ],
)
def test_resolved_cache_backend(monkeypatch, redis_url, backend, expected) -> None:
    monkeypatch.setenv("REDIS_URL", redis_url)
    monkeypatch.setenv("CACHE_BACKEND", backend)

    assert Settings(_env_file=None).resolved_cache_backend == expected


@pytest.mark.parametrize(
    "overrides",
    [
        {"rate_limit_general_max": 0},
        {"rate_limit_export_window_seconds": -1},
        {"ledger_timeout_seconds": 0},
        {"account_store": "mongo"},
        {"cache_backend": "memcached"},
    ],
)
def test_invalid_values_are_rejected(overrides) -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **overrides)


def test_defaults(monkeypatch) -> None:
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("CACHE_BACKEND", raising=False)

    settings = Settings(_env_file=None)
    assert settings.account_store == "sql"
    assert settings.account_cache_ttl_seconds == 3600
    assert settings.rate_limit_auth_window_seconds == 900
    assert settings.rate_limit_auth_max == 20
    assert settings.rate_limit_general_max == 200
