import pytest
from pydantic import ValidationError

from hashmark.app.core.config import Settings


def test_cors_origins_are_read_from_environment(monkeypatch):
    monkeypatch.setenv(
        "HASHMARK_CORS_ORIGINS",
        "https://app.example.org, https://admin.example.org,",
    )

    settings = Settings(_env_file=None)

    assert settings.cors_origin_list == [
        "https://app.example.org",
        "https://admin.example.org",
    ]


def test_defaults_without_environment(monkeypatch):
    monkeypatch.delenv("HASHMARK_CORS_ORIGINS", raising=False)
    monkeypatch.delenv("HASHMARK_PRIVATE_KEY", raising=False)

    settings = Settings(_env_file=None)

    assert settings.cors_origin_list == ["http://localhost:5173"]
    assert settings.server_signing_enabled is False


def test_frontend_url_trailing_slash_is_stripped():
    settings = Settings(_env_file=None, frontend_url="https://example.org/")

    assert settings.frontend_url == "https://example.org"


def test_malformed_contract_address_fails_fast():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, contract_address="0x1234")
