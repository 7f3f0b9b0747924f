import logging

from config import DEFAULT_IDENTITY_SECRET, get_settings


def _fresh_settings(monkeypatch, secret=None):
    monkeypatch.setenv("COUPLES_DATABASE_URL", "sqlite:///:memory:")
    if secret is None:
        monkeypatch.delenv("COUPLES_IDENTITY_SECRET", raising=False)
    else:
        monkeypatch.setenv("COUPLES_IDENTITY_SECRET", secret)
    get_settings.cache_clear()
    try:
        return get_settings()
    finally:
        get_settings.cache_clear()


def test_default_identity_secret_logs_a_warning(monkeypatch, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="config"):
        settings = _fresh_settings(monkeypatch)

    assert settings.identity_secret == DEFAULT_IDENTITY_SECRET
    assert "COUPLES_IDENTITY_SECRET is not set" in caplog.text


def test_configured_identity_secret_is_quiet(monkeypatch, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="config"):
        settings = _fresh_settings(monkeypatch, secret="s3cret-for-tests")

    assert settings.identity_secret == "s3cret-for-tests"
    assert "COUPLES_IDENTITY_SECRET" not in caplog.text
