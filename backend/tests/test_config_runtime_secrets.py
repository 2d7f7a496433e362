from __future__ import annotations

import os

from fims_web.config import get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults_to_inmemory_backends_and_stub_mailer() -> None:
    previous = {
        name: _set_env(name, None)
        for name in (
            "ENTRY_STORE_BACKEND",
            "AUTO_SEND_STORE_BACKEND",
            "AUDIT_STORE_BACKEND",
            "RATE_LIMIT_BACKEND",
            "MAILER_SENDER_TYPE",
            "AUTO_SEND_BATCH_SIZE",
            "FIMS_TIMEZONE",
        )
    }
    try:
        settings = get_settings()
        assert settings.entry_store_backend == "inmemory"
        assert settings.auto_send_store_backend == "inmemory"
        assert settings.mailer_sender_type == "stub"
        assert settings.auto_send_batch_size == 5
        assert settings.region_timezone == "Europe/Sarajevo"
        assert settings.uses_sql_backend() is False
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_invalid_numeric_and_mode_values_fall_back_to_defaults() -> None:
    previous = {
        "AUTO_SEND_BATCH_SIZE": _set_env("AUTO_SEND_BATCH_SIZE", "0"),
        "VERIFY_RATE_LIMIT_MAX": _set_env("VERIFY_RATE_LIMIT_MAX", "lots"),
        "MAILER_SENDER_TYPE": _set_env("MAILER_SENDER_TYPE", "carrier-pigeon"),
        "RUNTIME_SECRET_GUARD_MODE": _set_env("RUNTIME_SECRET_GUARD_MODE", "strict"),
        "TRUSTED_PROXY_IPS": _set_env("TRUSTED_PROXY_IPS", " 10.0.0.1, ,10.0.0.2 "),
    }
    try:
        settings = get_settings()
        assert settings.auto_send_batch_size == 5
        assert settings.verify_rate_limit_max == 10
        assert settings.mailer_sender_type == "stub"
        assert settings.runtime_secret_guard_mode == "warn"
        assert settings.trusted_proxy_ips == ("10.0.0.1", "10.0.0.2")
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_placeholder_cron_secret_is_reported() -> None:
    previous = _set_env("CRON_SECRET", "change-me")
    try:
        issues = runtime_secret_issues(get_settings())
        assert "CRON_SECRET is empty or uses a placeholder value" in issues
    finally:
        _restore_env("CRON_SECRET", previous)


def test_smtp_sender_requires_host_and_from_address() -> None:
    previous = {
        "CRON_SECRET": _set_env("CRON_SECRET", "prod-cron-secret-001"),
        "MAILER_SENDER_TYPE": _set_env("MAILER_SENDER_TYPE", "smtp"),
        "SMTP_HOST": _set_env("SMTP_HOST", None),
        "SMTP_FROM": _set_env("SMTP_FROM", None),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert "SMTP_HOST is required when MAILER_SENDER_TYPE=smtp" in issues
        assert "SMTP_FROM is required when MAILER_SENDER_TYPE=smtp" in issues
        assert not any("CRON_SECRET" in issue for issue in issues)
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_postgres_backend_without_database_url_is_reported() -> None:
    previous = {
        "ENTRY_STORE_BACKEND": _set_env("ENTRY_STORE_BACKEND", "postgres"),
        "DATABASE_URL": _set_env("DATABASE_URL", None),
    }
    try:
        settings = get_settings()
        assert settings.uses_sql_backend() is True
        issues = runtime_secret_issues(settings)
        assert any("DATABASE_URL is required" in issue for issue in issues)
    finally:
        for key, value in previous.items():
            _restore_env(key, value)
