from __future__ import annotations

import os
from dataclasses import dataclass

CERTIFICATE_MAX_BYTES_DEFAULT = 10 * 1024 * 1024


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int(value: str | None, default: int, *, minimum: int | None = None) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    if minimum is not None and parsed < minimum:
        return default
    return parsed


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "FIMS Web"
    api_prefix: str = "/api/v1"
    region_timezone: str = "Europe/Sarajevo"
    database_url: str = ""
    entry_store_backend: str = "inmemory"
    auto_send_store_backend: str = "inmemory"
    audit_store_backend: str = "inmemory"
    rate_limit_backend: str = "inmemory"
    # Batch planning.
    auto_send_batch_size: int = 5
    auto_send_max_entries: int = 100
    dispatch_max_workers: int = 2
    # Outbound mail.
    mailer_sender_type: str = "stub"
    mailer_enabled: bool = True
    mailer_timeout_seconds: float = 30.0
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_secure: bool = False
    # Documents and uploads.
    certificate_upload_dir: str = "uploads/certificates"
    certificate_max_bytes: int = CERTIFICATE_MAX_BYTES_DEFAULT
    branding_image_path: str = ""
    public_base_url: str = "http://localhost:3000"
    # Public verification.
    verify_rate_limit_max: int = 10
    verify_rate_limit_window_seconds: int = 60
    cron_secret: str = ""
    trust_proxy_headers: bool = False
    trusted_proxy_ips: tuple[str, ...] = ()
    log_level: str = "INFO"
    runtime_secret_guard_mode: str = "warn"

    def uses_sql_backend(self) -> bool:
        backends = (
            self.entry_store_backend,
            self.auto_send_store_backend,
            self.audit_store_backend,
            self.rate_limit_backend,
        )
        return any(backend.strip().lower() == "postgres" for backend in backends)


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("FIMS_APP_NAME", "FIMS Web"),
        api_prefix=os.getenv("FIMS_API_PREFIX", "/api/v1"),
        region_timezone=os.getenv("FIMS_TIMEZONE", "Europe/Sarajevo"),
        database_url=os.getenv("DATABASE_URL", ""),
        entry_store_backend=os.getenv("ENTRY_STORE_BACKEND", "inmemory"),
        auto_send_store_backend=os.getenv("AUTO_SEND_STORE_BACKEND", "inmemory"),
        audit_store_backend=os.getenv("AUDIT_STORE_BACKEND", "inmemory"),
        rate_limit_backend=os.getenv("RATE_LIMIT_BACKEND", "inmemory"),
        auto_send_batch_size=_as_int(os.getenv("AUTO_SEND_BATCH_SIZE"), 5, minimum=1),
        auto_send_max_entries=_as_int(os.getenv("AUTO_SEND_MAX_ENTRIES"), 100, minimum=1),
        dispatch_max_workers=_as_int(os.getenv("DISPATCH_MAX_WORKERS"), 2, minimum=0),
        mailer_sender_type=_normalize_mode(
            os.getenv("MAILER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "smtp"},
        ),
        mailer_enabled=_as_bool(os.getenv("MAILER_ENABLED"), True),
        mailer_timeout_seconds=_as_float(os.getenv("MAILER_TIMEOUT_SECONDS"), 30.0),
        smtp_host=os.getenv("SMTP_HOST", ""),
        smtp_port=_as_int(os.getenv("SMTP_PORT"), 587, minimum=1),
        smtp_user=os.getenv("SMTP_USER", ""),
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        smtp_from=os.getenv("SMTP_FROM", ""),
        smtp_secure=_as_bool(os.getenv("SMTP_SECURE"), False),
        certificate_upload_dir=os.getenv("CERTIFICATE_UPLOAD_DIR", "uploads/certificates"),
        certificate_max_bytes=_as_int(
            os.getenv("CERTIFICATE_MAX_BYTES"), CERTIFICATE_MAX_BYTES_DEFAULT, minimum=1
        ),
        branding_image_path=os.getenv("BRANDING_IMAGE_PATH", ""),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:3000"),
        verify_rate_limit_max=_as_int(os.getenv("VERIFY_RATE_LIMIT_MAX"), 10, minimum=1),
        verify_rate_limit_window_seconds=_as_int(
            os.getenv("VERIFY_RATE_LIMIT_WINDOW_SECONDS"), 60, minimum=1
        ),
        cron_secret=os.getenv("CRON_SECRET", ""),
        trust_proxy_headers=_as_bool(os.getenv("TRUST_PROXY_HEADERS"), False),
        trusted_proxy_ips=_as_csv_tuple(os.getenv("TRUSTED_PROXY_IPS")),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(settings.cron_secret, defaults={"dev-cron-secret", "change-me-in-production"}):
        issues.append("CRON_SECRET is empty or uses a placeholder value")
    if settings.mailer_sender_type == "smtp":
        if not settings.smtp_host.strip():
            issues.append("SMTP_HOST is required when MAILER_SENDER_TYPE=smtp")
        if not settings.smtp_from.strip():
            issues.append("SMTP_FROM is required when MAILER_SENDER_TYPE=smtp")
    if settings.uses_sql_backend() and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when any *_STORE_BACKEND or RATE_LIMIT_BACKEND is postgres")
    return tuple(issues)
