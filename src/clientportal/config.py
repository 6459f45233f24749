"""Portal configuration loaded from the environment.

Required:
- TELEGRAM_BOT_TOKEN: Bot API token
- GSHEETS_SHEET_ID: Spreadsheet holding the Clients/Jobs/Invoices tabs

Google credentials (one of):
- GSHEETS_KEY_FILE: Path to a service account JSON key
- GOOGLE_CLIENT_EMAIL + GOOGLE_PRIVATE_KEY_B64: Base64-encoded PEM key

Optional:
- TELEGRAM_WEBHOOK_SECRET, TELEGRAM_API_BASE_URL, TELEGRAM_HTTP_TIMEOUT
- DRIVE_SHARED_DRIVE_ID
- POLL_INTERVAL_SECONDS (default 300), POLLER_ENABLED (default true)
- NOTIFY_MAX_WORKERS (default 4)
- SESSION_TTL_SECONDS (default unset: sessions never expire)
- INTAKE_TTL_SECONDS (default 3600; 0 disables expiry)
- REPORT_REMOVED_RECORDS (default false)
- APP_ENV (default "production"; "local" relaxes webhook secret checks)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from clientportal.errors import ConfigError

DEFAULT_TELEGRAM_API_BASE_URL = "https://api.telegram.org"
DEFAULT_POLL_INTERVAL_SECONDS = 300.0
DEFAULT_INTAKE_TTL_SECONDS = 3600.0

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class GoogleConfig:
    """Service account settings shared by the Sheets and Drive providers."""

    sheet_id: str
    key_file: str | None = None
    client_email: str | None = None
    private_key_b64: str | None = None
    shared_drive_id: str | None = None


@dataclass(frozen=True)
class TelegramConfig:
    """Telegram Bot API settings."""

    bot_token: str
    webhook_secret: str | None = None
    api_base_url: str = DEFAULT_TELEGRAM_API_BASE_URL
    http_timeout: float = 5.0


@dataclass(frozen=True)
class PortalConfig:
    """Top-level settings for the portal process."""

    telegram: TelegramConfig
    google: GoogleConfig
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    poller_enabled: bool = True
    notify_max_workers: int = 4
    session_ttl_seconds: float | None = None
    intake_ttl_seconds: float | None = DEFAULT_INTAKE_TTL_SECONDS
    report_removed_records: bool = False
    app_env: str = "production"

    @property
    def is_local(self) -> bool:
        return self.app_env == "local"


def _get(environ: Mapping[str, str], name: str, default: str = "") -> str:
    return environ.get(name, default).strip()


def _parse_bool(raw: str, default: bool) -> bool:
    if not raw:
        return default
    return raw.lower() in _TRUE_VALUES


def _parse_float(environ: Mapping[str, str], name: str, default: float | None) -> float | None:
    raw = _get(environ, name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ConfigError(f"{name} must be >= 0")
    return value


def load_config(environ: Mapping[str, str] | None = None) -> PortalConfig:
    """Build PortalConfig from environment variables.

    Raises:
        ConfigError: If a required variable is missing or a value is invalid.
    """
    env = os.environ if environ is None else environ

    bot_token = _get(env, "TELEGRAM_BOT_TOKEN")
    sheet_id = _get(env, "GSHEETS_SHEET_ID")
    missing = [
        name
        for name, value in (("TELEGRAM_BOT_TOKEN", bot_token), ("GSHEETS_SHEET_ID", sheet_id))
        if not value
    ]
    if missing:
        raise ConfigError(f"Missing portal config: {', '.join(missing)}")

    key_file = _get(env, "GSHEETS_KEY_FILE") or None
    client_email = _get(env, "GOOGLE_CLIENT_EMAIL") or None
    private_key_b64 = _get(env, "GOOGLE_PRIVATE_KEY_B64") or None
    if not key_file and not (client_email and private_key_b64):
        raise ConfigError(
            "Missing Google credentials: GSHEETS_KEY_FILE or "
            "GOOGLE_CLIENT_EMAIL + GOOGLE_PRIVATE_KEY_B64"
        )

    poll_interval = _parse_float(env, "POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS)
    if not poll_interval:
        raise ConfigError("POLL_INTERVAL_SECONDS must be > 0")

    workers_raw = _get(env, "NOTIFY_MAX_WORKERS", "4")
    try:
        notify_max_workers = max(1, int(workers_raw))
    except ValueError:
        raise ConfigError(f"NOTIFY_MAX_WORKERS must be an integer, got {workers_raw!r}")

    timeout = _parse_float(env, "TELEGRAM_HTTP_TIMEOUT", 5.0)

    return PortalConfig(
        telegram=TelegramConfig(
            bot_token=bot_token,
            webhook_secret=_get(env, "TELEGRAM_WEBHOOK_SECRET") or None,
            api_base_url=_get(env, "TELEGRAM_API_BASE_URL", DEFAULT_TELEGRAM_API_BASE_URL).rstrip("/"),
            http_timeout=timeout or 5.0,
        ),
        google=GoogleConfig(
            sheet_id=sheet_id,
            key_file=key_file,
            client_email=client_email,
            private_key_b64=private_key_b64,
            shared_drive_id=_get(env, "DRIVE_SHARED_DRIVE_ID") or None,
        ),
        poll_interval_seconds=poll_interval,
        poller_enabled=_parse_bool(_get(env, "POLLER_ENABLED"), True),
        notify_max_workers=notify_max_workers,
        session_ttl_seconds=_parse_float(env, "SESSION_TTL_SECONDS", None) or None,
        intake_ttl_seconds=_parse_float(env, "INTAKE_TTL_SECONDS", DEFAULT_INTAKE_TTL_SECONDS) or None,
        report_removed_records=_parse_bool(_get(env, "REPORT_REMOVED_RECORDS"), False),
        app_env=_get(env, "APP_ENV", "production").lower(),
    )
