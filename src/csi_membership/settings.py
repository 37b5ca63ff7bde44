"""Process-wide configuration, read from the environment once at startup."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping


DEFAULT_RAZORPAY_API_BASE = "https://api.razorpay.com/v1"
DEFAULT_CURRENCY = "INR"
DEFAULT_HTTP_TIMEOUT_SECONDS = 20
DEFAULT_SMTP_PORT = 587


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _flag(value: Any) -> bool:
    return _clean_text(value).lower() in {"1", "true", "yes", "on"}


def _int(value: Any, default: int, *, minimum: int = 1) -> int:
    raw = _clean_text(value)
    if not raw:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def membership_home(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    root = _clean_text(env.get("CSI_MEMBERSHIP_HOME"))
    return Path(root).expanduser().resolve() if root else (Path.home() / ".csi-membership").resolve()


def default_database_url(environ: Mapping[str, str] | None = None) -> str:
    return f"sqlite:///{membership_home(environ) / 'membership.sqlite3'}"


@dataclass(frozen=True)
class SmtpSettings:
    host: str = ""
    port: int = DEFAULT_SMTP_PORT
    user: str = ""
    password: str = ""
    from_email: str = ""
    allow_invalid_certs: bool = False

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    @property
    def sender(self) -> str:
        return self.from_email or self.user


@dataclass(frozen=True)
class Settings:
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_api_base: str = DEFAULT_RAZORPAY_API_BASE
    firebase_project_id: str = ""
    database_url: str = ""
    currency: str = DEFAULT_CURRENCY
    enable_dev_endpoints: bool = False
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS
    log_level: str = "INFO"
    smtp: SmtpSettings = field(default_factory=SmtpSettings)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            razorpay_key_id=_clean_text(env.get("CSI_RAZORPAY_KEY_ID")),
            razorpay_key_secret=_clean_text(env.get("CSI_RAZORPAY_KEY_SECRET")),
            razorpay_webhook_secret=_clean_text(env.get("CSI_RAZORPAY_WEBHOOK_SECRET")),
            razorpay_api_base=(_clean_text(env.get("CSI_RAZORPAY_API_BASE")) or DEFAULT_RAZORPAY_API_BASE).rstrip("/"),
            firebase_project_id=_clean_text(env.get("CSI_FIREBASE_PROJECT_ID")),
            database_url=_clean_text(env.get("CSI_DATABASE_URL")) or default_database_url(env),
            currency=(_clean_text(env.get("CSI_CURRENCY")) or DEFAULT_CURRENCY).upper(),
            enable_dev_endpoints=_flag(env.get("CSI_ENABLE_DEV_ENDPOINTS")),
            http_timeout_seconds=_int(env.get("CSI_HTTP_TIMEOUT_SECONDS"), DEFAULT_HTTP_TIMEOUT_SECONDS),
            log_level=(_clean_text(env.get("CSI_LOG_LEVEL")) or "INFO").upper(),
            smtp=SmtpSettings(
                host=_clean_text(env.get("CSI_SMTP_HOST")),
                port=_int(env.get("CSI_SMTP_PORT"), DEFAULT_SMTP_PORT),
                user=_clean_text(env.get("CSI_SMTP_USER")),
                password=_clean_text(env.get("CSI_SMTP_PASS")),
                from_email=_clean_text(env.get("CSI_SMTP_FROM_EMAIL")),
                allow_invalid_certs=_flag(env.get("CSI_SMTP_ALLOW_INVALID_CERTS")),
            ),
        )
