"""Runtime configuration for provisioning, submission and reconciliation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_MAIL_BASE_URL = "https://api.mail.tm"
DEFAULT_PROVIDER_BASE_URL = "https://nanabanana.ai"


@dataclass(slots=True)
class MailSettings:
    """Temporary mailbox provider settings."""

    base_url: str = DEFAULT_MAIL_BASE_URL
    poll_interval_seconds: float = 5.0
    poll_timeout_seconds: float = 300.0
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class ProviderSettings:
    """Image generation provider settings."""

    base_url: str = DEFAULT_PROVIDER_BASE_URL
    request_timeout_seconds: float = 60.0
    max_retries: int = 2


@dataclass(slots=True)
class QuotaSettings:
    """Per-account usage cap."""

    max_uses_per_account: int = 5


@dataclass(slots=True)
class LedgerSettings:
    """Client-side task ledger settings."""

    path: Path = Path(".image_relay_tasks.json")
    reconcile_interval_seconds: float = 3.0


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"
    user_name: str = "Default User"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".image_relay.db")
    blob_root: Path = Path(".image_relay_blobs")
    log_level: str = "WARNING"
    sqlite_busy_timeout_ms: int = 5_000
    mail: MailSettings = field(default_factory=MailSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    quota: QuotaSettings = field(default_factory=QuotaSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("IMAGE_RELAY_DB_PATH", ".image_relay.db")),
            blob_root=Path(os.getenv("IMAGE_RELAY_BLOB_ROOT", ".image_relay_blobs")),
            log_level=os.getenv("IMAGE_RELAY_LOG_LEVEL", "WARNING").strip().upper(),
            sqlite_busy_timeout_ms=int(os.getenv("IMAGE_RELAY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            mail=MailSettings(
                base_url=os.getenv("IMAGE_RELAY_MAIL_BASE_URL", DEFAULT_MAIL_BASE_URL),
                poll_interval_seconds=float(
                    os.getenv("IMAGE_RELAY_MAIL_POLL_INTERVAL_SECONDS", "5"),
                ),
                poll_timeout_seconds=float(
                    os.getenv("IMAGE_RELAY_MAIL_POLL_TIMEOUT_SECONDS", "300"),
                ),
                request_timeout_seconds=float(
                    os.getenv("IMAGE_RELAY_MAIL_REQUEST_TIMEOUT_SECONDS", "30"),
                ),
            ),
            provider=ProviderSettings(
                base_url=os.getenv("IMAGE_RELAY_PROVIDER_BASE_URL", DEFAULT_PROVIDER_BASE_URL),
                request_timeout_seconds=float(
                    os.getenv("IMAGE_RELAY_PROVIDER_REQUEST_TIMEOUT_SECONDS", "60"),
                ),
                max_retries=int(os.getenv("IMAGE_RELAY_PROVIDER_MAX_RETRIES", "2")),
            ),
            quota=QuotaSettings(
                max_uses_per_account=int(os.getenv("IMAGE_RELAY_MAX_USES_PER_ACCOUNT", "5")),
            ),
            ledger=LedgerSettings(
                path=Path(os.getenv("IMAGE_RELAY_LEDGER_PATH", ".image_relay_tasks.json")),
                reconcile_interval_seconds=float(
                    os.getenv("IMAGE_RELAY_RECONCILE_INTERVAL_SECONDS", "3"),
                ),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("IMAGE_RELAY_USER_ID", "default_user"),
                user_name=os.getenv("IMAGE_RELAY_USER_NAME", "Default User"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        _validate_base_url("IMAGE_RELAY_MAIL_BASE_URL", self.mail.base_url)
        _validate_base_url("IMAGE_RELAY_PROVIDER_BASE_URL", self.provider.base_url)
        if self.mail.poll_interval_seconds <= 0:
            raise ValueError("IMAGE_RELAY_MAIL_POLL_INTERVAL_SECONDS must be > 0.")
        if self.mail.poll_timeout_seconds < self.mail.poll_interval_seconds:
            raise ValueError(
                "IMAGE_RELAY_MAIL_POLL_TIMEOUT_SECONDS must be >= the poll interval.",
            )
        if self.provider.request_timeout_seconds <= 0:
            raise ValueError("IMAGE_RELAY_PROVIDER_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.provider.max_retries < 0:
            raise ValueError("IMAGE_RELAY_PROVIDER_MAX_RETRIES must be >= 0.")
        if self.quota.max_uses_per_account <= 0:
            raise ValueError("IMAGE_RELAY_MAX_USES_PER_ACCOUNT must be a positive integer.")
        if self.ledger.reconcile_interval_seconds <= 0:
            raise ValueError("IMAGE_RELAY_RECONCILE_INTERVAL_SECONDS must be > 0.")
        if not self.user_context.user_id.strip():
            raise ValueError("IMAGE_RELAY_USER_ID must not be empty.")


def _validate_base_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
