from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from image_relay.config import MailSettings, QuotaSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_reads_prefixed_variables(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("IMAGE_RELAY_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("IMAGE_RELAY_MAIL_POLL_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("IMAGE_RELAY_MAX_USES_PER_ACCOUNT", "3")
    monkeypatch.setenv("IMAGE_RELAY_PROVIDER_BASE_URL", "http://localhost:9000")
    monkeypatch.setenv("IMAGE_RELAY_USER_ID", "alice")
    monkeypatch.setenv("IMAGE_RELAY_LOG_LEVEL", " info ")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.mail.poll_interval_seconds == 2.5
    assert settings.quota.max_uses_per_account == 3
    assert settings.provider.base_url == "http://localhost:9000"
    assert settings.user_context.user_id == "alice"
    assert settings.log_level == "INFO"
    settings.validate()


def test_explicit_db_path_wins_over_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("IMAGE_RELAY_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_defaults_match_documented_polling_policy() -> None:
    settings = Settings()

    assert settings.mail.poll_interval_seconds == 5.0
    assert settings.mail.poll_timeout_seconds == 300.0
    assert settings.ledger.reconcile_interval_seconds == 3.0
    assert settings.quota.max_uses_per_account == 5
    settings.validate()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(mail=MailSettings(poll_interval_seconds=0)), "POLL_INTERVAL_SECONDS must be > 0"),
        (
            Settings(mail=MailSettings(poll_interval_seconds=10, poll_timeout_seconds=5)),
            "POLL_TIMEOUT_SECONDS",
        ),
        (Settings(quota=QuotaSettings(max_uses_per_account=0)), "MAX_USES_PER_ACCOUNT"),
        (Settings(mail=MailSettings(base_url="ftp://mail.test")), "Invalid IMAGE_RELAY_MAIL_BASE_URL"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_rejects_blank_user_id() -> None:
    settings = Settings()
    settings = replace(settings, user_context=replace(settings.user_context, user_id="  "))

    with pytest.raises(ValueError, match="USER_ID"):
        settings.validate()
