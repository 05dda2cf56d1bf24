from __future__ import annotations

import re

import allure
import pytest

from image_relay.errors import (
    NoDomainAvailableError,
    ProvisioningStepFailedError,
    SessionExtractionFailedError,
    VerificationTimeoutError,
)
from image_relay.provisioning.identity import (
    IdentityProvisioner,
    ProvisioningState,
    extract_verification_code,
    random_password,
    random_username,
)
from image_relay.provisioning.mailbox import MailboxPoller

pytestmark = [
    allure.epic("Identity Provisioning"),
    allure.feature("Provisioning State Machine"),
]

HAPPY_PATH = [
    ProvisioningState.CREATED,
    ProvisioningState.MAILBOX_REGISTERED,
    ProvisioningState.VERIFICATION_REQUESTED,
    ProvisioningState.VERIFICATION_RECEIVED,
    ProvisioningState.SESSION_ESTABLISHED,
]


def _provisioner(mail_client, provider_client, clock, *, timeout: float = 60.0) -> IdentityProvisioner:
    return IdentityProvisioner(
        mail_client=mail_client,
        provider_client=provider_client,
        poller=MailboxPoller(
            interval_seconds=5.0,
            timeout_seconds=timeout,
            clock=clock,
            sleep=clock.sleep,
        ),
    )


def test_provision_walks_every_state_and_returns_session(
    mail_client,
    mail_server,
    provider_client,
    fake_clock,
) -> None:
    mail_server.deliver("m1", "newsletter@elsewhere.test", "Your code is 111111")
    mail_server.deliver("m2", "no-reply@provider.test", "Your verification code: 482913. Expires soon.")
    mail_server.visible_after_lists = 1

    identity = _provisioner(mail_client, provider_client, fake_clock).provision()

    assert re.fullmatch(r"[a-z0-9]{12}@inbox\.test", identity.email)
    assert re.fullmatch(r"Pass\d{4}!", identity.password)
    assert identity.session_credential == "session-xyz"
    assert identity.trace.states() == HAPPY_PATH
    assert mail_server.reads == ["m2"]
    assert mail_server.created_accounts == [{"address": identity.email, "password": identity.password}]


def test_provider_message_without_code_is_skipped_until_a_code_arrives(
    mail_client,
    mail_server,
    provider_client,
    fake_clock,
) -> None:
    mail_server.deliver("m1", "no-reply@provider.test", "Welcome aboard!")

    def _late_delivery(seconds: float) -> None:
        fake_clock.sleep(seconds)
        if len(mail_server.messages) == 1:
            mail_server.deliver("m2", "no-reply@provider.test", "Code 000123")

    provisioner = IdentityProvisioner(
        mail_client=mail_client,
        provider_client=provider_client,
        poller=MailboxPoller(interval_seconds=5.0, timeout_seconds=60.0, clock=fake_clock, sleep=_late_delivery),
    )

    identity = provisioner.provision()

    assert identity.trace.state == ProvisioningState.SESSION_ESTABLISHED
    assert mail_server.reads == ["m1", "m2"]


def test_unreadable_message_is_retried_on_the_next_poll(
    mail_client,
    mail_server,
    provider_client,
    fake_clock,
) -> None:
    mail_server.deliver("m1", "no-reply@provider.test", "Your verification code: 246810")
    mail_server.garbled_reads.add("m1")

    identity = _provisioner(mail_client, provider_client, fake_clock).provision()

    assert identity.trace.states() == HAPPY_PATH
    assert mail_server.reads == ["m1", "m1"]
    assert fake_clock.sleeps == [5.0]


def test_no_domain_fails_in_created_state(mail_client, mail_server, provider_client, fake_clock) -> None:
    mail_server.domains = []

    with pytest.raises(NoDomainAvailableError) as excinfo:
        _provisioner(mail_client, provider_client, fake_clock).provision()

    trace = excinfo.value.trace
    assert trace.states() == [ProvisioningState.CREATED, ProvisioningState.FAILED]
    assert trace.failure_reason == "no_domain_available"


def test_missing_code_times_out_after_verification_requested(
    mail_client,
    provider_client,
    fake_clock,
) -> None:
    with pytest.raises(VerificationTimeoutError) as excinfo:
        _provisioner(mail_client, provider_client, fake_clock, timeout=30.0).provision()

    assert excinfo.value.trace.states() == [*HAPPY_PATH[:3], ProvisioningState.FAILED]
    assert fake_clock.now == pytest.approx(30.0)


def test_missing_session_cookie_fails_after_code_received(
    mail_client,
    mail_server,
    provider_client,
    provider_server,
    fake_clock,
) -> None:
    mail_server.deliver("m1", "no-reply@provider.test", "123456")
    provider_server.issue_session_cookie = False

    with pytest.raises(SessionExtractionFailedError) as excinfo:
        _provisioner(mail_client, provider_client, fake_clock).provision()

    assert excinfo.value.trace.states() == [*HAPPY_PATH[:4], ProvisioningState.FAILED]


def test_http_failure_in_a_step_names_the_step(
    mail_client,
    provider_client,
    provider_server,
    fake_clock,
) -> None:
    provider_server.fail_paths["/api/auth/csrf"] = 500

    with pytest.raises(ProvisioningStepFailedError, match="fetch csrf token") as excinfo:
        _provisioner(mail_client, provider_client, fake_clock).provision()

    assert excinfo.value.code == "provisioning_step_failed"
    assert "trace id" not in excinfo.value.message
    assert excinfo.value.trace.failure_reason == "provisioning_step_failed"


def test_extract_verification_code_requires_standalone_six_digits() -> None:
    assert extract_verification_code("code: 654321.") == "654321"
    assert extract_verification_code("order 1234567 and 12345") is None


def test_random_credentials_shape() -> None:
    assert re.fullmatch(r"[a-z0-9]{12}", random_username())
    assert re.fullmatch(r"Pass\d{4}!", random_password())
