"""Provisioning state machine for disposable provider identities.

One call to :meth:`IdentityProvisioner.provision` runs the whole sequence:
mailbox creation, provider registration, verification code interception and
session extraction. A failure at any step ends the flow; callers start over.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TypeVar

from image_relay.errors import (
    NoDomainAvailableError,
    ProviderHttpError,
    ProviderProtocolError,
    ProvisioningError,
    ProvisioningStepFailedError,
    VerificationTimeoutError,
)
from image_relay.generation.provider import GenerationProviderClient, ProviderSessionContext
from image_relay.provisioning.mailbox import MailboxPoller, MailMessage, MailProviderClient
from image_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

VERIFICATION_CODE_PATTERN = re.compile(r"\b\d{6}\b")
USERNAME_LENGTH = 12
_USERNAME_ALPHABET = string.ascii_lowercase + string.digits


class ProvisioningState(str, Enum):
    CREATED = "created"
    MAILBOX_REGISTERED = "mailbox_registered"
    VERIFICATION_REQUESTED = "verification_requested"
    VERIFICATION_RECEIVED = "verification_received"
    SESSION_ESTABLISHED = "session_established"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class ProvisioningStep:
    state: ProvisioningState
    at: datetime
    reason: str | None = None


@dataclass(slots=True)
class ProvisioningTrace:
    """Ordered record of the states one provisioning run went through."""

    steps: list[ProvisioningStep] = field(default_factory=list)

    @property
    def state(self) -> ProvisioningState | None:
        return self.steps[-1].state if self.steps else None

    @property
    def failure_reason(self) -> str | None:
        if self.state != ProvisioningState.FAILED:
            return None
        return self.steps[-1].reason

    def record(self, state: ProvisioningState, *, reason: str | None = None) -> None:
        self.steps.append(ProvisioningStep(state=state, at=utc_now(), reason=reason))

    def states(self) -> list[ProvisioningState]:
        return [step.state for step in self.steps]


@dataclass(slots=True)
class ProvisionedIdentity:
    """Credentials of a freshly registered provider account."""

    email: str
    password: str
    session_credential: str
    trace: ProvisioningTrace


def random_username(length: int = USERNAME_LENGTH) -> str:
    return "".join(secrets.choice(_USERNAME_ALPHABET) for _ in range(length))


def random_password() -> str:
    return f"Pass{1000 + secrets.randbelow(9000)}!"


def extract_verification_code(text: str) -> str | None:
    """Return the first standalone 6-digit number in ``text``."""

    match = VERIFICATION_CODE_PATTERN.search(text)
    return match.group(0) if match else None


class IdentityProvisioner:
    """Drives one provisioning run against the mail and generation providers."""

    def __init__(
        self,
        *,
        mail_client: MailProviderClient,
        provider_client: GenerationProviderClient,
        poller: MailboxPoller,
        username_factory: Callable[[], str] = random_username,
        password_factory: Callable[[], str] = random_password,
    ) -> None:
        self.mail_client = mail_client
        self.provider_client = provider_client
        self.poller = poller
        self._username_factory = username_factory
        self._password_factory = password_factory

    def provision(self, *, stop: threading.Event | None = None) -> ProvisionedIdentity:
        trace = ProvisioningTrace()
        self._transition(trace, ProvisioningState.CREATED)
        try:
            return self._run(trace, stop=stop)
        except ProvisioningError as exc:
            exc.trace = trace
            self._transition(trace, ProvisioningState.FAILED, reason=exc.code)
            raise

    def _run(self, trace: ProvisioningTrace, *, stop: threading.Event | None) -> ProvisionedIdentity:
        domain = self._step("list mailbox domains", self.mail_client.first_domain)
        if not domain:
            raise NoDomainAvailableError("Mail provider returned no usable domain.")

        email = f"{self._username_factory()}@{domain}"
        password = self._password_factory()
        self._step(
            "create mailbox",
            lambda: self.mail_client.create_account(address=email, password=password),
        )
        mailbox_token = self._step(
            "obtain mailbox token",
            lambda: self.mail_client.get_token(address=email, password=password),
        )
        self._transition(trace, ProvisioningState.MAILBOX_REGISTERED)

        context = self.provider_client.new_session()
        self._step("fetch csrf token", lambda: self.provider_client.fetch_csrf(context))
        self._step(
            "request email verification",
            lambda: self.provider_client.request_email_verification(context, email=email),
        )
        self._transition(trace, ProvisioningState.VERIFICATION_REQUESTED)

        code = self._wait_for_code(mailbox_token, stop=stop)
        self._transition(trace, ProvisioningState.VERIFICATION_RECEIVED)

        session_credential = self._establish_session(context, email=email, code=code)
        self._transition(trace, ProvisioningState.SESSION_ESTABLISHED)
        logger.info("Provisioned provider identity %s", email)
        return ProvisionedIdentity(
            email=email,
            password=password,
            session_credential=session_credential,
            trace=trace,
        )

    def _wait_for_code(self, mailbox_token: str, *, stop: threading.Event | None) -> str:
        sender_domain = self.provider_client.sender_domain
        inspected: set[str] = set()
        found: dict[str, str] = {}

        def _matches(message: MailMessage) -> bool:
            if message.message_id in inspected:
                return False
            if sender_domain not in message.sender.lower():
                return False
            try:
                text = self.mail_client.get_message_text(mailbox_token, message.message_id)
            except (ProviderHttpError, ProviderProtocolError) as exc:
                logger.warning("Could not read message %s: %s", message.message_id, exc)
                return False
            inspected.add(message.message_id)
            code = extract_verification_code(text)
            if code is None:
                logger.debug("Message %s from provider carried no code", message.message_id)
                return False
            found["code"] = code
            return True

        matched = self.poller.wait_for(
            lambda: self.mail_client.list_messages(mailbox_token),
            _matches,
            stop=stop,
        )
        if matched is None:
            raise VerificationTimeoutError(
                "No verification code arrived before the mailbox wait ended.",
            )
        return found["code"]

    def _establish_session(
        self,
        context: ProviderSessionContext,
        *,
        email: str,
        code: str,
    ) -> str:
        return self._step(
            "complete email verification",
            lambda: self.provider_client.complete_email_verification(
                context,
                email=email,
                code=code,
            ),
        )

    @staticmethod
    def _step(name: str, action: Callable[[], T]) -> T:
        try:
            return action()
        except (ProviderHttpError, ProviderProtocolError) as exc:
            logger.warning("Provisioning step %r failed: %s", name, exc)
            raise ProvisioningStepFailedError(f"Provisioning step {name!r} failed: {exc}") from exc

    @staticmethod
    def _transition(
        trace: ProvisioningTrace,
        state: ProvisioningState,
        *,
        reason: str | None = None,
    ) -> None:
        trace.record(state, reason=reason)
        if reason:
            logger.info("Provisioning -> %s (%s)", state.value, reason)
        else:
            logger.info("Provisioning -> %s", state.value)
