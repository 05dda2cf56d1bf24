"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

import httpx
import pytest

from image_relay.generation.models import Account, AccountCreate
from image_relay.generation.provider import (
    CSRF_COOKIE_NAME,
    SESSION_COOKIE_NAME,
    GenerationProviderClient,
)
from image_relay.provisioning.mailbox import MailProviderClient
from image_relay.storage.blobs import LocalBlobStore
from image_relay.storage.repository import RelayRepository

PROVIDER_BASE_URL = "https://provider.test"
MAIL_BASE_URL = "https://mail.test"
RESULT_HOST = "cdn.test"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProviderServer:
    """In-process stand-in for the generation provider."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.created_payloads: list[dict[str, object]] = []
        self.states: dict[str, list[dict[str, object]]] = {}
        self.fail_paths: dict[str, int] = {}
        self.issue_session_cookie = True
        self.session_credential = "session-xyz"
        self.upload_count = 0
        self._next_task = 0

    def status_calls(self, remote_task_id: str) -> int:
        path = f"/api/image-generation-nano-banana/{remote_task_id}"
        return sum(1 for request in self.requests if request.url.path == path)

    def create_calls(self) -> int:
        return len(self.created_payloads)

    def handler(self, request: httpx.Request) -> httpx.Response:  # noqa: PLR0911
        self.requests.append(request)
        path = request.url.path
        if path in self.fail_paths:
            return httpx.Response(self.fail_paths[path], json={"error": "internal trace id 42"})
        if request.url.host == RESULT_HOST:
            return httpx.Response(200, content=PNG_BYTES)
        if path == "/api/auth/csrf":
            return httpx.Response(
                200,
                json={"csrfToken": "csrf-123"},
                headers=[("set-cookie", f"{CSRF_COOKIE_NAME}=csrf-cookie; Path=/; Secure")],
            )
        if path == "/api/auth/email-verification":
            return httpx.Response(200, json={"ok": True})
        if path == "/api/auth/callback/email-verification":
            headers = [("set-cookie", "other=1; Path=/")]
            if self.issue_session_cookie:
                headers.append(
                    ("set-cookie", f"{SESSION_COOKIE_NAME}={self.session_credential}; Path=/"),
                )
            return httpx.Response(200, json={"url": f"{PROVIDER_BASE_URL}/ar/ai-image"}, headers=headers)
        if path == "/api/upload":
            self.upload_count += 1
            return httpx.Response(200, json={"url": f"https://{RESULT_HOST}/uploads/{self.upload_count}.jpg"})
        if path == "/api/image-generation-nano-banana/create":
            self.created_payloads.append(json.loads(request.content))
            self._next_task += 1
            return httpx.Response(200, json={"task_id": f"remote-{self._next_task}"})
        if path.startswith("/api/image-generation-nano-banana/"):
            remote_task_id = path.rsplit("/", 1)[-1]
            queue = self.states.get(remote_task_id) or [{"status": "pending"}]
            state = queue.pop(0) if len(queue) > 1 else queue[0]
            return httpx.Response(200, json={"task_id": remote_task_id, **state})
        return httpx.Response(404, json={"error": "not found"})


class FakeMailServer:
    """In-process stand-in for a mail.tm-style mailbox API."""

    def __init__(self, *, domains: tuple[str, ...] = ("inbox.test",)) -> None:
        self.domains = list(domains)
        self.messages: list[dict[str, object]] = []
        self.visible_after_lists = 0
        self.list_calls = 0
        self.reads: list[str] = []
        self.created_accounts: list[dict[str, object]] = []
        self.garbled_reads: set[str] = set()

    def deliver(self, message_id: str, sender: str, text: str) -> None:
        self.messages.append(
            {"id": message_id, "from": {"address": sender}, "subject": "Code", "text": text},
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/domains":
            return httpx.Response(
                200,
                json={"hydra:member": [{"id": str(i), "domain": d} for i, d in enumerate(self.domains)]},
            )
        if path == "/accounts":
            self.created_accounts.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "acc-1"})
        if path == "/token":
            return httpx.Response(200, json={"token": "mail-token"})
        assert request.headers.get("authorization") == "Bearer mail-token"
        if path == "/messages":
            self.list_calls += 1
            visible = self.messages if self.list_calls > self.visible_after_lists else []
            members = [
                {key: value for key, value in message.items() if key != "text"}
                for message in visible
            ]
            return httpx.Response(200, json={"hydra:member": members})
        if path.startswith("/messages/"):
            message_id = path.rsplit("/", 1)[-1]
            self.reads.append(message_id)
            if message_id in self.garbled_reads:
                self.garbled_reads.discard(message_id)
                return httpx.Response(200, text="<html>gateway hiccup</html>")
            for message in self.messages:
                if message["id"] == message_id:
                    return httpx.Response(200, json=message)
        return httpx.Response(404, json={})


@pytest.fixture()
def provider_server() -> FakeProviderServer:
    return FakeProviderServer()


@pytest.fixture()
def provider_client(provider_server: FakeProviderServer) -> Iterator[GenerationProviderClient]:
    client = GenerationProviderClient(
        base_url=PROVIDER_BASE_URL,
        transport=httpx.MockTransport(provider_server.handler),
    )
    yield client
    client.close()


@pytest.fixture()
def mail_server() -> FakeMailServer:
    return FakeMailServer()


@pytest.fixture()
def mail_client(mail_server: FakeMailServer) -> Iterator[MailProviderClient]:
    client = MailProviderClient(
        base_url=MAIL_BASE_URL,
        transport=httpx.MockTransport(mail_server.handler),
    )
    yield client
    client.close()


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[RelayRepository]:
    repo = RelayRepository(tmp_path / "relay.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def blob_store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture()
def make_account(repository: RelayRepository):
    def _make(*, owner_id: str = "default_user", use_count: int = 0, max_uses: int = 5) -> Account:
        account = repository.create_account(
            AccountCreate(
                owner_id=owner_id,
                email=f"user{len(repository.list_accounts(owner_id))}@inbox.test",
                password="Pass1234!",
                session_credential="session-xyz",
                max_uses=max_uses,
            ),
        )
        for _ in range(use_count):
            repository.increment_use(account.id)
        refreshed = repository.get_account(account.id)
        assert refreshed is not None
        return refreshed

    return _make
