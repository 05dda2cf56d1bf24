"""HTTP client for the image generation provider.

Covers the auth.js e-mail verification handshake used by provisioning, image
upload, job creation and job status lookup. Status responses are mapped onto the
tagged ``ProviderTaskState`` variants so callers never handle loose dicts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx

from image_relay.errors import ProviderProtocolError, SessionExtractionFailedError
from image_relay.generation.models import (
    GenerationParameters,
    ProviderTaskState,
    TaskCompleted,
    TaskFailed,
    TaskPending,
    TaskProcessing,
)
from image_relay.http.client import JsonHttpClient, cookie_value, decode_json

logger = logging.getLogger(__name__)

CSRF_COOKIE_NAME = "__Host-authjs.csrf-token"
SESSION_COOKIE_NAME = "__Secure-authjs.session-token"
LANDING_PATH = "/ar/ai-image"
GENERATION_PATH = "/api/image-generation-nano-banana"

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Linux; Android 10; K) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/143.0.0.0 Mobile Safari/537.36"
)
BROWSER_HEADERS = {
    "sec-ch-ua-platform": '"Android"',
    "sec-ch-ua": '"Google Chrome";v="143", "Chromium";v="143", "Not A(Brand";v="24"',
    "sec-ch-ua-mobile": "?1",
    "accept-language": "en-US,en;q=0.9",
}
DEFAULT_FAILURE_MESSAGE = "Generation failed without an error message."


@dataclass(slots=True)
class ProviderSessionContext:
    """Cookie and token state threaded through the provider handshake."""

    origin: str
    csrf_token: str | None = None
    csrf_cookie: str | None = None
    session_credential: str | None = None

    def csrf_headers(self) -> dict[str, str]:
        headers = self._page_headers()
        if self.csrf_cookie:
            headers["Cookie"] = f"{CSRF_COOKIE_NAME}={self.csrf_cookie}"
        return headers

    def session_headers(self) -> dict[str, str]:
        if not self.session_credential:
            raise SessionExtractionFailedError("Provider session credential is not established.")
        headers = self._page_headers()
        headers["Cookie"] = f"{SESSION_COOKIE_NAME}={self.session_credential}"
        return headers

    def _page_headers(self) -> dict[str, str]:
        return {"origin": self.origin, "referer": f"{self.origin}{LANDING_PATH}"}

    @classmethod
    def for_session(cls, *, origin: str, session_credential: str) -> ProviderSessionContext:
        return cls(origin=origin, session_credential=session_credential)


class GenerationProviderClient:
    """Typed facade over the provider's auth, upload and generation endpoints."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 60.0,
        max_retries: int = 2,
        transport: httpx.BaseTransport | None = None,
        parameters: GenerationParameters | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.parameters = parameters or GenerationParameters()
        self._http = JsonHttpClient(
            base_url=self.base_url,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            user_agent=BROWSER_USER_AGENT,
            headers=BROWSER_HEADERS,
            transport=transport,
        )

    @property
    def sender_domain(self) -> str:
        """Domain expected in the From address of verification mails."""

        host = urlparse(self.base_url).hostname or ""
        return host.removeprefix("www.")

    def new_session(self) -> ProviderSessionContext:
        return ProviderSessionContext(origin=self.base_url)

    def session_for(self, session_credential: str) -> ProviderSessionContext:
        return ProviderSessionContext.for_session(
            origin=self.base_url,
            session_credential=session_credential,
        )

    def fetch_csrf(self, context: ProviderSessionContext) -> None:
        """Populate ``context`` with the CSRF token and its companion cookie."""

        response = self._http.request("GET", "/api/auth/csrf")
        token = decode_json(response, path="/api/auth/csrf").get("csrfToken")
        context.csrf_token = str(token) if token else None
        context.csrf_cookie = cookie_value(response, CSRF_COOKIE_NAME)
        if context.csrf_token is None or context.csrf_cookie is None:
            logger.warning(
                "CSRF handshake incomplete: token=%s cookie=%s",
                context.csrf_token is not None,
                context.csrf_cookie is not None,
            )

    def request_email_verification(self, context: ProviderSessionContext, *, email: str) -> None:
        self._http.request(
            "POST",
            "/api/auth/email-verification",
            headers=context.csrf_headers(),
            json={"email": email},
        )

    def complete_email_verification(
        self,
        context: ProviderSessionContext,
        *,
        email: str,
        code: str,
    ) -> str:
        """Submit the mailed code and return the session credential."""

        headers = context.csrf_headers()
        headers["x-auth-return-redirect"] = "1"
        response = self._http.request(
            "POST",
            "/api/auth/callback/email-verification",
            headers=headers,
            json={
                "email": email,
                "code": code,
                "redirect": "false",
                "csrfToken": context.csrf_token,
                "callbackUrl": f"{self.base_url}{LANDING_PATH}",
            },
        )
        session_credential = cookie_value(response, SESSION_COOKIE_NAME)
        if not session_credential:
            raise SessionExtractionFailedError(
                "Verification callback did not set a session cookie.",
            )
        context.session_credential = session_credential
        return session_credential

    def upload_image(
        self,
        context: ProviderSessionContext,
        *,
        data: bytes,
        filename: str = "image.jpg",
        mime_type: str = "image/jpeg",
    ) -> str:
        """Upload an input image and return the provider-hosted URL."""

        response = self._http.request(
            "POST",
            "/api/upload",
            headers=context.session_headers(),
            files={"file": (filename, data, mime_type)},
        )
        payload = decode_json(response, path="/api/upload")
        url = payload.get("url")
        if not isinstance(url, str) or not url:
            raise ProviderProtocolError("Upload response did not include an image URL.")
        return url

    def create_task(
        self,
        context: ProviderSessionContext,
        *,
        prompt: str,
        image_urls: tuple[str, ...] = (),
    ) -> str:
        """Create a generation (or edit, when ``image_urls`` is set) job."""

        payload: dict[str, Any] = {"prompt": prompt, **self.parameters.as_payload()}
        if image_urls:
            payload["image_urls"] = list(image_urls)
        response = self._http.post_json(
            f"{GENERATION_PATH}/create",
            payload,
            headers=context.session_headers(),
        )
        task_id = response.get("task_id")
        if task_id is None or str(task_id).strip() == "":
            raise ProviderProtocolError("Create response did not include a task id.")
        return str(task_id)

    def get_task_state(self, context: ProviderSessionContext, remote_task_id: str) -> ProviderTaskState:
        payload = self._http.get_json(
            f"{GENERATION_PATH}/{remote_task_id}",
            headers=context.session_headers(),
        )
        return parse_task_state(payload)

    def download(self, url: str) -> bytes:
        return self._http.get_bytes(url)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> GenerationProviderClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def parse_task_state(payload: dict[str, Any]) -> ProviderTaskState:
    """Map a status payload onto exactly one ``ProviderTaskState`` variant."""

    status = str(payload.get("status") or "").strip().lower()
    if status == "pending":
        return TaskPending()
    if status == "processing":
        return TaskProcessing()
    if status == "completed":
        result_url = payload.get("result_url")
        if not isinstance(result_url, str) or not result_url:
            raise ProviderProtocolError("Completed task status did not include a result URL.")
        return TaskCompleted(result_url=result_url)
    if status == "failed":
        message = payload.get("error_message")
        return TaskFailed(
            error_message=str(message) if message else DEFAULT_FAILURE_MESSAGE,
        )
    raise ProviderProtocolError(f"Unrecognized task status: {status or '<empty>'!r}")

