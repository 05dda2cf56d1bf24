"""Synchronous JSON HTTP client with retries and timeout."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from image_relay.errors import ProviderHttpError, ProviderProtocolError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


class JsonHttpClient:
    """httpx wrapper that maps transport failures onto ``ProviderHttpError``.

    Response bodies are never copied into error messages, only the status code
    and the request target.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        user_agent: str = DEFAULT_USER_AGENT,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        base_headers = {"User-Agent": user_agent}
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=base_headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        files: dict[str, tuple[str, bytes, str]] | None = None,
    ) -> httpx.Response:
        """Send one request and return the response, raising on non-2xx."""

        try:
            response = self._client.request(
                method,
                path,
                headers=headers,
                json=json,
                files=files,
            )
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling %s %s", method, path)
            raise ProviderHttpError(f"Timeout calling {method} {path}") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling %s %s: %s", method, path, type(exc).__name__)
            raise ProviderHttpError(f"Network error calling {method} {path}") from exc

        if not response.is_success:
            raise ProviderHttpError(
                f"{method} {path} failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def get_json(self, path: str, *, headers: dict[str, str] | None = None) -> dict[str, Any]:
        return decode_json(self.request("GET", path, headers=headers), path=path)

    def post_json(
        self,
        path: str,
        payload: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        return decode_json(self.request("POST", path, headers=headers, json=payload), path=path)

    def get_bytes(self, url: str) -> bytes:
        """Download an absolute URL (or a path relative to ``base_url``)."""

        return self.request("GET", url).content

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> JsonHttpClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def cookie_value(response: httpx.Response, name: str) -> str | None:
    """Return the value of a cookie set by ``response`` or None."""

    prefix = f"{name}="
    for header in response.headers.get_list("set-cookie"):
        first_pair = header.split(";", 1)[0].strip()
        if first_pair.startswith(prefix):
            value = first_pair[len(prefix) :]
            return value or None
    return None


def decode_json(response: httpx.Response, *, path: str) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderProtocolError(f"Non-JSON response from {path}") from exc
    if not isinstance(payload, dict):
        raise ProviderProtocolError(f"Unexpected JSON shape from {path}")
    return payload
