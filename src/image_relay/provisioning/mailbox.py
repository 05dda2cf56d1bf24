"""Temporary mailbox client and the bounded polling primitive."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from image_relay.errors import ProviderHttpError, ProviderProtocolError
from image_relay.http.client import JsonHttpClient

logger = logging.getLogger(__name__)

EventT = TypeVar("EventT")

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_POLL_TIMEOUT_SECONDS = 300.0
_STOP_SLICE_SECONDS = 0.1


@dataclass(slots=True, frozen=True)
class MailMessage:
    """Summary of one inbox entry as listed by the mail provider."""

    message_id: str
    sender: str
    subject: str = ""


class MailProviderClient:
    """Client for a mail.tm-compatible disposable mailbox API."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._http = JsonHttpClient(
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def first_domain(self) -> str | None:
        """Return the first domain the provider accepts addresses for."""

        for item in _members(self._http.get_json("/domains"), path="/domains"):
            domain = item.get("domain")
            if isinstance(domain, str) and domain:
                return domain
        return None

    def create_account(self, *, address: str, password: str) -> None:
        self._http.post_json("/accounts", {"address": address, "password": password})

    def get_token(self, *, address: str, password: str) -> str:
        payload = self._http.post_json("/token", {"address": address, "password": password})
        token = payload.get("token")
        if not isinstance(token, str) or not token:
            raise ProviderProtocolError("Mailbox token response did not include a token.")
        return token

    def list_messages(self, token: str) -> list[MailMessage]:
        payload = self._http.get_json("/messages", headers=_bearer(token))
        messages: list[MailMessage] = []
        for item in _members(payload, path="/messages"):
            message_id = item.get("id")
            if message_id is None:
                continue
            sender = item.get("from")
            address = sender.get("address", "") if isinstance(sender, dict) else ""
            messages.append(
                MailMessage(
                    message_id=str(message_id),
                    sender=str(address or ""),
                    subject=str(item.get("subject") or ""),
                ),
            )
        return messages

    def get_message_text(self, token: str, message_id: str) -> str:
        payload = self._http.get_json(f"/messages/{message_id}", headers=_bearer(token))
        text = payload.get("text")
        return text if isinstance(text, str) else ""

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> MailProviderClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class MailboxPoller:
    """Bounded poll-until-predicate loop with cooperative cancellation.

    ``clock`` and ``sleep`` are injectable so callers (and tests) control time.
    Fetch failures are treated as an empty batch; the wait keeps going until a
    match, the timeout, or ``stop`` is set.
    """

    def __init__(
        self,
        *,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout_seconds: float = DEFAULT_POLL_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0.")
        if timeout_seconds < 0:
            raise ValueError("timeout_seconds must be >= 0.")
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._sleep = sleep

    def wait_for(
        self,
        fetch_events: Callable[[], Sequence[EventT]],
        predicate: Callable[[EventT], bool],
        *,
        stop: threading.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> EventT | None:
        """Return the first fetched event matching ``predicate`` or None on timeout."""

        budget = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        started = self._clock()
        attempts = 0
        while True:
            if stop is not None and stop.is_set():
                logger.info("Mailbox wait cancelled after %d attempt(s)", attempts)
                return None
            elapsed = self._clock() - started
            if elapsed >= budget:
                logger.info("Mailbox wait timed out after %.1fs (%d attempt(s))", elapsed, attempts)
                return None

            attempts += 1
            for event in self._fetch(fetch_events):
                if predicate(event):
                    return event

            remaining = budget - (self._clock() - started)
            if remaining <= 0:
                continue
            self._sleep_with_stop(min(self.interval_seconds, remaining), stop)

    def _fetch(self, fetch_events: Callable[[], Sequence[EventT]]) -> Sequence[EventT]:
        try:
            return fetch_events()
        except (ProviderHttpError, ProviderProtocolError, httpx.HTTPError) as exc:
            logger.warning("Mailbox fetch failed, retrying on next poll: %s", exc)
            return ()

    def _sleep_with_stop(self, seconds: float, stop: threading.Event | None) -> None:
        if stop is None:
            self._sleep(seconds)
            return
        deadline = self._clock() + seconds
        while not stop.is_set():
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            self._sleep(min(_STOP_SLICE_SECONDS, remaining))


def _members(payload: dict[str, Any], *, path: str) -> list[dict[str, Any]]:
    members = payload.get("hydra:member", [])
    if not isinstance(members, list):
        raise ProviderProtocolError(f"Unexpected collection shape from {path}")
    return [item for item in members if isinstance(item, dict)]


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
