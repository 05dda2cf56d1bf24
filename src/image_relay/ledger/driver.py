"""Cooperative loop that reconciles ledger records one at a time."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

import httpx

from image_relay.errors import (
    ProviderHttpError,
    ProviderProtocolError,
    ReconcileUnauthorizedError,
    TaskNotFoundError,
)
from image_relay.generation.models import ReconcileOutcome, TaskStatus
from image_relay.ledger.store import ClientTaskRecord, ClientTaskStore

logger = logging.getLogger(__name__)

DEFAULT_RECONCILE_INTERVAL_SECONDS = 3.0
NOTIFY_PROMPT_CHARS = 50


class Notifier(Protocol):
    def task_finished(self, record: ClientTaskRecord) -> None: ...


def describe_finished(record: ClientTaskRecord) -> str:
    if record.status == TaskStatus.COMPLETED:
        return f"Task completed: {record.prompt[:NOTIFY_PROMPT_CHARS]}"
    return f"Task failed: {record.error_message or 'unknown error'}"


class LoggingNotifier:
    def task_finished(self, record: ClientTaskRecord) -> None:
        if record.status == TaskStatus.COMPLETED:
            logger.info(describe_finished(record))
        else:
            logger.warning(describe_finished(record))


@dataclass(slots=True)
class DriverRunSummary:
    """Aggregate driver counters for CLI reporting."""

    ticks: int = 0
    reconciled: int = 0
    completed: int = 0
    failed: int = 0
    errors: int = 0


class ReconcileDriver:
    """Polls the oldest active ledger record every interval until none remain."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: ClientTaskStore,
        reconcile: Callable[[str], ReconcileOutcome],
        notifier: Notifier | None = None,
        interval_seconds: float = DEFAULT_RECONCILE_INTERVAL_SECONDS,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.store = store
        self.reconcile = reconcile
        self.notifier = notifier or LoggingNotifier()
        self.interval_seconds = interval_seconds
        self._sleep = sleep
        self._stop = threading.Event()
        self._summary = DriverRunSummary()
        self._previous_on_terminal = store.on_terminal
        self.store.on_terminal = self._on_terminal

    def stop(self) -> None:
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def tick(self) -> ClientTaskRecord | None:
        """Reconcile at most one record; return its updated state, if any."""

        record = self.store.next_to_reconcile()
        if record is None:
            return None
        self._summary.ticks += 1
        try:
            outcome = self.reconcile(record.remote_task_id)
        except (TaskNotFoundError, ReconcileUnauthorizedError) as exc:
            logger.warning("Dropping task %s from polling: %s", record.remote_task_id, exc)
            return self.store.mark_failed(record.local_id, exc.message)
        except (ProviderHttpError, ProviderProtocolError, httpx.HTTPError) as exc:
            self._summary.errors += 1
            logger.warning(
                "Reconcile of %s failed, retrying next tick: %s",
                record.remote_task_id,
                exc,
            )
            return record
        self._summary.reconciled += 1
        return self.store.apply(record.remote_task_id, outcome)

    def run(self, *, max_ticks: int | None = None) -> DriverRunSummary:
        """Tick every interval while active records exist, until stopped."""

        self._summary = DriverRunSummary()
        with self._signal_handlers():
            while not self._stop.is_set():
                if max_ticks is not None and self._summary.ticks >= max_ticks:
                    break
                if self.tick() is None:
                    break
                if not self.store.active:
                    break
                self._sleep_with_stop(self.interval_seconds)
        return self._summary

    def _on_terminal(self, record: ClientTaskRecord) -> None:
        if self._previous_on_terminal is not None:
            self._previous_on_terminal(record)
        if record.status == TaskStatus.COMPLETED:
            self._summary.completed += 1
        else:
            self._summary.failed += 1
        self.notifier.task_finished(record)

    def _sleep_with_stop(self, seconds: float) -> None:
        if self._sleep is None:
            self._stop.wait(seconds)
            return
        self._sleep(seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after the current tick", name)
            self.stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
