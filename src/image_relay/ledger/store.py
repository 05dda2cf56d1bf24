"""Durable client-side ledger of submitted jobs.

The ledger is independent of the server-side task table; records are
correlated with it only through ``remote_task_id``. Every mutation is written
through the injected storage so a restarted client sees the same list.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from image_relay.generation.models import ReconcileOutcome, TaskKind, TaskStatus
from image_relay.storage.common import to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)

STORAGE_KEY = "background_tasks"


class LedgerDecodeError(ValueError):
    """Persisted ledger content could not be decoded."""


@dataclass(slots=True, frozen=True)
class ClientTaskRecord:
    local_id: str
    remote_task_id: str
    kind: TaskKind
    prompt: str
    status: TaskStatus
    created_at: datetime
    result_ref: str | None = None
    error_message: str | None = None
    completed_at: datetime | None = None


def encode_records(records: list[ClientTaskRecord]) -> str:
    """Serialize records into the ledger document."""

    items: list[dict[str, Any]] = []
    for record in records:
        item = asdict(record)
        item["kind"] = record.kind.value
        item["status"] = record.status.value
        item["created_at"] = record.created_at.isoformat()
        item["completed_at"] = record.completed_at.isoformat() if record.completed_at else None
        items.append(item)
    return json.dumps({STORAGE_KEY: items}, ensure_ascii=False, indent=2)


def decode_records(raw: str) -> list[ClientTaskRecord]:
    """Parse a ledger document; raises ``LedgerDecodeError`` on any malformed content."""

    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise LedgerDecodeError("Ledger is not valid JSON.") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get(STORAGE_KEY), list):
        raise LedgerDecodeError(f"Ledger must be an object with a {STORAGE_KEY!r} array.")
    return [_decode_record(item) for item in payload[STORAGE_KEY]]


def _decode_record(item: object) -> ClientTaskRecord:
    if not isinstance(item, dict):
        raise LedgerDecodeError("Ledger entry must be an object.")
    try:
        completed_at = item.get("completed_at")
        record = ClientTaskRecord(
            local_id=item["local_id"],
            remote_task_id=item["remote_task_id"],
            kind=TaskKind(item["kind"]),
            prompt=item["prompt"],
            status=TaskStatus(item["status"]),
            created_at=to_utc_aware_datetime(datetime.fromisoformat(item["created_at"])),
            result_ref=item.get("result_ref"),
            error_message=item.get("error_message"),
            completed_at=(
                to_utc_aware_datetime(datetime.fromisoformat(completed_at))
                if completed_at
                else None
            ),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise LedgerDecodeError(f"Malformed ledger entry: {exc}") from exc
    if not all(
        isinstance(value, str)
        for value in (record.local_id, record.remote_task_id, record.prompt)
    ):
        raise LedgerDecodeError("Ledger ids and prompt must be strings.")
    return record


class LedgerStorage(Protocol):
    def load(self) -> list[ClientTaskRecord]: ...

    def save(self, records: list[ClientTaskRecord]) -> None: ...


class JsonFileLedgerStorage:
    """Ledger persisted as a single JSON document on disk."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> list[ClientTaskRecord]:
        if not self.path.exists():
            return []
        try:
            raw = self.path.read_text("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise LedgerDecodeError(f"Ledger file {self.path} is unreadable: {exc}") from exc
        return decode_records(raw)

    def save(self, records: list[ClientTaskRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.path.with_name(f"{self.path.name}.tmp")
        staging.write_text(encode_records(records), "utf-8")
        staging.replace(self.path)


class InMemoryLedgerStorage:
    """Ledger kept as an encoded string, e.g. for tests or embedded callers."""

    def __init__(self, raw: str | None = None) -> None:
        self.raw = raw

    def load(self) -> list[ClientTaskRecord]:
        if self.raw is None:
            return []
        return decode_records(self.raw)

    def save(self, records: list[ClientTaskRecord]) -> None:
        self.raw = encode_records(records)


class ClientTaskStore:
    """Ordered, newest-first list of the jobs this client submitted."""

    def __init__(
        self,
        storage: LedgerStorage,
        *,
        on_terminal: Callable[[ClientTaskRecord], None] | None = None,
    ) -> None:
        self.storage = storage
        self.on_terminal = on_terminal
        try:
            self._records = storage.load()
        except LedgerDecodeError as exc:
            logger.warning("Discarding unreadable task ledger: %s", exc)
            self._records = []

    @property
    def records(self) -> list[ClientTaskRecord]:
        return list(self._records)

    @property
    def active(self) -> list[ClientTaskRecord]:
        return [record for record in self._records if record.status.is_active]

    @property
    def completed(self) -> list[ClientTaskRecord]:
        return [record for record in self._records if record.status == TaskStatus.COMPLETED]

    @property
    def failed(self) -> list[ClientTaskRecord]:
        return [record for record in self._records if record.status == TaskStatus.FAILED]

    def get(self, local_id: str) -> ClientTaskRecord | None:
        return next((record for record in self._records if record.local_id == local_id), None)

    def add(self, kind: TaskKind, prompt: str, remote_task_id: str) -> ClientTaskRecord:
        record = ClientTaskRecord(
            local_id=f"task-{uuid4().hex}",
            remote_task_id=remote_task_id,
            kind=kind,
            prompt=prompt,
            status=TaskStatus.PENDING,
            created_at=utc_now(),
        )
        self._records.insert(0, record)
        self._persist()
        return record

    def remove(self, local_id: str) -> bool:
        kept = [record for record in self._records if record.local_id != local_id]
        if len(kept) == len(self._records):
            return False
        self._records = kept
        self._persist()
        return True

    def clear_completed(self) -> int:
        """Drop completed and failed records; return how many were removed."""

        kept = self.active
        removed = len(self._records) - len(kept)
        if removed:
            self._records = kept
            self._persist()
        return removed

    def apply(self, remote_task_id: str, outcome: ReconcileOutcome) -> ClientTaskRecord | None:
        """Mirror a reconcile outcome into the matching record (forward-only)."""

        for index, record in enumerate(self._records):
            if record.remote_task_id != remote_task_id:
                continue
            if not record.status.can_transition_to(outcome.status):
                logger.debug(
                    "Ignoring %s -> %s for %s",
                    record.status.value,
                    outcome.status.value,
                    remote_task_id,
                )
                return record
            became_terminal = outcome.status.is_terminal and not record.status.is_terminal
            updated = replace(
                record,
                status=outcome.status,
                result_ref=outcome.result_ref,
                error_message=outcome.error_message,
                completed_at=utc_now() if became_terminal else record.completed_at,
            )
            self._records[index] = updated
            self._persist()
            if became_terminal and self.on_terminal is not None:
                self.on_terminal(updated)
            return updated
        return None

    def mark_failed(self, local_id: str, error_message: str) -> ClientTaskRecord | None:
        record = self.get(local_id)
        if record is None:
            return None
        return self.apply(
            record.remote_task_id,
            ReconcileOutcome(status=TaskStatus.FAILED, error_message=error_message),
        )

    def next_to_reconcile(self) -> ClientTaskRecord | None:
        """The single record to poll next: the oldest active one."""

        active = self.active
        if not active:
            return None
        return min(reversed(active), key=lambda record: record.created_at)

    def _persist(self) -> None:
        self.storage.save(self._records)
