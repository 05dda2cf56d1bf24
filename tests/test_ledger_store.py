from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure

from image_relay.generation.models import ReconcileOutcome, TaskKind, TaskStatus
from image_relay.ledger.store import (
    STORAGE_KEY,
    ClientTaskRecord,
    ClientTaskStore,
    InMemoryLedgerStorage,
    JsonFileLedgerStorage,
    decode_records,
    encode_records,
)

pytestmark = [
    allure.epic("Client Ledger"),
    allure.feature("Durable Task Ledger"),
]

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _record(local_id: str, remote_task_id: str, status: TaskStatus, *, minutes: int = 0) -> ClientTaskRecord:
    return ClientTaskRecord(
        local_id=local_id,
        remote_task_id=remote_task_id,
        kind=TaskKind.GENERATE,
        prompt=f"prompt {local_id}",
        status=status,
        created_at=T0 + timedelta(minutes=minutes),
    )


def test_records_survive_restart_and_reflect_reconciled_state(tmp_path: Path) -> None:
    path = tmp_path / "ledger.json"
    store = ClientTaskStore(JsonFileLedgerStorage(path))
    first = store.add(TaskKind.GENERATE, "a fox", "remote-1")
    second = store.add(TaskKind.EDIT, "a hat", "remote-2")
    store.apply("remote-1", ReconcileOutcome(status=TaskStatus.COMPLETED, result_ref="https://cdn.test/1.png"))

    restarted = ClientTaskStore(JsonFileLedgerStorage(path))

    assert [record.local_id for record in restarted.records] == [second.local_id, first.local_id]
    assert [record.remote_task_id for record in restarted.active] == ["remote-2"]
    completed = restarted.completed
    assert len(completed) == 1
    assert completed[0].result_ref == "https://cdn.test/1.png"
    assert completed[0].completed_at is not None
    assert json.loads(path.read_text("utf-8")).keys() == {STORAGE_KEY}


def test_clear_completed_drops_completed_and_failed_only() -> None:
    storage = InMemoryLedgerStorage(
        encode_records(
            [
                _record("a", "r-a", TaskStatus.COMPLETED),
                _record("b", "r-b", TaskStatus.FAILED),
                _record("c", "r-c", TaskStatus.PENDING),
                _record("d", "r-d", TaskStatus.PROCESSING),
            ],
        ),
    )
    store = ClientTaskStore(storage)

    removed = store.clear_completed()

    assert removed == 2
    assert [record.local_id for record in store.records] == ["c", "d"]
    assert [record.local_id for record in decode_records(storage.raw or "")] == ["c", "d"]


def test_encode_decode_preserves_every_field() -> None:
    records = [
        ClientTaskRecord(
            local_id="task-1",
            remote_task_id="remote-1",
            kind=TaskKind.EDIT,
            prompt="نص عربي",
            status=TaskStatus.FAILED,
            created_at=T0,
            result_ref=None,
            error_message="content policy",
            completed_at=T0 + timedelta(seconds=9),
        ),
        _record("task-2", "remote-2", TaskStatus.PENDING),
    ]

    assert decode_records(encode_records(records)) == records


def test_corrupted_ledger_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "ledger.json"
    path.write_text("{not json", "utf-8")

    store = ClientTaskStore(JsonFileLedgerStorage(path))

    assert store.records == []
    store.add(TaskKind.GENERATE, "fresh", "remote-1")
    assert len(decode_records(path.read_text("utf-8"))) == 1


def test_ledger_with_invalid_utf8_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "ledger.json"
    path.write_bytes(b"\xff\xfe{not utf8")

    store = ClientTaskStore(JsonFileLedgerStorage(path))

    assert store.records == []
    store.add(TaskKind.EDIT, "after corruption", "remote-7")
    assert [record.remote_task_id for record in decode_records(path.read_text("utf-8"))] == [
        "remote-7",
    ]


def test_wrong_shape_is_treated_as_corruption() -> None:
    store = ClientTaskStore(InMemoryLedgerStorage(json.dumps({STORAGE_KEY: [{"local_id": 1}]})))

    assert store.records == []


def test_apply_is_forward_only_and_notifies_once() -> None:
    finished: list[ClientTaskRecord] = []
    store = ClientTaskStore(InMemoryLedgerStorage(), on_terminal=finished.append)
    store.add(TaskKind.GENERATE, "p", "remote-1")

    store.apply("remote-1", ReconcileOutcome(status=TaskStatus.PROCESSING))
    store.apply("remote-1", ReconcileOutcome(status=TaskStatus.FAILED, error_message="boom"))
    store.apply("remote-1", ReconcileOutcome(status=TaskStatus.PENDING))
    store.apply("remote-1", ReconcileOutcome(status=TaskStatus.FAILED, error_message="boom"))

    assert store.records[0].status == TaskStatus.FAILED
    assert [record.error_message for record in finished] == ["boom"]


def test_apply_for_unknown_remote_id_is_a_no_op() -> None:
    store = ClientTaskStore(InMemoryLedgerStorage())

    assert store.apply("missing", ReconcileOutcome(status=TaskStatus.COMPLETED)) is None


def test_next_to_reconcile_picks_oldest_active_record() -> None:
    store = ClientTaskStore(
        InMemoryLedgerStorage(
            encode_records(
                [
                    _record("new", "r-new", TaskStatus.PENDING, minutes=5),
                    _record("done", "r-done", TaskStatus.COMPLETED, minutes=0),
                    _record("old", "r-old", TaskStatus.PROCESSING, minutes=1),
                ],
            ),
        ),
    )

    selected = store.next_to_reconcile()

    assert selected is not None
    assert selected.local_id == "old"


def test_remove_deletes_single_record() -> None:
    store = ClientTaskStore(InMemoryLedgerStorage())
    record = store.add(TaskKind.GENERATE, "p", "remote-1")

    assert store.remove(record.local_id) is True
    assert store.remove(record.local_id) is False
    assert store.records == []
