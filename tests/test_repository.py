from __future__ import annotations

import allure
import pytest
from sqlalchemy.exc import IntegrityError

from image_relay.generation.models import (
    ArtifactCreate,
    TaskCreate,
    TaskKind,
    TaskStatus,
    TaskUpdate,
    UploadCreate,
)

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Relay Repository"),
]


def _task(account, remote_task_id: str, *, refs: tuple[str, ...] = ()) -> TaskCreate:
    return TaskCreate(
        owner_id=account.owner_id,
        account_id=account.id,
        remote_task_id=remote_task_id,
        kind=TaskKind.EDIT if refs else TaskKind.GENERATE,
        prompt=f"prompt for {remote_task_id}",
        input_image_refs=refs,
    )


def test_account_round_trip_and_listing_per_owner(repository, make_account) -> None:
    mine = make_account()
    make_account(owner_id="other_user")

    loaded = repository.get_account(mine.id)

    assert loaded == mine
    assert loaded.created_at.tzinfo is not None
    assert [account.id for account in repository.list_accounts("default_user")] == [mine.id]
    assert repository.get_account(9999) is None


def test_increment_use_never_exceeds_cap(repository, make_account) -> None:
    account = make_account(max_uses=2)

    results = [repository.increment_use(account.id) for _ in range(3)]

    assert results == [True, True, False]
    refreshed = repository.get_account(account.id)
    assert refreshed is not None
    assert refreshed.use_count == 2
    assert repository.increment_use(9999) is False


def test_update_task_only_moves_forward(repository, make_account) -> None:
    account = make_account()
    repository.create_task(_task(account, "r-1"))

    assert repository.update_task("r-1", TaskUpdate(status=TaskStatus.PROCESSING))
    assert not repository.update_task("r-1", TaskUpdate(status=TaskStatus.PENDING))
    assert repository.update_task(
        "r-1",
        TaskUpdate(status=TaskStatus.COMPLETED, result_ref="https://cdn.test/r.png"),
    )
    assert not repository.update_task("r-1", TaskUpdate(status=TaskStatus.FAILED, error_message="late"))
    assert repository.update_task(
        "r-1",
        TaskUpdate(status=TaskStatus.COMPLETED, result_ref="https://cdn.test/r.png"),
    )
    assert not repository.update_task("missing", TaskUpdate(status=TaskStatus.PROCESSING))

    stored = repository.get_task_by_remote_id("r-1")
    assert stored is not None
    assert stored.status == TaskStatus.COMPLETED
    assert stored.error_message is None


def test_remote_task_id_is_unique(repository, make_account) -> None:
    account = make_account()
    repository.create_task(_task(account, "r-1"))

    with pytest.raises(IntegrityError):
        repository.create_task(_task(account, "r-1"))


def test_list_tasks_newest_first_with_limit(repository, make_account) -> None:
    account = make_account()
    for index in range(3):
        repository.create_task(_task(account, f"r-{index}", refs=("https://cdn.test/u.jpg",) if index else ()))

    tasks = repository.list_tasks("default_user", limit=2)

    assert [task.remote_task_id for task in tasks] == ["r-2", "r-1"]
    assert tasks[0].input_image_refs == ("https://cdn.test/u.jpg",)
    assert repository.list_tasks("other_user") == []


def test_one_artifact_per_task(repository, make_account) -> None:
    account = make_account()
    task = repository.create_task(_task(account, "r-1"))
    payload = ArtifactCreate(
        owner_id="default_user",
        task_id=task.id,
        prompt=task.prompt,
        source_url="https://cdn.test/r.png",
        blob_key="generated-images/default_user/1-a.png",
        blob_url="file:///tmp/1-a.png",
    )
    artifact = repository.create_artifact(payload)

    assert repository.get_artifact_for_task(task.id) == artifact
    with pytest.raises(IntegrityError):
        repository.create_artifact(payload)


def test_uploads_create_list_delete(repository) -> None:
    upload = repository.create_upload(
        UploadCreate(
            owner_id="default_user",
            blob_key="uploaded-images/default_user/1-cat.jpg",
            blob_url="file:///tmp/cat.jpg",
            mime_type="image/jpeg",
        ),
    )

    assert repository.get_upload(upload.id) == upload
    assert repository.list_uploads("default_user") == [upload]
    assert repository.delete_upload(upload.id) is True
    assert repository.delete_upload(upload.id) is False
    assert repository.get_upload(upload.id) is None
