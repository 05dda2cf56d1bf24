"""Collaborator interfaces consumed by the generation and provisioning layers."""

from __future__ import annotations

from typing import Protocol

from image_relay.generation.models import (
    Account,
    AccountCreate,
    ArtifactCreate,
    GeneratedArtifact,
    Task,
    TaskCreate,
    TaskUpdate,
    UploadCreate,
    UploadedImage,
)


class PersistentStore(Protocol):
    """Durable records for accounts, tasks, artifacts and uploads."""

    def create_account(self, payload: AccountCreate) -> Account: ...

    def get_account(self, account_id: int) -> Account | None: ...

    def list_accounts(self, owner_id: str) -> list[Account]: ...

    def increment_use(self, account_id: int) -> bool:
        """Atomically add one use unless the account is already at its cap."""
        ...

    def create_task(self, payload: TaskCreate) -> Task: ...

    def get_task_by_remote_id(self, remote_task_id: str) -> Task | None: ...

    def update_task(self, remote_task_id: str, update: TaskUpdate) -> bool:
        """Apply ``update`` only if it is a forward transition; return whether it applied."""
        ...

    def list_tasks(self, owner_id: str, *, limit: int = 50) -> list[Task]: ...

    def create_artifact(self, payload: ArtifactCreate) -> GeneratedArtifact: ...

    def get_artifact_for_task(self, task_id: int) -> GeneratedArtifact | None: ...

    def list_artifacts(self, owner_id: str, *, limit: int = 50) -> list[GeneratedArtifact]: ...

    def create_upload(self, payload: UploadCreate) -> UploadedImage: ...

    def get_upload(self, upload_id: int) -> UploadedImage | None: ...

    def list_uploads(self, owner_id: str, *, limit: int = 50) -> list[UploadedImage]: ...

    def delete_upload(self, upload_id: int) -> bool: ...


class BlobStore(Protocol):
    """Key addressed binary storage returning retrievable URLs."""

    def put(self, key: str, data: bytes, mime_type: str) -> str: ...

    def get(self, key: str) -> bytes: ...
