"""Use-case services for accounts, image jobs and uploads."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Sequence
from pathlib import PurePosixPath

from image_relay.errors import (
    AccountNotFoundError,
    AccountUnauthorizedError,
    UploadNotFoundError,
)
from image_relay.generation.artifacts import ArtifactSaver
from image_relay.generation.models import (
    Account,
    AccountCreate,
    GeneratedArtifact,
    ReconcileOutcome,
    Task,
    TaskKind,
    UploadCreate,
    UploadedImage,
)
from image_relay.generation.provider import GenerationProviderClient
from image_relay.generation.quota import QuotaLedger
from image_relay.generation.reconciler import TaskReconciler
from image_relay.generation.submitter import TaskSubmitter
from image_relay.provisioning.identity import IdentityProvisioner, ProvisioningTrace
from image_relay.storage.base import BlobStore, PersistentStore
from image_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def upload_blob_key(owner_id: str, filename: str, *, timestamp_ms: int) -> str:
    name = _UNSAFE_NAME_CHARS.sub("_", PurePosixPath(filename.replace("\\", "/")).name).strip("._")
    return f"uploaded-images/{owner_id}/{timestamp_ms}-{name or 'image'}"


class RelayService:
    """Coordinates provisioning, submission, reconciliation and saving for one store."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: PersistentStore,
        blob_store: BlobStore,
        provider_client: GenerationProviderClient,
        max_uses_per_account: int = 5,
        provisioner: IdentityProvisioner | None = None,
    ) -> None:
        self.store = store
        self.blob_store = blob_store
        self.provider_client = provider_client
        self.max_uses_per_account = max_uses_per_account
        self.provisioner = provisioner
        self.quota = QuotaLedger(store)
        self.submitter = TaskSubmitter(store=store, provider_client=provider_client, quota=self.quota)
        self.reconciler = TaskReconciler(store=store, provider_client=provider_client)
        self.saver = ArtifactSaver(
            store=store,
            blob_store=blob_store,
            provider_client=provider_client,
            quota=self.quota,
            reconciler=self.reconciler,
        )

    # Accounts

    def provision_account(
        self,
        owner_id: str,
        *,
        stop: threading.Event | None = None,
    ) -> tuple[Account, ProvisioningTrace]:
        if self.provisioner is None:
            raise RuntimeError("RelayService was built without an identity provisioner.")
        identity = self.provisioner.provision(stop=stop)
        account = self.store.create_account(
            AccountCreate(
                owner_id=owner_id,
                email=identity.email,
                password=identity.password,
                session_credential=identity.session_credential,
                max_uses=self.max_uses_per_account,
            ),
        )
        return account, identity.trace

    def list_accounts(self, owner_id: str) -> list[Account]:
        return self.store.list_accounts(owner_id)

    def get_owned_account(self, owner_id: str, account_id: int) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} was not found.")
        if account.owner_id != owner_id:
            raise AccountUnauthorizedError(f"Account {account_id} does not belong to {owner_id}.")
        return account

    # Jobs

    def generate(self, owner_id: str, account_id: int, prompt: str) -> Task:
        account = self.get_owned_account(owner_id, account_id)
        return self.submitter.submit(owner_id, account, TaskKind.GENERATE, prompt)

    def edit(self, owner_id: str, account_id: int, prompt: str, upload_ids: Sequence[int]) -> Task:
        """Submit an edit job using stored uploads as the input images.

        The uploads are re-uploaded to the provider under the account session
        and the provider-hosted URLs become the task's input references.
        """

        account = self.get_owned_account(owner_id, account_id)
        if not upload_ids:
            raise ValueError("Edit jobs require at least one input image.")
        if not prompt.strip():
            raise ValueError("Prompt must not be empty.")
        self.submitter.ensure_can_submit(owner_id, account)
        uploads = [self.get_owned_upload(owner_id, upload_id) for upload_id in upload_ids]

        context = self.provider_client.session_for(account.session_credential)
        image_urls = [
            self.provider_client.upload_image(
                context,
                data=self.blob_store.get(upload.blob_key),
                filename=PurePosixPath(upload.blob_key).name,
                mime_type=upload.mime_type,
            )
            for upload in uploads
        ]
        return self.submitter.submit(owner_id, account, TaskKind.EDIT, prompt, image_urls)

    def status(self, owner_id: str, remote_task_id: str) -> ReconcileOutcome:
        return self.reconciler.reconcile(owner_id, remote_task_id)

    def save(self, owner_id: str, remote_task_id: str) -> GeneratedArtifact:
        return self.saver.save(owner_id, remote_task_id)

    def list_tasks(self, owner_id: str, *, limit: int = 50) -> list[Task]:
        return self.store.list_tasks(owner_id, limit=limit)

    def gallery(self, owner_id: str, *, limit: int = 50) -> list[GeneratedArtifact]:
        return self.store.list_artifacts(owner_id, limit=limit)

    # Uploads

    def add_upload(self, owner_id: str, *, data: bytes, filename: str, mime_type: str) -> UploadedImage:
        if not mime_type.startswith("image/"):
            raise ValueError(f"Unsupported upload type: {mime_type}")
        if not data:
            raise ValueError("Upload is empty.")
        timestamp_ms = int(utc_now().timestamp() * 1000)
        blob_key = upload_blob_key(owner_id, filename, timestamp_ms=timestamp_ms)
        blob_url = self.blob_store.put(blob_key, data, mime_type)
        upload = self.store.create_upload(
            UploadCreate(owner_id=owner_id, blob_key=blob_key, blob_url=blob_url, mime_type=mime_type),
        )
        logger.info("Stored upload %s as %s", upload.id, blob_key)
        return upload

    def list_uploads(self, owner_id: str, *, limit: int = 50) -> list[UploadedImage]:
        return self.store.list_uploads(owner_id, limit=limit)

    def get_owned_upload(self, owner_id: str, upload_id: int) -> UploadedImage:
        upload = self.store.get_upload(upload_id)
        if upload is None or upload.owner_id != owner_id:
            raise UploadNotFoundError(f"Upload {upload_id} was not found.")
        return upload

    def delete_upload(self, owner_id: str, upload_id: int) -> None:
        upload = self.get_owned_upload(owner_id, upload_id)
        self.store.delete_upload(upload.id)
