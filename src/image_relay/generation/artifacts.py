"""Saving completed job results into the blob store."""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime

from image_relay.errors import ArtifactNotReadyError
from image_relay.generation.models import ArtifactCreate, GeneratedArtifact, TaskStatus
from image_relay.generation.provider import GenerationProviderClient
from image_relay.generation.quota import QuotaLedger
from image_relay.generation.reconciler import TaskReconciler
from image_relay.storage.base import BlobStore, PersistentStore
from image_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

ARTIFACT_MIME_TYPE = "image/png"


def artifact_blob_key(owner_id: str, *, now: datetime, suffix: str) -> str:
    return f"generated-images/{owner_id}/{int(now.timestamp() * 1000)}-{suffix}.png"


class ArtifactSaver:
    """Downloads a completed result, stores it and counts the account use."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: PersistentStore,
        blob_store: BlobStore,
        provider_client: GenerationProviderClient,
        quota: QuotaLedger,
        reconciler: TaskReconciler,
        suffix_factory: Callable[[], str] = lambda: secrets.token_hex(4),
    ) -> None:
        self.store = store
        self.blob_store = blob_store
        self.provider_client = provider_client
        self.quota = quota
        self.reconciler = reconciler
        self._suffix_factory = suffix_factory

    def save(self, owner_id: str, remote_task_id: str) -> GeneratedArtifact:
        """Reconcile once, then store the completed result (idempotent per task)."""

        self.reconciler.reconcile(owner_id, remote_task_id)
        task = self.reconciler.load_owned_task(owner_id, remote_task_id)
        if task.status != TaskStatus.COMPLETED or not task.result_ref:
            raise ArtifactNotReadyError(
                f"Task {remote_task_id} is {task.status.value}; only completed results can be saved.",
            )

        existing = self.store.get_artifact_for_task(task.id)
        if existing is not None:
            logger.info("Task %s already saved as artifact %s", remote_task_id, existing.id)
            return existing

        data = self.provider_client.download(task.result_ref)
        blob_key = artifact_blob_key(owner_id, now=utc_now(), suffix=self._suffix_factory())
        blob_url = self.blob_store.put(blob_key, data, ARTIFACT_MIME_TYPE)
        artifact = self.store.create_artifact(
            ArtifactCreate(
                owner_id=owner_id,
                task_id=task.id,
                prompt=task.prompt,
                source_url=task.result_ref,
                blob_key=blob_key,
                blob_url=blob_url,
                is_edited=bool(task.input_image_refs),
            ),
        )
        self.quota.confirm_use(task.account_id)
        logger.info("Saved task %s as %s", remote_task_id, blob_key)
        return artifact
