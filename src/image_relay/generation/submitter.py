"""Submission of generate and edit jobs under a provisioned account."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from image_relay.errors import AccountUnauthorizedError, QuotaExceededError
from image_relay.generation.models import Account, Task, TaskCreate, TaskKind
from image_relay.generation.provider import GenerationProviderClient
from image_relay.generation.quota import QuotaLedger
from image_relay.storage.base import PersistentStore

logger = logging.getLogger(__name__)


class TaskSubmitter:
    def __init__(
        self,
        *,
        store: PersistentStore,
        provider_client: GenerationProviderClient,
        quota: QuotaLedger,
    ) -> None:
        self.store = store
        self.provider_client = provider_client
        self.quota = quota

    def submit(
        self,
        owner_id: str,
        account: Account,
        kind: TaskKind,
        prompt: str,
        input_image_refs: Sequence[str] | None = None,
    ) -> Task:
        """Create the remote job and record it as ``pending``.

        Nothing is sent to the provider when a precondition fails.
        """

        refs = tuple(ref for ref in (input_image_refs or ()) if ref)
        self.ensure_can_submit(owner_id, account)
        prompt = prompt.strip()
        if not prompt:
            raise ValueError("Prompt must not be empty.")
        if kind == TaskKind.EDIT and not refs:
            raise ValueError("Edit jobs require at least one input image.")
        if kind == TaskKind.GENERATE and refs:
            raise ValueError("Generate jobs do not accept input images.")

        context = self.provider_client.session_for(account.session_credential)
        remote_task_id = self.provider_client.create_task(context, prompt=prompt, image_urls=refs)
        task = self.store.create_task(
            TaskCreate(
                owner_id=owner_id,
                account_id=account.id,
                remote_task_id=remote_task_id,
                kind=kind,
                prompt=prompt,
                input_image_refs=refs,
            ),
        )
        logger.info(
            "Submitted %s task %s on account %s",
            kind.value,
            remote_task_id,
            account.id,
        )
        return task

    def ensure_can_submit(self, owner_id: str, account: Account) -> None:
        """Raise when ``owner_id`` may not submit a job on ``account`` right now."""

        if account.owner_id != owner_id:
            raise AccountUnauthorizedError(f"Account {account.id} does not belong to {owner_id}.")
        if not self.quota.can_submit(account):
            raise QuotaExceededError(
                f"Account {account.id} has used {account.use_count} of {account.max_uses} generations.",
            )
