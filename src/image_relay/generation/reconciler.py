"""Pull-based synchronization of remote job status into the persistent store."""

from __future__ import annotations

import logging

from image_relay.errors import ReconcileUnauthorizedError, TaskNotFoundError
from image_relay.generation.models import (
    ProviderTaskState,
    ReconcileOutcome,
    Task,
    TaskCompleted,
    TaskFailed,
    TaskPending,
    TaskProcessing,
    TaskStatus,
    TaskUpdate,
)
from image_relay.generation.provider import GenerationProviderClient
from image_relay.storage.base import PersistentStore

logger = logging.getLogger(__name__)


class TaskReconciler:
    def __init__(self, *, store: PersistentStore, provider_client: GenerationProviderClient) -> None:
        self.store = store
        self.provider_client = provider_client

    def reconcile(self, owner_id: str, remote_task_id: str) -> ReconcileOutcome:
        """Fetch the remote status once and write it back.

        Tasks already in a terminal state are answered from the store without
        contacting the provider. A provider-side failure is returned as data.
        """

        task = self.load_owned_task(owner_id, remote_task_id)
        if task.status.is_terminal:
            return _outcome(task)

        account = self.store.get_account(task.account_id)
        if account is None:
            raise TaskNotFoundError(f"Account for task {remote_task_id} no longer exists.")

        context = self.provider_client.session_for(account.session_credential)
        state = self.provider_client.get_task_state(context, remote_task_id)
        update = task_update_for(state)
        if self.store.update_task(remote_task_id, update):
            if update.status != task.status:
                logger.info(
                    "Task %s: %s -> %s",
                    remote_task_id,
                    task.status.value,
                    update.status.value,
                )
        else:
            logger.info(
                "Task %s: stale update to %s ignored",
                remote_task_id,
                update.status.value,
            )

        current = self.store.get_task_by_remote_id(remote_task_id)
        if current is None:
            raise TaskNotFoundError(f"Task {remote_task_id} disappeared during reconciliation.")
        return _outcome(current)

    def load_owned_task(self, owner_id: str, remote_task_id: str) -> Task:
        task = self.store.get_task_by_remote_id(remote_task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {remote_task_id} was not found.")
        if task.owner_id != owner_id:
            raise ReconcileUnauthorizedError(f"Task {remote_task_id} belongs to another user.")
        return task


def task_update_for(state: ProviderTaskState) -> TaskUpdate:
    if isinstance(state, TaskCompleted):
        return TaskUpdate(status=TaskStatus.COMPLETED, result_ref=state.result_url)
    if isinstance(state, TaskFailed):
        return TaskUpdate(status=TaskStatus.FAILED, error_message=state.error_message)
    if isinstance(state, TaskProcessing):
        return TaskUpdate(status=TaskStatus.PROCESSING)
    if isinstance(state, TaskPending):
        return TaskUpdate(status=TaskStatus.PENDING)
    raise TypeError(f"Unsupported provider task state: {type(state).__name__}")


def _outcome(task: Task) -> ReconcileOutcome:
    return ReconcileOutcome(
        status=task.status,
        result_ref=task.result_ref,
        error_message=task.error_message,
    )
