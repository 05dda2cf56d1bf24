"""Controllers for image-relay CLI commands."""

from __future__ import annotations

import mimetypes
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from image_relay.config import Settings
from image_relay.generation.models import Task, TaskStatus
from image_relay.generation.provider import GenerationProviderClient
from image_relay.ledger.driver import Notifier, ReconcileDriver
from image_relay.ledger.store import ClientTaskRecord, ClientTaskStore, JsonFileLedgerStorage
from image_relay.provisioning.identity import IdentityProvisioner
from image_relay.provisioning.mailbox import MailboxPoller, MailProviderClient
from image_relay.services import RelayService
from image_relay.storage.blobs import LocalBlobStore
from image_relay.storage.repository import RelayRepository


@dataclass(slots=True)
class ProvisionAccountCommand:
    """CLI input for account provisioning."""

    db_path: Path | None


@dataclass(slots=True)
class ListAccountsCommand:
    db_path: Path | None


@dataclass(slots=True)
class GenerateImageCommand:
    """CLI input for a text-to-image job."""

    db_path: Path | None
    account_id: int
    prompt: str
    track: bool = True
    ledger_path: Path | None = None


@dataclass(slots=True)
class EditImageCommand:
    """CLI input for an edit job over stored uploads."""

    db_path: Path | None
    account_id: int
    prompt: str
    upload_ids: tuple[int, ...]
    track: bool = True
    ledger_path: Path | None = None


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input addressing one job by its provider task id."""

    db_path: Path | None
    remote_task_id: str


@dataclass(slots=True)
class ListingCommand:
    """CLI input for newest-first listings."""

    db_path: Path | None
    limit: int = 20


@dataclass(slots=True)
class AddUploadCommand:
    db_path: Path | None
    file_path: Path
    mime_type: str | None = None


@dataclass(slots=True)
class DeleteUploadCommand:
    db_path: Path | None
    upload_id: int


@dataclass(slots=True)
class LedgerListCommand:
    """CLI input for client ledger listing."""

    ledger_path: Path | None
    status: str | None = None


@dataclass(slots=True)
class LedgerRemoveCommand:
    ledger_path: Path | None
    local_id: str


@dataclass(slots=True)
class LedgerWatchCommand:
    """CLI input for the reconcile loop over the client ledger."""

    db_path: Path | None
    ledger_path: Path | None
    max_ticks: int | None = None
    once: bool = False


class RelayCliController:
    """Coordinates account, image, upload and ledger CLI operations."""

    def provision_account(self, command: ProvisionAccountCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings, with_provisioner=True) as service:
            account, trace = service.provision_account(settings.user_context.user_id)

        return [
            f"Account provisioned: id={account.id} email={account.email} "
            f"uses={account.use_count}/{account.max_uses}",
            "States: " + " -> ".join(state.value for state in trace.states()),
        ]

    def list_accounts(self, command: ListAccountsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            accounts = service.list_accounts(settings.user_context.user_id)

        if not accounts:
            return ["No accounts provisioned."]
        return [
            f"{account.id}\t{account.email}\tuses={account.use_count}/{account.max_uses}"
            f"\tremaining={account.remaining_uses}\tcreated={account.created_at.isoformat()}"
            for account in accounts
        ]

    def generate(self, command: GenerateImageCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            task = service.generate(
                settings.user_context.user_id,
                command.account_id,
                command.prompt,
            )
        return _submitted_lines(
            settings,
            task,
            track=command.track,
            ledger_path=command.ledger_path,
        )

    def edit(self, command: EditImageCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            task = service.edit(
                settings.user_context.user_id,
                command.account_id,
                command.prompt,
                command.upload_ids,
            )
        return _submitted_lines(
            settings,
            task,
            track=command.track,
            ledger_path=command.ledger_path,
        )

    def status(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            outcome = service.status(settings.user_context.user_id, command.remote_task_id)

        lines = [f"Task {command.remote_task_id}: status={outcome.status.value}"]
        if outcome.result_ref:
            lines.append(f"Result: {outcome.result_ref}")
        if outcome.error_message:
            lines.append(f"Error: {outcome.error_message}")
        return lines

    def save(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            artifact = service.save(settings.user_context.user_id, command.remote_task_id)

        return [
            f"Saved artifact {artifact.id} for task {command.remote_task_id}",
            f"Blob: {artifact.blob_url}",
        ]

    def list_tasks(self, command: ListingCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            tasks = service.list_tasks(settings.user_context.user_id, limit=command.limit)

        if not tasks:
            return ["No tasks."]
        return [
            f"{task.remote_task_id}\t{task.kind.value}\t{task.status.value}"
            f"\taccount={task.account_id}\t{_preview(task.prompt)}"
            for task in tasks
        ]

    def gallery(self, command: ListingCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            artifacts = service.gallery(settings.user_context.user_id, limit=command.limit)

        if not artifacts:
            return ["Gallery is empty."]
        return [
            f"{artifact.id}\t{'edited' if artifact.is_edited else 'generated'}"
            f"\t{artifact.blob_url}\t{_preview(artifact.prompt)}"
            for artifact in artifacts
        ]

    def add_upload(self, command: AddUploadCommand) -> list[str]:
        settings = _settings(command.db_path)
        mime_type = command.mime_type or mimetypes.guess_type(command.file_path.name)[0]
        if mime_type is None:
            raise ValueError(f"Cannot determine image type of {command.file_path.name}; pass --mime-type.")
        with _service(settings) as service:
            upload = service.add_upload(
                settings.user_context.user_id,
                data=command.file_path.read_bytes(),
                filename=command.file_path.name,
                mime_type=mime_type,
            )
        return [f"Upload stored: id={upload.id} type={upload.mime_type} url={upload.blob_url}"]

    def list_uploads(self, command: ListingCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            uploads = service.list_uploads(settings.user_context.user_id, limit=command.limit)

        if not uploads:
            return ["No uploads."]
        return [
            f"{upload.id}\t{upload.mime_type}\t{upload.blob_url}\t{upload.created_at.isoformat()}"
            for upload in uploads
        ]

    def delete_upload(self, command: DeleteUploadCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings) as service:
            service.delete_upload(settings.user_context.user_id, command.upload_id)
        return [f"Upload {command.upload_id} deleted."]

    def ledger_list(self, command: LedgerListCommand) -> list[str]:
        store = _ledger(_settings(None), command.ledger_path)
        if command.status is None:
            records = store.records
        elif command.status == "active":
            records = store.active
        else:
            wanted = TaskStatus(command.status)
            records = [record for record in store.records if record.status == wanted]

        if not records:
            return ["Ledger is empty."]
        return [_ledger_line(record) for record in records]

    def ledger_remove(self, command: LedgerRemoveCommand) -> list[str]:
        store = _ledger(_settings(None), command.ledger_path)
        if not store.remove(command.local_id):
            raise ValueError(f"No ledger entry {command.local_id}.")
        return [f"Removed {command.local_id}."]

    def ledger_clear_completed(self, command: LedgerListCommand) -> list[str]:
        store = _ledger(_settings(None), command.ledger_path)
        removed = store.clear_completed()
        return [f"Cleared {removed} finished task(s); {len(store.active)} still active."]

    def ledger_watch(self, command: LedgerWatchCommand, *, notifier: Notifier | None = None) -> list[str]:
        settings = _settings(command.db_path)
        store = _ledger(settings, command.ledger_path)
        owner_id = settings.user_context.user_id
        with _service(settings) as service:
            driver = ReconcileDriver(
                store=store,
                reconcile=lambda remote_task_id: service.status(owner_id, remote_task_id),
                notifier=notifier,
                interval_seconds=settings.ledger.reconcile_interval_seconds,
            )
            summary = driver.run(max_ticks=1 if command.once else command.max_ticks)

        return [
            "Watch summary: "
            f"ticks={summary.ticks} reconciled={summary.reconciled} "
            f"completed={summary.completed} failed={summary.failed} errors={summary.errors} "
            f"active={len(store.active)}",
        ]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _submitted_lines(
    settings: Settings,
    task: Task,
    *,
    track: bool,
    ledger_path: Path | None = None,
) -> list[str]:
    lines = [
        f"Task submitted: remote_id={task.remote_task_id} kind={task.kind.value} "
        f"status={task.status.value}",
    ]
    if track:
        path = ledger_path or settings.ledger.path
        record = _ledger(settings, path).add(task.kind, task.prompt, task.remote_task_id)
        lines.append(f"Tracking as {record.local_id} in {path}")
    return lines


def _ledger_line(record: ClientTaskRecord) -> str:
    line = (
        f"{record.local_id}\t{record.remote_task_id}\t{record.kind.value}\t{record.status.value}"
        f"\t{_preview(record.prompt)}"
    )
    if record.result_ref:
        line += f"\t{record.result_ref}"
    if record.error_message:
        line += f"\terror={record.error_message}"
    return line


def _preview(text: str, limit: int = 60) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else f"{flat[: limit - 3]}..."


def _ledger(settings: Settings, path: Path | None) -> ClientTaskStore:
    return ClientTaskStore(JsonFileLedgerStorage(path or settings.ledger.path))


@contextmanager
def _repository(settings: Settings) -> Iterator[RelayRepository]:
    repository = RelayRepository(
        db_path=settings.db_path,
        user_id=settings.user_context.user_id,
        user_name=settings.user_context.user_name,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _service(settings: Settings, *, with_provisioner: bool = False) -> Iterator[RelayService]:
    provider_client = GenerationProviderClient(
        base_url=settings.provider.base_url,
        timeout_seconds=settings.provider.request_timeout_seconds,
        max_retries=settings.provider.max_retries,
    )
    mail_client: MailProviderClient | None = None
    provisioner: IdentityProvisioner | None = None
    if with_provisioner:
        mail_client = MailProviderClient(
            base_url=settings.mail.base_url,
            timeout_seconds=settings.mail.request_timeout_seconds,
        )
        provisioner = IdentityProvisioner(
            mail_client=mail_client,
            provider_client=provider_client,
            poller=MailboxPoller(
                interval_seconds=settings.mail.poll_interval_seconds,
                timeout_seconds=settings.mail.poll_timeout_seconds,
            ),
        )
    try:
        with _repository(settings) as repository:
            yield RelayService(
                store=repository,
                blob_store=LocalBlobStore(settings.blob_root),
                provider_client=provider_client,
                max_uses_per_account=settings.quota.max_uses_per_account,
                provisioner=provisioner,
            )
    finally:
        provider_client.close()
        if mail_client is not None:
            mail_client.close()
