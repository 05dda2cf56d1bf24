"""CLI entrypoint for image-relay."""

import logging
import os
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Any

import rich_click as click

from image_relay import __version__
from image_relay.controllers import (
    AddUploadCommand,
    DeleteUploadCommand,
    EditImageCommand,
    GenerateImageCommand,
    LedgerListCommand,
    LedgerRemoveCommand,
    LedgerWatchCommand,
    ListAccountsCommand,
    ListingCommand,
    ProvisionAccountCommand,
    RelayCliController,
    TaskRefCommand,
)
from image_relay.errors import RelayError
from image_relay.generation.models import TaskStatus
from image_relay.ledger.driver import describe_finished
from image_relay.ledger.store import ClientTaskRecord

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RelayCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
LEDGER_PATH_OPTION = click.option(
    "--ledger-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Client task ledger JSON file.",
)
LIMIT_OPTION = click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max number of rows to print.",
)


class EchoNotifier:
    """Prints ledger completions as they happen."""

    def task_finished(self, record: ClientTaskRecord) -> None:
        click.echo(describe_finished(record), err=record.status == TaskStatus.FAILED)


def _handles_errors(func: Callable[..., None]) -> Callable[..., None]:
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            func(*args, **kwargs)
        except RelayError as error:
            click.echo(f"Error [{error.code}]: {error.message}", err=True)
            click.get_current_context().exit(1)
        except (ValueError, FileNotFoundError) as error:
            raise click.ClickException(str(error)) from error

    return wrapper


@click.group()
@click.version_option(version=__version__, prog_name="image-relay")
def image_relay() -> None:
    """Disposable-account image generation relay.

    Provision throwaway provider accounts, submit **generate** / **edit** jobs,
    and track them until their results are saved.
    """

    logging.basicConfig(
        level=os.getenv("IMAGE_RELAY_LOG_LEVEL", "WARNING").strip().upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@image_relay.group()
def accounts() -> None:
    """Provider account commands."""


@accounts.command("provision")
@DB_PATH_OPTION
@_handles_errors
def accounts_provision(db_path: Path | None) -> None:
    """Create a throwaway mailbox, register it with the provider and store the session."""

    _emit_lines(CONTROLLER.provision_account(ProvisionAccountCommand(db_path=db_path)))


@accounts.command("list")
@DB_PATH_OPTION
@_handles_errors
def accounts_list(db_path: Path | None) -> None:
    """List provisioned accounts with their remaining uses."""

    _emit_lines(CONTROLLER.list_accounts(ListAccountsCommand(db_path=db_path)))


@image_relay.group()
def images() -> None:
    """Image job commands."""


@images.command("generate")
@DB_PATH_OPTION
@LEDGER_PATH_OPTION
@click.option("--account-id", type=int, required=True, help="Provisioned account to use.")
@click.option("--prompt", required=True, help="Text prompt.")
@click.option(
    "--track/--no-track",
    default=True,
    show_default=True,
    help="Record the job in the client ledger.",
)
@_handles_errors
def images_generate(
    db_path: Path | None,
    ledger_path: Path | None,
    account_id: int,
    prompt: str,
    track: bool,
) -> None:
    """Submit a text-to-image job."""

    _emit_lines(
        CONTROLLER.generate(
            GenerateImageCommand(
                db_path=db_path,
                account_id=account_id,
                prompt=prompt,
                track=track,
                ledger_path=ledger_path,
            ),
        ),
    )


@images.command("edit")
@DB_PATH_OPTION
@LEDGER_PATH_OPTION
@click.option("--account-id", type=int, required=True, help="Provisioned account to use.")
@click.option("--prompt", required=True, help="Edit instruction.")
@click.option(
    "--upload-id",
    "upload_ids",
    type=int,
    multiple=True,
    required=True,
    help="Stored upload to edit. Can be repeated.",
)
@click.option(
    "--track/--no-track",
    default=True,
    show_default=True,
    help="Record the job in the client ledger.",
)
@_handles_errors
def images_edit(
    db_path: Path | None,
    ledger_path: Path | None,
    account_id: int,
    prompt: str,
    upload_ids: tuple[int, ...],
    track: bool,
) -> None:
    """Submit an edit job over one or more stored uploads."""

    _emit_lines(
        CONTROLLER.edit(
            EditImageCommand(
                db_path=db_path,
                account_id=account_id,
                prompt=prompt,
                upload_ids=upload_ids,
                track=track,
                ledger_path=ledger_path,
            ),
        ),
    )


@images.command("status")
@DB_PATH_OPTION
@click.argument("remote_task_id")
@_handles_errors
def images_status(db_path: Path | None, remote_task_id: str) -> None:
    """Reconcile one job with the provider and print its status."""

    _emit_lines(CONTROLLER.status(TaskRefCommand(db_path=db_path, remote_task_id=remote_task_id)))


@images.command("save")
@DB_PATH_OPTION
@click.argument("remote_task_id")
@_handles_errors
def images_save(db_path: Path | None, remote_task_id: str) -> None:
    """Download a completed result into the blob store and count the account use."""

    _emit_lines(CONTROLLER.save(TaskRefCommand(db_path=db_path, remote_task_id=remote_task_id)))


@images.command("tasks")
@DB_PATH_OPTION
@LIMIT_OPTION
@_handles_errors
def images_tasks(db_path: Path | None, limit: int) -> None:
    """List submitted jobs, newest first."""

    _emit_lines(CONTROLLER.list_tasks(ListingCommand(db_path=db_path, limit=limit)))


@images.command("gallery")
@DB_PATH_OPTION
@LIMIT_OPTION
@_handles_errors
def images_gallery(db_path: Path | None, limit: int) -> None:
    """List saved artifacts, newest first."""

    _emit_lines(CONTROLLER.gallery(ListingCommand(db_path=db_path, limit=limit)))


@image_relay.group()
def uploads() -> None:
    """Stored input image commands."""


@uploads.command("add")
@DB_PATH_OPTION
@click.argument("file_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--mime-type", default=None, help="Override the detected image type.")
@_handles_errors
def uploads_add(db_path: Path | None, file_path: Path, mime_type: str | None) -> None:
    """Store an image for later edit jobs."""

    _emit_lines(
        CONTROLLER.add_upload(
            AddUploadCommand(db_path=db_path, file_path=file_path, mime_type=mime_type),
        ),
    )


@uploads.command("list")
@DB_PATH_OPTION
@LIMIT_OPTION
@_handles_errors
def uploads_list(db_path: Path | None, limit: int) -> None:
    """List stored uploads, newest first."""

    _emit_lines(CONTROLLER.list_uploads(ListingCommand(db_path=db_path, limit=limit)))


@uploads.command("delete")
@DB_PATH_OPTION
@click.argument("upload_id", type=int)
@_handles_errors
def uploads_delete(db_path: Path | None, upload_id: int) -> None:
    """Delete one of your stored uploads."""

    _emit_lines(CONTROLLER.delete_upload(DeleteUploadCommand(db_path=db_path, upload_id=upload_id)))


@image_relay.group()
def ledger() -> None:
    """Client-side task ledger commands."""


@ledger.command("list")
@LEDGER_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice(["active", *(status.value for status in TaskStatus)]),
    default=None,
    help="Only show records in this state.",
)
@_handles_errors
def ledger_list(ledger_path: Path | None, status: str | None) -> None:
    """Show tracked jobs, newest first."""

    _emit_lines(CONTROLLER.ledger_list(LedgerListCommand(ledger_path=ledger_path, status=status)))


@ledger.command("remove")
@LEDGER_PATH_OPTION
@click.argument("local_id")
@_handles_errors
def ledger_remove(ledger_path: Path | None, local_id: str) -> None:
    """Forget one tracked job."""

    _emit_lines(CONTROLLER.ledger_remove(LedgerRemoveCommand(ledger_path=ledger_path, local_id=local_id)))


@ledger.command("clear-completed")
@LEDGER_PATH_OPTION
@_handles_errors
def ledger_clear_completed(ledger_path: Path | None) -> None:
    """Drop completed and failed jobs from the ledger."""

    _emit_lines(CONTROLLER.ledger_clear_completed(LedgerListCommand(ledger_path=ledger_path)))


@ledger.command("watch")
@DB_PATH_OPTION
@LEDGER_PATH_OPTION
@click.option("--once", is_flag=True, help="Reconcile a single record and exit.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many reconcile calls.",
)
@_handles_errors
def ledger_watch(
    db_path: Path | None,
    ledger_path: Path | None,
    once: bool,
    max_ticks: int | None,
) -> None:
    """Poll active jobs one at a time until none remain (Ctrl-C stops)."""

    _emit_lines(
        CONTROLLER.ledger_watch(
            LedgerWatchCommand(
                db_path=db_path,
                ledger_path=ledger_path,
                max_ticks=max_ticks,
                once=once,
            ),
            notifier=EchoNotifier(),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    image_relay()
