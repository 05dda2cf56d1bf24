"""SQLite persistence facade for provider accounts, tasks, artifacts and uploads."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from image_relay.generation.models import (
    Account,
    AccountCreate,
    ArtifactCreate,
    GeneratedArtifact,
    Task,
    TaskCreate,
    TaskKind,
    TaskStatus,
    TaskUpdate,
    UploadCreate,
    UploadedImage,
)
from image_relay.storage.alembic_runner import upgrade_head
from image_relay.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from image_relay.storage.sqlmodel_models import (
    DEFAULT_USER_ID,
    AppUser,
    GeneratedArtifactRow,
    GenerationTaskRow,
    ProviderAccountRow,
    UploadedImageRow,
)


class RelayRepository:
    """Persistent store backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        user_id: str = DEFAULT_USER_ID,
        user_name: str = "Default User",
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.user_name = user_name
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure actor context exists."""

        upgrade_head(self.db_path)
        with Session(self.engine) as session:
            self._ensure_user(session, self.user_id, display_name=self.user_name)
            session.commit()

    def _ensure_user(self, session: Session, user_id: str, *, display_name: str | None = None) -> None:
        existing = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
        if existing is not None:
            return
        session.add(
            AppUser(
                user_id=user_id,
                display_name=display_name or user_id,
                created_at=utc_now(),
            ),
        )
        session.flush()

    # Accounts

    def create_account(self, payload: AccountCreate) -> Account:
        if payload.max_uses <= 0:
            raise ValueError("max_uses must be a positive integer.")
        with Session(self.engine) as session:
            self._ensure_user(session, payload.owner_id)
            row = ProviderAccountRow(
                user_id=payload.owner_id,
                email=payload.email,
                password=payload.password,
                session_credential=payload.session_credential,
                use_count=0,
                max_uses=payload.max_uses,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_account(row)

    def get_account(self, account_id: int) -> Account | None:
        with Session(self.engine) as session:
            row = session.get(ProviderAccountRow, account_id)
            return _to_account(row) if row is not None else None

    def list_accounts(self, owner_id: str) -> list[Account]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ProviderAccountRow)
                .where(ProviderAccountRow.user_id == owner_id)
                .order_by(col(ProviderAccountRow.created_at).desc(), col(ProviderAccountRow.id).desc()),
            ).all()
            return [_to_account(row) for row in rows]

    def increment_use(self, account_id: int) -> bool:
        """Add one use unless the cap is reached; single conditional UPDATE."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ProviderAccountRow)
                .where(
                    col(ProviderAccountRow.id) == account_id,
                    col(ProviderAccountRow.use_count) < col(ProviderAccountRow.max_uses),
                )
                .values(use_count=col(ProviderAccountRow.use_count) + 1),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Tasks

    def create_task(self, payload: TaskCreate) -> Task:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            self._ensure_user(session, payload.owner_id)
            row = GenerationTaskRow(
                user_id=payload.owner_id,
                account_id=payload.account_id,
                remote_task_id=payload.remote_task_id,
                kind=payload.kind.value,
                prompt=payload.prompt,
                input_image_refs_json=json.dumps(list(payload.input_image_refs)),
                status=TaskStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task(row)

    def get_task_by_remote_id(self, remote_task_id: str) -> Task | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationTaskRow).where(GenerationTaskRow.remote_task_id == remote_task_id),
            ).one_or_none()
            return _to_task(row) if row is not None else None

    def update_task(self, remote_task_id: str, update: TaskUpdate) -> bool:
        """Write ``update`` only when the stored status may move to ``update.status``."""

        allowed_from = [
            status.value for status in TaskStatus if status.can_transition_to(update.status)
        ]
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTaskRow)
                .where(
                    col(GenerationTaskRow.remote_task_id) == remote_task_id,
                    col(GenerationTaskRow.status).in_(allowed_from),
                )
                .values(
                    status=update.status.value,
                    result_ref=update.result_ref,
                    error_message=update.error_message,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_tasks(self, owner_id: str, *, limit: int = 50) -> list[Task]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationTaskRow)
                .where(GenerationTaskRow.user_id == owner_id)
                .order_by(col(GenerationTaskRow.created_at).desc(), col(GenerationTaskRow.id).desc())
                .limit(max(1, limit)),
            ).all()
            return [_to_task(row) for row in rows]

    # Artifacts

    def create_artifact(self, payload: ArtifactCreate) -> GeneratedArtifact:
        with Session(self.engine) as session:
            row = GeneratedArtifactRow(
                user_id=payload.owner_id,
                task_id=payload.task_id,
                prompt=payload.prompt,
                source_url=payload.source_url,
                blob_key=payload.blob_key,
                blob_url=payload.blob_url,
                is_edited=payload.is_edited,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_artifact(row)

    def get_artifact_for_task(self, task_id: int) -> GeneratedArtifact | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(GeneratedArtifactRow).where(GeneratedArtifactRow.task_id == task_id),
            ).one_or_none()
            return _to_artifact(row) if row is not None else None

    def list_artifacts(self, owner_id: str, *, limit: int = 50) -> list[GeneratedArtifact]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GeneratedArtifactRow)
                .where(GeneratedArtifactRow.user_id == owner_id)
                .order_by(
                    col(GeneratedArtifactRow.created_at).desc(),
                    col(GeneratedArtifactRow.id).desc(),
                )
                .limit(max(1, limit)),
            ).all()
            return [_to_artifact(row) for row in rows]

    # Uploads

    def create_upload(self, payload: UploadCreate) -> UploadedImage:
        with Session(self.engine) as session:
            self._ensure_user(session, payload.owner_id)
            row = UploadedImageRow(
                user_id=payload.owner_id,
                blob_key=payload.blob_key,
                blob_url=payload.blob_url,
                mime_type=payload.mime_type,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_upload(row)

    def get_upload(self, upload_id: int) -> UploadedImage | None:
        with Session(self.engine) as session:
            row = session.get(UploadedImageRow, upload_id)
            return _to_upload(row) if row is not None else None

    def list_uploads(self, owner_id: str, *, limit: int = 50) -> list[UploadedImage]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(UploadedImageRow)
                .where(UploadedImageRow.user_id == owner_id)
                .order_by(col(UploadedImageRow.created_at).desc(), col(UploadedImageRow.id).desc())
                .limit(max(1, limit)),
            ).all()
            return [_to_upload(row) for row in rows]

    def delete_upload(self, upload_id: int) -> bool:
        with Session(self.engine) as session:
            row = session.get(UploadedImageRow, upload_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True


def _row_id(value: int | None) -> int:
    if value is None:
        raise RuntimeError("Row was not assigned a primary key.")
    return value


def _to_account(row: ProviderAccountRow) -> Account:
    return Account(
        id=_row_id(row.id),
        owner_id=row.user_id,
        email=row.email,
        password=row.password,
        session_credential=row.session_credential,
        use_count=row.use_count,
        max_uses=row.max_uses,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_task(row: GenerationTaskRow) -> Task:
    refs = json.loads(row.input_image_refs_json or "[]")
    return Task(
        id=_row_id(row.id),
        owner_id=row.user_id,
        account_id=row.account_id,
        remote_task_id=row.remote_task_id,
        kind=TaskKind(row.kind),
        prompt=row.prompt,
        input_image_refs=tuple(str(ref) for ref in refs),
        status=TaskStatus(row.status),
        result_ref=row.result_ref,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_artifact(row: GeneratedArtifactRow) -> GeneratedArtifact:
    return GeneratedArtifact(
        id=_row_id(row.id),
        owner_id=row.user_id,
        task_id=row.task_id,
        prompt=row.prompt,
        source_url=row.source_url,
        blob_key=row.blob_key,
        blob_url=row.blob_url,
        is_edited=row.is_edited,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_upload(row: UploadedImageRow) -> UploadedImage:
    return UploadedImage(
        id=_row_id(row.id),
        owner_id=row.user_id,
        blob_key=row.blob_key,
        blob_url=row.blob_url,
        mime_type=row.mime_type,
        created_at=to_utc_aware_datetime(row.created_at),
    )
