"""SQLModel ORM tables for accounts, generation tasks, artifacts and uploads."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProviderAccountRow(SQLModel, table=True):
    __tablename__ = "provider_accounts"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    email: str = Field(index=True)
    password: str
    session_credential: str = Field(sa_column=Column(Text, nullable=False))
    use_count: int = 0
    max_uses: int = 5
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTaskRow(SQLModel, table=True):
    __tablename__ = "generation_tasks"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    account_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("provider_accounts.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    remote_task_id: str = Field(unique=True, index=True)
    kind: str
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    input_image_refs_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    status: str = Field(index=True)
    result_ref: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GeneratedArtifactRow(SQLModel, table=True):
    __tablename__ = "generated_artifacts"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("generation_tasks.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    source_url: str = Field(sa_column=Column(Text, nullable=False))
    blob_key: str
    blob_url: str = Field(sa_column=Column(Text, nullable=False))
    is_edited: bool = False
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UploadedImageRow(SQLModel, table=True):
    __tablename__ = "uploaded_images"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    blob_key: str
    blob_url: str = Field(sa_column=Column(Text, nullable=False))
    mime_type: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
