"""Domain models for provider accounts, generation tasks and artifacts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Remote job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    def can_transition_to(self, target: TaskStatus) -> bool:
        """Forward-only transitions; a terminal state may only be re-written with itself."""

        if self.is_terminal:
            return target == self
        return _STATUS_RANK[target] >= _STATUS_RANK[self]


_STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.PROCESSING: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.FAILED: 2,
}


class TaskKind(str, Enum):
    """The two supported job kinds."""

    GENERATE = "generate"
    EDIT = "edit"


@dataclass(slots=True)
class AccountCreate:
    """Input payload for persisting a freshly provisioned account."""

    owner_id: str
    email: str
    password: str
    session_credential: str
    max_uses: int = 5


@dataclass(slots=True)
class Account:
    """Provisioned provider account with its usage counter."""

    id: int
    owner_id: str
    email: str
    password: str
    session_credential: str
    use_count: int
    max_uses: int
    created_at: datetime

    @property
    def remaining_uses(self) -> int:
        return max(0, self.max_uses - self.use_count)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for recording a submitted job."""

    owner_id: str
    account_id: int
    remote_task_id: str
    kind: TaskKind
    prompt: str
    input_image_refs: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskUpdate:
    """Fields written back by reconciliation."""

    status: TaskStatus
    result_ref: str | None = None
    error_message: str | None = None


@dataclass(slots=True)
class Task:
    """Server-authoritative job record."""

    id: int
    owner_id: str
    account_id: int
    remote_task_id: str
    kind: TaskKind
    prompt: str
    input_image_refs: tuple[str, ...]
    status: TaskStatus
    result_ref: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ArtifactCreate:
    """Input payload for recording a saved artifact."""

    owner_id: str
    task_id: int
    prompt: str
    source_url: str
    blob_key: str
    blob_url: str
    is_edited: bool = False


@dataclass(slots=True)
class GeneratedArtifact:
    """Saved copy of a completed job result."""

    id: int
    owner_id: str
    task_id: int
    prompt: str
    source_url: str
    blob_key: str
    blob_url: str
    is_edited: bool
    created_at: datetime


@dataclass(slots=True)
class UploadCreate:
    """Input payload for recording a user-uploaded image."""

    owner_id: str
    blob_key: str
    blob_url: str
    mime_type: str


@dataclass(slots=True)
class UploadedImage:
    """User image kept for later edit jobs."""

    id: int
    owner_id: str
    blob_key: str
    blob_url: str
    mime_type: str
    created_at: datetime


@dataclass(slots=True)
class ReconcileOutcome:
    """Current status of one job as returned to reconciliation callers."""

    status: TaskStatus
    result_ref: str | None = None
    error_message: str | None = None


@dataclass(slots=True, frozen=True)
class TaskPending:
    """Provider accepted the job but has not started it."""


@dataclass(slots=True, frozen=True)
class TaskProcessing:
    """Provider is generating the image."""


@dataclass(slots=True, frozen=True)
class TaskCompleted:
    """Provider finished the job and exposes the result."""

    result_url: str


@dataclass(slots=True, frozen=True)
class TaskFailed:
    """Provider reported a job failure."""

    error_message: str


ProviderTaskState = TaskPending | TaskProcessing | TaskCompleted | TaskFailed


@dataclass(slots=True, frozen=True)
class GenerationParameters:
    """Fixed generation parameters sent with every job."""

    output_format: str = "png"
    image_size: str = "auto"
    enable_pro: bool = False
    width: int = 1024
    height: int = 1024
    steps: int = 20
    guidance_scale: float = 7.5
    is_public: bool = False

    def as_payload(self) -> dict[str, object]:
        return {
            "output_format": self.output_format,
            "image_size": self.image_size,
            "enable_pro": self.enable_pro,
            "width": self.width,
            "height": self.height,
            "steps": self.steps,
            "guidance_scale": self.guidance_scale,
            "is_public": self.is_public,
        }

