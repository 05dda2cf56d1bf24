"""Error taxonomy surfaced to callers.

Every error carries a stable ``code`` (class attribute) and a human-readable
message. Messages never embed raw provider payloads.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base error for all externally surfaced failures."""

    code = "relay_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ProviderHttpError(RelayError):
    """Transport-level failure talking to an external provider."""

    code = "provider_http_error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderProtocolError(RelayError):
    """Provider answered with a payload this client cannot interpret."""

    code = "provider_protocol_error"


class ProvisioningError(RelayError):
    """Provisioning flow failed; callers must start a fresh flow."""

    code = "provisioning_error"

    def __init__(self, message: str, *, trace: object | None = None) -> None:
        super().__init__(message)
        self.trace = trace


class NoDomainAvailableError(ProvisioningError):
    code = "no_domain_available"


class VerificationTimeoutError(ProvisioningError):
    code = "verification_timeout"


class SessionExtractionFailedError(ProvisioningError):
    code = "session_extraction_failed"


class ProvisioningStepFailedError(ProvisioningError):
    code = "provisioning_step_failed"


class SubmissionError(RelayError):
    code = "submission_error"


class AccountUnauthorizedError(SubmissionError):
    code = "account_unauthorized"


class QuotaExceededError(SubmissionError):
    code = "quota_exceeded"


class UploadNotFoundError(SubmissionError):
    code = "upload_not_found"


class ReconcileError(RelayError):
    code = "reconcile_error"


class TaskNotFoundError(ReconcileError):
    code = "task_not_found"


class ReconcileUnauthorizedError(ReconcileError):
    code = "unauthorized"


class ArtifactError(RelayError):
    code = "artifact_error"


class ArtifactNotReadyError(ArtifactError):
    code = "artifact_not_ready"


class AccountNotFoundError(SubmissionError):
    code = "account_not_found"
