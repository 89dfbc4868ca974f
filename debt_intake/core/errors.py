"""
Exception taxonomy for the import pipeline.

Row-level problems are never raised; they travel as ``RowError`` values.
Everything here aborts the current operation and is mapped to an HTTP
status by the routers.
"""
from typing import Iterable, Optional


class IntakeError(Exception):
    """Base class for pipeline errors."""


class JobNotFoundError(IntakeError):
    def __init__(self, job_id: str):
        super().__init__(f"Import job {job_id} not found")
        self.job_id = job_id


class TemplateNotFoundError(IntakeError):
    def __init__(self, template_id: str):
        super().__init__(f"Import template {template_id} not found")
        self.template_id = template_id


class TemplatePermissionError(IntakeError):
    """Raised when a caller edits a template owned by someone else."""


class DuplicateTemplateError(IntakeError):
    """Raised when an owner already has a template with the same name."""


class MappingError(IntakeError):
    """Raised when a file cannot be mapped onto the canonical fields."""

    def __init__(self, message: str, missing_fields: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.missing_fields = list(missing_fields or [])


class FileParseError(IntakeError):
    """Raised when an uploaded file is unreadable or has no header row."""


class UploadRejectedError(IntakeError):
    """Raised when an upload is refused before a job is created."""


class DeleteConfirmationError(IntakeError):
    """Raised when the file name given to confirm a deletion does not match the job."""


class JobStateError(IntakeError):
    """Raised when an operation is not permitted in the job's current status."""


class InvalidTransitionError(JobStateError):
    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(
            f"Import job {job_id} cannot move from '{current}' to '{target}'"
        )
        self.job_id = job_id
        self.current = current
        self.target = target


class ChunkClaimConflictError(IntakeError):
    """Raised when another invocation currently holds the job's chunk claim."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Import job {job_id} is being processed by another invocation; retry later"
        )
        self.job_id = job_id


class ImportSystemError(IntakeError):
    """Raised when a chunk aborts on infrastructure failure (database, storage)."""
