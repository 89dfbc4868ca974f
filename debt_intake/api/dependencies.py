"""
Shared dependencies and error translation for the API routers.
"""
import logging
from typing import Optional

from fastapi import Header, HTTPException

from debt_intake.core.errors import (
    ChunkClaimConflictError,
    DeleteConfirmationError,
    DuplicateTemplateError,
    FileParseError,
    ImportSystemError,
    IntakeError,
    JobNotFoundError,
    JobStateError,
    MappingError,
    TemplateNotFoundError,
    TemplatePermissionError,
    UploadRejectedError,
)
from debt_intake.integrations.storage import StorageError

logger = logging.getLogger(__name__)

# Most specific classes first; InvalidTransitionError is a JobStateError.
_STATUS_BY_ERROR = (
    (JobNotFoundError, 404),
    (TemplateNotFoundError, 404),
    (TemplatePermissionError, 403),
    (DuplicateTemplateError, 409),
    (ChunkClaimConflictError, 409),
    (JobStateError, 409),
    (MappingError, 422),
    (FileParseError, 422),
    (UploadRejectedError, 400),
    (DeleteConfirmationError, 400),
    (StorageError, 502),
    (ImportSystemError, 503),
)


def get_owner_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Caller identity as forwarded by the fronting application; authentication happens upstream."""
    return x_user_id or None


def http_error(exc: IntakeError) -> HTTPException:
    """Translate a pipeline error into the HTTPException the routers raise."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = 500

    if status_code >= 500:
        logger.error("Request failed: %s", exc)

    if isinstance(exc, MappingError) and exc.missing_fields:
        return HTTPException(
            status_code=status_code,
            detail={"message": str(exc), "missing_fields": exc.missing_fields},
        )
    return HTTPException(status_code=status_code, detail=str(exc))
