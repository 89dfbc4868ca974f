"""
Failed-row export.

Rows that failed validation or loading are written back out in the file's
original column order with an ``error_message`` column appended, so the
user can fix them and upload just those rows again.
"""
import io
import logging
from typing import Any, Dict, List, Optional

import pandas as pd
from sqlalchemy import or_, select

from debt_intake.db.models import ImportStagingRow
from debt_intake.db.session import get_engine
from debt_intake.domain.imports import jobs as job_store
from debt_intake.domain.imports.validators import RowError
from debt_intake.integrations.storage import upload_file

logger = logging.getLogger(__name__)

staging_table = ImportStagingRow.__table__

ERROR_COLUMN = "error_message"
# "partial": the primary record loaded but its addresses, phones etc. did not.
LOAD_PROBLEM_STATUSES = ("failed", "partial")


def _failed_staging_rows(job_id: str) -> List[Dict[str, Any]]:
    query = (
        select(staging_table)
        .where(
            staging_table.c.job_id == job_id,
            or_(staging_table.c.is_valid.is_(False), staging_table.c.load_status.in_(LOAD_PROBLEM_STATUSES)),
        )
        .order_by(staging_table.c.row_number)
    )
    with get_engine().connect() as conn:
        return [dict(row) for row in conn.execute(query).mappings()]


def _row_errors(row: Dict[str, Any]) -> List[RowError]:
    errors = [RowError.from_dict(payload) for payload in row.get("errors") or []]
    if row.get("load_status") == "failed":
        errors.append(RowError(row["row_number"], None, row.get("load_error") or "Load failed", stage="load"))
    elif row.get("load_status") == "partial":
        message = row.get("load_error") or "Related records not saved"
        errors.append(RowError(row["row_number"], None, message, stage="satellites"))
    return errors


def list_row_errors(job_id: str, limit: Optional[int] = None, offset: int = 0) -> List[RowError]:
    """Validation, load and related-record errors of a job, ordered by row number."""
    job_store.get_job(job_id)
    errors = [error for row in _failed_staging_rows(job_id) for error in _row_errors(row)]
    if limit is None:
        return errors[offset:]
    return errors[offset:offset + limit]


def _error_message(errors: List[RowError]) -> str:
    parts = []
    for error in errors:
        parts.append(f"{error.field}: {error.message}" if error.field else error.message)
    return "; ".join(parts)


def build_failed_rows_csv(job_id: str) -> Optional[bytes]:
    """
    Render a job's failed rows as CSV and store the file.

    Available as soon as any row has failed, whatever the job status.

    Returns:
        CSV bytes, or None when the job has no failed rows

    Raises:
        JobNotFoundError: Unknown job
        StorageUploadError: The export could not be stored
    """
    job = job_store.get_job(job_id)
    rows = _failed_staging_rows(job_id)
    if not rows:
        return None

    headers = list((job.get("validation_summary") or {}).get("headers") or [])
    if not headers:
        # Summary predates header tracking; fall back to first-seen column order.
        for row in rows:
            for column in row["raw_data"]:
                if column not in headers:
                    headers.append(column)
    columns = headers + ([ERROR_COLUMN] if ERROR_COLUMN not in headers else [f"_{ERROR_COLUMN}"])

    records = []
    for row in rows:
        record = {column: row["raw_data"].get(column, "") for column in headers}
        record[columns[-1]] = _error_message(_row_errors(row))
        records.append(record)

    buffer = io.StringIO()
    pd.DataFrame(records, columns=columns).to_csv(buffer, index=False)
    content = buffer.getvalue().encode("utf-8")

    stored = upload_file(content, f"failed_rows_{job_id}.csv", folder=f"imports/{job_id}")
    job_store.set_failed_rows_path(job_id, stored["file_path"])
    logger.info("Exported %d failed rows for import job %s", len(records), job_id)
    return content
