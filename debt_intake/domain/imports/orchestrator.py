"""
Job operations: create, validate, process one chunk, cancel.

Every call does one bounded unit of work and returns. A driver (the HTTP
client, the operator console) calls ``process_chunk`` repeatedly until the
result reports ``completed``; all state needed to resume lives on the job
row and in the staging table, so any invocation may die and the next one
picks up from the persisted cursor.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import bindparam, select, update
from sqlalchemy.exc import SQLAlchemyError

from debt_intake.core.config import settings
from debt_intake.core.errors import (
    ChunkClaimConflictError,
    FileParseError,
    ImportSystemError,
    JobStateError,
    MappingError,
    TemplateNotFoundError,
    UploadRejectedError,
)
from debt_intake.db.models import ImportStagingRow, MasterClient, MasterPortfolio, _utcnow
from debt_intake.db.session import get_engine
from debt_intake.domain.imports import jobs as job_store
from debt_intake.domain.imports.import_types import ImportType, get_import_type, get_spec
from debt_intake.domain.imports.jobs import PROCESSABLE_STATUSES, TERMINAL_STATUSES, JobStatus
from debt_intake.domain.imports.loader import LoadResult, StagedRow, load_chunk
from debt_intake.domain.imports.mapper import apply_mapping, missing_required_fields, resolve_mapping, suggest_mapping
from debt_intake.domain.imports.processors.file_reader import detect_file_type, parse_file
from debt_intake.domain.imports.templates import get_template
from debt_intake.domain.imports.validators import RowError, resolve_rules, validate_rows
from debt_intake.integrations.storage import StorageError, delete_file, download_file, upload_file
from debt_intake.utils.serialization import json_safe

logger = logging.getLogger(__name__)

staging_table = ImportStagingRow.__table__
portfolios_table = MasterPortfolio.__table__
clients_table = MasterClient.__table__

STAGING_INSERT_BATCH = 500
SUMMARY_ERROR_LIMIT = 100


@dataclass
class ValidationSummary:
    job_id: str
    status: str
    source_rows: int
    valid_rows: int
    invalid_rows: int
    field_mapping: Dict[str, str]
    unmapped_fields: List[str] = field(default_factory=list)
    ignored_columns: List[str] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)
    warnings: List[RowError] = field(default_factory=list)


@dataclass
class ChunkResult:
    job_id: str
    processed_count: int
    next_start_index: int
    completed: bool
    status: str
    progress: int
    errors: List[RowError] = field(default_factory=list)
    cancelled: bool = False
    load_summary: Optional[Dict[str, Any]] = None


def _chunk_result(job: Dict[str, Any], processed_count: int = 0, errors=None, load_summary=None) -> ChunkResult:
    return ChunkResult(
        job_id=job["id"],
        processed_count=processed_count,
        next_start_index=job["cursor"],
        completed=job["status"] == JobStatus.COMPLETED.value,
        status=job["status"],
        progress=job["progress"],
        errors=list(errors or []),
        cancelled=job["status"] == JobStatus.CANCELLED.value,
        load_summary=load_summary,
    )


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

def _find_or_create_portfolio(conn, new_portfolio: Dict[str, Any], job_id: str) -> Tuple[str, bool]:
    """Return ``(portfolio_id, created)`` for the portfolio an accounts upload attaches to."""
    name = (new_portfolio.get("name") or "").strip()
    if not name:
        raise UploadRejectedError("New portfolio requires a name")

    client_id = None
    client_code = (new_portfolio.get("client_code") or "").strip()
    if client_code:
        client_id = conn.execute(
            select(clients_table.c.id).where(clients_table.c.code == client_code)
        ).scalar_one_or_none()
        if client_id is None:
            raise UploadRejectedError(f"Client '{client_code}' does not exist")

    natural_key = f"{client_id or ''}:{name}"
    existing = conn.execute(
        select(portfolios_table.c.id).where(portfolios_table.c.natural_key == natural_key)
    ).scalar_one_or_none()
    if existing is not None:
        logger.info("Import job %s attaches to existing portfolio %s", job_id, existing)
        return existing, False

    portfolio_id = str(uuid.uuid4())
    now = _utcnow()
    conn.execute(portfolios_table.insert().values(
        id=portfolio_id,
        natural_key=natural_key,
        name=name,
        client_id=client_id,
        description=new_portfolio.get("description"),
        portfolio_type=new_portfolio.get("portfolio_type"),
        status="active",
        import_job_id=job_id,
        created_at=now,
        updated_at=now,
    ))
    logger.info("Import job %s created portfolio '%s' (%s)", job_id, name, portfolio_id)
    return portfolio_id, True


def create_job(
    file_content: bytes,
    file_name: str,
    import_type,
    owner_id: Optional[str] = None,
    field_mapping: Optional[Dict[str, Optional[str]]] = None,
    template_id: Optional[str] = None,
    portfolio_id: Optional[str] = None,
    new_portfolio: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Register an upload as a new import job and store its file.

    Args:
        file_content: Raw file bytes
        file_name: Original file name
        import_type: One of the supported import types
        owner_id: Uploading user
        field_mapping: Explicit ``{source_column: canonical_field}`` overrides
        template_id: Saved template to pre-fill the mapping from
        portfolio_id: Existing portfolio for an accounts import
        new_portfolio: ``{"name", "client_code", ...}`` to find or create the
            portfolio for an accounts import

    Returns:
        The job in ``uploaded`` status

    Raises:
        UploadRejectedError: Empty/oversized/unsupported file or bad portfolio reference
        TemplateNotFoundError: Unknown template
        MappingError: Template belongs to another import type
        StorageError: File could not be stored (the job is removed again)
    """
    try:
        spec = get_spec(import_type)
    except ValueError as e:
        raise UploadRejectedError(str(e))

    if not file_content:
        raise UploadRejectedError("Uploaded file is empty")
    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if len(file_content) > max_bytes:
        raise UploadRejectedError(
            f"File is {len(file_content)} bytes; the limit is {settings.upload_max_file_size_mb} MB"
        )
    try:
        file_type = detect_file_type(file_name)
    except FileParseError as e:
        raise UploadRejectedError(str(e))

    if template_id:
        template = get_template(template_id)
        if template["import_type"] != spec.import_type.value:
            raise MappingError(
                f"Template '{template['name']}' is for {template['import_type']} imports, "
                f"not {spec.import_type.value}"
            )
    if portfolio_id and new_portfolio:
        raise UploadRejectedError("Pass either portfolio_id or new_portfolio, not both")
    if (portfolio_id or new_portfolio) and spec.import_type != ImportType.ACCOUNTS:
        raise UploadRejectedError("Only accounts imports can be attached to a portfolio")

    job_id = str(uuid.uuid4())
    created_portfolio = False
    with get_engine().begin() as conn:
        if portfolio_id:
            found = conn.execute(
                select(portfolios_table.c.id).where(portfolios_table.c.id == portfolio_id)
            ).scalar_one_or_none()
            if found is None:
                raise UploadRejectedError(f"Portfolio {portfolio_id} does not exist")
        elif new_portfolio:
            portfolio_id, created_portfolio = _find_or_create_portfolio(conn, new_portfolio, job_id)

        job_store.create_job_record(
            job_id=job_id,
            file_name=file_name,
            file_size=len(file_content),
            file_type=file_type,
            import_type=spec.import_type.value,
            owner_id=owner_id,
            field_mapping=dict(field_mapping) if field_mapping else None,
            template_id=template_id,
            portfolio_id=portfolio_id,
            created_portfolio=created_portfolio,
            conn=conn,
        )

    try:
        stored = upload_file(file_content, file_name, folder=f"imports/{job_id}")
    except StorageError:
        logger.error("Could not store upload for import job %s; removing the job", job_id)
        with get_engine().begin() as conn:
            job_store.delete_job_record(job_id, conn)
            if created_portfolio:
                conn.execute(portfolios_table.delete().where(portfolios_table.c.id == portfolio_id))
        raise

    return job_store.transition_job(
        job_id, JobStatus.UPLOADED, expected=JobStatus.PENDING, file_path=stored["file_path"]
    )


# ---------------------------------------------------------------------------
# Validate
# ---------------------------------------------------------------------------

def _staging_rows(job_id: str, records, report) -> List[Dict[str, Any]]:
    rows = []
    valid_index = 0
    for record, result in zip(records, report.results):
        rows.append({
            "job_id": job_id,
            "row_number": result.row_number,
            "valid_index": valid_index if result.is_valid else None,
            "raw_data": dict(record),
            "mapped_data": json_safe(result.values),
            "is_valid": result.is_valid,
            "errors": [error.to_dict() for error in result.errors],
            "warnings": [warning.to_dict() for warning in result.warnings],
            "load_status": None,
            "load_error": None,
        })
        if result.is_valid:
            valid_index += 1
    return rows


def _run_validation(job: Dict[str, Any]) -> ValidationSummary:
    job_id = job["id"]
    parsed = parse_file(download_file(job["file_path"]), job["file_name"])

    template = get_template(job["template_id"]) if job.get("template_id") else None
    resolved = resolve_mapping(
        parsed.headers,
        job["import_type"],
        mapping=job.get("field_mapping"),
        template_mapping=template["field_mappings"] if template else None,
    )
    rules = resolve_rules(template["validation_rules"] if template else None, resolved.mapping)

    mapped_rows = [(number, apply_mapping(record, resolved)) for number, record in enumerate(parsed.records, start=1)]
    report = validate_rows(mapped_rows, resolved.import_type, rules)
    staged = _staging_rows(job_id, parsed.records, report)

    validation_summary = {
        "headers": parsed.headers,
        "source_rows": report.total_rows,
        "valid_rows": report.valid_count,
        "invalid_rows": report.invalid_count,
        "warning_count": len(report.warnings),
        "unmapped_fields": resolved.unmapped_fields,
        "ignored_columns": resolved.ignored_columns,
        "errors": [error.to_dict() for error in report.errors[:SUMMARY_ERROR_LIMIT]],
    }

    with get_engine().begin() as conn:
        conn.execute(staging_table.delete().where(staging_table.c.job_id == job_id))
        for start in range(0, len(staged), STAGING_INSERT_BATCH):
            conn.execute(staging_table.insert(), staged[start:start + STAGING_INSERT_BATCH])
        job = job_store.transition_job(
            job_id,
            JobStatus.VALIDATED,
            expected=JobStatus.VALIDATING,
            conn=conn,
            field_mapping=resolved.mapping,
            validation_summary=validation_summary,
            source_rows=report.total_rows,
            total_rows=report.valid_count,
            invalid_rows=report.invalid_count,
            processed_rows=0,
            successful_rows=0,
            failed_rows=0,
            cursor=0,
            progress=0,
            load_summary=None,
            failed_rows_path=None,
            error_message=None,
        )

    return ValidationSummary(
        job_id=job_id,
        status=job["status"],
        source_rows=report.total_rows,
        valid_rows=report.valid_count,
        invalid_rows=report.invalid_count,
        field_mapping=resolved.mapping,
        unmapped_fields=resolved.unmapped_fields,
        ignored_columns=resolved.ignored_columns,
        errors=report.errors,
        warnings=report.warnings,
    )


def validate_job(job_id: str) -> ValidationSummary:
    """
    Map and validate every row of a job's file and stage the result.

    Re-running on a validated job replaces the previous staging rows, and a
    job left in ``validating`` by an invocation that died is restarted once
    it is older than ``validation_stale_seconds``. The job ends in
    ``validated``; a mapping problem, an unreadable file or a
    persistence failure puts it back to ``uploaded`` with ``error_message``
    set, and any other failure marks it ``failed``.

    Raises:
        JobNotFoundError: Unknown job
        JobStateError: Job is not uploaded/validated, or another validation is still running
        MappingError: Required fields are not mapped
        FileParseError: File cannot be parsed
        ImportSystemError: Storage or database failure
    """
    job = job_store.get_job(job_id)
    status = JobStatus(job["status"])
    if status == JobStatus.VALIDATING:
        job = job_store.take_over_validation(job_id, error_message=None)
    elif status in (JobStatus.UPLOADED, JobStatus.VALIDATED):
        job = job_store.transition_job(job_id, JobStatus.VALIDATING, expected=status, error_message=None)
    else:
        raise JobStateError(f"Import job {job_id} is {status.value}; only uploaded or validated jobs can be validated")
    previous_report = job.get("failed_rows_path")

    try:
        summary = _run_validation(job)
    except (MappingError, FileParseError, TemplateNotFoundError) as e:
        logger.warning("Validation of import job %s rejected: %s", job_id, e)
        job_store.transition_job(job_id, JobStatus.UPLOADED, expected=JobStatus.VALIDATING, error_message=str(e))
        raise
    except (StorageError, SQLAlchemyError) as e:
        logger.error("Validation of import job %s aborted: %s", job_id, e)
        job_store.transition_job(
            job_id, JobStatus.UPLOADED, expected=JobStatus.VALIDATING, error_message=f"Validation aborted: {e}"
        )
        raise ImportSystemError(f"Validation of import job {job_id} aborted: {e}") from e
    except Exception as e:
        logger.exception("Validation of import job %s failed", job_id)
        job_store.transition_job(
            job_id, JobStatus.FAILED, expected=JobStatus.VALIDATING, error_message=f"Validation failed: {e}"
        )
        raise

    if previous_report:
        delete_file(previous_report)
    logger.info(
        "Import job %s validated: %d valid, %d invalid of %d rows",
        job_id, summary.valid_rows, summary.invalid_rows, summary.source_rows,
    )
    return summary


# ---------------------------------------------------------------------------
# Process
# ---------------------------------------------------------------------------

def _merge_load_summary(previous: Optional[Dict[str, Any]], chunk: Dict[str, Any]) -> Dict[str, Any]:
    merged = {
        key: (previous or {}).get(key, 0) + chunk.get(key, 0)
        for key in ("inserted", "updated", "succeeded", "failed", "satellite_failures")
    }
    satellites = dict((previous or {}).get("satellites") or {})
    for category, count in chunk["satellites"].items():
        satellites[category] = satellites.get(category, 0) + count
    merged["satellites"] = satellites
    return merged


def _record_load_outcome(conn, job_id: str, load: LoadResult) -> None:
    failures: Dict[int, List[str]] = {}
    for error in load.failed:
        failures.setdefault(error.row_number, []).append(error.message)
    partial: Dict[int, List[str]] = {}
    for warning in load.warnings:
        partial.setdefault(warning.row_number, []).append(warning.message)

    params = [
        {
            "b_row_number": resolved.row_number,
            "b_status": "partial" if resolved.row_number in partial else "loaded",
            "b_error": "; ".join(partial[resolved.row_number]) if resolved.row_number in partial else None,
        }
        for resolved in load.succeeded
    ]
    params.extend(
        {"b_row_number": row_number, "b_status": "failed", "b_error": "; ".join(messages)}
        for row_number, messages in failures.items()
    )
    if not params:
        return
    conn.execute(
        update(staging_table)
        .where(staging_table.c.job_id == job_id, staging_table.c.row_number == bindparam("b_row_number"))
        .values(load_status=bindparam("b_status"), load_error=bindparam("b_error")),
        params,
    )


def _process_claimed(conn, job_id: str, token: str, chunk_size: int, start_index: Optional[int]) -> ChunkResult:
    job = job_store.get_job(job_id, conn=conn)
    if job["claim_token"] != token:
        raise ChunkClaimConflictError(job_id)

    if job["cancel_requested"]:
        job = job_store.transition_job(job_id, JobStatus.CANCELLED, expected=job["status"], conn=conn)
        logger.info("Import job %s cancelled at row %d of %d", job_id, job["cursor"], job["total_rows"])
        return _chunk_result(job)

    cursor = job["cursor"]
    if start_index is not None and start_index != cursor:
        if start_index > cursor:
            raise JobStateError(f"start_index {start_index} is ahead of the job cursor {cursor} for import job {job_id}")
        # The slice was already loaded by an earlier call.
        logger.info("Import job %s: rows from %d already processed (cursor %d)", job_id, start_index, cursor)
        job_store.release_claim(job_id, token, conn=conn)
        return _chunk_result(job_store.get_job(job_id, conn=conn))

    if job["status"] == JobStatus.VALIDATED.value:
        job = job_store.transition_job(job_id, JobStatus.PROCESSING, expected=JobStatus.VALIDATED, conn=conn)

    rows = conn.execute(
        select(staging_table.c.row_number, staging_table.c.mapped_data)
        .where(
            staging_table.c.job_id == job_id,
            staging_table.c.valid_index >= cursor,
            staging_table.c.valid_index < cursor + chunk_size,
        )
        .order_by(staging_table.c.valid_index)
    ).all()
    staged = [StagedRow(row_number=row.row_number, values=dict(row.mapped_data)) for row in rows]

    load = load_chunk(conn, job, staged)
    _record_load_outcome(conn, job_id, load)

    failed_count = len({error.row_number for error in load.failed})
    chunk_summary = load.summary()
    job = job_store.record_chunk(
        conn,
        job,
        token,
        processed=len(staged),
        succeeded=len(staged) - failed_count,
        failed=failed_count,
        load_summary=_merge_load_summary(job.get("load_summary"), chunk_summary),
    )
    logger.info(
        "Import job %s: processed rows %d-%d (%d failed), %d/%d done",
        job_id, cursor, cursor + len(staged), failed_count, job["processed_rows"], job["total_rows"],
    )
    errors = sorted(load.failed + load.warnings, key=lambda error: error.row_number)
    return _chunk_result(job, processed_count=len(staged), errors=errors, load_summary=chunk_summary)


def process_chunk(job_id: str, chunk_size: Optional[int] = None, start_index: Optional[int] = None) -> ChunkResult:
    """
    Load the next slice of a job's valid rows.

    Args:
        job_id: Job identifier
        chunk_size: Rows to load in this call (default and ceiling from settings)
        start_index: Slice start; defaults to the job's cursor. A value behind
            the cursor is a no-op, also on a completed job; a value ahead of it
            is rejected.

    Returns:
        ChunkResult; ``completed`` is True once every valid row was processed

    Raises:
        JobNotFoundError: Unknown job
        JobStateError: Job is terminal, not yet validated, or start_index is ahead of the cursor
        ChunkClaimConflictError: Another invocation is processing this job
        ImportSystemError: Database failure; the chunk was rolled back and can be retried
    """
    size = chunk_size or settings.default_chunk_size
    if size < 1:
        raise ValueError("chunk_size must be positive")
    size = min(size, settings.max_chunk_size)
    if start_index is not None and start_index < 0:
        raise ValueError("start_index must not be negative")

    job = job_store.get_job(job_id)
    status = JobStatus(job["status"])
    if status == JobStatus.COMPLETED and start_index is not None and start_index < job["cursor"]:
        # A retried call for a slice that was already loaded, typically the last one.
        logger.info("Import job %s already completed; rows from %d were processed", job_id, start_index)
        return _chunk_result(job)
    if status in TERMINAL_STATUSES:
        raise JobStateError(f"Import job {job_id} is {status.value}; no further chunks can be processed")
    if status not in PROCESSABLE_STATUSES:
        raise JobStateError(f"Import job {job_id} is {status.value}; validate it before processing")

    token, job, stale = job_store.claim_job(job_id)

    if stale and job["status"] == JobStatus.PROCESSING.value and settings.stalled_job_action == "fail":
        job = job_store.transition_job(
            job_id,
            JobStatus.FAILED,
            expected=JobStatus.PROCESSING,
            error_message=f"Processing stalled at row {job['cursor']} of {job['total_rows']}",
        )
        logger.error("Import job %s marked failed after a stalled chunk", job_id)
        return _chunk_result(job)

    try:
        with get_engine().begin() as conn:
            return _process_claimed(conn, job_id, token, size, start_index)
    except (ChunkClaimConflictError, JobStateError):
        job_store.release_claim(job_id, token)
        raise
    except (SQLAlchemyError, StorageError) as e:
        logger.error("Chunk for import job %s aborted: %s", job_id, e)
        try:
            job_store.release_claim(job_id, token)
        except SQLAlchemyError as release_error:
            # The claim expires after the TTL and the next call takes it over.
            logger.error("Could not release claim for import job %s: %s", job_id, release_error)
        raise ImportSystemError(f"Chunk for import job {job_id} aborted and can be retried: {e}") from e
    except Exception:
        logger.exception("Chunk for import job %s failed unexpectedly; releasing its claim", job_id)
        job_store.release_claim(job_id, token)
        raise


# ---------------------------------------------------------------------------
# Cancel / read
# ---------------------------------------------------------------------------

def cancel_job(job_id: str) -> Dict[str, Any]:
    """
    Request cooperative cancellation of a processing job.

    Rows already loaded stay loaded. Returns the job; its status is
    ``cancelled`` right away unless a chunk is in flight, in which case the
    next ``process_chunk`` call finishes the cancellation.
    """
    job, _ = job_store.request_cancel(job_id)
    return job


def get_job(job_id: str) -> Dict[str, Any]:
    return job_store.get_job(job_id)


def list_jobs(
    owner_id: Optional[str] = None,
    status: Optional[str] = None,
    import_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    if status is not None:
        status = JobStatus(status).value
    if import_type is not None:
        import_type = get_import_type(import_type).value
    return job_store.list_jobs(owner_id=owner_id, status=status, import_type=import_type, limit=limit, offset=offset)


def preview_file(
    file_content: bytes,
    file_name: str,
    import_type,
    template_id: Optional[str] = None,
    sample_size: int = 10,
) -> Dict[str, Any]:
    """
    Read the first rows of a file and suggest a mapping, without creating a job.

    Returns:
        ``headers``, ``sample_rows``, ``suggested_mapping``, ``missing_required_fields``
        and ``unmapped_optional_fields``
    """
    spec = get_spec(import_type)
    parsed = parse_file(file_content, file_name, nrows=sample_size)
    template_mapping = None
    if template_id:
        template = get_template(template_id)
        if template["import_type"] != spec.import_type.value:
            raise MappingError(f"Template '{template['name']}' is for {template['import_type']} imports")
        template_mapping = template["field_mappings"]

    suggested = suggest_mapping(parsed.headers, spec.import_type, template_mapping=template_mapping)
    targeted = set(suggested.values())
    return {
        "import_type": spec.import_type.value,
        "headers": parsed.headers,
        "sample_rows": parsed.records,
        "suggested_mapping": suggested,
        "missing_required_fields": missing_required_fields(spec.import_type, suggested),
        "unmapped_optional_fields": [name for name in spec.optional_fields if name not in targeted],
    }
