"""
Persistent state for import jobs.

The job row is the only coordination point between the short-lived
invocations that validate and process a file. Every status change is a
conditional UPDATE gated on the status the caller observed, and chunk
processing is serialized through an explicit claim (``claim_token`` /
``claimed_at``) so that two invocations never advance the same cursor.

All functions accept an optional ``conn``; when given, the statement joins
the caller's transaction instead of opening its own.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update

from debt_intake.core.config import settings
from debt_intake.core.errors import (
    ChunkClaimConflictError,
    InvalidTransitionError,
    JobNotFoundError,
    JobStateError,
)
from debt_intake.db.models import ImportJob, _utcnow
from debt_intake.db.session import get_engine

logger = logging.getLogger(__name__)

jobs_table = ImportJob.__table__


class JobStatus(str, Enum):
    PENDING = "pending"
    UPLOADED = "uploaded"
    VALIDATING = "validating"
    VALIDATED = "validated"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
PROCESSABLE_STATUSES = frozenset({JobStatus.VALIDATED, JobStatus.PROCESSING})

ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.UPLOADED}),
    JobStatus.UPLOADED: frozenset({JobStatus.VALIDATING}),
    JobStatus.VALIDATING: frozenset({JobStatus.VALIDATED, JobStatus.UPLOADED, JobStatus.FAILED}),
    JobStatus.VALIDATED: frozenset({JobStatus.VALIDATING, JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

# Timestamp columns stamped when a job enters a status.
_ENTRY_TIMESTAMPS = {
    JobStatus.VALIDATING: "validation_started_at",
    JobStatus.VALIDATED: "validation_completed_at",
    JobStatus.PROCESSING: "processing_started_at",
    JobStatus.COMPLETED: "processing_completed_at",
    JobStatus.FAILED: "processing_completed_at",
    JobStatus.CANCELLED: "processing_completed_at",
}

# Columns callers may set through update_job; status, counters and claim
# columns only move through the dedicated functions below.
_UPDATABLE_COLUMNS = frozenset({
    "file_path",
    "field_mapping",
    "template_id",
    "error_message",
    "validation_summary",
    "failed_rows_path",
    "portfolio_id",
    "created_portfolio",
})


def can_transition(current, target) -> bool:
    return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]


@contextmanager
def _connection(conn=None) -> Iterator[Any]:
    if conn is not None:
        yield conn
        return
    with get_engine().begin() as new_conn:
        yield new_conn


def _row_to_job(row: Any) -> Dict[str, Any]:
    job = dict(row)
    job["progress"] = int(job.get("progress") or 0)
    return job


def compute_progress(processed_rows: int, total_rows: int) -> int:
    if total_rows <= 0:
        return 100
    return min(100, round(processed_rows * 100 / total_rows))


def performance_metrics(
    job: Dict[str, Any],
    completed_at: datetime,
    processed_rows: int,
    successful_rows: int,
    failed_rows: int,
) -> Dict[str, Any]:
    """Throughput and success rate of a finished job, measured from the first chunk."""
    started_at = job.get("processing_started_at") or completed_at
    seconds = max((completed_at - started_at).total_seconds(), 0.0)
    return {
        "source_rows": job.get("source_rows", 0),
        "total_rows": processed_rows,
        "successful_rows": successful_rows,
        "failed_rows": failed_rows,
        "invalid_rows": job.get("invalid_rows", 0),
        "processing_time_seconds": round(seconds, 3),
        "rows_per_second": round(processed_rows / seconds, 2) if seconds > 0 else float(processed_rows),
        "success_rate": round(successful_rows * 100 / processed_rows, 2) if processed_rows else 100.0,
        "started_at": started_at.isoformat(),
        "completed_at": completed_at.isoformat(),
    }


def create_job_record(
    *,
    file_name: str,
    file_size: int,
    file_type: str,
    import_type: str,
    owner_id: Optional[str] = None,
    field_mapping: Optional[Dict[str, Any]] = None,
    template_id: Optional[str] = None,
    portfolio_id: Optional[str] = None,
    created_portfolio: bool = False,
    job_id: Optional[str] = None,
    conn=None,
) -> Dict[str, Any]:
    """Insert a new job in ``pending`` status and return it."""
    job_id = job_id or str(uuid.uuid4())
    now = _utcnow()
    values = {
        "id": job_id,
        "owner_id": owner_id,
        "file_name": file_name,
        "file_size": file_size,
        "file_type": file_type,
        "import_type": import_type,
        "field_mapping": field_mapping,
        "template_id": template_id,
        "portfolio_id": portfolio_id,
        "created_portfolio": created_portfolio,
        "status": JobStatus.PENDING.value,
        "progress": 0,
        "source_rows": 0,
        "total_rows": 0,
        "invalid_rows": 0,
        "processed_rows": 0,
        "successful_rows": 0,
        "failed_rows": 0,
        "cursor": 0,
        "cancel_requested": False,
        "created_at": now,
        "updated_at": now,
    }
    with _connection(conn) as c:
        c.execute(jobs_table.insert().values(**values))
        job = get_job(job_id, conn=c)
    logger.info("Created %s import job %s for %s", import_type, job_id, file_name)
    return job


def get_job(job_id: str, conn=None) -> Dict[str, Any]:
    with _connection(conn) as c:
        row = c.execute(select(jobs_table).where(jobs_table.c.id == job_id)).mappings().first()
    if row is None:
        raise JobNotFoundError(job_id)
    return _row_to_job(row)


def list_jobs(
    *,
    owner_id: Optional[str] = None,
    status: Optional[str] = None,
    import_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    """Return a page of jobs, newest first, plus the total matching count."""
    conditions = []
    if owner_id is not None:
        conditions.append(jobs_table.c.owner_id == owner_id)
    if status is not None:
        conditions.append(jobs_table.c.status == status)
    if import_type is not None:
        conditions.append(jobs_table.c.import_type == import_type)
    where = and_(*conditions) if conditions else None

    query = select(jobs_table).order_by(jobs_table.c.created_at.desc()).limit(limit).offset(offset)
    count_query = select(func.count()).select_from(jobs_table)
    if where is not None:
        query = query.where(where)
        count_query = count_query.where(where)

    with _connection() as c:
        rows = c.execute(query).mappings().all()
        total = c.execute(count_query).scalar_one()
    return [_row_to_job(row) for row in rows], int(total)


def update_job(job_id: str, conn=None, **fields: Any) -> Dict[str, Any]:
    """
    Update descriptive columns of a non-terminal job.

    Raises:
        ValueError: If a column outside the updatable set is passed
        JobStateError: If the job is already terminal
    """
    unknown = set(fields) - _UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Columns cannot be updated directly: {sorted(unknown)}")

    terminal = [status.value for status in TERMINAL_STATUSES]
    with _connection(conn) as c:
        result = c.execute(
            update(jobs_table)
            .where(jobs_table.c.id == job_id, jobs_table.c.status.notin_(terminal))
            .values(updated_at=_utcnow(), **fields)
        )
        if result.rowcount == 0:
            job = get_job(job_id, conn=c)
            raise JobStateError(f"Import job {job_id} is {job['status']} and can no longer be modified")
        return get_job(job_id, conn=c)


def transition_job(
    job_id: str,
    target,
    *,
    expected=None,
    conn=None,
    **fields: Any,
) -> Dict[str, Any]:
    """
    Move a job to ``target`` if the transition is allowed from its current status.

    The UPDATE is conditioned on the status that was checked, so a concurrent
    writer makes this call fail instead of being silently overwritten.

    Args:
        job_id: Job identifier
        target: Target status
        expected: Status the caller believes the job is in (read from the row when omitted)
        conn: Optional connection to join
        **fields: Additional columns written in the same statement

    Returns:
        The updated job

    Raises:
        JobNotFoundError: Unknown job
        InvalidTransitionError: Transition not allowed, or the status changed underneath
    """
    target = JobStatus(target)
    with _connection(conn) as c:
        current = JobStatus(expected) if expected is not None else JobStatus(get_job(job_id, conn=c)["status"])
        if not can_transition(current, target):
            raise InvalidTransitionError(job_id, current.value, target.value)

        now = _utcnow()
        values = {"status": target.value, "updated_at": now, **fields}
        stamp = _ENTRY_TIMESTAMPS.get(target)
        if stamp and stamp not in values:
            values[stamp] = now
        if target == JobStatus.PROCESSING:
            # Only the first entry into processing counts as the start.
            values["processing_started_at"] = func.coalesce(jobs_table.c.processing_started_at, now)
        if target in TERMINAL_STATUSES:
            values.setdefault("claim_token", None)
            values.setdefault("claimed_at", None)

        result = c.execute(
            update(jobs_table)
            .where(jobs_table.c.id == job_id, jobs_table.c.status == current.value)
            .values(**values)
        )
        if result.rowcount == 0:
            actual = get_job(job_id, conn=c)["status"]
            raise InvalidTransitionError(job_id, actual, target.value)
        job = get_job(job_id, conn=c)

    logger.info("Import job %s: %s -> %s", job_id, current.value, target.value)
    return job


def _stale_cutoff(now: datetime) -> datetime:
    return now - timedelta(seconds=settings.chunk_claim_ttl_seconds)


def _validation_cutoff(now: datetime) -> datetime:
    return now - timedelta(seconds=settings.validation_stale_seconds)


def is_validation_stale(job: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """True for a ``validating`` job whose validation started longer ago than the stale limit."""
    if job["status"] != JobStatus.VALIDATING.value:
        return False
    started = job.get("validation_started_at") or job.get("updated_at")
    return started is None or started < _validation_cutoff(now or _utcnow())


def take_over_validation(job_id: str, **fields: Any) -> Dict[str, Any]:
    """
    Restart a validation whose invocation died.

    Re-stamps ``validation_started_at`` only if the previous start is older
    than the stale limit, so of two callers racing for the same job exactly
    one wins.

    Raises:
        JobStateError: The job is not validating, or its validation is still live
    """
    now = _utcnow()
    last_start = func.coalesce(jobs_table.c.validation_started_at, jobs_table.c.updated_at)
    with _connection() as c:
        before = get_job(job_id, conn=c)
        result = c.execute(
            update(jobs_table)
            .where(
                jobs_table.c.id == job_id,
                jobs_table.c.status == JobStatus.VALIDATING.value,
                last_start < _validation_cutoff(now),
            )
            .values(validation_started_at=now, updated_at=now, **fields)
        )
        if result.rowcount == 0:
            job = get_job(job_id, conn=c)
            raise JobStateError(
                f"Import job {job_id} is {job['status']}; validation is already running"
                if job["status"] == JobStatus.VALIDATING.value
                else f"Import job {job_id} is {job['status']}; only a stalled validation can be taken over"
            )
        job = get_job(job_id, conn=c)

    logger.warning(
        "Import job %s: restarting validation abandoned since %s",
        job_id, before["validation_started_at"],
    )
    return job


def claim_job(job_id: str) -> Tuple[str, Dict[str, Any], bool]:
    """
    Atomically acquire the right to advance a job's cursor.

    The claim succeeds only when the job is processable and nobody holds a
    live claim. A claim older than ``chunk_claim_ttl_seconds`` belongs to an
    invocation that died and is taken over.

    Returns:
        ``(claim_token, job, took_over_stale_claim)``

    Raises:
        JobNotFoundError: Unknown job
        JobStateError: Job is not in validated/processing status
        ChunkClaimConflictError: Another invocation holds a live claim
    """
    token = str(uuid.uuid4())
    now = _utcnow()
    cutoff = _stale_cutoff(now)
    processable = [status.value for status in PROCESSABLE_STATUSES]

    with _connection() as c:
        before = get_job(job_id, conn=c)
        result = c.execute(
            update(jobs_table)
            .where(
                jobs_table.c.id == job_id,
                jobs_table.c.status.in_(processable),
                or_(
                    jobs_table.c.claim_token.is_(None),
                    jobs_table.c.claimed_at.is_(None),
                    jobs_table.c.claimed_at < cutoff,
                ),
            )
            .values(claim_token=token, claimed_at=now)
        )
        if result.rowcount == 0:
            job = get_job(job_id, conn=c)
            if JobStatus(job["status"]) not in PROCESSABLE_STATUSES:
                raise JobStateError(
                    f"Import job {job_id} is {job['status']}; chunks can only be processed "
                    f"for validated or processing jobs"
                )
            raise ChunkClaimConflictError(job_id)
        job = get_job(job_id, conn=c)

    stale = before["claim_token"] is not None
    if stale:
        logger.warning(
            "Import job %s: took over stale claim %s (claimed at %s, no progress since %s)",
            job_id, before["claim_token"], before["claimed_at"], before["last_progress_at"],
        )
    logger.debug("Import job %s claimed with token %s", job_id, token)
    return token, job, stale


def release_claim(job_id: str, token: str, conn=None) -> bool:
    """Drop a claim if ``token`` still owns it. Returns False when it was already lost."""
    with _connection(conn) as c:
        result = c.execute(
            update(jobs_table)
            .where(jobs_table.c.id == job_id, jobs_table.c.claim_token == token)
            .values(claim_token=None, claimed_at=None)
        )
    released = result.rowcount > 0
    if not released:
        logger.warning("Import job %s: claim %s was no longer held at release", job_id, token)
    return released


def record_chunk(
    conn,
    job: Dict[str, Any],
    token: str,
    *,
    processed: int,
    succeeded: int,
    failed: int,
    load_summary: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Advance counters and cursor after a chunk and release the claim.

    Runs inside the chunk's transaction; the update is conditioned on the
    claim token and the cursor the chunk started from, so a lost claim rolls
    the whole chunk back.

    Raises:
        ChunkClaimConflictError: The claim or cursor moved underneath this invocation
    """
    job_id = job["id"]
    now = _utcnow()
    new_cursor = job["cursor"] + processed
    processed_rows = job["processed_rows"] + processed
    total_rows = job["total_rows"]
    completed = processed_rows >= total_rows
    progress = 100 if completed else max(job["progress"], compute_progress(processed_rows, total_rows))

    values = {
        "cursor": new_cursor,
        "processed_rows": jobs_table.c.processed_rows + processed,
        "successful_rows": jobs_table.c.successful_rows + succeeded,
        "failed_rows": jobs_table.c.failed_rows + failed,
        "progress": progress,
        "last_progress_at": now,
        "updated_at": now,
        "claim_token": None,
        "claimed_at": None,
    }
    if load_summary is not None:
        values["load_summary"] = load_summary
    if completed:
        values["status"] = JobStatus.COMPLETED.value
        values["processing_completed_at"] = now
        values["performance_metrics"] = performance_metrics(
            job,
            now,
            processed_rows,
            job["successful_rows"] + succeeded,
            job["failed_rows"] + failed,
        )

    result = conn.execute(
        update(jobs_table)
        .where(
            jobs_table.c.id == job_id,
            jobs_table.c.claim_token == token,
            jobs_table.c.cursor == job["cursor"],
            jobs_table.c.status == JobStatus.PROCESSING.value,
        )
        .values(**values)
    )
    if result.rowcount == 0:
        raise ChunkClaimConflictError(job_id)

    if completed:
        metrics = values["performance_metrics"]
        logger.info(
            "Import job %s: processing -> completed (%d rows in %.1fs, %.1f rows/s, %.1f%% succeeded)",
            job_id, processed_rows, metrics["processing_time_seconds"],
            metrics["rows_per_second"], metrics["success_rate"],
        )
    return get_job(job_id, conn=conn)


def request_cancel(job_id: str) -> Tuple[Dict[str, Any], bool]:
    """
    Flag a processing job for cancellation.

    If no invocation holds a live claim the job is cancelled immediately;
    otherwise the next invocation honors the flag.

    Returns:
        ``(job, cancelled_now)``

    Raises:
        JobNotFoundError: Unknown job
        JobStateError: Job is not processing
    """
    now = _utcnow()
    with _connection() as c:
        job = get_job(job_id, conn=c)
        if job["status"] != JobStatus.PROCESSING.value:
            raise JobStateError(
                f"Import job {job_id} is {job['status']}; only processing jobs can be cancelled"
            )
        flagged = c.execute(
            update(jobs_table)
            .where(jobs_table.c.id == job_id, jobs_table.c.status == JobStatus.PROCESSING.value)
            .values(cancel_requested=True, updated_at=now)
        )
        if flagged.rowcount == 0:
            actual = get_job(job_id, conn=c)["status"]
            raise JobStateError(f"Import job {job_id} is {actual}; only processing jobs can be cancelled")

        cancelled = c.execute(
            update(jobs_table)
            .where(
                jobs_table.c.id == job_id,
                jobs_table.c.status == JobStatus.PROCESSING.value,
                or_(
                    jobs_table.c.claim_token.is_(None),
                    jobs_table.c.claimed_at < _stale_cutoff(now),
                ),
            )
            .values(
                status=JobStatus.CANCELLED.value,
                processing_completed_at=now,
                claim_token=None,
                claimed_at=None,
                updated_at=now,
            )
        )
        job = get_job(job_id, conn=c)

    cancelled_now = cancelled.rowcount > 0
    if cancelled_now:
        logger.info("Import job %s: processing -> cancelled at row %d", job_id, job["cursor"])
    else:
        logger.info("Import job %s: cancellation requested; a chunk is in flight", job_id)
    return job, cancelled_now


def find_stalled_jobs(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """
    List jobs that stopped moving.

    A processing job is stalled when its cursor has not moved for longer
    than the claim TTL; ``abandoned_claim`` is True when it is still
    claimed, i.e. the invocation that claimed it died mid-chunk. A
    validating job is stalled once its validation has run longer than
    ``validation_stale_seconds``; calling validate again restarts it.
    """
    now = now or _utcnow()
    last_activity = func.coalesce(jobs_table.c.last_progress_at, jobs_table.c.processing_started_at)
    validation_start = func.coalesce(jobs_table.c.validation_started_at, jobs_table.c.updated_at)
    query = (
        select(jobs_table)
        .where(or_(
            and_(jobs_table.c.status == JobStatus.PROCESSING.value, last_activity < _stale_cutoff(now)),
            and_(jobs_table.c.status == JobStatus.VALIDATING.value, validation_start < _validation_cutoff(now)),
        ))
        .order_by(jobs_table.c.updated_at)
    )
    with _connection() as c:
        rows = c.execute(query).mappings().all()

    stalled = []
    for row in rows:
        job = _row_to_job(row)
        job["abandoned_claim"] = job["claim_token"] is not None
        stalled.append(job)
    if stalled:
        logger.warning("Found %d stalled import job(s)", len(stalled))
    return stalled


def set_failed_rows_path(job_id: str, file_path: Optional[str], conn=None) -> None:
    """Record where the failed-row export lives; allowed in any status, including terminal ones."""
    with _connection(conn) as c:
        c.execute(update(jobs_table).where(jobs_table.c.id == job_id).values(failed_rows_path=file_path))


def delete_job_record(job_id: str, conn) -> None:
    conn.execute(jobs_table.delete().where(jobs_table.c.id == job_id))
