"""
Cascading deletion of an import job.

Removes everything the job introduced: its primary rows (by provenance),
persons that no remaining account or skip-trace subject references, together
with their satellite rows, the portfolio the job created when nothing else
uses it, the staging rows, the job record and the stored files. Persons and
satellites still referenced through another job's rows are kept.

Provenance is last-writer: a primary row re-imported by a later job belongs
to that later job and survives deletion of the earlier one.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import and_, exists, or_, select

from debt_intake.core.config import settings
from debt_intake.core.errors import ChunkClaimConflictError, DeleteConfirmationError, JobStateError
from debt_intake.db.models import (
    DebtAccount,
    ImportJob,
    ImportStagingRow,
    MasterPortfolio,
    Person,
    PRIMARY_TABLES,
    SATELLITE_TABLES,
    SkipTraceSubject,
    _utcnow,
)
from debt_intake.db.session import get_engine
from debt_intake.domain.imports import jobs as job_store
from debt_intake.domain.imports.import_types import ImportType, get_import_type
from debt_intake.integrations.storage import delete_file

logger = logging.getLogger(__name__)

accounts_table = DebtAccount.__table__
subjects_table = SkipTraceSubject.__table__
portfolios_table = MasterPortfolio.__table__
persons_table = Person.__table__
staging_table = ImportStagingRow.__table__
jobs_table = ImportJob.__table__

DELETE_BATCH_SIZE = 500


def _batches(items: List[Any], size: int = DELETE_BATCH_SIZE):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _delete_primary_rows(conn, import_type: ImportType, job_id: str) -> Dict[str, Any]:
    """Delete the job's primary rows. Returns counts and the persons they referenced."""
    table = PRIMARY_TABLES[import_type.value].__table__
    owned = table.c.import_job_id == job_id

    if import_type == ImportType.PORTFOLIOS:
        # Portfolios that accounts or other jobs point at stay.
        in_use = or_(
            exists().where(accounts_table.c.portfolio_id == table.c.id),
            exists().where(jobs_table.c.portfolio_id == table.c.id, jobs_table.c.id != job_id),
        )
    elif import_type == ImportType.CLIENTS:
        in_use = exists().where(portfolios_table.c.client_id == table.c.id)
    else:
        in_use = None

    preserved = 0
    if in_use is not None:
        preserved = len(conn.execute(select(table.c.id).where(owned, in_use)).all())
        owned = and_(owned, ~in_use)

    person_ids: Set[str] = set()
    if "person_id" in table.c:
        person_ids = set(conn.execute(select(table.c.person_id).where(owned)).scalars())

    deleted = conn.execute(table.delete().where(owned)).rowcount
    return {"deleted": deleted, "preserved": preserved, "person_ids": person_ids}


def _delete_orphaned_persons(conn, person_ids: Set[str]) -> Dict[str, Any]:
    """Delete persons no primary row references any more, with all their satellites."""
    satellites_deleted = {category: 0 for category in SATELLITE_TABLES}
    persons_deleted = 0

    for batch in _batches(sorted(person_ids)):
        referenced = set(conn.execute(
            select(accounts_table.c.person_id).where(accounts_table.c.person_id.in_(batch))
        ).scalars())
        referenced.update(conn.execute(
            select(subjects_table.c.person_id).where(subjects_table.c.person_id.in_(batch))
        ).scalars())
        orphans = [person_id for person_id in batch if person_id not in referenced]
        if not orphans:
            continue

        for category, model in SATELLITE_TABLES.items():
            table = model.__table__
            satellites_deleted[category] += conn.execute(
                table.delete().where(table.c.person_id.in_(orphans))
            ).rowcount
        persons_deleted += conn.execute(
            persons_table.delete().where(persons_table.c.id.in_(orphans))
        ).rowcount

    return {
        "persons_deleted": persons_deleted,
        "persons_preserved": len(person_ids) - persons_deleted,
        "satellites_deleted": satellites_deleted,
    }


def _delete_created_portfolio(conn, job: Dict[str, Any]) -> bool:
    portfolio_id = job.get("portfolio_id")
    if not job.get("created_portfolio") or not portfolio_id:
        return False

    used_by_accounts = conn.execute(
        select(accounts_table.c.id).where(accounts_table.c.portfolio_id == portfolio_id).limit(1)
    ).first()
    used_by_jobs = conn.execute(
        select(jobs_table.c.id)
        .where(jobs_table.c.portfolio_id == portfolio_id, jobs_table.c.id != job["id"])
        .limit(1)
    ).first()
    if used_by_accounts or used_by_jobs:
        logger.info("Keeping portfolio %s created by import job %s: still in use", portfolio_id, job["id"])
        return False

    conn.execute(portfolios_table.delete().where(portfolios_table.c.id == portfolio_id))
    return True


def delete_job(job_id: str, file_name: Optional[str] = None) -> Dict[str, Any]:
    """
    Delete an import job and every row it introduced.

    Args:
        job_id: Job identifier
        file_name: When given, must equal the job's file name

    Returns:
        Summary of what was removed and what was kept

    Raises:
        JobNotFoundError: Unknown job
        DeleteConfirmationError: ``file_name`` does not match
        JobStateError: Job is being validated and the validation is still live
        ChunkClaimConflictError: A chunk is currently being processed
    """
    job = job_store.get_job(job_id)
    if file_name is not None and file_name != job["file_name"]:
        raise DeleteConfirmationError(
            f"File name '{file_name}' does not match import job {job_id} ('{job['file_name']}')"
        )
    if job["status"] == job_store.JobStatus.VALIDATING.value and not job_store.is_validation_stale(job):
        raise JobStateError(f"Import job {job_id} is being validated; try again when validation finishes")
    live_claim_after = _utcnow() - timedelta(seconds=settings.chunk_claim_ttl_seconds)
    if job["claim_token"] is not None and job["claimed_at"] is not None and job["claimed_at"] >= live_claim_after:
        raise ChunkClaimConflictError(job_id)

    import_type = get_import_type(job["import_type"])
    with get_engine().begin() as conn:
        primary = _delete_primary_rows(conn, import_type, job_id)
        persons = _delete_orphaned_persons(conn, primary["person_ids"])
        portfolio_deleted = _delete_created_portfolio(conn, job)
        staging_deleted = conn.execute(staging_table.delete().where(staging_table.c.job_id == job_id)).rowcount
        job_store.delete_job_record(job_id, conn)

    files_deleted = 0
    for path in (job.get("file_path"), job.get("failed_rows_path")):
        if not path:
            continue
        if delete_file(path):
            files_deleted += 1
        else:
            logger.warning("Stored file %s of deleted import job %s could not be removed", path, job_id)

    summary = {
        "job_id": job_id,
        "import_type": import_type.value,
        "primary_deleted": primary["deleted"],
        "primary_preserved": primary["preserved"],
        "persons_deleted": persons["persons_deleted"],
        "persons_preserved": persons["persons_preserved"],
        "satellites_deleted": persons["satellites_deleted"],
        "portfolio_deleted": portfolio_deleted,
        "staging_rows_deleted": staging_deleted,
        "files_deleted": files_deleted,
    }
    logger.info(
        "Deleted import job %s: %d %s rows, %d persons, portfolio deleted=%s",
        job_id, primary["deleted"], import_type.value, persons["persons_deleted"], portfolio_deleted,
    )
    return summary
