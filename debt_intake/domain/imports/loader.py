"""
Bulk loading of validated rows into the primary and satellite tables.

A chunk is loaded with set-based statements inside the caller's
transaction:

1. type-specific preparation (identity resolution for person-backed types,
   reference lookups such as client codes for portfolios);
2. one ``INSERT ... ON CONFLICT (natural_key) DO UPDATE`` for the slice, so
   re-loading the same rows never duplicates them; if the batch hits a
   constraint the slice is replayed row by row inside savepoints and only
   the offending rows fail;
3. satellite fan-out for the rows that loaded.
"""
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import DataError, IntegrityError

from debt_intake.db.models import MasterClient, PRIMARY_TABLES, _utcnow
from debt_intake.db.session import dialect_insert
from debt_intake.domain.imports.import_types import (
    FieldKind,
    ImportType,
    PERSON_IMPORT_TYPES,
    get_import_type,
    get_spec,
)
from debt_intake.domain.imports.identity import mask_identity
from debt_intake.domain.imports.resolver import PERSON_ATTRIBUTES, mark_deceased, resolve_persons
from debt_intake.domain.imports.satellites import (
    SATELLITE_CATEGORIES,
    SOURCE_BY_IMPORT_TYPE,
    extract_satellites,
    insert_satellites,
)
from debt_intake.domain.imports.validators import RowError

logger = logging.getLogger(__name__)

# Row-level database errors; anything else (connection loss, missing table)
# aborts the chunk.
ROW_LEVEL_DB_ERRORS = (IntegrityError, DataError)

_NEVER_UPDATED = frozenset({"id", "natural_key", "created_at"})
_ALWAYS_OVERWRITTEN = frozenset({"import_job_id", "updated_at"})


@dataclass
class StagedRow:
    """A validated row as stored in staging."""
    row_number: int
    values: Dict[str, Any]


@dataclass
class ResolvedRow:
    row_number: int
    natural_key: str
    record: Dict[str, Any]
    values: Dict[str, Any]
    person_id: Optional[str] = None


@dataclass
class LoadResult:
    inserted: int = 0
    updated: int = 0
    satellites: Dict[str, int] = field(default_factory=lambda: {category: 0 for category in SATELLITE_CATEGORIES})
    succeeded: List[ResolvedRow] = field(default_factory=list)
    failed: List[RowError] = field(default_factory=list)
    # Rows whose primary record loaded but whose related records did not.
    warnings: List[RowError] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "satellite_failures": len(self.warnings),
            "satellites": dict(self.satellites),
        }


def _db_error_message(exc: Exception) -> str:
    message = str(getattr(exc, "orig", None) or exc).strip().splitlines()[0]
    return message[:500]


def _typed_values(import_type: ImportType, values: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn staged JSON values back into Python types (ISO strings -> dates)."""
    spec = get_spec(import_type)
    typed = dict(values)
    for name, value in values.items():
        field_spec = spec.get(name)
        if field_spec is not None and field_spec.kind == FieldKind.DATE and isinstance(value, str):
            typed[name] = date.fromisoformat(value)
    return typed


def _person_attributes(values: Mapping[str, Any], deceased_field: str) -> Dict[str, Any]:
    attributes = {name: values.get(name) for name in PERSON_ATTRIBUTES if name in values}
    attributes["is_deceased"] = values.get(deceased_field) == "Y"
    return attributes


def _resolve_identities(conn, rows: Sequence[StagedRow], deceased_field: str) -> Tuple[Dict[str, str], List[RowError]]:
    candidates: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for row in rows:
        candidates.setdefault(row.values["ssn"], _person_attributes(row.values, deceased_field))

    try:
        with conn.begin_nested():
            persons = resolve_persons(conn, candidates)
    except ROW_LEVEL_DB_ERRORS as exc:
        logger.warning("Batch identity resolution failed (%s); resolving one key at a time", _db_error_message(exc))
        persons = {}
        failed_keys: Dict[str, str] = {}
        for key, attributes in candidates.items():
            try:
                with conn.begin_nested():
                    persons.update(resolve_persons(conn, {key: attributes}))
            except ROW_LEVEL_DB_ERRORS as key_exc:
                failed_keys[key] = _db_error_message(key_exc)
                logger.warning("Identity %s could not be resolved: %s", mask_identity(key), failed_keys[key])
        errors = [
            RowError(row.row_number, "ssn", f"Identity resolution failed: {failed_keys[row.values['ssn']]}", stage="load")
            for row in rows
            if row.values["ssn"] in failed_keys
        ]
        return persons, errors

    deceased = {
        persons[row.values["ssn"]]: row.values.get("deceased_date")
        for row in rows
        if row.values.get(deceased_field) == "Y"
    }
    mark_deceased(conn, deceased)
    return persons, []


def _prepare_accounts(conn, job: Mapping[str, Any], rows: Sequence[StagedRow]):
    persons, errors = _resolve_identities(conn, rows, "is_deceased")
    portfolio_id = job.get("portfolio_id")
    prepared = []
    for row in rows:
        person_id = persons.get(row.values["ssn"])
        if person_id is None:
            continue
        values = row.values
        natural_key = f"{portfolio_id or ''}:{values['original_account_number']}"
        prepared.append(ResolvedRow(
            row_number=row.row_number,
            natural_key=natural_key,
            person_id=person_id,
            values=values,
            record={
                "person_id": person_id,
                "portfolio_id": portfolio_id,
                "original_account_number": values["original_account_number"],
                "account_number": values.get("account_number"),
                "original_creditor": values.get("original_creditor"),
                "original_balance": values.get("original_balance"),
                "current_balance": values["current_balance"],
                "charge_off_date": values.get("charge_off_date"),
                "date_opened": values.get("date_opened"),
                "last_payment_date": values.get("last_payment_date"),
                "last_payment_amount": values.get("last_payment_amount"),
                "account_type": values.get("account_type"),
                "account_status": values.get("account_status"),
            },
        ))
    return prepared, errors


def _prepare_skip_trace(conn, job: Mapping[str, Any], rows: Sequence[StagedRow]):
    persons, errors = _resolve_identities(conn, rows, "deceased")
    prepared = []
    for row in rows:
        person_id = persons.get(row.values["ssn"])
        if person_id is None:
            continue
        values = row.values
        prepared.append(ResolvedRow(
            row_number=row.row_number,
            natural_key=values["ssn"],
            person_id=person_id,
            values=values,
            record={
                "person_id": person_id,
                "account_key": values.get("account_key"),
                "scrub_date": values.get("scrub_date"),
                "first_name": values.get("first_name"),
                "last_name": values.get("last_name"),
                "date_of_birth": values.get("date_of_birth"),
                "deceased_flag": values.get("deceased"),
            },
        ))
    return prepared, errors


def _prepare_portfolios(conn, job: Mapping[str, Any], rows: Sequence[StagedRow]):
    clients_table = MasterClient.__table__
    codes = sorted({row.values["client_code"] for row in rows})
    client_ids = dict(
        conn.execute(select(clients_table.c.code, clients_table.c.id).where(clients_table.c.code.in_(codes))).all()
    ) if codes else {}

    prepared, errors = [], []
    for row in rows:
        values = row.values
        client_id = client_ids.get(values["client_code"])
        if client_id is None:
            errors.append(RowError(
                row.row_number, "client_code", f"Client '{values['client_code']}' does not exist", stage="load",
            ))
            continue
        prepared.append(ResolvedRow(
            row_number=row.row_number,
            natural_key=f"{client_id}:{values['name']}",
            values=values,
            record={
                "name": values["name"],
                "client_id": client_id,
                "description": values.get("description"),
                "portfolio_type": values.get("portfolio_type"),
                "original_balance": values["original_balance"],
                "account_count": values["account_count"],
                "charge_off_date": values.get("charge_off_date"),
                "debt_age_months": values.get("debt_age_months"),
                "average_balance": values.get("average_balance"),
                "status": values.get("status"),
            },
        ))
    return prepared, errors


def _contact_record(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "code": values["code"],
        "name": values["name"],
        "contact_name": values.get("contact_name"),
        "contact_email": values.get("contact_email"),
        "contact_phone": values.get("contact_phone"),
        "address_line1": values.get("address_line1"),
        "city": values.get("city"),
        "state": values.get("state"),
        "zip_code": values.get("zip_code"),
        "status": values.get("status"),
    }


def _prepare_clients(conn, job: Mapping[str, Any], rows: Sequence[StagedRow]):
    prepared = []
    for row in rows:
        record = _contact_record(row.values)
        record["client_type"] = row.values.get("client_type")
        prepared.append(ResolvedRow(row.row_number, row.values["code"], record, row.values))
    return prepared, []


def _prepare_agencies(conn, job: Mapping[str, Any], rows: Sequence[StagedRow]):
    prepared = []
    for row in rows:
        record = _contact_record(row.values)
        record["subscription_tier"] = row.values.get("subscription_tier")
        prepared.append(ResolvedRow(row.row_number, row.values["code"], record, row.values))
    return prepared, []


_PREPARERS: Dict[ImportType, Callable] = {
    ImportType.ACCOUNTS: _prepare_accounts,
    ImportType.SKIP_TRACE: _prepare_skip_trace,
    ImportType.PORTFOLIOS: _prepare_portfolios,
    ImportType.CLIENTS: _prepare_clients,
    ImportType.AGENCIES: _prepare_agencies,
}


def _upsert_statement(conn, table, columns: Sequence[str]):
    insert_stmt = dialect_insert(table, conn)
    set_ = {}
    for column in columns:
        if column in _NEVER_UPDATED:
            continue
        if column in _ALWAYS_OVERWRITTEN:
            set_[column] = insert_stmt.excluded[column]
        else:
            # Blank cells in a later file do not erase known values.
            set_[column] = func.coalesce(insert_stmt.excluded[column], table.c[column])
    return insert_stmt.on_conflict_do_update(index_elements=["natural_key"], set_=set_)


def _upsert_primary(conn, table, groups: "OrderedDict[str, List[ResolvedRow]]", job_id: str):
    """Upsert one record per natural key. Returns (inserted, updated, {natural_key: error})."""
    keys = list(groups)
    existing = set()
    for start in range(0, len(keys), 500):
        batch = keys[start:start + 500]
        existing.update(conn.execute(select(table.c.natural_key).where(table.c.natural_key.in_(batch))).scalars())

    now = _utcnow()
    records = []
    for natural_key, group in groups.items():
        # The last row for a key wins, as it would across separate files.
        record = dict(group[-1].record)
        record.update({
            "id": str(uuid.uuid4()),
            "natural_key": natural_key,
            "import_job_id": job_id,
            "created_at": now,
            "updated_at": now,
        })
        records.append(record)
    columns = sorted({column for record in records for column in record})
    records = [{column: record.get(column) for column in columns} for record in records]
    stmt = _upsert_statement(conn, table, columns)

    failed: Dict[str, str] = {}
    try:
        with conn.begin_nested():
            conn.execute(stmt, records)
    except ROW_LEVEL_DB_ERRORS as exc:
        logger.warning(
            "Set-based upsert into %s failed (%s); isolating failing rows",
            table.name, _db_error_message(exc),
        )
        for record in records:
            try:
                with conn.begin_nested():
                    conn.execute(stmt, [record])
            except ROW_LEVEL_DB_ERRORS as row_exc:
                failed[record["natural_key"]] = _db_error_message(row_exc)

    loaded = [key for key in keys if key not in failed]
    inserted = sum(1 for key in loaded if key not in existing)
    return inserted, len(loaded) - inserted, failed


def _load_satellites(conn, job_id: str, import_type: ImportType, result: LoadResult, candidates) -> None:
    """
    Insert related records for the loaded rows of a chunk.

    A failing batch is replayed one row at a time; rows that still fail keep
    their primary record and are reported as satellite warnings.
    """
    source = SOURCE_BY_IMPORT_TYPE[import_type]
    try:
        with conn.begin_nested():
            result.satellites.update(insert_satellites(conn, candidates, source=source, job_id=job_id))
        return
    except ROW_LEVEL_DB_ERRORS as exc:
        logger.warning(
            "Satellite batch for job %s failed (%s); inserting row by row",
            job_id, _db_error_message(exc),
        )

    for resolved, candidate in zip(result.succeeded, candidates):
        try:
            with conn.begin_nested():
                counts = insert_satellites(conn, [candidate], source=source, job_id=job_id)
        except ROW_LEVEL_DB_ERRORS as row_exc:
            message = _db_error_message(row_exc)
            logger.error("Related records for row %d of job %s not saved: %s", resolved.row_number, job_id, message)
            result.warnings.append(
                RowError(resolved.row_number, None, f"Related records not saved: {message}", stage="satellites")
            )
            continue
        for category, count in counts.items():
            result.satellites[category] += count


def load_chunk(conn, job: Mapping[str, Any], rows: Sequence[StagedRow]) -> LoadResult:
    """
    Load a slice of validated rows for ``job``.

    Args:
        conn: Connection of the chunk's transaction
        job: Job record (import type, id, portfolio)
        rows: Validated rows of the slice, in order

    Returns:
        LoadResult with per-row success/failure and insert/update/satellite counts
    """
    import_type = get_import_type(job["import_type"])
    table = PRIMARY_TABLES[import_type.value].__table__
    result = LoadResult()
    if not rows:
        return result

    typed_rows = [StagedRow(row.row_number, _typed_values(import_type, row.values)) for row in rows]
    prepared, failures = _PREPARERS[import_type](conn, job, typed_rows)
    result.failed.extend(failures)

    groups: "OrderedDict[str, List[ResolvedRow]]" = OrderedDict()
    for resolved in prepared:
        groups.setdefault(resolved.natural_key, []).append(resolved)

    if groups:
        inserted, updated, failed_keys = _upsert_primary(conn, table, groups, job["id"])
        result.inserted += inserted
        result.updated += updated
        for natural_key, group in groups.items():
            if natural_key in failed_keys:
                result.failed.extend(
                    RowError(resolved.row_number, None, failed_keys[natural_key], stage="load") for resolved in group
                )
            else:
                result.succeeded.extend(group)

    if import_type in PERSON_IMPORT_TYPES and result.succeeded:
        candidates = [
            (resolved.person_id, extract_satellites(import_type, resolved.values))
            for resolved in result.succeeded
        ]
        _load_satellites(conn, job["id"], import_type, result, candidates)

    result.failed.sort(key=lambda error: error.row_number)
    result.warnings.sort(key=lambda error: error.row_number)
    result.succeeded.sort(key=lambda resolved: resolved.row_number)
    logger.info(
        "Loaded %d %s rows for job %s: %d inserted, %d updated, %d failed",
        len(rows), import_type.value, job["id"], result.inserted, result.updated, len(result.failed),
    )
    return result
