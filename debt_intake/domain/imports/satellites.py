"""
Satellite records: secondary facts about a Person (addresses, phones,
emails, relatives, vehicles, employment, bankruptcies).

Each category has a dedup key compared as an exact string per person:
formatted phone number, lowercased email, the joined full address, the
relative's name, VIN (or make|model|year), employer name and bankruptcy
case number. Candidates are deduplicated within the chunk, checked against
existing rows with one query per category and inserted in one batch.
"""
import logging
import uuid
from collections import OrderedDict
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import select

from debt_intake.db.models import SATELLITE_TABLES, _utcnow
from debt_intake.db.session import dialect_insert
from debt_intake.domain.imports.import_types import ImportType

logger = logging.getLogger(__name__)

SATELLITE_CATEGORIES = tuple(SATELLITE_TABLES)
DEDUP_KEY_MAX_LENGTH = 512
EXISTING_LOOKUP_BATCH = 400

SOURCE_BY_IMPORT_TYPE = {
    ImportType.ACCOUNTS: "import",
    ImportType.SKIP_TRACE: "skip_trace_import",
}

ACCOUNT_PHONE_FIELDS = (
    ("phone", None),
    ("home_phone", "home"),
    ("work_phone", "work"),
    ("cell_phone", "mobile"),
)
ACCOUNT_EMAIL_FIELDS = (("email", "personal"), ("work_email", "work"))


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        return date.fromisoformat(value)
    return None


def _join_address(*parts: Optional[str]) -> str:
    return ", ".join(part for part in parts if part)


def _address(values, line1, line2, city, state, zip_code, county=None, first_seen=None, last_seen=None, address_type=None):
    if not values.get(line1):
        return None
    full_address = _join_address(values.get(line1), values.get(city), values.get(state), values.get(zip_code))
    return {
        "dedup_key": full_address,
        "address_line1": values.get(line1),
        "address_line2": values.get(line2) if line2 else None,
        "city": values.get(city),
        "state": values.get(state),
        "zip_code": values.get(zip_code),
        "county": values.get(county) if county else None,
        "full_address": full_address,
        "address_type": address_type,
        "first_seen": _as_date(values.get(first_seen)) if first_seen else None,
        "last_seen": _as_date(values.get(last_seen)) if last_seen else None,
    }


def _employment(values) -> Optional[Dict[str, Any]]:
    if not values.get("employer_name"):
        return None
    return {
        "dedup_key": values["employer_name"],
        "employer_name": values["employer_name"],
        "employer_phone": values.get("employer_phone"),
        "employer_address": values.get("employer_address"),
        "job_title": values.get("job_title"),
    }


def _bankruptcy(values) -> Optional[Dict[str, Any]]:
    case_number = values.get("bankruptcy_case_number")
    if not case_number:
        return None
    return {
        "dedup_key": case_number,
        "case_number": case_number,
        "chapter": values.get("bankruptcy_chapter"),
        "filing_date": _as_date(values.get("bankruptcy_filing_date")),
        "discharge_date": _as_date(values.get("bankruptcy_discharge_date")),
        "court": values.get("bankruptcy_court"),
        "status": values.get("bankruptcy_status"),
    }


def _account_satellites(values: Mapping[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    found: Dict[str, List[Dict[str, Any]]] = {category: [] for category in SATELLITE_CATEGORIES}

    address = _address(values, "address_line1", "address_line2", "city", "state", "zip_code", address_type="residential")
    if address:
        found["addresses"].append(address)

    for field_name, phone_type in ACCOUNT_PHONE_FIELDS:
        number = values.get(field_name)
        if number:
            found["phones"].append({"dedup_key": number, "phone_number": number, "phone_type": phone_type})

    for field_name, email_type in ACCOUNT_EMAIL_FIELDS:
        email = values.get(field_name)
        if email:
            found["emails"].append({"dedup_key": email.lower(), "email": email.lower(), "email_type": email_type})

    employment = _employment(values)
    if employment:
        found["employment"].append(employment)
    bankruptcy = _bankruptcy(values)
    if bankruptcy:
        found["bankruptcies"].append(bankruptcy)
    return found


def _skip_trace_satellites(values: Mapping[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    found: Dict[str, List[Dict[str, Any]]] = {category: [] for category in SATELLITE_CATEGORIES}

    address = _address(
        values, "address1", None, "address1_city", "address1_state", "address1_zip",
        county="address1_county", first_seen="address1_first_seen", last_seen="address1_last_seen",
    )
    if address:
        found["addresses"].append(address)

    for n in (1, 2, 3):
        number = values.get(f"phone{n}")
        if number:
            found["phones"].append({
                "dedup_key": number,
                "phone_number": number,
                "phone_type": values.get(f"phone{n}_type"),
                "first_seen": _as_date(values.get(f"phone{n}_first_seen")),
                "last_seen": _as_date(values.get(f"phone{n}_last_seen")),
            })

    for n in (1, 2):
        email = values.get(f"email{n}")
        if email:
            found["emails"].append({"dedup_key": email.lower(), "email": email.lower(), "email_type": None})

    for n in (1, 2, 3):
        name = values.get(f"rel{n}_full_name")
        if name:
            found["relatives"].append({
                "dedup_key": name,
                "relative_name": name,
                "relationship": values.get(f"rel{n}_relationship"),
                "phone_number": values.get(f"rel{n}_phone"),
                "address": values.get(f"rel{n}_address"),
            })

    vin = values.get("vehicle_vin")
    make = values.get("vehicle_make")
    if vin or make:
        year = values.get("vehicle_year")
        found["vehicles"].append({
            "dedup_key": vin or "|".join(str(part or "") for part in (make, values.get("vehicle_model"), year)),
            "vin": vin,
            "make": make,
            "model": values.get("vehicle_model"),
            "year": year,
            "color": values.get("vehicle_color"),
            "license_plate": values.get("vehicle_plate"),
        })

    employment = _employment(values)
    if employment:
        found["employment"].append(employment)
    bankruptcy = _bankruptcy(values)
    if bankruptcy:
        found["bankruptcies"].append(bankruptcy)
    return found


def extract_satellites(import_type: ImportType, values: Mapping[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    """Return satellite candidates per category for one validated row."""
    if import_type == ImportType.ACCOUNTS:
        return _account_satellites(values)
    if import_type == ImportType.SKIP_TRACE:
        return _skip_trace_satellites(values)
    return {category: [] for category in SATELLITE_CATEGORIES}


def _existing_keys(conn, table, pairs: List[Tuple[str, str]]) -> set:
    existing = set()
    for start in range(0, len(pairs), EXISTING_LOOKUP_BATCH):
        batch = pairs[start:start + EXISTING_LOOKUP_BATCH]
        person_ids = {person_id for person_id, _ in batch}
        dedup_keys = {dedup_key for _, dedup_key in batch}
        rows = conn.execute(
            select(table.c.person_id, table.c.dedup_key).where(
                table.c.person_id.in_(person_ids),
                table.c.dedup_key.in_(dedup_keys),
            )
        )
        existing.update((person_id, dedup_key) for person_id, dedup_key in rows)
    return existing


def insert_satellites(
    conn,
    candidates: Iterable[Tuple[str, Dict[str, List[Dict[str, Any]]]]],
    *,
    source: str,
    job_id: str,
) -> Dict[str, int]:
    """
    Insert new satellite rows for a chunk.

    Args:
        conn: Connection of the chunk's transaction
        candidates: ``(person_id, {category: [record, ...]})`` per loaded row
        source: Provenance label stored on new rows
        job_id: Job that introduced the rows

    Returns:
        Number of rows inserted per category
    """
    today = date.today()
    now = _utcnow()
    by_category: Dict[str, "OrderedDict[Tuple[str, str], Dict[str, Any]]"] = {
        category: OrderedDict() for category in SATELLITE_CATEGORIES
    }

    for person_id, per_category in candidates:
        for category, records in per_category.items():
            for record in records:
                dedup_key = str(record["dedup_key"])[:DEDUP_KEY_MAX_LENGTH]
                key = (person_id, dedup_key)
                if key in by_category[category]:
                    continue
                row = dict(record)
                row.update({
                    "dedup_key": dedup_key,
                    "person_id": person_id,
                    "source": source,
                    "import_job_id": job_id,
                    "is_current": True,
                    "created_at": now,
                })
                row["first_seen"] = row.get("first_seen") or today
                row["last_seen"] = row.get("last_seen") or today
                by_category[category][key] = row

    counts: Dict[str, int] = {}
    for category, pending in by_category.items():
        if not pending:
            counts[category] = 0
            continue
        table = SATELLITE_TABLES[category].__table__
        existing = _existing_keys(conn, table, list(pending))
        new_rows = [row for key, row in pending.items() if key not in existing]
        if new_rows:
            # Uniform key sets keep the executemany batch on one statement.
            columns = sorted({column for row in new_rows for column in row})
            rows = [{column: row.get(column) for column in columns} for row in new_rows]
            for row in rows:
                row["id"] = str(uuid.uuid4())
            stmt = dialect_insert(table, conn).on_conflict_do_nothing(index_elements=["person_id", "dedup_key"])
            conn.execute(stmt, rows)
        counts[category] = len(new_rows)
        logger.debug(
            "Satellites %s: %d candidates, %d already present, %d inserted",
            category, len(pending), len(pending) - len(new_rows), len(new_rows),
        )
    return counts
