"""
Entity resolution: normalized identity key -> Person.

Resolution is batched per chunk: look up every distinct key, insert the
missing ones with ``ON CONFLICT (ssn) DO NOTHING`` and read back. A
concurrent invocation inserting the same key between the lookup and the
insert loses the race harmlessly, so there is never more than one Person
per key.
"""
import logging
import uuid
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import and_, bindparam, select, update

from debt_intake.db.models import Person, _utcnow
from debt_intake.db.session import dialect_insert, get_engine

logger = logging.getLogger(__name__)

persons_table = Person.__table__

# Keep IN lists well under driver parameter limits.
LOOKUP_BATCH_SIZE = 500

PERSON_ATTRIBUTES = ("first_name", "middle_name", "last_name", "full_name", "date_of_birth", "is_deceased", "deceased_date")


def _batches(items: List[Any], size: int = LOOKUP_BATCH_SIZE):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _lookup(conn, keys: Iterable[str]) -> Dict[str, str]:
    found: Dict[str, str] = {}
    for batch in _batches(sorted(set(keys))):
        rows = conn.execute(
            select(persons_table.c.ssn, persons_table.c.id).where(persons_table.c.ssn.in_(batch))
        )
        found.update({ssn: person_id for ssn, person_id in rows})
    return found


def _person_row(key: str, attributes: Mapping[str, Any], now) -> Dict[str, Any]:
    first = attributes.get("first_name")
    last = attributes.get("last_name")
    full_name = attributes.get("full_name") or " ".join(part for part in (first, last) if part) or None
    return {
        "id": str(uuid.uuid4()),
        "ssn": key,
        "first_name": first,
        "middle_name": attributes.get("middle_name"),
        "last_name": last,
        "full_name": full_name,
        "date_of_birth": attributes.get("date_of_birth"),
        "is_deceased": bool(attributes.get("is_deceased")),
        "deceased_date": attributes.get("deceased_date"),
        "created_at": now,
        "updated_at": now,
    }


def resolve_persons(conn, candidates: Mapping[str, Mapping[str, Any]]) -> Dict[str, str]:
    """
    Find or create one Person per identity key.

    Args:
        conn: Connection of the chunk's transaction
        candidates: ``{identity_key: person_attributes}``; attributes of the
            first row seen for a key are used when the Person is created

    Returns:
        ``{identity_key: person_id}`` covering every key in ``candidates``
    """
    if not candidates:
        return {}

    resolved = _lookup(conn, candidates)
    missing = [key for key in candidates if key not in resolved]

    if missing:
        now = _utcnow()
        rows = [_person_row(key, candidates[key], now) for key in missing]
        stmt = dialect_insert(persons_table, conn).on_conflict_do_nothing(index_elements=["ssn"])
        for batch in _batches(rows):
            conn.execute(stmt, batch)
        resolved.update(_lookup(conn, missing))

    unresolved = [key for key in candidates if key not in resolved]
    if unresolved:  # pragma: no cover - the insert above guarantees a row per key
        raise RuntimeError(f"Failed to resolve {len(unresolved)} identity key(s)")

    logger.debug("Resolved %d identities (%d created)", len(candidates), len(missing))
    return resolved


def mark_deceased(conn, updates: Mapping[str, Optional[date]]) -> None:
    """
    Flag existing persons as deceased; ``updates`` maps person_id -> deceased date (or None).

    A known deceased date is never overwritten.
    """
    if not updates:
        return
    now = _utcnow()
    conn.execute(
        update(persons_table)
        .where(persons_table.c.id == bindparam("b_person_id"))
        .values(is_deceased=True, updated_at=now),
        [{"b_person_id": person_id} for person_id in updates],
    )
    dated = [
        {"b_person_id": person_id, "b_deceased_date": deceased_date}
        for person_id, deceased_date in updates.items()
        if deceased_date is not None
    ]
    if dated:
        conn.execute(
            update(persons_table)
            .where(and_(persons_table.c.id == bindparam("b_person_id"), persons_table.c.deceased_date.is_(None)))
            .values(deceased_date=bindparam("b_deceased_date")),
            dated,
        )


def resolve_person(key: str, attributes: Optional[Mapping[str, Any]] = None) -> str:
    """Resolve a single identity key in its own transaction."""
    with get_engine().begin() as conn:
        return resolve_persons(conn, {key: attributes or {}})[key]
