"""
Field mapping: source column -> canonical field.

A mapping is built from up to three layers, later layers winning per
field: header-name suggestions (only when nothing else is supplied), a
saved template's ``field_mappings``, and an explicit mapping from the
caller. The result must cover every required field of the import type.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from debt_intake.core.errors import MappingError
from debt_intake.domain.imports.import_types import ImportType, ImportTypeSpec, get_spec

logger = logging.getLogger(__name__)


@dataclass
class ResolvedMapping:
    import_type: ImportType
    mapping: Dict[str, str]
    unmapped_fields: List[str] = field(default_factory=list)
    ignored_columns: List[str] = field(default_factory=list)

    @property
    def field_to_column(self) -> Dict[str, str]:
        return {canonical: column for column, canonical in self.mapping.items()}


def normalize_header(header: str) -> str:
    """Lowercase a header and collapse punctuation/whitespace to single underscores."""
    return re.sub(r"[^a-z0-9]+", "_", str(header).lower()).strip("_")


def _alias_index(spec: ImportTypeSpec) -> Dict[str, str]:
    index: Dict[str, str] = {}
    for field_spec in spec.fields:
        index.setdefault(normalize_header(field_spec.name), field_spec.name)
    # Canonical names take precedence over aliases of other fields.
    for field_spec in spec.fields:
        for alias in field_spec.aliases:
            index.setdefault(normalize_header(alias), field_spec.name)
    return index


def suggest_mapping(
    headers: Iterable[str],
    import_type,
    template_mapping: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Pre-fill a mapping for the given headers.

    Template entries are used for columns present in the file; remaining
    columns are matched on their normalized name against canonical field
    names and known aliases. Each canonical field is assigned at most once.
    """
    spec = get_spec(import_type)
    headers = list(headers)
    suggestion: Dict[str, str] = {}
    taken = set()

    for column, canonical in (template_mapping or {}).items():
        if column in headers and canonical and spec.get(canonical) and canonical not in taken:
            suggestion[column] = canonical
            taken.add(canonical)

    aliases = _alias_index(spec)
    for header in headers:
        if header in suggestion:
            continue
        canonical = aliases.get(normalize_header(header))
        if canonical and canonical not in taken:
            suggestion[header] = canonical
            taken.add(canonical)

    return suggestion


def resolve_mapping(
    headers: Iterable[str],
    import_type,
    mapping: Optional[Mapping[str, Optional[str]]] = None,
    template_mapping: Optional[Mapping[str, str]] = None,
) -> ResolvedMapping:
    """
    Finalize the column mapping for a file.

    Args:
        headers: The file's header row
        import_type: Import type (enum or string)
        mapping: Explicit ``{source_column: canonical_field}`` overrides; a
            None/empty target drops that column
        template_mapping: ``field_mappings`` of a saved template

    Returns:
        ResolvedMapping with the final mapping and the optional fields left unmapped

    Raises:
        MappingError: Unknown canonical field, unknown column, two columns on
            one field, or required fields without a column
    """
    spec = get_spec(import_type)
    headers = list(headers)
    header_set = set(headers)

    if mapping is None and template_mapping is None:
        combined = suggest_mapping(headers, spec.import_type)
    else:
        combined = {
            column: canonical
            for column, canonical in (template_mapping or {}).items()
            if column in header_set and canonical
        }

    for column, canonical in (mapping or {}).items():
        if column not in header_set:
            raise MappingError(f"Mapped column '{column}' is not present in the file")
        if not canonical:
            combined.pop(column, None)
            continue
        # An explicit choice replaces whichever column previously fed this field.
        for other_column in [c for c, f in combined.items() if f == canonical and c != column]:
            del combined[other_column]
        combined[column] = canonical

    unknown = sorted({canonical for canonical in combined.values() if spec.get(canonical) is None})
    if unknown:
        raise MappingError(
            f"Unknown fields for import type '{spec.import_type.value}': {', '.join(unknown)}"
        )

    seen: Dict[str, str] = {}
    for column, canonical in combined.items():
        if canonical in seen:
            raise MappingError(
                f"Columns '{seen[canonical]}' and '{column}' are both mapped to '{canonical}'"
            )
        seen[canonical] = column

    missing = [name for name in spec.required_fields if name not in seen]
    if missing:
        raise MappingError(
            f"Missing required fields: {', '.join(missing)}",
            missing_fields=missing,
        )

    resolved = ResolvedMapping(
        import_type=spec.import_type,
        mapping={column: combined[column] for column in headers if column in combined},
        unmapped_fields=[name for name in spec.optional_fields if name not in seen],
        ignored_columns=[column for column in headers if column not in combined],
    )
    logger.debug(
        "Resolved %s mapping: %d mapped columns, %d ignored",
        spec.import_type.value, len(resolved.mapping), len(resolved.ignored_columns),
    )
    return resolved


def missing_required_fields(import_type, mapping: Mapping[str, str]) -> List[str]:
    """Required fields not targeted by ``mapping`` (used by previews, never raises)."""
    spec = get_spec(import_type)
    targeted = set(mapping.values())
    return [name for name in spec.required_fields if name not in targeted]


def apply_mapping(record: Mapping[str, str], resolved: ResolvedMapping) -> Dict[str, str]:
    """Project a raw record onto canonical fields, dropping blank values."""
    mapped: Dict[str, str] = {}
    for column, canonical in resolved.mapping.items():
        value = record.get(column)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            mapped[canonical] = value
    return mapped
