"""
Row validation for import files.

Validation runs once per job over the whole mapped file. Each row yields a
``RowValidation`` carrying its cleaned values (JSON-safe: numbers as
floats/ints, dates as ISO strings, identities as 9-digit keys) plus any
errors and warnings. Nothing here touches the database.

Template ``validation_rules`` may add checks on top of the import type's
own field table, including the preset regex validators below.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from debt_intake.core.config import settings
from debt_intake.domain.imports.identity import normalize_identity
from debt_intake.domain.imports.import_types import FieldKind, FieldSpec, ImportType, get_spec
from debt_intake.utils.date import parse_flexible_date
from debt_intake.utils.phone import standardize_phone

logger = logging.getLogger(__name__)


# Preset regex patterns usable from template validation rules
PRESET_PATTERNS = {
    "email": r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
    "phone": r"^\+?[\d\s\-\.\(\)]{7,20}$",
    "phone_us": r"^(\+?1[\s.-]?)?(\([0-9]{3}\)|[0-9]{3})[\s.-]?[0-9]{3}[\s.-]?[0-9]{4}$",
    "ssn": r"^\d{3}-\d{2}-\d{4}$",
    "ein": r"^\d{2}-\d{7}$",
    "postal_code_us": r"^\d{5}(-\d{4})?$",
    "state_code_us": r"^[A-Za-z]{2}$",
    "currency_usd": r"^\$?[\d,]+(\.\d{2})?$",
    "date_iso": r"^\d{4}-\d{2}-\d{2}$",
    "date_us": r"^(0[1-9]|1[0-2])/(0[1-9]|[12]\d|3[01])/\d{4}$",
    "alphanumeric_id": r"^[A-Za-z0-9]+$",
    "account_number": r"^[A-Za-z0-9\-_]+$",
    "vin": r"^[A-HJ-NPR-Z0-9]{17}$",
}

PRESET_DESCRIPTIONS = {
    "email": "Standard email format (permissive)",
    "phone": "Loose phone number (7-20 digits with any separators)",
    "phone_us": "US phone number format",
    "ssn": "US Social Security Number (###-##-####)",
    "ein": "US Employer Identification Number (##-#######)",
    "postal_code_us": "US ZIP code (5 or 9 digits)",
    "state_code_us": "Two-letter state code",
    "currency_usd": "US Dollar amount",
    "date_iso": "ISO 8601 date (YYYY-MM-DD)",
    "date_us": "US date format (MM/DD/YYYY)",
    "alphanumeric_id": "Alphanumeric identifier",
    "account_number": "Account number (alphanumeric with hyphens/underscores)",
    "vin": "17-character vehicle identification number",
}

_EMAIL_RE = re.compile(PRESET_PATTERNS["email"])
_FLAG_ALIASES = {
    "y": "Y", "yes": "Y", "true": "Y", "1": "Y", "deceased": "Y",
    "n": "N", "no": "N", "false": "N", "0": "N",
    "u": "U", "unknown": "U",
}


def get_preset_pattern(preset_name: str) -> Optional[str]:
    return PRESET_PATTERNS.get(preset_name)


def validate_with_preset(
    value: str,
    preset_name: str,
    allow_null: bool = True
) -> Tuple[bool, Optional[str]]:
    """
    Validate a value against a preset pattern.

    Args:
        value: Value to validate
        preset_name: Name of the preset validator
        allow_null: Whether to allow null/empty values

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if allow_null:
            return True, None
        return False, "Value is required"

    pattern = get_preset_pattern(preset_name)
    if pattern is None:
        return False, f"Unknown preset validator: {preset_name}"

    str_val = str(value).strip()
    if not re.match(pattern, str_val):
        description = PRESET_DESCRIPTIONS.get(preset_name)
        return False, f"Value '{str_val}' does not match {description or preset_name} format"
    return True, None


def list_available_presets() -> dict:
    return PRESET_DESCRIPTIONS.copy()


@dataclass
class RowError:
    row_number: int
    field: Optional[str]
    message: str
    stage: str = "validation"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_number": self.row_number,
            "field": self.field,
            "message": self.message,
            "stage": self.stage,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RowError":
        return cls(
            row_number=int(payload["row_number"]),
            field=payload.get("field"),
            message=payload.get("message") or "",
            stage=payload.get("stage") or "validation",
        )


@dataclass
class RowValidation:
    row_number: int
    values: Dict[str, Any]
    errors: List[RowError] = field(default_factory=list)
    warnings: List[RowError] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class ValidationReport:
    import_type: ImportType
    results: List[RowValidation]

    @property
    def total_rows(self) -> int:
        return len(self.results)

    @property
    def valid_count(self) -> int:
        return sum(1 for result in self.results if result.is_valid)

    @property
    def invalid_count(self) -> int:
        return self.total_rows - self.valid_count

    @property
    def errors(self) -> List[RowError]:
        return [error for result in self.results for error in result.errors]

    @property
    def warnings(self) -> List[RowError]:
        return [warning for result in self.results for warning in result.warnings]


def parse_amount(value: Any) -> Optional[float]:
    """Parse ``$1,234.50`` / ``(12.00)`` style amounts; None when not numeric."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    negative = text.startswith("(") and text.endswith(")")
    text = text.strip("()").replace("$", "").replace(",", "").strip()
    try:
        amount = float(text)
    except ValueError:
        return None
    if amount != amount or amount in (float("inf"), float("-inf")):
        return None
    return -amount if negative else amount


def _normalize_choice(value: str) -> str:
    return re.sub(r"[\s\-/]+", "_", value.strip().lower())


def _coerce(spec: FieldSpec, raw: str) -> Tuple[Any, Optional[str]]:
    """Return ``(clean_value, error_message)`` for one field."""
    kind = spec.kind
    if kind == FieldKind.TEXT:
        return raw, None
    if kind == FieldKind.NUMERIC:
        amount = parse_amount(raw)
        if amount is None:
            return None, f"'{raw}' is not a valid number"
        return round(amount, 2), None
    if kind == FieldKind.INTEGER:
        amount = parse_amount(raw)
        if amount is None or amount != int(amount):
            return None, f"'{raw}' is not a whole number"
        return int(amount), None
    if kind == FieldKind.DATE:
        parsed = parse_flexible_date(raw, log_context=spec.name)
        if parsed is None:
            return None, f"'{raw}' is not a valid date"
        return parsed.isoformat(), None
    if kind == FieldKind.EMAIL:
        if not _EMAIL_RE.match(raw):
            return None, f"'{raw}' is not a valid email address"
        return raw.lower(), None
    if kind == FieldKind.PHONE:
        formatted = standardize_phone(raw)
        if formatted is None:
            return None, f"'{raw}' is not a valid phone number (10-15 digits)"
        return formatted, None
    if kind == FieldKind.SSN:
        key = normalize_identity(raw)
        if key is None:
            return None, "SSN must contain exactly 9 digits"
        return key, None
    if kind == FieldKind.ENUM:
        choice = _normalize_choice(raw)
        if choice not in spec.choices:
            return None, f"'{raw}' is not one of: {', '.join(spec.choices)}"
        return choice, None
    if kind == FieldKind.FLAG:
        flag = _FLAG_ALIASES.get(raw.strip().lower())
        if flag is None:
            return None, f"'{raw}' must be Y, N or U"
        return flag, None
    raise ValueError(f"Unhandled field kind {kind}")  # pragma: no cover


def _as_date(value: Any) -> Optional[date]:
    return date.fromisoformat(value) if isinstance(value, str) else None


def _check_date_order(values, earlier: str, later: str, row_number: int, errors: List[RowError]) -> None:
    start = _as_date(values.get(earlier))
    end = _as_date(values.get(later))
    if start and end and end < start:
        errors.append(RowError(row_number, later, f"{later} ({end}) is before {earlier} ({start})"))


def _cross_field_checks(import_type: ImportType, values: Dict[str, Any], row_number: int) -> List[RowError]:
    errors: List[RowError] = []
    today = date.today()

    dob = _as_date(values.get("date_of_birth"))
    if dob and dob > today:
        errors.append(RowError(row_number, "date_of_birth", f"date_of_birth ({dob}) is in the future"))
    _check_date_order(values, "bankruptcy_filing_date", "bankruptcy_discharge_date", row_number, errors)

    if import_type == ImportType.ACCOUNTS:
        balance = values.get("current_balance")
        if balance is not None and balance < settings.min_account_balance:
            errors.append(RowError(
                row_number,
                "current_balance",
                f"current_balance {balance:.2f} is below the minimum of {settings.min_account_balance:.2f}",
            ))
        _check_date_order(values, "date_opened", "charge_off_date", row_number, errors)
        _check_date_order(values, "date_opened", "last_payment_date", row_number, errors)
    elif import_type == ImportType.PORTFOLIOS:
        for name in ("original_balance", "account_count", "average_balance", "debt_age_months"):
            value = values.get(name)
            if value is not None and value < 0:
                errors.append(RowError(row_number, name, f"{name} must not be negative"))

    return errors


def _apply_rule(rule: Mapping[str, Any], values: Dict[str, Any], mapped: Mapping[str, str], row_number: int) -> Optional[RowError]:
    target = rule.get("field")
    raw = mapped.get(target)
    rule_type = (rule.get("type") or "").lower()
    message = rule.get("message")

    if rule_type == "required":
        if raw is None:
            return RowError(row_number, target, message or f"{target} is required")
        return None
    if raw is None:
        return None

    if rule_type in ("number", "numeric"):
        ok = parse_amount(raw) is not None
    elif rule_type == "integer":
        amount = parse_amount(raw)
        ok = amount is not None and amount == int(amount)
    elif rule_type == "date":
        ok = parse_flexible_date(raw, log_failures=False) is not None
    elif rule_type == "email":
        ok = bool(_EMAIL_RE.match(raw))
    elif rule_type == "enum":
        options = [_normalize_choice(str(option)) for option in rule.get("options") or []]
        ok = _normalize_choice(raw) in options
    elif rule_type == "preset":
        ok, preset_message = validate_with_preset(raw, rule.get("preset") or "")
        message = message or preset_message
    elif rule_type in ("min", "max"):
        amount = values.get(target)
        if not isinstance(amount, (int, float)):
            amount = parse_amount(raw)
        limit = rule.get("value")
        if amount is None or limit is None:
            ok = False
        else:
            ok = amount >= float(limit) if rule_type == "min" else amount <= float(limit)
    else:
        logger.warning("Ignoring unsupported validation rule type '%s'", rule_type)
        return None

    if ok:
        return None
    return RowError(row_number, target, message or f"{target} failed {rule_type} validation")


def resolve_rules(rules: Optional[Iterable[Mapping[str, Any]]], column_mapping: Mapping[str, str]) -> List[Dict[str, Any]]:
    """
    Point template rules at canonical fields.

    Rules may name a canonical ``field`` directly or a source ``column``;
    rules whose column is not part of the mapping are dropped.
    """
    resolved = []
    for rule in rules or []:
        rule = dict(rule)
        if not rule.get("field") and rule.get("column"):
            rule["field"] = column_mapping.get(rule["column"])
        if rule.get("field"):
            resolved.append(rule)
    return resolved


def validate_row(
    mapped: Mapping[str, str],
    row_number: int,
    import_type,
    rules: Sequence[Mapping[str, Any]] = (),
) -> RowValidation:
    """Validate one mapped row against its import type's field table plus extra rules."""
    spec = get_spec(import_type)
    values: Dict[str, Any] = {}
    errors: List[RowError] = []
    warnings: List[RowError] = []

    for field_spec in spec.fields:
        raw = mapped.get(field_spec.name)
        if raw is None or raw == "":
            if field_spec.required:
                errors.append(RowError(row_number, field_spec.name, f"{field_spec.name} is required"))
            continue
        clean, message = _coerce(field_spec, str(raw))
        if message is None:
            values[field_spec.name] = clean
        elif field_spec.soft and not field_spec.required:
            warnings.append(RowError(row_number, field_spec.name, f"{message}; value ignored"))
        else:
            errors.append(RowError(row_number, field_spec.name, message))

    errors.extend(_cross_field_checks(spec.import_type, values, row_number))

    for rule in rules:
        error = _apply_rule(rule, values, mapped, row_number)
        if error is not None:
            errors.append(error)

    return RowValidation(row_number=row_number, values=values, errors=errors, warnings=warnings)


def validate_rows(
    rows: Iterable[Tuple[int, Mapping[str, str]]],
    import_type,
    rules: Sequence[Mapping[str, Any]] = (),
) -> ValidationReport:
    """
    Validate every mapped row of a file.

    Args:
        rows: ``(row_number, mapped_row)`` pairs; row numbers are 1-based data rows
        import_type: Import type (enum or string)
        rules: Extra rules already resolved to canonical fields

    Returns:
        ValidationReport with one RowValidation per input row, in input order
    """
    spec = get_spec(import_type)
    results = [validate_row(mapped, row_number, spec.import_type, rules) for row_number, mapped in rows]

    if spec.import_type == ImportType.ACCOUNTS:
        first_seen: Dict[str, int] = {}
        for result in results:
            number = result.values.get("original_account_number")
            if not result.is_valid or number is None:
                continue
            if number in first_seen:
                result.warnings.append(RowError(
                    result.row_number,
                    "original_account_number",
                    f"Duplicate of row {first_seen[number]}; the later row wins",
                ))
            else:
                first_seen[number] = result.row_number

    report = ValidationReport(import_type=spec.import_type, results=results)
    logger.info(
        "Validated %d %s rows: %d valid, %d invalid, %d warnings",
        report.total_rows, spec.import_type.value, report.valid_count,
        report.invalid_count, len(report.warnings),
    )
    return report
