"""
Import types and their canonical field tables.

Every supported import type owns an ``ImportTypeSpec``: the ordered list of
canonical fields a source file can be mapped onto, which of them are
required, and how each is checked. The mapper and the row validator work
exclusively from these tables.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class ImportType(str, Enum):
    ACCOUNTS = "accounts"
    SKIP_TRACE = "skip_trace"
    PORTFOLIOS = "portfolios"
    CLIENTS = "clients"
    AGENCIES = "agencies"


class FieldKind(str, Enum):
    TEXT = "text"
    NUMERIC = "numeric"
    INTEGER = "integer"
    DATE = "date"
    EMAIL = "email"
    PHONE = "phone"
    SSN = "ssn"
    ENUM = "enum"
    FLAG = "flag"  # Y / N / U


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: FieldKind = FieldKind.TEXT
    required: bool = False
    choices: Tuple[str, ...] = ()
    aliases: Tuple[str, ...] = ()
    # Bad values on a soft field are reported as warnings and the value is dropped.
    soft: bool = False


@dataclass(frozen=True)
class ImportTypeSpec:
    import_type: ImportType
    fields: Tuple[FieldSpec, ...]
    description: str = ""
    _by_name: Dict[str, FieldSpec] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self):
        self._by_name.update({spec.name: spec for spec in self.fields})

    @property
    def required_fields(self) -> List[str]:
        return [spec.name for spec in self.fields if spec.required]

    @property
    def optional_fields(self) -> List[str]:
        return [spec.name for spec in self.fields if not spec.required]

    def get(self, name: str) -> Optional[FieldSpec]:
        return self._by_name.get(name)


ACCOUNT_TYPES = (
    "credit_card", "medical", "personal_loan", "auto_loan", "mortgage",
    "utility", "student_loan", "business_loan", "other",
)
ACCOUNT_STATUSES = (
    "active", "inactive", "resolved", "returned", "bankruptcy",
    "deceased", "settled", "paid_in_full",
)
PORTFOLIO_TYPES = (
    "credit_card", "medical", "auto_loan", "personal_loan", "student_loan",
    "mortgage", "utility", "mixed", "other",
)
PORTFOLIO_STATUSES = ("active", "inactive", "closed", "sold", "pending")
CLIENT_TYPES = ("creditor", "debt_buyer", "servicer", "agency", "other")
SUBSCRIPTION_TIERS = ("basic", "professional", "enterprise")
ENTITY_STATUSES = ("active", "inactive", "suspended")
FLAG_VALUES = ("Y", "N", "U")
ADDRESS_TYPES = ("residential", "mailing", "business", "previous", "unknown")
PHONE_TYPES = ("home", "work", "mobile", "cell", "landline", "voip", "fax", "unknown")


def _person_fields() -> Tuple[FieldSpec, ...]:
    return (
        FieldSpec("first_name", aliases=("fname", "first", "debtor_first_name")),
        FieldSpec("middle_name", aliases=("mname", "middle")),
        FieldSpec("last_name", aliases=("lname", "last", "debtor_last_name")),
        FieldSpec("full_name", aliases=("name", "debtor_name")),
        FieldSpec("date_of_birth", FieldKind.DATE, aliases=("dob", "birth_date", "birthdate")),
    )


def _address_fields(prefix: str = "") -> Tuple[FieldSpec, ...]:
    return (
        FieldSpec(f"{prefix}address_line1", aliases=("address", "address1", "street", "address_1")),
        FieldSpec(f"{prefix}address_line2", aliases=("address2", "address_2", "apt", "unit")),
        FieldSpec(f"{prefix}city"),
        FieldSpec(f"{prefix}state", aliases=("st",)),
        FieldSpec(f"{prefix}zip_code", aliases=("zip", "zipcode", "postal_code")),
    )


def _employer_fields() -> Tuple[FieldSpec, ...]:
    return (
        FieldSpec("employer_name", aliases=("employer", "emp_employer_name")),
        FieldSpec("employer_phone", FieldKind.PHONE, soft=True),
        FieldSpec("employer_address"),
        FieldSpec("job_title", aliases=("position", "occupation")),
    )


def _bankruptcy_fields() -> Tuple[FieldSpec, ...]:
    return (
        FieldSpec("bankruptcy_case_number", aliases=("case_number", "bnk_case_number")),
        FieldSpec("bankruptcy_chapter", aliases=("chapter", "bnk_chapter")),
        FieldSpec("bankruptcy_filing_date", FieldKind.DATE, aliases=("filing_date", "bnk_filing_date")),
        FieldSpec("bankruptcy_discharge_date", FieldKind.DATE, aliases=("discharged_date", "bnk_discharged_date")),
        FieldSpec("bankruptcy_court", aliases=("court_district", "bnk_court_district")),
        FieldSpec("bankruptcy_status", aliases=("disposition_status", "bnk_disposition_status")),
    )


ACCOUNTS_SPEC = ImportTypeSpec(
    ImportType.ACCOUNTS,
    description="Debt accounts placed with the agency; one row per account.",
    fields=(
        FieldSpec(
            "original_account_number",
            required=True,
            aliases=("account_id", "orig_account_number", "original_acct_number", "orig_acct"),
        ),
        FieldSpec("current_balance", FieldKind.NUMERIC, required=True, aliases=("balance", "balance_due", "amount_due")),
        FieldSpec("ssn", FieldKind.SSN, required=True, aliases=("social_security_number", "social", "ss_number", "tax_id")),
        FieldSpec("account_number", aliases=("acct", "acct_number", "acct_no")),
        FieldSpec("original_creditor", aliases=("creditor", "orig_creditor")),
        FieldSpec("original_balance", FieldKind.NUMERIC, aliases=("orig_balance", "principal")),
        FieldSpec("charge_off_date", FieldKind.DATE, aliases=("chargeoff_date", "co_date")),
        FieldSpec("date_opened", FieldKind.DATE, aliases=("open_date", "opened_date")),
        FieldSpec("last_payment_date", FieldKind.DATE, aliases=("lpd", "last_pay_date")),
        FieldSpec("last_payment_amount", FieldKind.NUMERIC, aliases=("last_pay_amount",)),
        FieldSpec("account_type", FieldKind.ENUM, choices=ACCOUNT_TYPES),
        FieldSpec("account_status", FieldKind.ENUM, choices=ACCOUNT_STATUSES, aliases=("status",)),
        *_person_fields(),
        FieldSpec("is_deceased", FieldKind.FLAG, choices=FLAG_VALUES, aliases=("deceased",)),
        FieldSpec("deceased_date", FieldKind.DATE, aliases=("date_of_death", "dod")),
        *_address_fields(),
        FieldSpec("phone", FieldKind.PHONE, soft=True, aliases=("phone_number", "telephone")),
        FieldSpec("home_phone", FieldKind.PHONE, soft=True),
        FieldSpec("work_phone", FieldKind.PHONE, soft=True),
        FieldSpec("cell_phone", FieldKind.PHONE, soft=True, aliases=("mobile_phone", "mobile", "cell")),
        FieldSpec("email", FieldKind.EMAIL, soft=True, aliases=("email_address",)),
        FieldSpec("work_email", FieldKind.EMAIL, soft=True),
        *_employer_fields(),
        *_bankruptcy_fields(),
    ),
)


def _skip_trace_phone(n: int) -> Tuple[FieldSpec, ...]:
    return (
        FieldSpec(f"phone{n}", FieldKind.PHONE, soft=True, aliases=(f"ph_phone{n}",)),
        FieldSpec(f"phone{n}_type", aliases=(f"ph_phone{n}_type",)),
        FieldSpec(f"phone{n}_first_seen", FieldKind.DATE, soft=True, aliases=(f"ph_phone{n}_first_seen",)),
        FieldSpec(f"phone{n}_last_seen", FieldKind.DATE, soft=True, aliases=(f"ph_phone{n}_last_seen",)),
    )


def _skip_trace_relative(n: int) -> Tuple[FieldSpec, ...]:
    return (
        FieldSpec(f"rel{n}_full_name", aliases=(f"rel{n}_name",)),
        FieldSpec(f"rel{n}_relationship", aliases=(f"rel{n}_likely_relationship",)),
        FieldSpec(f"rel{n}_phone", FieldKind.PHONE, soft=True, aliases=(f"rel{n}_phone_1",)),
        FieldSpec(f"rel{n}_address"),
    )


SKIP_TRACE_SPEC = ImportTypeSpec(
    ImportType.SKIP_TRACE,
    description="Identity and contact enrichment returned by a skip-trace vendor.",
    fields=(
        FieldSpec("ssn", FieldKind.SSN, required=True, aliases=("input_ssn", "social_security_number", "social")),
        FieldSpec("account_key", aliases=("input_account_key",)),
        FieldSpec("scrub_date", FieldKind.DATE, soft=True, aliases=("input_scrub_date",)),
        FieldSpec("first_name", aliases=("input_first_name", "fname")),
        FieldSpec("middle_name", aliases=("input_middle_name", "dec_idi_middle_name")),
        FieldSpec("last_name", aliases=("input_last_name", "lname")),
        FieldSpec("date_of_birth", FieldKind.DATE, aliases=("dob", "input_dob")),
        FieldSpec("deceased", FieldKind.FLAG, choices=FLAG_VALUES, aliases=("dec_deceased_y_n_u", "is_deceased")),
        FieldSpec("deceased_date", FieldKind.DATE, soft=True, aliases=("dec_ssdi_date_of_dec", "dec_obit_date_of_dec")),
        FieldSpec("address1", aliases=("add_address1", "input_address_1", "address", "address_line1")),
        FieldSpec("address1_city", aliases=("add_address1_city", "input_city", "city")),
        FieldSpec("address1_state", aliases=("add_address1_state", "input_state", "state")),
        FieldSpec("address1_zip", aliases=("add_address1_zip", "input_zip_code", "zip", "zip_code")),
        FieldSpec("address1_county", aliases=("add_address1_county", "county")),
        FieldSpec("address1_first_seen", FieldKind.DATE, soft=True, aliases=("add_address1_first_seen",)),
        FieldSpec("address1_last_seen", FieldKind.DATE, soft=True, aliases=("add_address1_last_seen",)),
        *_skip_trace_phone(1),
        *_skip_trace_phone(2),
        *_skip_trace_phone(3),
        FieldSpec("email1", FieldKind.EMAIL, soft=True, aliases=("em_email1", "email")),
        FieldSpec("email2", FieldKind.EMAIL, soft=True, aliases=("em_email2",)),
        *_skip_trace_relative(1),
        *_skip_trace_relative(2),
        *_skip_trace_relative(3),
        FieldSpec("vehicle_vin", aliases=("vin", "veh_vin")),
        FieldSpec("vehicle_make", aliases=("veh_make",)),
        FieldSpec("vehicle_model", aliases=("veh_model",)),
        FieldSpec("vehicle_year", FieldKind.INTEGER, soft=True, aliases=("veh_year",)),
        FieldSpec("vehicle_color", aliases=("veh_color",)),
        FieldSpec("vehicle_plate", aliases=("veh_plate", "license_plate")),
        *_employer_fields(),
        *_bankruptcy_fields(),
    ),
)


PORTFOLIOS_SPEC = ImportTypeSpec(
    ImportType.PORTFOLIOS,
    description="Portfolios of accounts purchased from or placed by a client.",
    fields=(
        FieldSpec("name", required=True, aliases=("portfolio_name",)),
        FieldSpec("client_code", required=True, aliases=("client",)),
        FieldSpec("original_balance", FieldKind.NUMERIC, required=True, aliases=("face_value", "total_balance")),
        FieldSpec("account_count", FieldKind.INTEGER, required=True, aliases=("accounts", "number_of_accounts")),
        FieldSpec("description"),
        FieldSpec("portfolio_type", FieldKind.ENUM, choices=PORTFOLIO_TYPES, aliases=("type",)),
        FieldSpec("charge_off_date", FieldKind.DATE),
        FieldSpec("debt_age_months", FieldKind.INTEGER),
        FieldSpec("average_balance", FieldKind.NUMERIC),
        FieldSpec("status", FieldKind.ENUM, choices=PORTFOLIO_STATUSES),
    ),
)


CLIENTS_SPEC = ImportTypeSpec(
    ImportType.CLIENTS,
    description="Creditors and debt buyers the agency collects for.",
    fields=(
        FieldSpec("name", required=True, aliases=("client_name",)),
        FieldSpec("code", required=True, aliases=("client_code",)),
        FieldSpec("client_type", FieldKind.ENUM, choices=CLIENT_TYPES, aliases=("type",)),
        FieldSpec("contact_name"),
        FieldSpec("contact_email", FieldKind.EMAIL, aliases=("email",)),
        FieldSpec("contact_phone", FieldKind.PHONE, aliases=("phone",)),
        *_address_fields(),
        FieldSpec("status", FieldKind.ENUM, choices=ENTITY_STATUSES),
    ),
)


AGENCIES_SPEC = ImportTypeSpec(
    ImportType.AGENCIES,
    description="Collection agencies using the platform.",
    fields=(
        FieldSpec("name", required=True, aliases=("agency_name",)),
        FieldSpec("code", required=True, aliases=("agency_code",)),
        FieldSpec("contact_email", FieldKind.EMAIL, required=True, aliases=("email",)),
        FieldSpec("contact_name"),
        FieldSpec("contact_phone", FieldKind.PHONE, aliases=("phone",)),
        *_address_fields(),
        FieldSpec("subscription_tier", FieldKind.ENUM, choices=SUBSCRIPTION_TIERS, aliases=("tier",)),
        FieldSpec("status", FieldKind.ENUM, choices=ENTITY_STATUSES),
    ),
)


IMPORT_TYPE_SPECS: Dict[ImportType, ImportTypeSpec] = {
    ImportType.ACCOUNTS: ACCOUNTS_SPEC,
    ImportType.SKIP_TRACE: SKIP_TRACE_SPEC,
    ImportType.PORTFOLIOS: PORTFOLIOS_SPEC,
    ImportType.CLIENTS: CLIENTS_SPEC,
    ImportType.AGENCIES: AGENCIES_SPEC,
}

_missing_specs = set(ImportType) - set(IMPORT_TYPE_SPECS)
if _missing_specs:  # pragma: no cover
    raise RuntimeError(f"Import types without a field table: {sorted(t.value for t in _missing_specs)}")

# Import types whose rows attach to a Person resolved by national ID.
PERSON_IMPORT_TYPES = frozenset({ImportType.ACCOUNTS, ImportType.SKIP_TRACE})


def get_import_type(value) -> ImportType:
    """Coerce a string into an ``ImportType`` (accepts ``skip-trace`` as an alias)."""
    if isinstance(value, ImportType):
        return value
    normalized = str(value or "").strip().lower().replace("-", "_")
    try:
        return ImportType(normalized)
    except ValueError:
        valid = ", ".join(t.value for t in ImportType)
        raise ValueError(f"Unsupported import type '{value}'. Expected one of: {valid}")


def get_spec(import_type) -> ImportTypeSpec:
    return IMPORT_TYPE_SPECS[get_import_type(import_type)]
