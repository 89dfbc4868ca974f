"""
SQLAlchemy models for the import pipeline and the entities it loads.

Primary tables (debt accounts, skip-trace subjects, master clients,
portfolios and agencies) each carry a unique ``natural_key`` used as the
upsert target and an ``import_job_id`` pointing back at the job that last
wrote the row. Satellite tables hang off ``persons`` and are unique on
``(person_id, dedup_key)``.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declared_attr

from debt_intake.db.session import Base


def _utcnow() -> datetime:
    """Return a naive UTC timestamp (stored without zone on every backend)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


class ImportJob(Base):
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(String(255), nullable=True, index=True)

    file_name = Column(String(512), nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    file_type = Column(String(16), nullable=False)
    file_path = Column(String(1024), nullable=True)

    import_type = Column(String(32), nullable=False, index=True)
    template_id = Column(String(36), nullable=True)
    field_mapping = Column(JSON, nullable=True)

    status = Column(String(32), nullable=False, default="pending", index=True)
    progress = Column(Integer, nullable=False, default=0)
    source_rows = Column(Integer, nullable=False, default=0)
    total_rows = Column(Integer, nullable=False, default=0)
    invalid_rows = Column(Integer, nullable=False, default=0)
    processed_rows = Column(Integer, nullable=False, default=0)
    successful_rows = Column(Integer, nullable=False, default=0)
    failed_rows = Column(Integer, nullable=False, default=0)
    cursor = Column(Integer, nullable=False, default=0)
    validation_summary = Column(JSON, nullable=True)
    load_summary = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    cancel_requested = Column(Boolean, nullable=False, default=False)
    claim_token = Column(String(36), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    last_progress_at = Column(DateTime, nullable=True)

    portfolio_id = Column(String(36), nullable=True)
    created_portfolio = Column(Boolean, nullable=False, default=False)
    failed_rows_path = Column(String(1024), nullable=True)
    # Timing and throughput, written when processing completes.
    performance_metrics = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)
    validation_started_at = Column(DateTime, nullable=True)
    validation_completed_at = Column(DateTime, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    processing_completed_at = Column(DateTime, nullable=True)


class ImportStagingRow(Base):
    """One row of an uploaded file after mapping and validation."""

    __tablename__ = "import_staging_rows"
    __table_args__ = (
        UniqueConstraint("job_id", "row_number", name="uq_staging_job_row"),
        Index("ix_staging_job_valid_index", "job_id", "valid_index"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), nullable=False, index=True)
    row_number = Column(Integer, nullable=False)
    # Position among the job's valid rows; NULL for rows that failed validation.
    valid_index = Column(Integer, nullable=True)
    raw_data = Column(JSON, nullable=False)
    mapped_data = Column(JSON, nullable=False)
    is_valid = Column(Boolean, nullable=False, default=True)
    errors = Column(JSON, nullable=True)
    warnings = Column(JSON, nullable=True)
    load_status = Column(String(16), nullable=True)  # loaded | partial | failed
    load_error = Column(Text, nullable=True)


class ImportTemplate(Base):
    __tablename__ = "import_templates"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    import_type = Column(String(32), nullable=False, index=True)
    description = Column(Text, nullable=True)
    field_mappings = Column(JSON, nullable=False, default=dict)
    required_fields = Column(JSON, nullable=False, default=list)
    optional_fields = Column(JSON, nullable=False, default=list)
    sample_rows = Column(JSON, nullable=False, default=list)
    validation_rules = Column(JSON, nullable=False, default=list)
    owner_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class Person(Base):
    __tablename__ = "persons"

    id = Column(String(36), primary_key=True, default=_new_id)
    ssn = Column(String(9), nullable=False, unique=True)
    first_name = Column(String(255), nullable=True)
    middle_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    full_name = Column(String(512), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    is_deceased = Column(Boolean, nullable=False, default=False)
    deceased_date = Column(Date, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class MasterClient(Base):
    __tablename__ = "master_clients"

    id = Column(String(36), primary_key=True, default=_new_id)
    natural_key = Column(String(255), nullable=False, unique=True)
    code = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    client_type = Column(String(32), nullable=True)
    contact_name = Column(String(255), nullable=True)
    contact_email = Column(String(255), nullable=True)
    contact_phone = Column(String(32), nullable=True)
    address_line1 = Column(String(255), nullable=True)
    city = Column(String(128), nullable=True)
    state = Column(String(32), nullable=True)
    zip_code = Column(String(16), nullable=True)
    status = Column(String(32), nullable=True)
    import_job_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class MasterPortfolio(Base):
    __tablename__ = "master_portfolios"

    id = Column(String(36), primary_key=True, default=_new_id)
    natural_key = Column(String(512), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    client_id = Column(String(36), ForeignKey("master_clients.id"), nullable=True)
    description = Column(Text, nullable=True)
    portfolio_type = Column(String(32), nullable=True)
    original_balance = Column(Numeric(14, 2), nullable=True)
    account_count = Column(Integer, nullable=True)
    charge_off_date = Column(Date, nullable=True)
    debt_age_months = Column(Integer, nullable=True)
    average_balance = Column(Numeric(14, 2), nullable=True)
    status = Column(String(32), nullable=True)
    import_job_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class MasterAgency(Base):
    __tablename__ = "master_agencies"

    id = Column(String(36), primary_key=True, default=_new_id)
    natural_key = Column(String(255), nullable=False, unique=True)
    code = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    contact_name = Column(String(255), nullable=True)
    contact_email = Column(String(255), nullable=False)
    contact_phone = Column(String(32), nullable=True)
    address_line1 = Column(String(255), nullable=True)
    city = Column(String(128), nullable=True)
    state = Column(String(32), nullable=True)
    zip_code = Column(String(16), nullable=True)
    subscription_tier = Column(String(32), nullable=True)
    status = Column(String(32), nullable=True)
    import_job_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class DebtAccount(Base):
    __tablename__ = "debt_accounts"

    id = Column(String(36), primary_key=True, default=_new_id)
    # "<portfolio_id>:<original_account_number>"
    natural_key = Column(String(512), nullable=False, unique=True)
    person_id = Column(String(36), ForeignKey("persons.id"), nullable=False, index=True)
    portfolio_id = Column(String(36), ForeignKey("master_portfolios.id"), nullable=True, index=True)
    original_account_number = Column(String(255), nullable=False)
    account_number = Column(String(255), nullable=True)
    original_creditor = Column(String(255), nullable=True)
    original_balance = Column(Numeric(14, 2), nullable=True)
    current_balance = Column(Numeric(14, 2), nullable=False)
    charge_off_date = Column(Date, nullable=True)
    date_opened = Column(Date, nullable=True)
    last_payment_date = Column(Date, nullable=True)
    last_payment_amount = Column(Numeric(14, 2), nullable=True)
    account_type = Column(String(32), nullable=True)
    account_status = Column(String(32), nullable=True)
    import_job_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class SkipTraceSubject(Base):
    __tablename__ = "skip_trace_subjects"

    id = Column(String(36), primary_key=True, default=_new_id)
    natural_key = Column(String(9), nullable=False, unique=True)
    person_id = Column(String(36), ForeignKey("persons.id"), nullable=False, index=True)
    account_key = Column(String(255), nullable=True)
    scrub_date = Column(Date, nullable=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    deceased_flag = Column(String(1), nullable=True)  # Y / N / U
    import_job_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class SatelliteMixin:
    """Columns shared by every per-person satellite table."""

    id = Column(String(36), primary_key=True, default=_new_id)
    dedup_key = Column(String(512), nullable=False)
    first_seen = Column(Date, nullable=True)
    last_seen = Column(Date, nullable=True)
    source = Column(String(32), nullable=False, default="import")
    is_current = Column(Boolean, nullable=False, default=True)
    import_job_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    @declared_attr
    def person_id(cls):
        return Column(String(36), ForeignKey("persons.id"), nullable=False, index=True)

    @declared_attr
    def __table_args__(cls):
        return (
            UniqueConstraint("person_id", "dedup_key", name=f"uq_{cls.__tablename__}_dedup"),
        )


class PersonAddress(SatelliteMixin, Base):
    __tablename__ = "person_addresses"

    address_line1 = Column(String(255), nullable=True)
    address_line2 = Column(String(255), nullable=True)
    city = Column(String(128), nullable=True)
    state = Column(String(32), nullable=True)
    zip_code = Column(String(16), nullable=True)
    county = Column(String(128), nullable=True)
    full_address = Column(String(512), nullable=False)
    address_type = Column(String(32), nullable=True)


class PersonPhone(SatelliteMixin, Base):
    __tablename__ = "person_phones"

    phone_number = Column(String(32), nullable=False)
    phone_type = Column(String(32), nullable=True)


class PersonEmail(SatelliteMixin, Base):
    __tablename__ = "person_emails"

    email = Column(String(255), nullable=False)
    email_type = Column(String(32), nullable=True)


class PersonRelative(SatelliteMixin, Base):
    __tablename__ = "person_relatives"

    relative_name = Column(String(255), nullable=False)
    relationship = Column(String(64), nullable=True)
    phone_number = Column(String(32), nullable=True)
    address = Column(String(512), nullable=True)


class PersonVehicle(SatelliteMixin, Base):
    __tablename__ = "person_vehicles"

    vin = Column(String(32), nullable=True)
    make = Column(String(64), nullable=True)
    model = Column(String(64), nullable=True)
    year = Column(Integer, nullable=True)
    color = Column(String(32), nullable=True)
    license_plate = Column(String(32), nullable=True)


class PersonEmployment(SatelliteMixin, Base):
    __tablename__ = "person_employments"

    employer_name = Column(String(255), nullable=False)
    employer_phone = Column(String(32), nullable=True)
    employer_address = Column(String(512), nullable=True)
    job_title = Column(String(255), nullable=True)


class PersonBankruptcy(SatelliteMixin, Base):
    __tablename__ = "person_bankruptcies"

    case_number = Column(String(64), nullable=False)
    chapter = Column(String(8), nullable=True)
    filing_date = Column(Date, nullable=True)
    discharge_date = Column(Date, nullable=True)
    court = Column(String(255), nullable=True)
    status = Column(String(32), nullable=True)


PRIMARY_TABLES = {
    "accounts": DebtAccount,
    "skip_trace": SkipTraceSubject,
    "portfolios": MasterPortfolio,
    "clients": MasterClient,
    "agencies": MasterAgency,
}

SATELLITE_TABLES = {
    "addresses": PersonAddress,
    "phones": PersonPhone,
    "emails": PersonEmail,
    "relatives": PersonRelative,
    "vehicles": PersonVehicle,
    "employment": PersonEmployment,
    "bankruptcies": PersonBankruptcy,
}
