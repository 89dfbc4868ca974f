"""
Pytest configuration and fixtures for the Debt Intake tests.

The suite runs against a throwaway SQLite database and local-disk storage
in a temporary directory. Both are configured through the environment
before the package is imported, because settings are read at import time.
"""

import io
import os
import shutil
import tempfile

_TEST_ROOT = tempfile.mkdtemp(prefix="debt_intake_tests_")
os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{os.path.join(_TEST_ROOT, 'test.db')}"
os.environ["STORAGE_PROVIDER"] = "local"
os.environ["STORAGE_LOCAL_ROOT"] = os.path.join(_TEST_ROOT, "storage")
os.environ["SKIP_DB_INIT"] = "1"

import pandas as pd
import pytest

from debt_intake.db.session import Base, create_all_tables, get_engine
from debt_intake.domain.imports import orchestrator


@pytest.fixture(scope="session", autouse=True)
def initialize_test_database():
    """Create every table once for the session and remove the temp directory afterwards."""
    create_all_tables()
    yield
    get_engine().dispose()
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture(autouse=True)
def clean_tables():
    """Empty all tables after each test; children first because foreign keys are enforced."""
    yield
    with get_engine().begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def make_csv():
    """Build CSV bytes from a list of row dicts."""
    def _make(rows, headers=None):
        headers = headers or list(rows[0].keys())
        buffer = io.StringIO()
        pd.DataFrame(rows, columns=headers).to_csv(buffer, index=False)
        return buffer.getvalue().encode("utf-8")
    return _make


def _ssn(i: int) -> str:
    return f"{100000000 + i:09d}"


@pytest.fixture
def account_rows():
    """Valid account rows; each gets its own SSN unless ``ssn`` is given."""
    def _rows(count, start=1, ssn=None, **overrides):
        rows = []
        for i in range(start, start + count):
            row = {
                "original_account_number": f"ACC-{i:05d}",
                "ssn": ssn or _ssn(i),
                "current_balance": "150.00",
                "first_name": "Pat",
                "last_name": f"Debtor{i}",
                "phone": "415-555-0100",
                "address_line1": f"{i} Main St",
                "city": "Springfield",
                "state": "IL",
                "zip_code": "62701",
            }
            row.update(overrides)
            rows.append(row)
        return rows
    return _rows


@pytest.fixture
def validated_job(make_csv):
    """Create and validate a job from row dicts; returns the validated job."""
    def _create(rows, import_type="accounts", file_name="upload.csv", headers=None, **kwargs):
        job = orchestrator.create_job(make_csv(rows, headers=headers), file_name, import_type, **kwargs)
        orchestrator.validate_job(job["id"])
        return orchestrator.get_job(job["id"])
    return _create


@pytest.fixture
def run_to_completion():
    """Call process_chunk until the job is done; returns the list of chunk results."""
    def _run(job_id, chunk_size=100, max_calls=1000):
        results = []
        for _ in range(max_calls):
            result = orchestrator.process_chunk(job_id, chunk_size=chunk_size)
            results.append(result)
            if result.completed or result.cancelled or result.status == "failed":
                return results
        raise AssertionError(f"Job {job_id} did not finish in {max_calls} calls")
    return _run
