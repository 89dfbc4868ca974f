"""
Tests for row error listing and the failed-row CSV export.
"""

import io

import pandas as pd

from debt_intake.domain.imports import orchestrator
from debt_intake.domain.imports.failed_rows import build_failed_rows_csv, list_row_errors
from debt_intake.integrations.storage import download_file


class TestListRowErrors:

    def test_validation_errors_in_row_order(self, validated_job, account_rows):
        rows = account_rows(4)
        rows[1]["ssn"] = "12-3"
        rows[3]["current_balance"] = "free"
        job = validated_job(rows)

        errors = list_row_errors(job["id"])
        assert [(error.row_number, error.field) for error in errors] == [(2, "ssn"), (4, "current_balance")]
        assert list_row_errors(job["id"], limit=1, offset=1)[0].row_number == 4

    def test_load_errors_included(self, validated_job, run_to_completion):
        rows = [
            {"name": "Q1", "client_code": "NOPE", "original_balance": "100", "account_count": "1"},
            {"name": "Q2", "client_code": "NOPE", "original_balance": "", "account_count": "1"},
        ]
        job = validated_job(rows, import_type="portfolios")
        run_to_completion(job["id"])

        errors = list_row_errors(job["id"])
        assert [(error.row_number, error.stage) for error in errors] == [(1, "load"), (2, "validation")]


class TestFailedRowsCsv:

    def test_none_when_nothing_failed(self, validated_job, account_rows):
        job = validated_job(account_rows(2))
        assert build_failed_rows_csv(job["id"]) is None

    def test_original_columns_plus_error(self, validated_job, account_rows):
        rows = account_rows(3)
        rows[2]["ssn"] = "12-3"
        job = validated_job(rows)

        content = build_failed_rows_csv(job["id"])
        frame = pd.read_csv(io.BytesIO(content), dtype=str, keep_default_na=False)
        assert list(frame.columns) == list(rows[0].keys()) + ["error_message"]
        assert len(frame) == 1
        assert frame.loc[0, "ssn"] == "12-3"
        assert frame.loc[0, "error_message"].startswith("ssn: ")

        job = orchestrator.get_job(job["id"])
        assert download_file(job["failed_rows_path"]) == content

    def test_existing_error_column_is_not_overwritten(self, validated_job, account_rows):
        rows = account_rows(1, ssn="12-3", error_message="from vendor")
        job = validated_job(rows)

        frame = pd.read_csv(io.BytesIO(build_failed_rows_csv(job["id"])), dtype=str, keep_default_na=False)
        assert frame.loc[0, "error_message"] == "from vendor"
        assert frame.loc[0, "_error_message"].startswith("ssn: ")

    def test_available_after_completion(self, validated_job, account_rows, run_to_completion):
        rows = account_rows(3)
        rows[0]["ssn"] = "12-3"
        job = validated_job(rows)
        run_to_completion(job["id"])

        assert orchestrator.get_job(job["id"])["status"] == "completed"
        assert build_failed_rows_csv(job["id"]) is not None
        assert orchestrator.get_job(job["id"])["failed_rows_path"]
