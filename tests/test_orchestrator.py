"""
End-to-end tests for the job lifecycle: create, validate, process in chunks,
cancel, resume after a lost invocation.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from debt_intake.core.config import settings
from debt_intake.core.errors import (
    ChunkClaimConflictError,
    ImportSystemError,
    JobStateError,
    MappingError,
    UploadRejectedError,
)
from debt_intake.db.models import DebtAccount, ImportStagingRow, MasterPortfolio, Person, _utcnow
from debt_intake.db.session import get_engine
from debt_intake.domain.imports import jobs as job_store
from debt_intake.domain.imports import loader, orchestrator
from debt_intake.domain.imports.failed_rows import build_failed_rows_csv, list_row_errors
from debt_intake.integrations.storage import StorageDownloadError


def _count(model, *where):
    query = select(func.count()).select_from(model.__table__)
    if where:
        query = query.where(*where)
    with get_engine().connect() as conn:
        return conn.execute(query).scalar_one()


def _age_claim(job_id, seconds):
    with get_engine().begin() as conn:
        conn.execute(
            update(job_store.jobs_table)
            .where(job_store.jobs_table.c.id == job_id)
            .values(claimed_at=_utcnow() - timedelta(seconds=seconds))
        )


def _age_validation(job_id, seconds):
    with get_engine().begin() as conn:
        conn.execute(
            update(job_store.jobs_table)
            .where(job_store.jobs_table.c.id == job_id)
            .values(validation_started_at=_utcnow() - timedelta(seconds=seconds))
        )


def _interrupted_validation(make_csv, rows):
    """A job whose validating invocation died right after taking the job."""
    job = orchestrator.create_job(make_csv(rows), "batch.csv", "accounts")
    job_store.transition_job(job["id"], job_store.JobStatus.VALIDATING, expected=job_store.JobStatus.UPLOADED)
    return job


class TestCreateJob:

    def test_upload_creates_uploaded_job(self, make_csv, account_rows):
        job = orchestrator.create_job(make_csv(account_rows(2)), "batch.csv", "accounts", owner_id="user-1")
        assert job["status"] == "uploaded"
        assert job["file_type"] == "csv"
        assert job["file_path"].endswith(".csv")
        assert job["owner_id"] == "user-1"

    def test_empty_file_rejected(self):
        with pytest.raises(UploadRejectedError, match="empty"):
            orchestrator.create_job(b"", "batch.csv", "accounts")

    def test_unsupported_extension_rejected(self):
        with pytest.raises(UploadRejectedError, match="Unsupported"):
            orchestrator.create_job(b"a,b\n1,2\n", "batch.json", "accounts")

    def test_unknown_import_type_rejected(self):
        with pytest.raises(UploadRejectedError):
            orchestrator.create_job(b"a,b\n1,2\n", "batch.csv", "invoices")

    def test_portfolio_only_for_accounts(self):
        with pytest.raises(UploadRejectedError, match="accounts"):
            orchestrator.create_job(b"name,code\nA,B\n", "c.csv", "clients", new_portfolio={"name": "P"})

    def test_new_portfolio_is_created_and_attached(self, validated_job, account_rows, run_to_completion):
        job = validated_job(account_rows(2), new_portfolio={"name": "Spring Placement"})
        assert job["created_portfolio"] is True
        run_to_completion(job["id"])

        with get_engine().connect() as conn:
            portfolio_ids = set(conn.execute(select(DebtAccount.__table__.c.portfolio_id)).scalars())
        assert portfolio_ids == {job["portfolio_id"]}
        assert _count(MasterPortfolio) == 1


class TestValidateJob:

    def test_identities_normalize_to_distinct_keys(self, validated_job, account_rows, run_to_completion):
        rows = account_rows(3)
        for row, ssn in zip(rows, ["600-12-9645", "301643345", "439-72-2866"]):
            row["ssn"] = ssn
        job = validated_job(rows)
        run_to_completion(job["id"])

        with get_engine().connect() as conn:
            keys = set(conn.execute(select(Person.__table__.c.ssn)).scalars())
        assert keys == {"600129645", "301643345", "439722866"}

    def test_invalid_identity_never_reaches_resolution(self, validated_job, account_rows, run_to_completion):
        rows = account_rows(2)
        rows[1]["ssn"] = "12-3"
        job = validated_job(rows)
        assert (job["source_rows"], job["total_rows"], job["invalid_rows"]) == (2, 1, 1)
        errors = job["validation_summary"]["errors"]
        assert errors[0]["row_number"] == 2
        assert errors[0]["field"] == "ssn"

        run_to_completion(job["id"])
        assert _count(Person) == 1

    def test_missing_required_mapping_reverts_to_uploaded(self, make_csv, account_rows):
        rows = [{key: value for key, value in row.items() if key != "ssn"} for row in account_rows(2)]
        job = orchestrator.create_job(make_csv(rows), "no_ssn.csv", "accounts")
        with pytest.raises(MappingError) as exc_info:
            orchestrator.validate_job(job["id"])
        assert exc_info.value.missing_fields == ["ssn"]

        job = orchestrator.get_job(job["id"])
        assert job["status"] == "uploaded"
        assert "ssn" in job["error_message"]

    def test_explicit_mapping_fixes_the_file(self, make_csv, account_rows):
        rows = [{("Tax ID" if key == "ssn" else key): value for key, value in row.items()} for row in account_rows(2)]
        mapping = {
            "original_account_number": "original_account_number",
            "current_balance": "current_balance",
            "Tax ID": "ssn",
        }
        job = orchestrator.create_job(make_csv(rows), "renamed.csv", "accounts", field_mapping=mapping)
        summary = orchestrator.validate_job(job["id"])
        assert summary.valid_rows == 2
        assert summary.field_mapping == mapping
        assert "first_name" in summary.ignored_columns

    def test_revalidation_replaces_staging(self, validated_job, account_rows):
        job = validated_job(account_rows(5))
        orchestrator.validate_job(job["id"])
        assert _count(ImportStagingRow, ImportStagingRow.__table__.c.job_id == job["id"]) == 5
        assert orchestrator.get_job(job["id"])["status"] == "validated"

    def test_storage_failure_is_a_system_error(self, make_csv, account_rows, monkeypatch):
        job = orchestrator.create_job(make_csv(account_rows(1)), "batch.csv", "accounts")

        def broken_download(file_path):
            raise StorageDownloadError("bucket unavailable")

        monkeypatch.setattr(orchestrator, "download_file", broken_download)
        with pytest.raises(ImportSystemError):
            orchestrator.validate_job(job["id"])
        assert orchestrator.get_job(job["id"])["status"] == "uploaded"

    def test_live_validation_is_not_restarted(self, make_csv, account_rows):
        job = _interrupted_validation(make_csv, account_rows(2))
        with pytest.raises(JobStateError, match="already running"):
            orchestrator.validate_job(job["id"])
        assert orchestrator.get_job(job["id"])["status"] == "validating"

    def test_abandoned_validation_is_restarted(self, make_csv, account_rows):
        job = _interrupted_validation(make_csv, account_rows(3))
        _age_validation(job["id"], settings.validation_stale_seconds + 60)

        summary = orchestrator.validate_job(job["id"])
        assert summary.status == "validated"
        assert summary.valid_rows == 3
        assert _count(ImportStagingRow, ImportStagingRow.__table__.c.job_id == job["id"]) == 3

    def test_only_one_caller_takes_over_an_abandoned_validation(self, make_csv, account_rows):
        job = _interrupted_validation(make_csv, account_rows(1))
        _age_validation(job["id"], settings.validation_stale_seconds + 60)

        taken = job_store.take_over_validation(job["id"])
        assert taken["status"] == "validating"
        with pytest.raises(JobStateError, match="already running"):
            job_store.take_over_validation(job["id"])

    def test_abandoned_validation_is_reported_as_stalled(self, make_csv, account_rows):
        job = _interrupted_validation(make_csv, account_rows(1))
        assert job_store.find_stalled_jobs() == []

        later = _utcnow() + timedelta(seconds=settings.validation_stale_seconds + 60)
        stalled = job_store.find_stalled_jobs(now=later)
        assert [(entry["id"], entry["status"]) for entry in stalled] == [(job["id"], "validating")]
        assert stalled[0]["abandoned_claim"] is False

    def test_cannot_validate_while_processing(self, validated_job, account_rows):
        job = validated_job(account_rows(3))
        orchestrator.process_chunk(job["id"], chunk_size=1)
        with pytest.raises(JobStateError):
            orchestrator.validate_job(job["id"])


class TestProcessChunk:

    def test_250_rows_in_three_calls(self, validated_job, account_rows, run_to_completion):
        job = validated_job(account_rows(250))
        results = run_to_completion(job["id"], chunk_size=100)

        assert len(results) == 3
        assert [result.processed_count for result in results] == [100, 100, 50]
        assert [result.next_start_index for result in results] == [100, 200, 250]
        assert [result.completed for result in results] == [False, False, True]

        job = orchestrator.get_job(job["id"])
        assert job["status"] == "completed"
        assert job["processed_rows"] == 250
        assert job["successful_rows"] == 250
        assert job["progress"] == 100
        assert job["claim_token"] is None
        assert job["load_summary"]["inserted"] == 250

    def test_progress_is_monotonic(self, validated_job, account_rows, run_to_completion):
        job = validated_job(account_rows(7))
        results = run_to_completion(job["id"], chunk_size=2)
        progress = [result.progress for result in results]
        assert progress == sorted(progress)
        assert progress[-1] == 100

    def test_shared_identity_across_chunks(self, validated_job, account_rows, run_to_completion):
        job = validated_job(account_rows(4, ssn="301-64-3345"))
        run_to_completion(job["id"], chunk_size=1)
        assert _count(Person) == 1
        assert _count(DebtAccount) == 4

    def test_no_valid_rows_completes_immediately(self, validated_job, account_rows):
        job = validated_job(account_rows(2, ssn="12-3"))
        assert job["total_rows"] == 0
        result = orchestrator.process_chunk(job["id"])
        assert result.completed
        assert result.processed_count == 0

    def test_unvalidated_job_rejected(self, make_csv, account_rows):
        job = orchestrator.create_job(make_csv(account_rows(1)), "batch.csv", "accounts")
        with pytest.raises(JobStateError, match="validate"):
            orchestrator.process_chunk(job["id"])

    def test_completed_job_rejected(self, validated_job, account_rows, run_to_completion):
        job = validated_job(account_rows(1))
        run_to_completion(job["id"])
        with pytest.raises(JobStateError):
            orchestrator.process_chunk(job["id"])

    def test_retried_last_chunk_is_a_noop(self, validated_job, account_rows):
        job = validated_job(account_rows(150))
        first = orchestrator.process_chunk(job["id"], chunk_size=100, start_index=0)
        last = orchestrator.process_chunk(job["id"], chunk_size=100, start_index=first.next_start_index)
        assert last.completed

        retry = orchestrator.process_chunk(job["id"], chunk_size=100, start_index=first.next_start_index)
        assert retry.completed
        assert retry.processed_count == 0
        assert retry.next_start_index == 150
        assert orchestrator.get_job(job["id"])["processed_rows"] == 150
        assert _count(DebtAccount) == 150

    def test_performance_metrics_recorded_on_completion(self, validated_job, account_rows, run_to_completion):
        rows = account_rows(5)
        rows[0]["ssn"] = "12-3"
        job = validated_job(rows)
        assert job["performance_metrics"] is None
        run_to_completion(job["id"], chunk_size=2)

        job = orchestrator.get_job(job["id"])
        metrics = job["performance_metrics"]
        assert metrics["source_rows"] == 5
        assert metrics["invalid_rows"] == 1
        assert (metrics["total_rows"], metrics["successful_rows"], metrics["failed_rows"]) == (4, 4, 0)
        assert metrics["success_rate"] == 100.0
        assert metrics["processing_time_seconds"] >= 0
        assert metrics["rows_per_second"] > 0
        assert metrics["completed_at"] == job["processing_completed_at"].isoformat()

    def test_performance_metrics_count_load_failures(self, validated_job, run_to_completion):
        rows = [{"name": "Q1", "client_code": "MISSING", "original_balance": "100", "account_count": "1"}]
        job = validated_job(rows, import_type="portfolios")
        run_to_completion(job["id"])
        metrics = orchestrator.get_job(job["id"])["performance_metrics"]
        assert (metrics["failed_rows"], metrics["success_rate"]) == (1, 0.0)

    def test_satellite_failures_are_reported_per_row(self, validated_job, account_rows, run_to_completion, monkeypatch):
        real_insert = loader.insert_satellites

        def reject_second_address(conn, candidates, **kwargs):
            candidates = list(candidates)
            if any("2 Main St" in str(per_category) for _, per_category in candidates):
                raise IntegrityError("INSERT INTO person_addresses", {}, Exception("address rejected"))
            return real_insert(conn, candidates, **kwargs)

        monkeypatch.setattr(loader, "insert_satellites", reject_second_address)
        job = validated_job(account_rows(3))
        result = run_to_completion(job["id"])[-1]

        assert [(error.row_number, error.stage) for error in result.errors] == [(2, "satellites")]
        assert "address rejected" in result.errors[0].message
        assert result.load_summary["satellite_failures"] == 1
        assert result.load_summary["satellites"]["addresses"] == 2

        job = orchestrator.get_job(job["id"])
        assert job["status"] == "completed"
        assert (job["successful_rows"], job["failed_rows"]) == (3, 0)
        assert job["load_summary"]["satellite_failures"] == 1
        assert _count(DebtAccount) == 3

        errors = list_row_errors(job["id"])
        assert [(error.row_number, error.stage) for error in errors] == [(2, "satellites")]
        exported = build_failed_rows_csv(job["id"]).decode("utf-8").splitlines()
        assert len(exported) == 2
        assert exported[1].startswith("ACC-00002")

    def test_invalid_chunk_size(self, validated_job, account_rows):
        job = validated_job(account_rows(1))
        with pytest.raises(ValueError):
            orchestrator.process_chunk(job["id"], chunk_size=-5)

    def test_start_index_behind_cursor_is_a_noop(self, validated_job, account_rows):
        job = validated_job(account_rows(4))
        orchestrator.process_chunk(job["id"], chunk_size=2)
        replay = orchestrator.process_chunk(job["id"], chunk_size=2, start_index=0)

        assert replay.processed_count == 0
        assert replay.next_start_index == 2
        job = orchestrator.get_job(job["id"])
        assert job["processed_rows"] == 2
        assert job["claim_token"] is None
        assert _count(DebtAccount) == 2

    def test_start_index_ahead_of_cursor_rejected(self, validated_job, account_rows):
        job = validated_job(account_rows(4))
        with pytest.raises(JobStateError, match="ahead"):
            orchestrator.process_chunk(job["id"], chunk_size=2, start_index=3)
        assert orchestrator.get_job(job["id"])["claim_token"] is None

    def test_explicit_start_index_at_cursor(self, validated_job, account_rows):
        job = validated_job(account_rows(4))
        result = orchestrator.process_chunk(job["id"], chunk_size=2, start_index=0)
        result = orchestrator.process_chunk(job["id"], chunk_size=2, start_index=result.next_start_index)
        assert result.completed

    def test_load_failures_are_counted(self, validated_job, run_to_completion):
        rows = [{"name": "Q1", "client_code": "MISSING", "original_balance": "100", "account_count": "1"}]
        job = validated_job(rows, import_type="portfolios")
        results = run_to_completion(job["id"])

        assert results[-1].errors[0].stage == "load"
        job = orchestrator.get_job(job["id"])
        assert job["status"] == "completed"
        assert (job["processed_rows"], job["successful_rows"], job["failed_rows"]) == (1, 0, 1)


class TestConcurrency:

    def test_unexpected_error_releases_claim(self, validated_job, account_rows, monkeypatch):
        job = validated_job(account_rows(2))

        def broken_load(conn, job, rows):
            raise KeyError("portfolio_id")

        monkeypatch.setattr(orchestrator, "load_chunk", broken_load)
        with pytest.raises(KeyError):
            orchestrator.process_chunk(job["id"], chunk_size=2)

        job = orchestrator.get_job(job["id"])
        assert job["claim_token"] is None
        assert (job["status"], job["processed_rows"]) == ("validated", 0)

        monkeypatch.undo()
        result = orchestrator.process_chunk(job["id"], chunk_size=2)
        assert result.completed
        assert _count(DebtAccount) == 2

    def test_live_claim_blocks_second_invocation(self, validated_job, account_rows):
        job = validated_job(account_rows(4))
        job_store.claim_job(job["id"])
        with pytest.raises(ChunkClaimConflictError):
            orchestrator.process_chunk(job["id"], chunk_size=2)
        assert orchestrator.get_job(job["id"])["processed_rows"] == 0

    def test_stale_claim_is_taken_over(self, validated_job, account_rows, run_to_completion):
        job = validated_job(account_rows(4))
        orchestrator.process_chunk(job["id"], chunk_size=2)
        job_store.claim_job(job["id"])
        _age_claim(job["id"], settings.chunk_claim_ttl_seconds + 60)

        results = run_to_completion(job["id"], chunk_size=2)
        assert results[-1].completed
        job = orchestrator.get_job(job["id"])
        assert job["processed_rows"] == 4
        assert _count(DebtAccount) == 4

    def test_stale_claim_fails_job_when_configured(self, validated_job, account_rows, monkeypatch):
        monkeypatch.setattr(settings, "stalled_job_action", "fail")
        job = validated_job(account_rows(4))
        orchestrator.process_chunk(job["id"], chunk_size=2)
        job_store.claim_job(job["id"])
        _age_claim(job["id"], settings.chunk_claim_ttl_seconds + 60)

        result = orchestrator.process_chunk(job["id"], chunk_size=2)
        assert result.status == "failed"
        job = orchestrator.get_job(job["id"])
        assert "stalled" in job["error_message"]
        assert job["processed_rows"] == 2

    def test_stalled_jobs_are_reported(self, validated_job, account_rows):
        job = validated_job(account_rows(4))
        orchestrator.process_chunk(job["id"], chunk_size=2)
        job_store.claim_job(job["id"])

        later = _utcnow() + timedelta(seconds=settings.chunk_claim_ttl_seconds + 60)
        stalled = job_store.find_stalled_jobs(now=later)
        assert [entry["id"] for entry in stalled] == [job["id"]]
        assert stalled[0]["abandoned_claim"] is True


class TestCancel:

    def test_cancel_after_first_chunk(self, validated_job, account_rows):
        job = validated_job(account_rows(250))
        first = orchestrator.process_chunk(job["id"], chunk_size=100)

        cancelled = orchestrator.cancel_job(job["id"])
        assert cancelled["status"] == "cancelled"
        assert cancelled["processed_rows"] == first.processed_count == 100
        with pytest.raises(JobStateError):
            orchestrator.process_chunk(job["id"], chunk_size=100)
        assert _count(DebtAccount) == 100

    def test_cancel_with_chunk_in_flight(self, validated_job, account_rows):
        job = validated_job(account_rows(4))
        orchestrator.process_chunk(job["id"], chunk_size=2)
        token, _, _ = job_store.claim_job(job["id"])

        flagged = orchestrator.cancel_job(job["id"])
        assert flagged["status"] == "processing"
        assert flagged["cancel_requested"] is True

        job_store.release_claim(job["id"], token)
        result = orchestrator.process_chunk(job["id"], chunk_size=2)
        assert result.cancelled
        assert result.processed_count == 0
        assert _count(DebtAccount) == 2

    def test_cancelled_job_rejects_replayed_start_index(self, validated_job, account_rows):
        job = validated_job(account_rows(4))
        orchestrator.process_chunk(job["id"], chunk_size=2)
        orchestrator.cancel_job(job["id"])
        with pytest.raises(JobStateError):
            orchestrator.process_chunk(job["id"], chunk_size=2, start_index=0)

    def test_cancel_requires_processing(self, validated_job, account_rows):
        job = validated_job(account_rows(1))
        with pytest.raises(JobStateError):
            orchestrator.cancel_job(job["id"])


class TestPreviewAndList:

    def test_preview_suggests_mapping(self, make_csv, account_rows):
        preview = orchestrator.preview_file(make_csv(account_rows(20)), "batch.csv", "accounts", sample_size=5)
        assert len(preview["sample_rows"]) == 5
        assert preview["suggested_mapping"]["ssn"] == "ssn"
        assert preview["missing_required_fields"] == []
        assert "email" in preview["unmapped_optional_fields"]

    def test_list_jobs_filters(self, make_csv, account_rows):
        orchestrator.create_job(make_csv(account_rows(1)), "a.csv", "accounts", owner_id="u1")
        orchestrator.create_job(make_csv(account_rows(1)), "b.csv", "accounts", owner_id="u2")
        jobs, total = orchestrator.list_jobs(owner_id="u1", status="uploaded", import_type="accounts")
        assert total == 1
        assert jobs[0]["file_name"] == "a.csv"
