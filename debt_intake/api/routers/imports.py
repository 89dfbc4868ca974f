"""
Import job endpoints: upload, validate, process chunks, cancel, delete and
download failed rows.
"""
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import Response

from debt_intake.api.dependencies import get_owner_id, http_error
from debt_intake.api.schemas.shared import (
    ChunkResponse,
    DeleteJobResponse,
    ImportJobInfo,
    ImportJobListResponse,
    ImportJobResponse,
    PreviewResponse,
    ProcessChunkRequest,
    RowErrorDetail,
    RowErrorListResponse,
    ValidationResponse,
)
from debt_intake.core.errors import IntakeError
from debt_intake.domain.imports import orchestrator
from debt_intake.domain.imports.deletion import delete_job
from debt_intake.domain.imports.failed_rows import build_failed_rows_csv, list_row_errors

router = APIRouter(prefix="/imports", tags=["imports"])

logger = logging.getLogger(__name__)


def _parse_json_form(value: Optional[str], name: str) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"{name} is not valid JSON: {e}")
    if not isinstance(parsed, dict):
        raise HTTPException(status_code=400, detail=f"{name} must be a JSON object")
    return parsed


def _row_errors(errors) -> list:
    return [RowErrorDetail(**error.to_dict()) for error in errors]


@router.post("", response_model=ImportJobResponse, status_code=201)
async def create_import_endpoint(
    file: UploadFile = File(...),
    import_type: str = Form(...),
    field_mapping: Optional[str] = Form(None),
    template_id: Optional[str] = Form(None),
    portfolio_id: Optional[str] = Form(None),
    new_portfolio: Optional[str] = Form(None),
    owner_id: Optional[str] = Depends(get_owner_id),
):
    """
    Upload a file and create an import job.

    Parameters:
    - file: CSV or Excel file
    - import_type: accounts, skip_trace, portfolios, clients or agencies
    - field_mapping: Optional JSON object of source column -> canonical field
    - template_id: Optional saved template to pre-fill the mapping
    - portfolio_id / new_portfolio: Portfolio for accounts imports (new_portfolio is a JSON object)
    """
    mapping = _parse_json_form(field_mapping, "field_mapping")
    portfolio = _parse_json_form(new_portfolio, "new_portfolio")
    file_content = await file.read()
    logger.info("Received %s import upload '%s' (%d bytes)", import_type, file.filename, len(file_content))

    try:
        job = orchestrator.create_job(
            file_content,
            file.filename or "upload.csv",
            import_type,
            owner_id=owner_id,
            field_mapping=mapping,
            template_id=template_id or None,
            portfolio_id=portfolio_id or None,
            new_portfolio=portfolio,
        )
    except IntakeError as e:
        raise http_error(e)
    return ImportJobResponse(success=True, job=ImportJobInfo.from_job(job))


@router.post("/preview", response_model=PreviewResponse)
async def preview_import_endpoint(
    file: UploadFile = File(...),
    import_type: str = Form(...),
    template_id: Optional[str] = Form(None),
):
    """Show the first rows of a file with a suggested mapping, without creating a job."""
    file_content = await file.read()
    try:
        preview = orchestrator.preview_file(file_content, file.filename or "upload.csv", import_type, template_id or None)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except IntakeError as e:
        raise http_error(e)
    return PreviewResponse(success=True, **preview)


@router.get("", response_model=ImportJobListResponse)
async def list_imports_endpoint(
    status: Optional[str] = None,
    import_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    owner_id: Optional[str] = Depends(get_owner_id),
):
    try:
        jobs, total = orchestrator.list_jobs(
            owner_id=owner_id, status=status, import_type=import_type, limit=limit, offset=offset
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ImportJobListResponse(
        success=True,
        jobs=[ImportJobInfo.from_job(job) for job in jobs],
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{job_id}", response_model=ImportJobResponse)
async def get_import_endpoint(job_id: str):
    try:
        job = orchestrator.get_job(job_id)
    except IntakeError as e:
        raise http_error(e)
    return ImportJobResponse(success=True, job=ImportJobInfo.from_job(job))


@router.post("/{job_id}/validate", response_model=ValidationResponse)
async def validate_import_endpoint(job_id: str):
    """Map and validate every row; the job moves to validated, or back to uploaded on a mapping error."""
    try:
        summary = orchestrator.validate_job(job_id)
    except IntakeError as e:
        raise http_error(e)
    return ValidationResponse(
        success=True,
        job_id=summary.job_id,
        status=summary.status,
        source_rows=summary.source_rows,
        valid_rows=summary.valid_rows,
        invalid_rows=summary.invalid_rows,
        field_mapping=summary.field_mapping,
        unmapped_fields=summary.unmapped_fields,
        ignored_columns=summary.ignored_columns,
        errors=_row_errors(summary.errors),
        warnings=_row_errors(summary.warnings),
    )


@router.post("/{job_id}/process", response_model=ChunkResponse)
async def process_import_endpoint(job_id: str, request: Optional[ProcessChunkRequest] = None):
    """
    Load one chunk of validated rows.

    Call repeatedly until ``completed`` is true; each call does a bounded
    amount of work and can be retried safely.
    """
    request = request or ProcessChunkRequest()
    try:
        result = orchestrator.process_chunk(job_id, chunk_size=request.chunk_size, start_index=request.start_index)
    except IntakeError as e:
        raise http_error(e)
    return ChunkResponse(
        success=True,
        job_id=result.job_id,
        processed_count=result.processed_count,
        next_start_index=result.next_start_index,
        completed=result.completed,
        cancelled=result.cancelled,
        status=result.status,
        progress=result.progress,
        errors=_row_errors(result.errors),
        load_summary=result.load_summary,
    )


@router.post("/{job_id}/cancel", response_model=ImportJobResponse)
async def cancel_import_endpoint(job_id: str):
    try:
        job = orchestrator.cancel_job(job_id)
    except IntakeError as e:
        raise http_error(e)
    return ImportJobResponse(success=True, job=ImportJobInfo.from_job(job))


@router.get("/{job_id}/errors", response_model=RowErrorListResponse)
async def list_import_errors_endpoint(job_id: str, limit: Optional[int] = None, offset: int = 0):
    try:
        errors = list_row_errors(job_id, limit=limit, offset=offset)
    except IntakeError as e:
        raise http_error(e)
    return RowErrorListResponse(success=True, job_id=job_id, errors=_row_errors(errors), limit=limit, offset=offset)


@router.get("/{job_id}/failed-rows")
async def download_failed_rows_endpoint(job_id: str):
    """Download the failed rows as CSV in the original column order with an error_message column."""
    try:
        content = build_failed_rows_csv(job_id)
    except IntakeError as e:
        raise http_error(e)
    if content is None:
        raise HTTPException(status_code=404, detail="Failed rows not available: this import has no failed rows")
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="failed_rows_{job_id}.csv"'},
    )


@router.delete("/{job_id}", response_model=DeleteJobResponse)
async def delete_import_endpoint(job_id: str, file_name: Optional[str] = None):
    """
    Delete an import job and every record it created.

    Pass ``file_name`` to confirm the deletion against the job's file name.
    """
    try:
        summary = delete_job(job_id, file_name=file_name)
    except IntakeError as e:
        raise http_error(e)
    return DeleteJobResponse(
        success=True,
        message=f"Import job {job_id} deleted",
        summary=summary,
    )
