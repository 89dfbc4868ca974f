from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class RowErrorDetail(BaseModel):
    """A row-level validation or load error."""
    row_number: int
    field: Optional[str] = None
    message: str
    stage: str = "validation"


class ImportJobInfo(BaseModel):
    """Status and counters of an import job."""
    id: str
    owner_id: Optional[str] = None
    file_name: str
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    import_type: str
    template_id: Optional[str] = None
    field_mapping: Optional[Dict[str, Optional[str]]] = None
    status: str
    progress: int = 0
    source_rows: int = 0
    total_rows: int = 0
    invalid_rows: int = 0
    processed_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    cursor: int = 0
    cancel_requested: bool = False
    portfolio_id: Optional[str] = None
    created_portfolio: bool = False
    error_message: Optional[str] = None
    validation_summary: Optional[Dict[str, Any]] = None
    load_summary: Optional[Dict[str, Any]] = None
    performance_metrics: Optional[Dict[str, Any]] = None
    failed_rows_available: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    validation_started_at: Optional[datetime] = None
    validation_completed_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    last_progress_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Dict[str, Any]) -> "ImportJobInfo":
        data = {key: value for key, value in job.items() if key in cls.model_fields}
        satellite_failures = (job.get("load_summary") or {}).get("satellite_failures")
        data["failed_rows_available"] = bool(job.get("invalid_rows") or job.get("failed_rows") or satellite_failures)
        return cls(**data)


class ImportJobResponse(BaseModel):
    """Response wrapper for a single import job."""
    success: bool
    job: ImportJobInfo


class ImportJobListResponse(BaseModel):
    """Response wrapper for a list of import jobs."""
    success: bool
    jobs: List[ImportJobInfo]
    total_count: int
    limit: int
    offset: int


class ValidationResponse(BaseModel):
    """Outcome of validating a job's file."""
    success: bool
    job_id: str
    status: str
    source_rows: int
    valid_rows: int
    invalid_rows: int
    field_mapping: Dict[str, str]
    unmapped_fields: List[str] = Field(default_factory=list)
    ignored_columns: List[str] = Field(default_factory=list)
    errors: List[RowErrorDetail] = Field(default_factory=list)
    warnings: List[RowErrorDetail] = Field(default_factory=list)


class ProcessChunkRequest(BaseModel):
    chunk_size: Optional[int] = Field(default=None, ge=1)
    start_index: Optional[int] = Field(default=None, ge=0)


class ChunkResponse(BaseModel):
    """Result of one process call; call again until ``completed`` is true."""
    success: bool
    job_id: str
    processed_count: int
    next_start_index: int
    completed: bool
    cancelled: bool = False
    status: str
    progress: int
    errors: List[RowErrorDetail] = Field(default_factory=list)
    load_summary: Optional[Dict[str, Any]] = None


class RowErrorListResponse(BaseModel):
    success: bool
    job_id: str
    errors: List[RowErrorDetail]
    limit: Optional[int] = None
    offset: int = 0


class PreviewResponse(BaseModel):
    """First rows of a file plus a suggested mapping."""
    success: bool
    import_type: str
    headers: List[str]
    sample_rows: List[Dict[str, Any]]
    suggested_mapping: Dict[str, str]
    missing_required_fields: List[str]
    unmapped_optional_fields: List[str]


class DeleteJobResponse(BaseModel):
    """Response from deleting an import job"""
    success: bool
    message: str
    summary: Dict[str, Any]


class ValidationRule(BaseModel):
    type: str
    field: Optional[str] = None
    column: Optional[str] = None
    message: Optional[str] = None
    options: Optional[List[str]] = None
    preset: Optional[str] = None
    value: Optional[float] = None


class ImportTemplateCreate(BaseModel):
    name: str
    import_type: str
    field_mappings: Dict[str, str]
    description: Optional[str] = None
    sample_rows: List[Dict[str, Any]] = Field(default_factory=list)
    validation_rules: List[ValidationRule] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must not be blank")
        return value.strip()


class ImportTemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    field_mappings: Optional[Dict[str, str]] = None
    sample_rows: Optional[List[Dict[str, Any]]] = None
    validation_rules: Optional[List[ValidationRule]] = None


class ImportTemplateInfo(BaseModel):
    id: str
    name: str
    import_type: str
    description: Optional[str] = None
    field_mappings: Dict[str, str]
    required_fields: List[str]
    optional_fields: List[str]
    sample_rows: List[Dict[str, Any]] = Field(default_factory=list)
    validation_rules: List[Dict[str, Any]] = Field(default_factory=list)
    owner_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ImportTemplateResponse(BaseModel):
    success: bool
    template: ImportTemplateInfo


class ImportTemplateListResponse(BaseModel):
    success: bool
    templates: List[ImportTemplateInfo]


class ValidationPreset(BaseModel):
    name: str
    description: str
    pattern: str


class ValidationPresetListResponse(BaseModel):
    success: bool
    presets: List[ValidationPreset]
