"""
Saved mapping template endpoints.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from debt_intake.api.dependencies import get_owner_id, http_error
from debt_intake.api.schemas.shared import (
    ImportTemplateCreate,
    ImportTemplateInfo,
    ImportTemplateListResponse,
    ImportTemplateResponse,
    ImportTemplateUpdate,
    ValidationPresetListResponse,
)
from debt_intake.core.errors import IntakeError
from debt_intake.domain.imports import templates
from debt_intake.domain.imports.validators import PRESET_PATTERNS, list_available_presets

router = APIRouter(prefix="/import-templates", tags=["import-templates"])

logger = logging.getLogger(__name__)


@router.get("", response_model=ImportTemplateListResponse)
async def list_templates_endpoint(
    import_type: Optional[str] = None,
    owner_id: Optional[str] = Depends(get_owner_id),
):
    try:
        found = templates.list_templates(import_type=import_type, owner_id=owner_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ImportTemplateListResponse(success=True, templates=[ImportTemplateInfo(**t) for t in found])


@router.post("", response_model=ImportTemplateResponse, status_code=201)
async def create_template_endpoint(
    request: ImportTemplateCreate,
    owner_id: Optional[str] = Depends(get_owner_id),
):
    try:
        template = templates.create_template(
            name=request.name,
            import_type=request.import_type,
            field_mappings=request.field_mappings,
            owner_id=owner_id,
            description=request.description,
            sample_rows=request.sample_rows,
            validation_rules=[rule.model_dump(exclude_none=True) for rule in request.validation_rules],
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except IntakeError as e:
        raise http_error(e)
    return ImportTemplateResponse(success=True, template=ImportTemplateInfo(**template))


@router.get("/validation-presets", response_model=ValidationPresetListResponse)
async def list_validation_presets_endpoint():
    """Preset validators a template rule can name with ``{"type": "preset", "preset": ...}``."""
    presets = [
        {"name": name, "description": description, "pattern": PRESET_PATTERNS[name]}
        for name, description in sorted(list_available_presets().items())
    ]
    return ValidationPresetListResponse(success=True, presets=presets)


@router.get("/{template_id}", response_model=ImportTemplateResponse)
async def get_template_endpoint(template_id: str):
    try:
        template = templates.get_template(template_id)
    except IntakeError as e:
        raise http_error(e)
    return ImportTemplateResponse(success=True, template=ImportTemplateInfo(**template))


@router.put("/{template_id}", response_model=ImportTemplateResponse)
async def update_template_endpoint(
    template_id: str,
    request: ImportTemplateUpdate,
    owner_id: Optional[str] = Depends(get_owner_id),
):
    changes = request.model_dump(exclude_unset=True)
    if "validation_rules" in changes and changes["validation_rules"] is not None:
        changes["validation_rules"] = [
            rule.model_dump(exclude_none=True) for rule in request.validation_rules
        ]
    try:
        template = templates.update_template(template_id, owner_id=owner_id, **changes)
    except IntakeError as e:
        raise http_error(e)
    return ImportTemplateResponse(success=True, template=ImportTemplateInfo(**template))


@router.delete("/{template_id}")
async def delete_template_endpoint(template_id: str, owner_id: Optional[str] = Depends(get_owner_id)):
    try:
        templates.delete_template(template_id, owner_id=owner_id)
    except IntakeError as e:
        raise http_error(e)
    logger.info("Template %s deleted via API", template_id)
    return {"success": True, "message": f"Template {template_id} deleted"}
