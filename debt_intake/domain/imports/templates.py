"""
Saved mapping templates.

A template stores a source-column -> canonical-field mapping for one
import type, plus optional extra validation rules and sample rows. Names
are unique per owner; only the owner may change or delete a template.
Templates without an owner (seeded or legacy ones) are editable by anyone.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import or_

from debt_intake.core.errors import (
    DuplicateTemplateError,
    MappingError,
    TemplateNotFoundError,
    TemplatePermissionError,
)
from debt_intake.db.models import ImportTemplate, _utcnow
from debt_intake.db.session import get_session_local
from debt_intake.domain.imports.import_types import get_spec

logger = logging.getLogger(__name__)

SUPPORTED_RULE_TYPES = {"required", "number", "numeric", "integer", "date", "email", "enum", "preset", "min", "max"}


def _template_to_dict(template: ImportTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "import_type": template.import_type,
        "description": template.description,
        "field_mappings": template.field_mappings or {},
        "required_fields": template.required_fields or [],
        "optional_fields": template.optional_fields or [],
        "sample_rows": template.sample_rows or [],
        "validation_rules": template.validation_rules or [],
        "owner_id": template.owner_id,
        "created_at": template.created_at,
        "updated_at": template.updated_at,
    }


def _check_field_mappings(import_type: str, field_mappings: Dict[str, str]) -> None:
    spec = get_spec(import_type)
    unknown = sorted({target for target in field_mappings.values() if target and spec.get(target) is None})
    if unknown:
        raise MappingError(f"Unknown fields for import type '{spec.import_type.value}': {', '.join(unknown)}")
    targets = [target for target in field_mappings.values() if target]
    duplicated = sorted({target for target in targets if targets.count(target) > 1})
    if duplicated:
        raise MappingError(f"Fields mapped from more than one column: {', '.join(duplicated)}")


def _check_rules(rules: List[Dict[str, Any]]) -> None:
    for rule in rules:
        rule_type = (rule.get("type") or "").lower()
        if rule_type not in SUPPORTED_RULE_TYPES:
            raise MappingError(f"Unsupported validation rule type '{rule.get('type')}'")
        if not (rule.get("field") or rule.get("column")):
            raise MappingError("Validation rules need a 'field' or 'column'")


def _name_taken(db, name: str, owner_id: Optional[str], exclude_id: Optional[str] = None) -> bool:
    query = db.query(ImportTemplate).filter(ImportTemplate.name == name)
    if owner_id is None:
        query = query.filter(ImportTemplate.owner_id.is_(None))
    else:
        query = query.filter(ImportTemplate.owner_id == owner_id)
    if exclude_id is not None:
        query = query.filter(ImportTemplate.id != exclude_id)
    return db.query(query.exists()).scalar()


def _check_owner(template: ImportTemplate, owner_id: Optional[str]) -> None:
    if template.owner_id is not None and template.owner_id != owner_id:
        raise TemplatePermissionError(f"Template {template.id} belongs to another user")


def create_template(
    *,
    name: str,
    import_type: str,
    field_mappings: Dict[str, str],
    owner_id: Optional[str] = None,
    description: Optional[str] = None,
    sample_rows: Optional[List[Dict[str, Any]]] = None,
    validation_rules: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """
    Save a new template.

    Required/optional field lists are derived from the import type so they
    always match what the validator enforces.

    Raises:
        MappingError: Mapping targets or rules are invalid for the import type
        DuplicateTemplateError: The owner already has a template with this name
    """
    spec = get_spec(import_type)
    name = (name or "").strip()
    if not name:
        raise MappingError("Template name is required")
    _check_field_mappings(spec.import_type.value, field_mappings)
    _check_rules(validation_rules or [])

    db = get_session_local()()
    try:
        if _name_taken(db, name, owner_id):
            raise DuplicateTemplateError(f"A template named '{name}' already exists")
        template = ImportTemplate(
            name=name,
            import_type=spec.import_type.value,
            description=description,
            field_mappings=dict(field_mappings),
            required_fields=spec.required_fields,
            optional_fields=spec.optional_fields,
            sample_rows=list(sample_rows or []),
            validation_rules=list(validation_rules or []),
            owner_id=owner_id,
        )
        db.add(template)
        db.commit()
        db.refresh(template)
        logger.info("Created %s template '%s' (%s)", template.import_type, template.name, template.id)
        return _template_to_dict(template)
    finally:
        db.close()


def get_template(template_id: str) -> Dict[str, Any]:
    db = get_session_local()()
    try:
        template = db.get(ImportTemplate, template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return _template_to_dict(template)
    finally:
        db.close()


def list_templates(import_type: Optional[str] = None, owner_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    List templates, optionally for one import type.

    When ``owner_id`` is given, the owner's templates and ownerless ones are returned.
    """
    db = get_session_local()()
    try:
        query = db.query(ImportTemplate)
        if import_type is not None:
            query = query.filter(ImportTemplate.import_type == get_spec(import_type).import_type.value)
        if owner_id is not None:
            query = query.filter(or_(ImportTemplate.owner_id == owner_id, ImportTemplate.owner_id.is_(None)))
        return [_template_to_dict(template) for template in query.order_by(ImportTemplate.name).all()]
    finally:
        db.close()


def update_template(template_id: str, *, owner_id: Optional[str] = None, **changes: Any) -> Dict[str, Any]:
    """
    Update name, description, mappings, rules or sample rows of a template.

    Raises:
        TemplateNotFoundError: Unknown template
        TemplatePermissionError: Caller does not own the template
        DuplicateTemplateError: New name collides with another of the owner's templates
        MappingError: Invalid mappings or rules
    """
    allowed = {"name", "description", "field_mappings", "validation_rules", "sample_rows"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Template fields cannot be updated: {sorted(unknown)}")

    db = get_session_local()()
    try:
        template = db.get(ImportTemplate, template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        _check_owner(template, owner_id)

        if changes.get("name") is not None:
            name = changes["name"].strip()
            if not name:
                raise MappingError("Template name is required")
            if _name_taken(db, name, template.owner_id, exclude_id=template.id):
                raise DuplicateTemplateError(f"A template named '{name}' already exists")
            template.name = name
        if "description" in changes:
            template.description = changes["description"]
        if changes.get("field_mappings") is not None:
            _check_field_mappings(template.import_type, changes["field_mappings"])
            template.field_mappings = dict(changes["field_mappings"])
        if changes.get("validation_rules") is not None:
            _check_rules(changes["validation_rules"])
            template.validation_rules = list(changes["validation_rules"])
        if changes.get("sample_rows") is not None:
            template.sample_rows = list(changes["sample_rows"])
        template.updated_at = _utcnow()

        db.commit()
        db.refresh(template)
        logger.info("Updated template %s", template_id)
        return _template_to_dict(template)
    finally:
        db.close()


def delete_template(template_id: str, *, owner_id: Optional[str] = None) -> None:
    db = get_session_local()()
    try:
        template = db.get(ImportTemplate, template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        _check_owner(template, owner_id)
        db.delete(template)
        db.commit()
        logger.info("Deleted template %s", template_id)
    finally:
        db.close()
