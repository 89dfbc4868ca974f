"""
Tests for saved mapping templates.
"""

import pytest

from debt_intake.core.errors import (
    DuplicateTemplateError,
    MappingError,
    TemplateNotFoundError,
    TemplatePermissionError,
)
from debt_intake.domain.imports import orchestrator
from debt_intake.domain.imports.templates import (
    create_template,
    delete_template,
    get_template,
    list_templates,
    update_template,
)

VENDOR_MAPPING = {"Acct Ref": "original_account_number", "Amt Owed": "current_balance", "Tax ID": "ssn"}


def _vendor_template(**overrides):
    values = {
        "name": "Vendor A",
        "import_type": "accounts",
        "field_mappings": VENDOR_MAPPING,
        "owner_id": "user-1",
    }
    values.update(overrides)
    return create_template(**values)


class TestTemplateCrud:

    def test_create_derives_field_lists(self):
        template = _vendor_template(description="Monthly placement file")
        assert template["import_type"] == "accounts"
        assert "ssn" in template["required_fields"]
        assert "email" in template["optional_fields"]
        assert get_template(template["id"])["field_mappings"] == VENDOR_MAPPING

    def test_unknown_target_rejected(self):
        with pytest.raises(MappingError, match="Unknown fields"):
            _vendor_template(field_mappings={"X": "favourite_colour"})

    def test_duplicate_target_rejected(self):
        with pytest.raises(MappingError, match="more than one column"):
            _vendor_template(field_mappings={"A": "ssn", "B": "ssn"})

    def test_unsupported_rule_rejected(self):
        with pytest.raises(MappingError, match="Unsupported"):
            _vendor_template(validation_rules=[{"type": "regex", "field": "ssn"}])

    def test_names_unique_per_owner(self):
        _vendor_template()
        with pytest.raises(DuplicateTemplateError):
            _vendor_template()
        assert _vendor_template(owner_id="user-2")["name"] == "Vendor A"

    def test_list_shows_own_and_shared(self):
        _vendor_template(name="Mine")
        _vendor_template(name="Theirs", owner_id="user-2")
        _vendor_template(name="Shared", owner_id=None)
        _vendor_template(name="Clients", import_type="clients", field_mappings={"Client": "name"})

        names = [template["name"] for template in list_templates(owner_id="user-1")]
        assert names == ["Clients", "Mine", "Shared"]
        names = [template["name"] for template in list_templates(import_type="accounts", owner_id="user-1")]
        assert names == ["Mine", "Shared"]

    def test_update(self):
        template = _vendor_template()
        updated = update_template(
            template["id"],
            owner_id="user-1",
            name="Vendor A v2",
            validation_rules=[{"type": "preset", "field": "zip_code", "preset": "postal_code_us"}],
        )
        assert updated["name"] == "Vendor A v2"
        assert updated["validation_rules"][0]["preset"] == "postal_code_us"

    def test_update_rejects_other_columns(self):
        template = _vendor_template()
        with pytest.raises(ValueError):
            update_template(template["id"], owner_id="user-1", import_type="clients")

    def test_only_owner_may_modify(self):
        template = _vendor_template()
        with pytest.raises(TemplatePermissionError):
            update_template(template["id"], owner_id="user-2", name="Hijacked")
        with pytest.raises(TemplatePermissionError):
            delete_template(template["id"], owner_id="user-2")

    def test_delete(self):
        template = _vendor_template()
        delete_template(template["id"], owner_id="user-1")
        with pytest.raises(TemplateNotFoundError):
            get_template(template["id"])


class TestTemplatesInJobs:

    def test_template_mapping_applies(self, make_csv, account_rows):
        template = _vendor_template()
        rows = [
            {"Acct Ref": row["original_account_number"], "Amt Owed": row["current_balance"], "Tax ID": row["ssn"]}
            for row in account_rows(3)
        ]
        job = orchestrator.create_job(make_csv(rows), "vendor.csv", "accounts", template_id=template["id"])
        summary = orchestrator.validate_job(job["id"])
        assert summary.valid_rows == 3
        assert summary.field_mapping == VENDOR_MAPPING

    def test_template_rules_add_row_errors(self, make_csv, account_rows):
        template = _vendor_template(
            field_mappings={**VENDOR_MAPPING, "Zip": "zip_code"},
            validation_rules=[{"type": "preset", "column": "Zip", "preset": "postal_code_us"}],
        )
        rows = [
            {"Acct Ref": "A-1", "Amt Owed": "100", "Tax ID": "600-12-9645", "Zip": "62701"},
            {"Acct Ref": "A-2", "Amt Owed": "100", "Tax ID": "301-64-3345", "Zip": "ABC"},
        ]
        job = orchestrator.create_job(make_csv(rows), "vendor.csv", "accounts", template_id=template["id"])
        summary = orchestrator.validate_job(job["id"])
        assert summary.invalid_rows == 1
        assert summary.errors[0].field == "zip_code"

    def test_template_for_other_type_rejected(self, make_csv, account_rows):
        template = _vendor_template(import_type="clients", field_mappings={"Client": "name"})
        with pytest.raises(MappingError):
            orchestrator.create_job(make_csv(account_rows(1)), "a.csv", "accounts", template_id=template["id"])

    def test_preview_uses_template(self, make_csv):
        template = _vendor_template()
        content = make_csv([{"Acct Ref": "A-1", "Amt Owed": "100", "Tax ID": "600129645"}])
        preview = orchestrator.preview_file(content, "vendor.csv", "accounts", template_id=template["id"])
        assert preview["suggested_mapping"] == VENDOR_MAPPING
        assert preview["missing_required_fields"] == []
