"""
Tests for column mapping: suggestions, templates, explicit overrides and
required-field enforcement.
"""

import pytest

from debt_intake.core.errors import MappingError
from debt_intake.domain.imports.import_types import ImportType, get_import_type, get_spec
from debt_intake.domain.imports.mapper import (
    apply_mapping,
    missing_required_fields,
    normalize_header,
    resolve_mapping,
    suggest_mapping,
)


class TestImportTypes:

    def test_every_type_has_required_fields(self):
        for import_type in ImportType:
            assert get_spec(import_type).required_fields

    def test_skip_trace_alias(self):
        assert get_import_type("skip-trace") == ImportType.SKIP_TRACE
        assert get_import_type("skip_trace") == ImportType.SKIP_TRACE

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            get_import_type("invoices")


class TestSuggestMapping:

    def test_normalize_header(self):
        assert normalize_header("  Original Account #  ") == "original_account"
        assert normalize_header("DOB") == "dob"

    def test_matches_canonical_names_and_aliases(self):
        headers = ["Account ID", "Balance", "Social Security Number", "DOB", "Notes"]
        suggestion = suggest_mapping(headers, "accounts")
        assert suggestion == {
            "Account ID": "original_account_number",
            "Balance": "current_balance",
            "Social Security Number": "ssn",
            "DOB": "date_of_birth",
        }

    def test_skip_trace_vendor_headers(self):
        headers = ["INPUT_SSN", "PH_PHONE1", "ADD_ADDRESS1", "DEC_DECEASED_Y_N_U"]
        suggestion = suggest_mapping(headers, ImportType.SKIP_TRACE)
        assert suggestion["INPUT_SSN"] == "ssn"
        assert suggestion["PH_PHONE1"] == "phone1"
        assert suggestion["ADD_ADDRESS1"] == "address1"
        assert suggestion["DEC_DECEASED_Y_N_U"] == "deceased"

    def test_each_field_assigned_once(self):
        suggestion = suggest_mapping(["ssn", "social"], "accounts")
        assert list(suggestion.values()).count("ssn") == 1
        assert suggestion == {"ssn": "ssn"}

    def test_template_entries_win(self):
        suggestion = suggest_mapping(
            ["Acct Ref", "Amt", "Tax ID"],
            "accounts",
            template_mapping={"Acct Ref": "original_account_number", "Amt": "current_balance", "Missing": "ssn"},
        )
        assert suggestion["Acct Ref"] == "original_account_number"
        assert suggestion["Amt"] == "current_balance"
        assert suggestion["Tax ID"] == "ssn"


class TestResolveMapping:

    HEADERS = ["Account ID", "Balance", "SSN", "First", "Comments"]

    def test_suggestions_used_without_mapping(self):
        resolved = resolve_mapping(self.HEADERS, "accounts")
        assert resolved.mapping["Account ID"] == "original_account_number"
        assert resolved.ignored_columns == ["Comments"]
        assert "last_name" in resolved.unmapped_fields
        assert "ssn" not in resolved.unmapped_fields

    def test_missing_required_fields_rejected(self):
        with pytest.raises(MappingError) as exc_info:
            resolve_mapping(["Account ID", "First"], "accounts")
        assert sorted(exc_info.value.missing_fields) == ["current_balance", "ssn"]

    def test_explicit_mapping(self):
        resolved = resolve_mapping(
            self.HEADERS,
            "accounts",
            mapping={
                "Account ID": "original_account_number",
                "Balance": "current_balance",
                "SSN": "ssn",
                "Comments": "original_creditor",
            },
        )
        assert resolved.mapping["Comments"] == "original_creditor"
        assert "First" in resolved.ignored_columns
        assert resolved.field_to_column["ssn"] == "SSN"

    def test_override_replaces_template_column(self):
        resolved = resolve_mapping(
            ["Ref", "Alt Ref", "Balance", "SSN"],
            "accounts",
            mapping={"Alt Ref": "original_account_number"},
            template_mapping={"Ref": "original_account_number", "Balance": "current_balance", "SSN": "ssn"},
        )
        assert resolved.field_to_column["original_account_number"] == "Alt Ref"
        assert "Ref" in resolved.ignored_columns

    def test_none_target_drops_column(self):
        with pytest.raises(MappingError) as exc_info:
            resolve_mapping(self.HEADERS, "accounts", mapping={"SSN": None}, template_mapping={
                "Account ID": "original_account_number", "Balance": "current_balance", "SSN": "ssn",
            })
        assert exc_info.value.missing_fields == ["ssn"]

    def test_unknown_column_rejected(self):
        with pytest.raises(MappingError, match="not present"):
            resolve_mapping(self.HEADERS, "accounts", mapping={"Nope": "ssn"})

    def test_unknown_field_rejected(self):
        with pytest.raises(MappingError, match="Unknown fields"):
            resolve_mapping(self.HEADERS, "accounts", mapping={
                "Account ID": "original_account_number",
                "Balance": "current_balance",
                "SSN": "ssn",
                "Comments": "favourite_colour",
            })

    def test_two_columns_on_one_field_rejected(self):
        with pytest.raises(MappingError, match="both mapped"):
            resolve_mapping(
                ["A", "B", "Balance", "SSN"],
                "accounts",
                template_mapping={
                    "A": "original_account_number",
                    "B": "original_account_number",
                    "Balance": "current_balance",
                    "SSN": "ssn",
                },
            )


def test_missing_required_fields_helper():
    assert missing_required_fields("agencies", {"Name": "name"}) == ["code", "contact_email"]


def test_apply_mapping_drops_blanks_and_unmapped():
    resolved = resolve_mapping(["Account ID", "Balance", "SSN", "Notes"], "accounts")
    mapped = apply_mapping({"Account ID": " A-1 ", "Balance": "", "SSN": "600-12-9645", "Notes": "x"}, resolved)
    assert mapped == {"original_account_number": "A-1", "ssn": "600-12-9645"}
