"""
Tests for CSV / Excel parsing.
"""

import io

import pandas as pd
import pytest

from debt_intake.core.errors import FileParseError
from debt_intake.domain.imports.processors.file_reader import detect_file_type, parse_file


class TestDetectFileType:

    @pytest.mark.parametrize("name,expected", [
        ("accounts.csv", "csv"),
        ("ACCOUNTS.CSV", "csv"),
        ("export.txt", "csv"),
        ("book.xlsx", "excel"),
    ])
    def test_supported(self, name, expected):
        assert detect_file_type(name) == expected

    @pytest.mark.parametrize("name", ["data.json", "legacy.xls"])
    def test_unsupported(self, name):
        with pytest.raises(FileParseError, match="Unsupported file type"):
            detect_file_type(name)


class TestParseCsv:

    def test_values_kept_as_text(self):
        content = b"SSN,Balance,Zip\n001234567,0100.50,02134\n"
        parsed = parse_file(content, "a.csv")
        assert parsed.headers == ["SSN", "Balance", "Zip"]
        assert parsed.records == [{"SSN": "001234567", "Balance": "0100.50", "Zip": "02134"}]

    def test_headers_and_values_stripped(self):
        content = b" SSN , Name \n 600-12-9645 ,  Pat \n"
        parsed = parse_file(content, "a.csv")
        assert parsed.headers == ["SSN", "Name"]
        assert parsed.records[0] == {"SSN": "600-12-9645", "Name": "Pat"}

    def test_blank_rows_dropped(self):
        content = b"SSN,Name\n600129645,Pat\n,\n301643345,Sam\n"
        parsed = parse_file(content, "a.csv")
        assert parsed.row_count == 2

    def test_na_strings_are_not_missing(self):
        parsed = parse_file(b"Name,Flag\nNA,N/A\n", "a.csv")
        assert parsed.records[0] == {"Name": "NA", "Flag": "N/A"}

    def test_cp1252_fallback(self):
        content = "Name,City\nJosé,São Paulo\n".encode("cp1252")
        parsed = parse_file(content, "a.csv")
        assert parsed.records[0]["Name"] == "José"

    def test_nrows_limits_preview(self):
        content = b"SSN\n" + b"\n".join(str(100000000 + i).encode() for i in range(50)) + b"\n"
        assert parse_file(content, "a.csv", nrows=5).row_count == 5

    def test_empty_file(self):
        with pytest.raises(FileParseError, match="empty"):
            parse_file(b"", "a.csv")

    def test_duplicate_headers_rejected(self):
        with pytest.raises(FileParseError, match="Duplicate column headers: SSN"):
            parse_file(b"SSN,Name,SSN\n600129645,Pat,301643345\n", "a.csv")

    def test_header_only_file_has_no_records(self):
        parsed = parse_file(b"SSN,Name\n", "a.csv")
        assert parsed.headers == ["SSN", "Name"]
        assert parsed.records == []

    def test_blank_header_cell_gets_a_placeholder(self):
        parsed = parse_file(b"SSN,,Name\n600129645,x,Pat\n", "a.csv")
        assert parsed.headers == ["SSN", "Unnamed: 1", "Name"]


class TestParseExcel:

    def test_reads_first_sheet(self):
        buffer = io.BytesIO()
        pd.DataFrame({"SSN": ["600-12-9645"], "Balance": ["250"]}).to_excel(buffer, index=False)
        parsed = parse_file(buffer.getvalue(), "book.xlsx")
        assert parsed.headers == ["SSN", "Balance"]
        assert parsed.records == [{"SSN": "600-12-9645", "Balance": "250"}]

    def test_duplicate_headers_rejected(self):
        buffer = io.BytesIO()
        pd.DataFrame([["600-12-9645", "301-64-3345"]], columns=["SSN", "SSN"]).to_excel(buffer, index=False)
        with pytest.raises(FileParseError, match="Duplicate column headers"):
            parse_file(buffer.getvalue(), "book.xlsx")

    def test_corrupt_workbook(self):
        with pytest.raises(FileParseError):
            parse_file(b"this is not a zip archive", "book.xlsx")
