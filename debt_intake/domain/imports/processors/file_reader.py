"""
CSV / spreadsheet parsing for uploaded import files.

Every cell is read as text: identities, account numbers and ZIP codes keep
their leading zeros, and typing happens later in the row validator.

The header row is read as data so that repeated column names reach the
duplicate check as written instead of being renamed by pandas. Only
``.xlsx`` workbooks are read; legacy ``.xls`` files must be re-saved.
"""
import io
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

import pandas as pd

from debt_intake.core.errors import FileParseError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".csv": "csv", ".txt": "csv", ".xlsx": "excel"}

CSV_ENCODINGS = ("utf-8-sig", "cp1252", "latin-1")


@dataclass
class ParsedFile:
    headers: List[str]
    records: List[Dict[str, str]]

    @property
    def row_count(self) -> int:
        return len(self.records)


def detect_file_type(file_name: str) -> str:
    """Return ``csv`` or ``excel`` for a file name, or raise FileParseError."""
    extension = Path(file_name or "").suffix.lower()
    file_type = SUPPORTED_EXTENSIONS.get(extension)
    if not file_type:
        supported = ", ".join(sorted(SUPPORTED_EXTENSIONS))
        raise FileParseError(f"Unsupported file type '{extension or file_name}'. Supported: {supported}")
    return file_type


def _with_header(nrows):
    return None if nrows is None else nrows + 1


def _read_csv(file_content: bytes, nrows=None) -> pd.DataFrame:
    last_error = None
    for encoding in CSV_ENCODINGS:
        try:
            return pd.read_csv(
                io.BytesIO(file_content),
                header=None,
                dtype=str,
                keep_default_na=False,
                encoding=encoding,
                skipinitialspace=True,
                nrows=_with_header(nrows),
            )
        except UnicodeDecodeError as exc:
            last_error = exc
            continue
    raise FileParseError(f"Could not decode CSV file: {last_error}")


def _read_excel(file_content: bytes, nrows=None) -> pd.DataFrame:
    return pd.read_excel(
        io.BytesIO(file_content),
        engine='openpyxl',
        header=None,
        dtype=str,
        keep_default_na=False,
        nrows=_with_header(nrows),
    )


def _frame_to_parsed(df: pd.DataFrame) -> ParsedFile:
    df = df.fillna("")
    if df.empty:
        raise FileParseError("File has no header row")

    # Strip header whitespace so " SSN " maps like "SSN".
    headers = [str(cell).strip() for cell in df.iloc[0]]
    if not any(headers):
        raise FileParseError("File has no header row")
    headers = [header or f"Unnamed: {position}" for position, header in enumerate(headers)]

    duplicates = sorted({header for header in headers if headers.count(header) > 1})
    if duplicates:
        raise FileParseError(f"Duplicate column headers: {', '.join(duplicates)}")

    df = df.iloc[1:].copy()
    df.columns = headers
    records = []
    for raw in df.to_dict('records'):
        record = {key: str(value).strip() for key, value in raw.items()}
        # Spreadsheet exports often end with fully blank lines.
        if any(record.values()):
            records.append(record)
    return ParsedFile(headers=headers, records=records)


def parse_file(file_content: bytes, file_name: str, nrows=None) -> ParsedFile:
    """
    Parse an uploaded CSV or Excel file into header + records.

    Args:
        file_content: Raw file bytes
        file_name: Original file name; the extension selects the parser
        nrows: Optional limit used by previews

    Raises:
        FileParseError: If the file type is unsupported, unreadable, or has no header row
    """
    file_type = detect_file_type(file_name)
    if not file_content:
        raise FileParseError("File is empty")

    try:
        if file_type == "csv":
            df = _read_csv(file_content, nrows=nrows)
        else:
            df = _read_excel(file_content, nrows=nrows)
    except FileParseError:
        raise
    except pd.errors.EmptyDataError:
        raise FileParseError("File is empty")
    except (pd.errors.ParserError, zipfile.BadZipFile, ValueError, OSError) as exc:
        raise FileParseError(f"Could not read {file_type} file: {exc}")

    parsed = _frame_to_parsed(df)
    logger.info("Parsed %s: %d rows, %d columns", file_name, parsed.row_count, len(parsed.headers))
    return parsed
