"""
Batch file loaders.

- ``.csv`` files are read with the standard ``csv`` module
- ``.xlsx`` / ``.xls`` / ``.ods`` files are read with pandas (``spreadsheets`` extra)
- ``.json`` files must hold a non-empty array of usage records
"""

import csv
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from .errors import BatchFormatError

logger = structlog.get_logger(__name__)

SPREADSHEET_ENGINES: Dict[str, Optional[str]] = {
    ".xlsx": "openpyxl",
    ".xls": None,
    ".ods": "odf",
}


def _read_csv(path: Path) -> List[List[Any]]:
    with path.open(newline="", encoding="utf-8-sig") as handle:
        return [list(row) for row in csv.reader(handle)]


def _read_spreadsheet(path: Path) -> List[List[Any]]:
    try:
        import pandas as pd
    except ImportError as e:
        raise BatchFormatError(
            f"reading {path.suffix} files requires the 'spreadsheets' extra (pandas, openpyxl, odfpy, xlrd)"
        ) from e

    try:
        frame = pd.read_excel(path, header=None, dtype=object, engine=SPREADSHEET_ENGINES[path.suffix.lower()])
    except (ValueError, OSError) as e:
        raise BatchFormatError(f"cannot read spreadsheet {path.name}: {e}") from e

    # First sheet only; empty cells come back as NaN
    frame = frame.astype(object).where(frame.notna(), None)
    return frame.values.tolist()


def load_tabular_file(path: Union[str, Path]) -> List[List[Any]]:
    """
    Load a spreadsheet export as a list of rows (header row included).

    Raises:
        BatchFormatError: Unsupported extension or unreadable file
    """
    path = Path(path)
    suffix = path.suffix.lower()

    if not path.is_file():
        raise BatchFormatError(f"file not found: {path}")

    if suffix == ".csv":
        rows = _read_csv(path)
    elif suffix in SPREADSHEET_ENGINES:
        rows = _read_spreadsheet(path)
    else:
        raise BatchFormatError(f"unsupported tabular file type '{suffix}'")

    logger.info("tabular_file_loaded", file_name=path.name, rows=len(rows))
    return rows


def load_structured_file(path: Union[str, Path]) -> List[Any]:
    """
    Load a JSON batch.

    Raises:
        BatchFormatError: Missing file, invalid JSON, not an array, or empty array
    """
    path = Path(path)
    if not path.is_file():
        raise BatchFormatError(f"file not found: {path}")

    try:
        with path.open(encoding="utf-8-sig") as handle:
            records = json.load(handle)
    except json.JSONDecodeError as e:
        raise BatchFormatError(f"{path.name} is not valid JSON: {e}") from e

    if not isinstance(records, list):
        raise BatchFormatError(f"{path.name} must contain a JSON array of usage records")
    if not records:
        raise BatchFormatError(f"{path.name} contains no usage records")

    logger.info("structured_file_loaded", file_name=path.name, records=len(records))
    return records
