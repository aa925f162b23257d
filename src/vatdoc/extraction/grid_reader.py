"""
Grid reader: turns a spreadsheet file or buffer into a header row plus cells.
"""

import io
import logging
from pathlib import Path
from typing import Any, List, Optional, Union

import pandas as pd

from ..errors import TextExtractionError
from .spreadsheet_aggregator import Grid

logger = logging.getLogger(__name__)

CSV_SUFFIXES = {".csv", ".tsv"}
EXCEL_SUFFIXES = {".xlsx", ".xlsm", ".xls"}


def is_spreadsheet(file_name: str) -> bool:
    return Path(file_name).suffix.lower() in CSV_SUFFIXES | EXCEL_SUFFIXES


def dataframe_to_grid(df: pd.DataFrame) -> Grid:
    """Convert a DataFrame to a Grid, mapping NaN cells to None."""
    headers = [str(c).strip() for c in df.columns]
    cleaned = df.astype(object).where(pd.notna(df), None)
    rows: List[List[Any]] = cleaned.values.tolist()
    return Grid(headers=headers, rows=rows)


def read_grid(
    source: Union[str, Path, bytes, io.IOBase],
    file_name: Optional[str] = None,
    sheet: Union[int, str] = 0
) -> Grid:
    """
    Read a CSV or Excel spreadsheet into a Grid.

    Args:
        source: Path, raw bytes or file-like object
        file_name: Name used to pick the parser when source is not a path
        sheet: Excel sheet index or name

    Returns:
        Grid with stringified headers and raw cell values
    """
    name = file_name or (str(source) if isinstance(source, (str, Path)) else "")
    suffix = Path(name).suffix.lower()
    if isinstance(source, bytes):
        source = io.BytesIO(source)

    try:
        if suffix == ".tsv":
            df = pd.read_csv(source, sep="\t")
        elif suffix in CSV_SUFFIXES:
            df = pd.read_csv(source)
        else:
            df = pd.read_excel(source, sheet_name=sheet)
    except (ValueError, OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        logger.error(f"Failed to read spreadsheet {name or '<buffer>'}: {e}")
        raise TextExtractionError(f"Could not read spreadsheet: {e}", {"file_name": name})

    grid = dataframe_to_grid(df)
    logger.info(f"Read spreadsheet {name or '<buffer>'}: {len(grid.headers)} columns, {len(grid.rows)} rows")
    return grid
