"""
Read phone number / allocation pairs out of Excel workbooks.
Accepts plain two-column lists as well as previously exported upload templates.
"""
import io
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Tuple, Union

import pandas as pd

from bundle_entries import MB_PER_GB

logger = logging.getLogger(__name__)

NUMBER_HEADER_KEYWORDS = ('phone', 'msisdn', 'number')
ALLOCATION_HEADER_KEYWORDS = ('data', 'allocation', 'gb')
MB_HEADER_KEYWORDS = ('data', 'mb', 'gb')

NUMBER_COLUMN = 0
ALLOCATION_COLUMN = 1
TEMPLATE_MB_COLUMN = 3


def _cell_text(values: List[Any], index: int) -> str:
    if index >= len(values):
        return ""
    value = values[index]
    if value is None or pd.isna(value):
        return ""
    return str(value).strip()


def is_header_row(values: List[Any]) -> bool:
    """True when the first row of a sheet looks like column titles"""
    first = _cell_text(values, NUMBER_COLUMN).lower()
    second = _cell_text(values, ALLOCATION_COLUMN).lower()
    fourth = _cell_text(values, TEMPLATE_MB_COLUMN).lower()
    return (any(keyword in first for keyword in NUMBER_HEADER_KEYWORDS)
            or any(keyword in second for keyword in ALLOCATION_HEADER_KEYWORDS)
            or any(keyword in fourth for keyword in MB_HEADER_KEYWORDS))


def megabytes_to_gigabytes(text: str) -> Optional[str]:
    """Convert a template 'Data Bundle (MB)' cell into a GB allocation string"""
    try:
        megabytes = Decimal(text)
    except InvalidOperation:
        return None
    if not megabytes.is_finite():
        return None
    return f"{format((megabytes / MB_PER_GB).normalize(), 'f')}GB"


def row_to_pair(values: List[Any]) -> Tuple[str, str]:
    """
    Pick the number and allocation out of one row.

    Column B holds the allocation in GB. When it is empty the row is treated as
    an upload template row and column D (MB) is converted.
    """
    number = _cell_text(values, NUMBER_COLUMN)
    allocation = _cell_text(values, ALLOCATION_COLUMN)
    if not allocation:
        megabytes = _cell_text(values, TEMPLATE_MB_COLUMN)
        if megabytes:
            allocation = megabytes_to_gigabytes(megabytes) or ""
    return number, allocation


def read_workbook_pairs(source: Union[bytes, str]) -> Tuple[List[Tuple[str, str]], int]:
    """
    Read (number, allocation) pairs from every sheet of a workbook.

    Args:
        source: Workbook bytes or a file path

    Returns:
        Tuple of (pairs, skipped_count). Fully blank rows are ignored; rows with
        only one of number/allocation count as skipped.
    """
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)

    xlsx = pd.ExcelFile(source, engine='openpyxl')
    pairs = []
    skipped = 0

    for sheet_name in xlsx.sheet_names:
        df = pd.read_excel(xlsx, sheet_name=sheet_name, header=None, dtype=str)
        sheet_pairs = 0

        for position, row in enumerate(df.itertuples(index=False)):
            values = list(row)
            if position == 0 and is_header_row(values):
                continue

            number, allocation = row_to_pair(values)
            if not number and not allocation:
                continue
            if not number or not allocation:
                skipped += 1
                continue

            pairs.append((number, allocation))
            sheet_pairs += 1

        logger.info(f"Read {sheet_pairs} rows from sheet '{sheet_name}'")

    return pairs, skipped
