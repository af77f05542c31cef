"""
Upload template encoder and archive bundler.

Renders batches into the provisioning system's bulk upload sheet:
- Fixed PhoneData columns (Msisdn, Name, Voice, Data MB, Sms)
- Invalid numbers in red, duplicate rows highlighted for review
- Total count and SUM formulas below the data
Split orders are zipped into a single download.
"""
import io
import logging
import zipfile
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import IntEnum
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
from xlsxwriter.exceptions import XlsxWriterException
from xlsxwriter.utility import xl_rowcol_to_cell

from bundle_entries import (
    Batch,
    IdentityMode,
    MB_PER_GB,
    PhoneEntry,
    TB_DISPLAY_THRESHOLD_GB,
    format_data_total,
    review_order,
)

logger = logging.getLogger(__name__)

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
ZIP_MIMETYPE = "application/zip"

SHEET_NAME = "PhoneData"
DEFAULT_FILE_PREFIX = "UploadTemplate"


class TemplateColumn(IntEnum):
    MSISDN = 0
    NAME = 1
    VOICE_MINUTES = 2
    DATA_MB = 3
    SMS_UNITS = 4


# Header text must match the provisioning system exactly
TEMPLATE_HEADERS = {
    TemplateColumn.MSISDN: "Beneficiary Msisdn",
    TemplateColumn.NAME: "Beneficiary Name",
    TemplateColumn.VOICE_MINUTES: "Voice(Minutes)",
    TemplateColumn.DATA_MB: "Data (MB) (1024MB = 1GB)",
    TemplateColumn.SMS_UNITS: "Sms(Unit)",
}

# Summary cells sit to the right of the template columns (F and G)
SUMMARY_COLUMN = 5
SUMMARY_VALUE_COLUMN = 6

MIN_COLUMN_WIDTH = 10
COLUMN_WIDTH_FLOORS = {
    TemplateColumn.MSISDN: 20,
    TemplateColumn.NAME: 25,
    TemplateColumn.DATA_MB: 30,
}

HEADER_STYLE = {"bold": True, "bg_color": "#E0E0E0", "pattern": 1}
ALERT_STYLE = {"font_color": "#FF0000", "bold": True}
HIGHLIGHT_STYLE = {"bg_color": "#FFFF00", "pattern": 1}


class TemplateEncodingError(Exception):
    """The upload template could not be rendered"""


@dataclass
class ExportFile:
    name: str
    content: bytes
    mimetype: str = XLSX_MIMETYPE

    @property
    def is_archive(self) -> bool:
        return self.mimetype == ZIP_MIMETYPE

    @property
    def size(self) -> int:
        return len(self.content)


def format_timestamp(moment: datetime) -> str:
    """2024-05-01_03-07-09PM"""
    return moment.strftime("%Y-%m-%d_%I-%M-%S%p")


def template_filename(part_index: int, part_count: int, timestamp: str,
                      file_prefix: str = DEFAULT_FILE_PREFIX) -> str:
    if part_count > 1:
        return f"{file_prefix}_Part{part_index}_of_{part_count}_{timestamp}.xlsx"
    return f"{file_prefix}_{timestamp}.xlsx"


def archive_filename(timestamp: str, file_prefix: str = DEFAULT_FILE_PREFIX) -> str:
    return f"{file_prefix}_Splitted_{timestamp}.zip"


def template_row(entry: PhoneEntry) -> Dict[str, Any]:
    return {
        TEMPLATE_HEADERS[TemplateColumn.MSISDN]: entry.number,
        TEMPLATE_HEADERS[TemplateColumn.NAME]: "",
        TEMPLATE_HEADERS[TemplateColumn.VOICE_MINUTES]: 0,
        TEMPLATE_HEADERS[TemplateColumn.DATA_MB]: entry.allocation_mb,
        TEMPLATE_HEADERS[TemplateColumn.SMS_UNITS]: 0,
    }


def entry_style(entry: PhoneEntry) -> Optional[str]:
    """Name of the review style for a row, None for clean entries"""
    if not entry.is_valid and entry.is_duplicate:
        return "alert_highlight"
    if not entry.is_valid:
        return "alert"
    if entry.is_duplicate:
        return "highlight"
    return None


def _build_formats(workbook) -> Dict[str, Any]:
    return {
        "header": workbook.add_format(HEADER_STYLE),
        "alert": workbook.add_format(ALERT_STYLE),
        "highlight": workbook.add_format(HIGHLIGHT_STYLE),
        "alert_highlight": workbook.add_format({**ALERT_STYLE, **HIGHLIGHT_STYLE}),
        "bold": workbook.add_format({"bold": True}),
        "total_gb": workbook.add_format({"bold": True, "num_format": '0.00" GB"'}),
        "total_tb": workbook.add_format({"bold": True, "num_format": '0.00" TB"'}),
    }


def _write_flagged_row(worksheet, row: int, entry: PhoneEntry, cell_format) -> None:
    """Re-write a row that needs review styling"""
    worksheet.write_string(row, TemplateColumn.MSISDN, entry.number, cell_format)
    if not entry.is_duplicate:
        return
    # Duplicates are highlighted across the whole row
    worksheet.write_blank(row, TemplateColumn.NAME, None, cell_format)
    worksheet.write_number(row, TemplateColumn.VOICE_MINUTES, 0, cell_format)
    worksheet.write_number(row, TemplateColumn.DATA_MB, entry.allocation_mb, cell_format)
    worksheet.write_number(row, TemplateColumn.SMS_UNITS, 0, cell_format)


def _write_summary(worksheet, formats: Dict[str, Any], row_count: int, total_mb: int,
                   total_gb: Decimal, use_formulas: bool) -> List[str]:
    """
    Write the count label and data totals below the rows.

    Layout (0-based rows): header 0, data 1..n, blank n+1, count n+2, totals n+3.
    Returns the text written to the summary column for width sizing.
    """
    count_row = row_count + 2
    total_row = count_row + 1
    count_label = f"Total Numbers: {row_count}"
    worksheet.write_string(count_row, SUMMARY_COLUMN, count_label, formats["bold"])

    in_tb = Decimal(total_gb) > TB_DISPLAY_THRESHOLD_GB
    divisor = MB_PER_GB * MB_PER_GB if in_tb else MB_PER_GB
    derived_total = round(total_mb / divisor, 2)
    unit_format = formats["total_tb"] if in_tb else formats["total_gb"]

    if use_formulas:
        first_cell = xl_rowcol_to_cell(1, TemplateColumn.DATA_MB)
        last_cell = xl_rowcol_to_cell(max(row_count, 1), TemplateColumn.DATA_MB)
        total_cell = xl_rowcol_to_cell(total_row, SUMMARY_COLUMN)
        worksheet.write_formula(total_row, SUMMARY_COLUMN, f"=SUM({first_cell}:{last_cell})",
                                formats["bold"], total_mb)
        worksheet.write_formula(total_row, SUMMARY_VALUE_COLUMN, f"={total_cell}/{divisor}",
                                unit_format, derived_total)
    else:
        worksheet.write_number(total_row, SUMMARY_COLUMN, total_mb, formats["bold"])
        worksheet.write_number(total_row, SUMMARY_VALUE_COLUMN, derived_total, unit_format)

    return [count_label, str(total_mb)]


def _autosize_columns(worksheet, df: pd.DataFrame, summary_values: Sequence[str]) -> None:
    for column, header in TEMPLATE_HEADERS.items():
        lengths = df[header].astype(str).str.len().tolist() if len(df) else []
        longest = max([len(header)] + lengths)
        width = max(longest, MIN_COLUMN_WIDTH) + 2
        width = max(width, COLUMN_WIDTH_FLOORS.get(column, 0))
        worksheet.set_column(column, column, width)

    summary_width = max([MIN_COLUMN_WIDTH] + [len(value) for value in summary_values]) + 2
    worksheet.set_column(SUMMARY_COLUMN, SUMMARY_COLUMN, summary_width)
    worksheet.set_column(SUMMARY_VALUE_COLUMN, SUMMARY_VALUE_COLUMN, MIN_COLUMN_WIDTH + 2)


def render_template(entries: Sequence[PhoneEntry], total_gb: Decimal, generated_at: datetime,
                    use_formulas: bool = True) -> bytes:
    """Render already-ordered entries into xlsx bytes"""
    df = pd.DataFrame([template_row(entry) for entry in entries], columns=list(TEMPLATE_HEADERS.values()))
    total_mb = sum(entry.allocation_mb for entry in entries)

    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="xlsxwriter") as writer:
        df.to_excel(writer, sheet_name=SHEET_NAME, index=False)
        workbook = writer.book
        worksheet = writer.sheets[SHEET_NAME]
        # Same input at the same timestamp gives the same bytes
        workbook.set_properties({"created": generated_at})
        formats = _build_formats(workbook)

        for column, header in TEMPLATE_HEADERS.items():
            worksheet.write_string(0, column, header, formats["header"])

        for row, entry in enumerate(entries, start=1):
            style = entry_style(entry)
            if style:
                _write_flagged_row(worksheet, row, entry, formats[style])

        summary_values = _write_summary(worksheet, formats, len(entries), total_mb, total_gb, use_formulas)
        _autosize_columns(worksheet, df, summary_values)

    return buffer.getvalue()


def encode_batch(
    batch: Batch,
    part_index: int = 1,
    part_count: int = 1,
    generated_at: Optional[datetime] = None,
    identity_mode: IdentityMode = IdentityMode.NUMBER_AND_ALLOCATION,
    use_formulas: bool = True,
    file_prefix: str = DEFAULT_FILE_PREFIX,
) -> ExportFile:
    """
    Encode one batch as an upload template.

    Args:
        batch: Entries for this file
        part_index: 1-based position of this file in the run
        part_count: Number of files produced by the run
        generated_at: Run timestamp used for the file name and workbook metadata
        identity_mode: Key used to group duplicate rows together
        use_formulas: Write SUM formulas (with cached values) instead of plain totals
        file_prefix: File name prefix

    Returns:
        ExportFile with the xlsx bytes

    Raises:
        TemplateEncodingError: The workbook could not be produced
    """
    generated_at = generated_at or datetime.now()
    name = template_filename(part_index, part_count, format_timestamp(generated_at), file_prefix)
    rows = review_order(batch.entries, identity_mode)

    try:
        content = render_template(rows, batch.total_gb, generated_at, use_formulas)
    except (XlsxWriterException, OSError, MemoryError, ValueError) as e:
        logger.error(f"Failed to encode {name}: {e}", exc_info=True)
        raise TemplateEncodingError(f"Could not create {name}: {e}") from e

    logger.info(f"Encoded {name}: {len(rows)} rows, {format_data_total(batch.total_gb)}")
    return ExportFile(name=name, content=content, mimetype=XLSX_MIMETYPE)


def encode_batches(
    batches: Sequence[Batch],
    generated_at: Optional[datetime] = None,
    identity_mode: IdentityMode = IdentityMode.NUMBER_AND_ALLOCATION,
    use_formulas: bool = True,
    file_prefix: str = DEFAULT_FILE_PREFIX,
) -> List[ExportFile]:
    """Encode every batch of a run; file names carry Part i of n when split"""
    generated_at = generated_at or datetime.now()
    return [
        encode_batch(batch, index, len(batches), generated_at, identity_mode, use_formulas, file_prefix)
        for index, batch in enumerate(batches, start=1)
    ]


def bundle_files(
    files: Sequence[ExportFile],
    generated_at: Optional[datetime] = None,
    file_prefix: str = DEFAULT_FILE_PREFIX,
) -> ExportFile:
    """
    Package export files for download.

    A single file is returned as-is. Two or more are zipped into one archive
    named with the run timestamp and a "Splitted" marker.
    """
    if not files:
        raise ValueError("No files to bundle")
    if len(files) == 1:
        return files[0]

    names = [export_file.name for export_file in files]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate file names in archive: {names}")

    generated_at = generated_at or datetime.now()
    # Zip timestamps cannot predate 1980
    entry_time = max(generated_at, datetime(1980, 1, 1)).timetuple()[:6]

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for export_file in files:
            info = zipfile.ZipInfo(export_file.name, date_time=entry_time)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            archive.writestr(info, export_file.content)

    name = archive_filename(format_timestamp(generated_at), file_prefix)
    logger.info(f"Bundled {len(files)} files into {name}")
    return ExportFile(name=name, content=buffer.getvalue(), mimetype=ZIP_MIMETYPE)
