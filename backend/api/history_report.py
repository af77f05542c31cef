"""
Build history analytics from saved validation/export sessions.
Converts records to JSON-serializable dicts and to an Excel report.
"""
import io
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Sequence

import pandas as pd

logger = logging.getLogger(__name__)

DAILY_SUMMARY_SHEET = "Daily Summary"
DETAILED_HISTORY_SHEET = "Detailed History"
DAILY_SUMMARY_COLUMNS = [
    "Date", "Sessions", "Total Entries", "Valid Numbers",
    "Invalid Numbers", "Duplicates", "Total Data (GB)",
]
DETAILED_HISTORY_COLUMNS = ["Date", "Time", "Type", "Phone Number", "Allocation (GB)", "Status"]
MIN_COLUMN_WIDTH = 10


def history_record_to_dict(record: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a stored history record to JSON-serializable format"""
    return {
        "id": record["id"],
        "date": record["date"],
        "createdAt": record["created_at"],
        "type": record["type"],
        "entryCount": record.get("entry_count", 0),
        "validCount": record.get("valid_count", 0),
        "invalidCount": record.get("invalid_count", 0),
        "duplicateCount": record.get("duplicate_count", 0),
        "totalGB": float(record.get("total_gb") or 0),
        "entries": record.get("entries", []),
    }


def build_daily_summaries(records: Sequence[Dict[str, Any]]) -> pd.DataFrame:
    """
    Aggregate history records per day, most recent day first.

    Returns:
        DataFrame with DAILY_SUMMARY_COLUMNS
    """
    if not records:
        return pd.DataFrame(columns=DAILY_SUMMARY_COLUMNS)

    df = pd.DataFrame([{
        "Date": record["date"],
        "Total Entries": record.get("entry_count", 0),
        "Valid Numbers": record.get("valid_count", 0),
        "Invalid Numbers": record.get("invalid_count", 0),
        "Duplicates": record.get("duplicate_count", 0),
        "Total Data (GB)": float(Decimal(str(record.get("total_gb") or 0))),
    } for record in records])

    summary = df.groupby("Date", sort=False).agg(
        Sessions=("Total Entries", "size"),
        **{column: (column, "sum") for column in DAILY_SUMMARY_COLUMNS[2:]}
    ).reset_index()
    summary["Total Data (GB)"] = summary["Total Data (GB)"].round(2)

    return summary.sort_values("Date", ascending=False).reset_index(drop=True)[DAILY_SUMMARY_COLUMNS]


def _record_time(created_at: str) -> str:
    try:
        return datetime.fromisoformat(created_at).strftime("%I:%M:%S %p")
    except (TypeError, ValueError):
        return ""


def build_detailed_history(records: Sequence[Dict[str, Any]]) -> pd.DataFrame:
    """One row per phone entry across all sessions"""
    rows = []
    for record in records:
        record_time = _record_time(record.get("created_at"))
        for entry in record.get("entries", []):
            if entry.get("isDuplicate"):
                status = "Duplicate"
            elif entry.get("isValid"):
                status = "Valid"
            else:
                status = "Invalid"
            rows.append({
                "Date": record["date"],
                "Time": record_time,
                "Type": record["type"],
                "Phone Number": entry.get("number", ""),
                "Allocation (GB)": entry.get("allocationGB", 0),
                "Status": status,
            })
    return pd.DataFrame(rows, columns=DETAILED_HISTORY_COLUMNS)


def _autosize(worksheet, df: pd.DataFrame) -> None:
    for col_num, column in enumerate(df.columns):
        lengths = [len(str(column))] + [len(str(value)) for value in df[column].tolist()]
        worksheet.set_column(col_num, col_num, max(MIN_COLUMN_WIDTH, max(lengths)) + 2)


def build_history_workbook(records: Sequence[Dict[str, Any]]) -> bytes:
    """Write the Daily Summary and Detailed History sheets to an xlsx file in memory"""
    summary_df = build_daily_summaries(records)
    detail_df = build_detailed_history(records)

    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine='xlsxwriter') as writer:
        header_format = writer.book.add_format({'bold': True, 'bg_color': '#E0E0E0', 'pattern': 1})

        for sheet_name, df in ((DAILY_SUMMARY_SHEET, summary_df), (DETAILED_HISTORY_SHEET, detail_df)):
            df.to_excel(writer, sheet_name=sheet_name, index=False)
            worksheet = writer.sheets[sheet_name]
            for col_num, column in enumerate(df.columns):
                worksheet.write(0, col_num, column, header_format)
            _autosize(worksheet, df)

    logger.info(f"Built history report: {len(summary_df)} days, {len(detail_df)} entries")
    return buffer.getvalue()


def history_report_filename(moment: datetime) -> str:
    return f"History_Report_{moment.strftime('%Y-%m-%d')}.xlsx"


def list_available_dates(records: Sequence[Dict[str, Any]]) -> List[str]:
    """Distinct record dates, newest first"""
    return sorted({record["date"] for record in records}, reverse=True)
