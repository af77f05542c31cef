"""Reading phone lists out of Excel workbooks"""

import io

from openpyxl import Workbook

from bundle_entries import Batch
from conftest import make_entry
from excel_reader import is_header_row, megabytes_to_gigabytes, read_workbook_pairs
from upload_template import encode_batch


def _workbook_bytes(*sheets):
    workbook = Workbook()
    workbook.remove(workbook.active)
    for title, rows in sheets:
        sheet = workbook.create_sheet(title)
        for row in rows:
            sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def test_reads_number_and_gb_columns():
    content = _workbook_bytes(("Numbers", [
        ["Phone Number", "Data (GB)"],
        ["0554739033", 5],
        ["0201234567", "2.5GB"],
    ]))
    pairs, skipped = read_workbook_pairs(content)
    assert pairs == [("0554739033", "5"), ("0201234567", "2.5GB")]
    assert skipped == 0


def test_first_row_is_data_when_not_a_header():
    content = _workbook_bytes(("Sheet1", [["0554739033", 5], ["0201234567", 1]]))
    pairs, _ = read_workbook_pairs(content)
    assert len(pairs) == 2


def test_numeric_phone_cells_are_kept_for_normalization():
    content = _workbook_bytes(("Sheet1", [[554739033, 5]]))
    pairs, _ = read_workbook_pairs(content)
    assert pairs == [("554739033", "5")]


def test_falls_back_to_megabyte_column():
    content = _workbook_bytes(("Sheet1", [
        ["Msisdn", None, "Voice", "Data MB"],
        ["0554739033", None, 0, 5120],
    ]))
    pairs, _ = read_workbook_pairs(content)
    assert pairs == [("0554739033", "5GB")]


def test_blank_rows_ignored_and_half_rows_skipped():
    content = _workbook_bytes(("Sheet1", [
        ["0554739033", 5],
        [None, None],
        ["0201234567", None],
        [None, 3],
    ]))
    pairs, skipped = read_workbook_pairs(content)
    assert pairs == [("0554739033", "5")]
    assert skipped == 2


def test_reads_every_sheet():
    content = _workbook_bytes(
        ("First", [["0554739033", 5]]),
        ("Second", [["Number", "Allocation"], ["0201234567", 1]]),
    )
    pairs, _ = read_workbook_pairs(content)
    assert [number for number, _ in pairs] == ["0554739033", "0201234567"]


def test_exported_template_reads_back(generated_at):
    batch = Batch()
    batch.extend([make_entry("0554739033", 5), make_entry("0201234567", 2.5), make_entry("12345", 1)])
    content = encode_batch(batch, generated_at=generated_at).content

    pairs, skipped = read_workbook_pairs(content)

    assert pairs == [("0554739033", "5GB"), ("0201234567", "2.5GB"), ("12345", "1GB")]
    assert skipped == 0


def test_header_detection_keywords():
    assert is_header_row(["Beneficiary Msisdn", "", "", ""])
    assert is_header_row(["", "Allocation", "", ""])
    assert is_header_row(["", "", "", "Data (MB)"])
    assert not is_header_row(["0554739033", "5", "", ""])


def test_megabytes_to_gigabytes():
    assert megabytes_to_gigabytes("1024") == "1GB"
    assert megabytes_to_gigabytes("abc") is None
