"""
Handle phone list uploads for the web app.
Files are read in memory; nothing is written to disk.
"""
import sys
from pathlib import Path
from typing import List, Tuple
from werkzeug.utils import secure_filename
from flask import Request
import logging

# Add project root to path to import the core modules
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from bundle_entries import parse_input_text
from excel_reader import read_workbook_pairs

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'xlsx', 'csv', 'txt'}
TEXT_ENCODING = 'utf-8-sig'


def allowed_file(filename: str) -> bool:
    """Check if file extension is allowed"""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def read_upload(filename: str, content: bytes) -> Tuple[List[Tuple[str, str]], int]:
    """Dispatch one uploaded file to the Excel reader or the text parser"""
    extension = filename.rsplit('.', 1)[1].lower()
    if extension == 'xlsx':
        return read_workbook_pairs(content)
    try:
        text = content.decode(TEXT_ENCODING)
    except UnicodeDecodeError as e:
        raise ValueError(f"{filename} is not valid UTF-8 text") from e
    return parse_input_text(text)


def read_uploaded_files(request: Request) -> Tuple[List[Tuple[str, str]], int, List[str]]:
    """
    Read every uploaded phone list in the request.

    Returns:
        Tuple of (pairs, skipped_count, original_filenames)
    """
    if 'files' not in request.files:
        raise ValueError("No files in request")

    files = request.files.getlist('files')

    if not files or files[0].filename == '':
        raise ValueError("No files selected")

    pairs = []
    skipped = 0
    original_names = []

    for file in files:
        if not file or not allowed_file(file.filename):
            raise ValueError(f"Invalid file: {file.filename if file else 'None'}")

        original_name = secure_filename(file.filename) or "upload"
        file_pairs, file_skipped = read_upload(file.filename, file.read())
        pairs.extend(file_pairs)
        skipped += file_skipped
        original_names.append(original_name)
        logger.info(f"Read uploaded file: {original_name} ({len(file_pairs)} rows, {file_skipped} skipped)")

    return pairs, skipped, original_names
