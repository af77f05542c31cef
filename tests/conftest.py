# conftest.py

import io
import os
import sys
import tempfile
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest
from openpyxl import load_workbook

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(PROJECT_ROOT / "backend"))

# Point the backend at a throwaway database BEFORE importing app
_db_dir = tempfile.mkdtemp(prefix="bundle_allocator_tests_")
os.environ["DATABASE_PATH"] = os.path.join(_db_dir, "app.db")

import app as app_module  # noqa: E402
from api.order_service import OrderService  # noqa: E402
from bundle_entries import PhoneEntry, normalize_number  # noqa: E402
from database import Database  # noqa: E402


def make_entry(raw_number, allocation_gb, is_duplicate=False):
    """Build an entry the way the pipeline would for the given raw number"""
    normalized = normalize_number(raw_number)
    return PhoneEntry(
        raw_number=raw_number,
        number=normalized.number,
        allocation_gb=Decimal(str(allocation_gb)),
        is_valid=normalized.is_valid,
        was_fixed=normalized.was_fixed,
        is_duplicate=is_duplicate,
    )


def open_workbook(content, data_only=False):
    return load_workbook(io.BytesIO(content), data_only=data_only)


@pytest.fixture
def generated_at():
    return datetime(2024, 5, 1, 15, 7, 9)


@pytest.fixture
def database(tmp_path):
    """Fresh SQLite database per test"""
    return Database(str(tmp_path / "test.db"))


@pytest.fixture
def service(database):
    return OrderService(database)


@pytest.fixture
def app(database, monkeypatch):
    """Flask app wired to an isolated database"""
    monkeypatch.setattr(app_module, "db", database)
    monkeypatch.setattr(app_module, "order_service", OrderService(database))
    app_module.app.config.update({"TESTING": True})
    return app_module.app


@pytest.fixture
def client(app):
    return app.test_client()
