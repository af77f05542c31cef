"""
Configuration settings for the bundle allocator backend.
"""
import os
from decimal import Decimal
from pathlib import Path

# Base directories
BASE_DIR = Path(__file__).parent.parent
BACKEND_DIR = BASE_DIR / "backend"

# Database
DATABASE_PATH = Path(os.environ.get("DATABASE_PATH", str(BACKEND_DIR / "data" / "app.db")))

# Export settings
CAPACITY_GB = Decimal(os.environ.get("CAPACITY_GB", "1536"))  # 1.5 TB per upload file
EXPORT_FILE_PREFIX = os.environ.get("EXPORT_FILE_PREFIX", "UploadTemplate")
USE_SUMMARY_FORMULAS = os.environ.get("USE_SUMMARY_FORMULAS", "True").lower() == "true"

# Flask settings
SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
DEBUG = os.environ.get("FLASK_DEBUG", "False").lower() == "true"

# CORS settings
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")

# Max upload size (10MB)
MAX_CONTENT_LENGTH = int(os.environ.get("MAX_CONTENT_LENGTH", 10 * 1024 * 1024))
