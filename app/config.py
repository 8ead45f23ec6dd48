# app/config.py
import os
from pathlib import Path


# ----------------------------
# Paths
# ----------------------------
BASE_DIR = Path(__file__).resolve().parent  # .../app
PROJECT_ROOT = BASE_DIR.parent  # repo root

UPLOAD_DIR = Path(os.environ.get("UPLOAD_DIR", str(PROJECT_ROOT / "uploads"))).resolve()


# ----------------------------
# Upload limits
# ----------------------------
MAX_UPLOAD_MB = int(os.environ.get("MAX_UPLOAD_MB", "100"))
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024

MAX_REQUEST_MB = int(os.environ.get("MAX_REQUEST_MB", "500"))
MAX_REQUEST_BYTES = MAX_REQUEST_MB * 1024 * 1024


# ----------------------------
# Collaborators
# ----------------------------
OCR_LANG = os.environ.get("OCR_LANG", "eng")
QPDF_BIN = os.environ.get("QPDF_BIN", "qpdf")


# ----------------------------
# Retention
# ----------------------------
SPLIT_RETENTION_SECONDS = 60 * 60
IMAGE_BATCH_RETENTION_SECONDS = 24 * 60 * 60
CLEANUP_POLL_SECONDS = float(os.environ.get("CLEANUP_POLL_SECONDS", "60"))


# ----------------------------
# HTTP / logging
# ----------------------------
CORS_ORIGINS = [
    o.strip() for o in os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()
]
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
