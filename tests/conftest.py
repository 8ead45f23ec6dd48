"""
Pytest configuration and fixtures for the PDF tools backend tests.
"""

import io
import os
import re
import shutil
import tempfile
from pathlib import Path

import fitz
import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Point the app at an isolated upload directory before importing it
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="pdf_tools_test_uploads_")

from app.main import app, scheduler, store  # noqa: E402

INPUT_NAME = re.compile(r"^(file|pdf|pdfs|images)-\d+\.")


@pytest.fixture(scope="session", autouse=True)
def upload_root():
    """Shared upload directory used by the app under test."""
    yield store.root
    shutil.rmtree(store.root, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def app_store():
    return store


@pytest.fixture
def app_scheduler():
    return scheduler


def leftover_inputs(root: Path) -> list:
    """Uploaded parts still on disk; every request must remove its own."""
    return sorted(p.name for p in root.iterdir() if INPUT_NAME.match(p.name))


def names_with_prefix(root: Path, prefix: str) -> set:
    return {p.name for p in root.iterdir() if p.name.startswith(prefix)}


def make_pdf(widths=(612,), height=792, text=True) -> bytes:
    """Build a PDF with one page per entry in ``widths``."""
    doc = fitz.open()
    for i, width in enumerate(widths):
        page = doc.new_page(width=width, height=height)
        if text:
            page.insert_text((20, 40), f"Page {i + 1}")
    data = doc.tobytes()
    doc.close()
    return data


def make_image(width=200, height=100, fmt="PNG", color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


def page_sizes(pdf_bytes: bytes) -> list:
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        return [(round(p.rect.width), round(p.rect.height)) for p in doc]


@pytest.fixture
def sample_pdf():
    """Three-page PDF whose pages have distinct widths."""
    return make_pdf(widths=(300, 400, 500))


@pytest.fixture
def single_page_pdf():
    return make_pdf(widths=(612,))
