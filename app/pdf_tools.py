# app/pdf_tools.py
"""
Blocking calls into the PDF, image and OCR libraries and the qpdf executable.

Nothing here knows about requests or cleanup; callers run these functions in
the thread pool and own every path they pass in.
"""
import io
import logging
import subprocess
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import fitz  # PyMuPDF
import pytesseract
from PIL import Image, ImageDraw, ImageFont
from PyPDF2 import PdfReader, PdfWriter

logger = logging.getLogger(__name__)


# ----------------------------
# OCR
# ----------------------------
def ocr_image(image_path: Path, lang: str = "eng") -> str:
    with Image.open(image_path) as img:
        return pytesseract.image_to_string(img, lang=lang)


# ----------------------------
# Merge / split
# ----------------------------
def open_pdf(path: Path) -> PdfReader:
    return PdfReader(str(path))


def merge_pdfs(sources: Sequence[Tuple[str, Path]], out_pdf: Path) -> int:
    """
    Concatenate every page of ``sources`` (label, path) into ``out_pdf``.
    Any unreadable or empty input aborts the merge. Returns the page count.
    """
    writer = PdfWriter()
    for label, path in sources:
        try:
            reader = PdfReader(str(path))
            if len(reader.pages) == 0:
                raise ValueError("PDF contains no pages")
            for page in reader.pages:
                writer.add_page(page)
        except Exception as e:
            raise ValueError(f"Failed to process {label}: {e}") from e

    with out_pdf.open("wb") as fp:
        writer.write(fp)
    return len(writer.pages)


def write_single_page(reader: PdfReader, index: int, out_pdf: Path) -> int:
    w = PdfWriter()
    w.add_page(reader.pages[index])
    with out_pdf.open("wb") as fp:
        w.write(fp)
    return out_pdf.stat().st_size


# ----------------------------
# Compression
# ----------------------------
COMPRESSION_PRESETS: Dict[str, dict] = {
    "low": {"garbage": 1, "deflate": True},
    "medium": {"garbage": 3, "deflate": True, "clean": True},
    "high": {"garbage": 4, "deflate": True, "clean": True, "deflate_images": True, "deflate_fonts": True},
}


def compress_pdf(input_pdf: Path, out_pdf: Path, level: str = "medium") -> bool:
    """
    Writes a compacted copy of ``input_pdf`` to ``out_pdf``.

    ``out_pdf`` always ends up holding a valid document: the compacted bytes
    when they are smaller, the original bytes otherwise. Returns True when the
    compacted version was adopted.
    """
    original = input_pdf.read_bytes()
    out_pdf.write_bytes(original)

    options = COMPRESSION_PRESETS.get(level, COMPRESSION_PRESETS["medium"])
    try:
        with fitz.open(str(input_pdf)) as doc:
            doc.set_metadata({})
            compacted = doc.tobytes(**options)
    except Exception as e:
        logger.warning(f"PDF compaction failed, keeping original bytes: {e}")
        return False

    if len(compacted) < len(original):
        out_pdf.write_bytes(compacted)
        return True

    logger.info("Compacted PDF is not smaller, keeping original bytes")
    return False


# ----------------------------
# Image -> PDF
# ----------------------------
PAGE_SIZES: Dict[str, Tuple[int, int]] = {
    "a4": (595, 842),
    "letter": (612, 792),
    "legal": (612, 1008),
    "a3": (842, 1191),
    "a5": (420, 595),
}
PAGE_MARGIN = 36  # 0.5 inch


def page_dimensions(page_size: str, orientation: str) -> Tuple[int, int]:
    width, height = PAGE_SIZES.get(page_size.lower(), PAGE_SIZES["a4"])
    if orientation.lower() == "landscape":
        width, height = height, width
    return width, height


def fit_image(img_w: float, img_h: float, page_w: float, page_h: float, margin: float = PAGE_MARGIN) -> fitz.Rect:
    """Scale down (never up) to fit inside the margins, keep aspect ratio, center."""
    max_w = page_w - margin * 2
    max_h = page_h - margin * 2
    scale = min(max_w / img_w, max_h / img_h, 1)
    w = img_w * scale
    h = img_h * scale
    x = (page_w - w) / 2
    y = (page_h - h) / 2
    return fitz.Rect(x, y, x + w, y + h)


def _add_image_page(doc: fitz.Document, image_path: Path, page_w: int, page_h: int) -> dict:
    with Image.open(image_path) as img:
        img_w, img_h = img.size
        fmt = img.format or ""
        stream = None
        if fmt not in ("JPEG", "PNG"):
            if img.mode != "RGB":
                img = img.convert("RGB")
            buf = io.BytesIO()
            img.save(buf, format="PNG")
            stream = buf.getvalue()

    rect = fit_image(img_w, img_h, page_w, page_h)
    page = doc.new_page(width=page_w, height=page_h)
    try:
        if stream is not None:
            page.insert_image(rect, stream=stream)
        else:
            page.insert_image(rect, filename=str(image_path))
    except Exception:
        doc.delete_page(page.number)
        raise

    return {
        "dimensions": f"{img_w}x{img_h}",
        "format": fmt.lower(),
        "pageSize": f"{page_w}x{page_h}",
    }


def images_to_pdf(images: Sequence[Tuple[str, Path]], out_pdf: Path, page_w: int, page_h: int) -> List[dict]:
    """
    One page per image in the given order. Images that cannot be read are
    skipped. Returns the details of every placed image.
    """
    placed: List[dict] = []
    with fitz.open() as doc:
        for label, path in images:
            try:
                info = _add_image_page(doc, path, page_w, page_h)
            except Exception as e:
                logger.error(f"Error processing image {label}: {e}")
                continue
            placed.append({"name": label, **info})

        if doc.page_count == 0:
            raise RuntimeError("No images could be converted")
        doc.save(str(out_pdf), garbage=4, deflate=True)
    return placed


# ----------------------------
# PDF -> image
# ----------------------------
QUALITY_DPI = {"low": 60, "medium": 80, "high": 100}
IMAGE_FORMATS = {"png": "PNG", "jpeg": "JPEG", "jpg": "JPEG", "webp": "WEBP"}


@dataclass(frozen=True)
class RenderedPage:
    path: Path
    page_number: int
    width: int
    height: int


def save_image(img: Image.Image, dst: Path, fmt: str, quality: int) -> None:
    pil_format = IMAGE_FORMATS[fmt]
    if pil_format == "PNG":
        img.save(dst, format="PNG")
    else:
        if img.mode != "RGB":
            img = img.convert("RGB")
        img.save(dst, format=pil_format, quality=quality)


def render_pdf_pages(pdf_path: Path, batch_dir: Path, stamp: int, fmt: str, quality: int) -> List[RenderedPage]:
    """Rasterize each page independently; pages that fail are logged and skipped."""
    zoom = quality / 72.0
    mat = fitz.Matrix(zoom, zoom)

    rendered: List[RenderedPage] = []
    with fitz.open(str(pdf_path)) as doc:
        for i in range(doc.page_count):
            try:
                page = doc.load_page(i)
                pix = page.get_pixmap(matrix=mat, alpha=False)
                img = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
                out = batch_dir / f"page-{i + 1}-{stamp}.{fmt}"
                save_image(img, out, fmt, quality)
                rendered.append(RenderedPage(out, i + 1, pix.width, pix.height))
            except Exception as e:
                logger.error(f"Error rendering page {i + 1}: {e}")
    return rendered


TEXT_CANVAS = (800, 1200)


def render_text_pages(pdf_path: Path, batch_dir: Path, stamp: int, fmt: str, quality: int) -> List[RenderedPage]:
    """
    Degraded rendering: extract each page's text and draw it line by line onto
    a blank canvas. Formatting is lost.
    """
    reader = PdfReader(str(pdf_path))
    total = len(reader.pages)
    width, height = TEXT_CANVAS
    font = ImageFont.load_default()

    rendered: List[RenderedPage] = []
    for i in range(total):
        try:
            text = reader.pages[i].extract_text() or ""
            canvas = Image.new("RGB", TEXT_CANVAS, "white")
            draw = ImageDraw.Draw(canvas)

            y = 50
            draw.text((50, y), f"Page {i + 1} of {total}", fill="black", font=font)
            y += 50
            for line in text.split("\n"):
                if y > height - 50:
                    break
                if line.strip():
                    draw.text((50, y), line, fill="black", font=font)
                    y += 24
                else:
                    y += 12

            out = batch_dir / f"page-{i + 1}-{stamp}.{fmt}"
            save_image(canvas, out, fmt, quality)
            rendered.append(RenderedPage(out, i + 1, width, height))
        except Exception as e:
            logger.error(f"Error processing page {i + 1} in text fallback: {e}")
    return rendered


def zip_files(paths: Sequence[Path], zip_path: Path) -> Path:
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        for p in paths:
            z.write(p, arcname=p.name)
    return zip_path


# ----------------------------
# qpdf
# ----------------------------
@dataclass(frozen=True)
class ToolResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        # qpdf exits 3 when it succeeded with warnings
        return self.exit_code in (0, 3)

    @property
    def password_failure(self) -> bool:
        # qpdf has no dedicated exit code for a bad password (it exits 2 like
        # any other error), so the diagnostic text is the only signal.
        return self.exit_code == 2 and "password" in self.stderr.lower()


def run_qpdf(qpdf_bin: str, args: Sequence[str]) -> ToolResult:
    p = subprocess.run([qpdf_bin, *args], stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    return ToolResult(exit_code=p.returncode, stdout=p.stdout or "", stderr=p.stderr or "")


def protect_args(password: str, input_pdf: Path, out_pdf: Path) -> List[str]:
    return [
        "--encrypt",
        password,
        password,
        "128",
        "--print=full",
        "--modify=none",
        "--extract=n",
        "--annotate=n",
        "--use-aes=y",
        "--",
        str(input_pdf),
        str(out_pdf),
    ]


def unprotect_args(password: str, input_pdf: Path, out_pdf: Path) -> List[str]:
    return [f"--password={password}", "--decrypt", str(input_pdf), str(out_pdf)]
