# app/operations.py
"""
Request-level orchestration shared by every document operation.

Each operation runs inside ``handler_boundary``: uploaded parts and any file
the operation creates are owned by the request until they are explicitly
retained (kept for download) or handed to the cleanup scheduler. Whatever is
still owned when the operation finishes, successfully or not, is deleted
before the response goes out.
"""
import logging
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData

from app import pdf_tools
from app.cleanup import CleanupResult, CleanupScheduler, remove_path
from app.errors import (
    PasswordError,
    ProcessingError,
    ServiceError,
    ToolInvocationError,
    ValidationError,
)
from app.intake import UploadedPart, form_text, require_parts, resolve_order
from app.storage import ArtifactStore

logger = logging.getLogger(__name__)


# ----------------------------
# Ownership of request artifacts
# ----------------------------
class OperationScope:
    def __init__(self, operation: str, parts: Sequence[UploadedPart]):
        self.operation = operation
        self.parts = list(parts)
        self._owned: List[Path] = [p.path for p in parts]

    def track(self, path: Path) -> Path:
        self._owned.append(path)
        return path

    def retain(self, *paths: Path) -> None:
        for path in paths:
            if path in self._owned:
                self._owned.remove(path)

    def discard(self) -> List[CleanupResult]:
        results = []
        for path in self._owned:
            result = remove_path(path)
            if result.error:
                logger.error(f"{self.operation}: cleanup failed for {path}: {result.error}")
            elif result.removed:
                logger.info(f"{self.operation}: removed {path.name}")
            results.append(result)
        self._owned = []
        return results


@asynccontextmanager
async def handler_boundary(operation: str, parts: Sequence[UploadedPart], error: str, suggestion: Optional[str] = None):
    scope = OperationScope(operation, parts)
    context = [p.describe() for p in parts]
    try:
        yield scope
    except ServiceError as e:
        if e.status_code >= 500:
            logger.error(f"{operation} failed: {e.error} ({e.details}); files={context}")
        else:
            logger.info(f"{operation} rejected: {e.error}; files={context}")
        raise
    except Exception as e:
        logger.exception(f"{operation} failed; files={context}")
        raise ProcessingError(error, details=str(e), suggestion=suggestion) from e
    finally:
        await run_in_threadpool(scope.discard)


def require_family(parts: Sequence[UploadedPart], accepts: Callable[[UploadedPart], bool], message: str) -> None:
    for part in parts:
        if not accepts(part):
            raise ValidationError(message.format(mime=part.content_type), details=part.original_name)


def _is_pdf(part: UploadedPart) -> bool:
    return part.is_pdf


def _is_image(part: UploadedPart) -> bool:
    return part.is_image


# ----------------------------
# OCR
# ----------------------------
async def extract_text(parts: Sequence[UploadedPart], lang: str) -> dict:
    async with handler_boundary("Text extraction", parts, "Error processing image"):
        require_parts(parts, 1, "File upload failed")
        require_family(parts, _is_image, "Invalid file type: {mime}. Only image files are allowed.")
        text = await run_in_threadpool(pdf_tools.ocr_image, parts[0].path, lang)

    logger.info(f"Extracted {len(text)} characters from {parts[0].original_name}")
    return {"message": "File uploaded successfully", "text": text}


# ----------------------------
# Merge
# ----------------------------
def list_merged(store: ArtifactStore) -> List[dict]:
    return [
        {"name": a.name, "url": store.url_for(a.path), "date": a.modified.isoformat()}
        for a in store.list_by_suffix(".pdf", prefix="merged-")
    ]


async def merge_pdfs(store: ArtifactStore, parts: Sequence[UploadedPart], form: FormData) -> dict:
    async with handler_boundary(
        "PDF merge",
        parts,
        "PDF merge operation failed",
        suggestion="Please ensure all files are valid PDFs and try again",
    ) as scope:
        require_parts(parts, 2, "At least 2 PDFs required for merging")
        require_family(parts, _is_pdf, "Invalid file type: {mime}. Only PDF files are allowed.")

        ordered = resolve_order(parts, form)
        out = scope.track(store.reserve("merged", ".pdf"))
        total_pages = await run_in_threadpool(
            pdf_tools.merge_pdfs, [(p.original_name, p.path) for p in ordered], out
        )
        scope.retain(out)

    logger.info(f"Merged {len(parts)} PDFs into {out.name} ({total_pages} pages)")
    return {
        "mergedPdfPath": out.as_posix(),
        "url": store.url_for(out),
        "message": "PDFs merged successfully",
        "details": {"totalPages": total_pages, "fileCount": len(parts)},
    }


# ----------------------------
# Split
# ----------------------------
async def split_pdf(
    store: ArtifactStore,
    scheduler: CleanupScheduler,
    parts: Sequence[UploadedPart],
    retention_seconds: float,
) -> dict:
    async with handler_boundary("PDF split", parts, "Failed to split PDF") as scope:
        require_parts(parts, 1, "No PDF file uploaded")
        require_family(parts, _is_pdf, "Only PDF files are allowed")
        part = parts[0]

        try:
            reader = await run_in_threadpool(pdf_tools.open_pdf, part.path)
            page_count = len(reader.pages)
        except Exception as e:
            raise ValidationError("Invalid or corrupted PDF file", details=str(e)) from e

        if page_count <= 1:
            raise ValidationError("PDF must have more than one page to split")

        pages = []
        written: List[Path] = []
        for i in range(page_count):
            out = scope.track(store.reserve(f"split-page-{i + 1}", ".pdf"))
            try:
                size = await run_in_threadpool(pdf_tools.write_single_page, reader, i, out)
            except Exception as e:
                logger.error(f"Error splitting page {i + 1}: {e}")
                continue
            written.append(out)
            pages.append(
                {
                    "fullPath": out.as_posix(),
                    "pageNumber": i + 1,
                    "filename": out.name,
                    "url": store.url_for(out),
                    "size": size,
                }
            )

        if not pages:
            raise ProcessingError("Failed to split any pages", details="All page splitting attempts failed")

        scope.retain(*written)
        scheduler.schedule_delete(written, retention_seconds)

    logger.info(f"Split {part.original_name} into {len(pages)} of {page_count} pages")
    return {
        "success": True,
        "message": f"PDF split into {len(pages)} pages",
        "pages": pages,
        "originalFile": part.original_name,
    }


# ----------------------------
# Compress
# ----------------------------
def _kb(n: int) -> int:
    return round(n / 1024)


async def compress_pdf(store: ArtifactStore, parts: Sequence[UploadedPart], level: str) -> dict:
    level = level.lower()
    if level not in pdf_tools.COMPRESSION_PRESETS:
        level = "medium"

    async with handler_boundary("PDF compression", parts, "Failed to compress PDF") as scope:
        require_parts(parts, 1, "No PDF file uploaded")
        require_family(parts, _is_pdf, "Only PDF files are allowed")
        part = parts[0]

        original_size = part.path.stat().st_size
        out = scope.track(store.reserve("compressed", ".pdf"))
        fallback = False
        try:
            await run_in_threadpool(pdf_tools.compress_pdf, part.path, out, level)
        except Exception as e:
            logger.warning(f"All compression methods failed, using plain copy: {e}")
            await run_in_threadpool(shutil.copyfile, part.path, out)
            fallback = True

        compressed_size = out.stat().st_size
        scope.retain(out)

    ratio = round((1 - compressed_size / original_size) * 100) if original_size else 0
    ratio = max(0, ratio)
    if fallback:
        message = "PDF could not be compressed but is available for download"
    elif ratio > 0:
        message = f"PDF compressed successfully - reduced by {ratio}%"
    else:
        message = "PDF processed successfully (no size reduction achieved)"

    logger.info(f"Compressed {part.original_name} ({level}): {original_size} -> {compressed_size} bytes")
    return {
        "success": True,
        "message": message,
        "originalFile": part.original_name,
        "originalSize": _kb(original_size),
        "compressedSize": _kb(compressed_size),
        "compressionRatio": ratio,
        "url": store.url_for(out),
        "fullPath": out.as_posix(),
    }


# ----------------------------
# Image -> PDF
# ----------------------------
async def images_to_pdf(
    store: ArtifactStore,
    parts: Sequence[UploadedPart],
    form: FormData,
) -> dict:
    page_size = form_text(form, "pageSize", "a4").lower()
    if page_size not in pdf_tools.PAGE_SIZES:
        page_size = "a4"
    orientation = "landscape" if form_text(form, "orientation", "portrait").lower() == "landscape" else "portrait"

    async with handler_boundary(
        "Image to PDF",
        parts,
        "Image to PDF conversion failed",
        suggestion="Please ensure all files are valid images and try again",
    ) as scope:
        require_parts(parts, 1, "No image files uploaded")
        require_family(parts, _is_image, "Invalid file type: {mime}. Only image files are allowed.")

        ordered = resolve_order(parts, form)
        width, height = pdf_tools.page_dimensions(page_size, orientation)
        out = scope.track(store.reserve("image-pdf", ".pdf"))
        placed = await run_in_threadpool(
            pdf_tools.images_to_pdf, [(p.original_name, p.path) for p in ordered], out, width, height
        )
        scope.retain(out)

    logger.info(f"Created {out.name} from {len(placed)} images ({page_size}, {orientation})")
    return {
        "fullPath": out.as_posix(),
        "url": store.url_for(out),
        "message": f"Successfully created PDF with {len(placed)} images",
        "details": {
            "totalPages": len(placed),
            "fileCount": len(parts),
            "pageSize": page_size,
            "orientation": orientation,
        },
    }


# ----------------------------
# PDF -> image
# ----------------------------
TEXT_ONLY_NOTE = "Basic conversion was used. Images may show text only without formatting."


async def pdf_to_images(
    store: ArtifactStore,
    scheduler: CleanupScheduler,
    parts: Sequence[UploadedPart],
    image_format: str,
    image_quality: str,
    retention_seconds: float,
) -> dict:
    fmt = image_format.lower()
    if fmt == "jpg":
        fmt = "jpeg"
    quality_name = image_quality.lower()
    if quality_name not in pdf_tools.QUALITY_DPI:
        quality_name = "medium"
    quality = pdf_tools.QUALITY_DPI[quality_name]

    async with handler_boundary(
        "PDF to image",
        parts,
        "Failed to convert PDF to images",
        suggestion="Please try a different PDF file or use a different conversion method",
    ) as scope:
        require_parts(parts, 1, "No PDF file uploaded")
        require_family(parts, _is_pdf, "Only PDF files are allowed")
        if fmt not in ("png", "jpeg", "webp"):
            raise ValidationError("Unsupported image format", details=image_format)
        part = parts[0]

        try:
            reader = await run_in_threadpool(pdf_tools.open_pdf, part.path)
            page_count = len(reader.pages)
        except Exception as e:
            raise ValidationError("Invalid or corrupted PDF file", details=str(e)) from e
        if page_count == 0:
            raise ValidationError("PDF has no pages to convert")

        batch_dir, stamp = store.create_batch("pdf-images")
        scope.track(batch_dir)

        note = None
        try:
            rendered = await run_in_threadpool(pdf_tools.render_pdf_pages, part.path, batch_dir, stamp, fmt, quality)
        except Exception:
            logger.exception("PDF rasterization failed")
            rendered = []

        if not rendered:
            logger.warning(f"Falling back to text-only rendering for {part.original_name}")
            rendered = await run_in_threadpool(pdf_tools.render_text_pages, part.path, batch_dir, stamp, fmt, quality)
            if not rendered:
                raise ProcessingError("Failed to convert PDF to images", details="All conversion methods failed")
            note = TEXT_ONLY_NOTE

        zip_path = scope.track(store.path_for(f"pdf-images-{stamp}.zip"))
        await run_in_threadpool(pdf_tools.zip_files, [r.path for r in rendered], zip_path)

        images = [
            {
                "fullPath": r.path.as_posix(),
                "pageNumber": r.page_number,
                "filename": r.path.name,
                "url": store.url_for(r.path),
                "size": r.path.stat().st_size,
                "width": r.width,
                "height": r.height,
            }
            for r in rendered
        ]
        scope.retain(batch_dir, zip_path)
        scheduler.schedule_delete([batch_dir, zip_path], retention_seconds)

    result = {
        "success": True,
        "message": f"PDF converted to {len(images)} images",
        "images": images,
        "zipUrl": store.url_for(zip_path),
        "format": fmt,
        "quality": quality_name,
        "originalFile": part.original_name,
    }
    if note:
        result["message"] += " (simple extraction method used)"
        result["note"] = note
    return result


# ----------------------------
# Protect / unprotect
# ----------------------------
async def _run_qpdf(qpdf_bin: str, args: List[str]) -> pdf_tools.ToolResult:
    try:
        result = await run_in_threadpool(pdf_tools.run_qpdf, qpdf_bin, args)
    except FileNotFoundError as e:
        raise ToolInvocationError("qpdf is not installed", details=str(e)) from e
    if result.stderr:
        logger.warning(f"qpdf stderr (exit {result.exit_code}): {result.stderr.strip()}")
    return result


def _produced(path: Path) -> bool:
    return path.exists() and path.stat().st_size > 0


async def protect_pdf(store: ArtifactStore, parts: Sequence[UploadedPart], password: str, qpdf_bin: str) -> dict:
    async with handler_boundary("PDF protection", parts, "Failed to protect PDF") as scope:
        require_parts(parts, 1, "No PDF file uploaded")
        require_family(parts, _is_pdf, "Only PDF files are allowed")
        if not password:
            raise ValidationError("Password is required")
        part = parts[0]

        out = scope.track(store.reserve("protected", ".pdf"))
        result = await _run_qpdf(qpdf_bin, pdf_tools.protect_args(password, part.path, out))
        if not result.ok or not _produced(out):
            raise ToolInvocationError("Failed to protect PDF using qpdf", result)
        scope.retain(out)

    logger.info(f"Protected {part.original_name} as {out.name}")
    return {
        "success": True,
        "message": "PDF protected successfully with password using qpdf",
        "originalFile": part.original_name,
        "fullPath": out.as_posix(),
        "url": store.url_for(out),
    }


async def unprotect_pdf(store: ArtifactStore, parts: Sequence[UploadedPart], password: str, qpdf_bin: str) -> dict:
    async with handler_boundary("PDF unprotection", parts, "Failed to unprotect PDF") as scope:
        require_parts(parts, 1, "No PDF file uploaded")
        require_family(parts, _is_pdf, "Only PDF files are allowed")
        if not password:
            raise ValidationError("Password is required")
        part = parts[0]

        out = scope.track(store.reserve("unprotected", ".pdf"))
        result = await _run_qpdf(qpdf_bin, pdf_tools.unprotect_args(password, part.path, out))
        if result.password_failure:
            raise PasswordError(
                "Incorrect password for the PDF",
                result,
                details="Please check the password and try again",
            )
        if not result.ok or not _produced(out):
            raise ToolInvocationError("Failed to unprotect PDF", result)
        scope.retain(out)

    logger.info(f"Unprotected {part.original_name} as {out.name}")
    return {
        "success": True,
        "message": "PDF unprotected successfully",
        "originalFile": part.original_name,
        "fullPath": out.as_posix(),
        "url": store.url_for(out),
    }
