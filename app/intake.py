# app/intake.py
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple

from starlette.datastructures import FormData, UploadFile
from starlette.requests import Request

from app.errors import UploadTooLarge, ValidationError
from app.storage import ArtifactStore

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]+")


@dataclass(frozen=True)
class UploadedPart:
    field: str
    original_name: str
    content_type: str
    size: int
    path: Path

    @property
    def is_pdf(self) -> bool:
        return "pdf" in self.content_type.lower()

    @property
    def is_image(self) -> bool:
        return self.content_type.lower().startswith("image/")

    def describe(self) -> dict:
        return {"name": self.original_name, "size": self.size, "type": self.content_type}


def storage_prefix(field: str) -> str:
    return _UNSAFE.sub("", field) or "file"


def _extension(filename: str) -> str:
    ext = Path(filename).suffix.lower()
    return "." + _UNSAFE.sub("", ext[1:]) if len(ext) > 1 else ""


def _mb(n: int) -> int:
    return n // (1024 * 1024)


async def save_upload_limited(file: UploadFile, dst: Path, max_bytes: int, limit_label: str) -> int:
    """
    Streams an upload into ``dst`` and enforces ``max_bytes`` while writing.
    Returns written byte count.
    """
    total = 0
    try:
        with dst.open("wb") as out:
            while True:
                chunk = await file.read(CHUNK_SIZE)
                if not chunk:
                    break
                total += len(chunk)
                if total > max_bytes:
                    out.close()
                    dst.unlink(missing_ok=True)
                    raise UploadTooLarge(
                        "File too large",
                        details=f"{file.filename} exceeds the {limit_label} limit of {_mb(max_bytes)}MB",
                    )
                out.write(chunk)
    finally:
        await file.close()
    return total


async def receive_parts(
    request: Request,
    store: ArtifactStore,
    fields: Sequence[str],
    max_file_bytes: int,
    max_form_bytes: int,
) -> Tuple[List[UploadedPart], FormData]:
    """
    Persist every uploaded file under ``fields`` (``name`` and ``name[]``) to the
    store, in arrival order. Returns the parts and the parsed form so callers
    can read the remaining text fields.
    """
    form = await request.form()
    wanted = set()
    for f in fields:
        wanted.add(f)
        wanted.add(f"{f}[]")

    store.ensure_directory()

    parts: List[UploadedPart] = []
    total_written = 0
    dst = None
    try:
        for key, value in form.multi_items():
            if key not in wanted or not isinstance(value, UploadFile):
                continue
            if not value.filename:
                continue

            dst = store.reserve(storage_prefix(key), _extension(value.filename))
            remaining = max_form_bytes - total_written
            if remaining <= 0:
                raise UploadTooLarge(
                    "Total upload too large",
                    details=f"Max allowed per request is {_mb(max_form_bytes)}MB",
                )
            if remaining < max_file_bytes:
                written = await save_upload_limited(value, dst, remaining, "request")
            else:
                written = await save_upload_limited(value, dst, max_file_bytes, "per-file")
            total_written += written

            parts.append(
                UploadedPart(
                    field=key,
                    original_name=value.filename,
                    content_type=value.content_type or "application/octet-stream",
                    size=written,
                    path=dst,
                )
            )
            logger.info("Stored upload %s (%d bytes) at %s", value.filename, written, dst.name)
    except Exception:
        if dst is not None:
            dst.unlink(missing_ok=True)
        for part in parts:
            part.path.unlink(missing_ok=True)
        raise

    return parts, form


# ----------------------------
# Form field helpers
# ----------------------------
def form_text(form: FormData, key: str, default: str = "") -> str:
    value = form.get(key)
    if value is None or isinstance(value, UploadFile):
        return default
    return str(value).strip() or default


def resolve_order(parts: Sequence[UploadedPart], form: FormData) -> List[UploadedPart]:
    """
    Sort parts by their ``order_<i>`` field, where ``i`` is the arrival
    position. Missing or non-integer indices fall back to the arrival position.
    """
    keyed = []
    for i, part in enumerate(parts):
        raw = form_text(form, f"order_{i}")
        try:
            order = int(raw)
        except ValueError:
            order = i
        keyed.append((order, part))
    keyed.sort(key=lambda item: item[0])
    return [part for _, part in keyed]


def require_parts(parts: Sequence[UploadedPart], minimum: int, error: str) -> None:
    if len(parts) < minimum:
        raise ValidationError(error, details=f"Received {len(parts)} files")
