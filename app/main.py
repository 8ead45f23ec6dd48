# app/main.py
import asyncio
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from starlette.datastructures import FormData, UploadFile

from app import config, operations
from app.cleanup import CleanupScheduler
from app.errors import ArtifactNotFound, ServiceError
from app.intake import form_text, receive_parts
from app.storage import ArtifactStore, resolve_download

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [pdf-backend] %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ----------------------------
# Shared directory + scheduler
# ----------------------------
store = ArtifactStore(config.UPLOAD_DIR)
store.ensure_directory()

scheduler = CleanupScheduler()


def get_store() -> ArtifactStore:
    return store


def get_scheduler() -> CleanupScheduler:
    return scheduler


# ----------------------------
# App
# ----------------------------
class UploadsStaticFiles(StaticFiles):
    """Serves /uploads; PDFs always go out as uncached attachments."""

    def file_response(self, full_path, *args, **kwargs):
        response = super().file_response(full_path, *args, **kwargs)
        name = str(full_path).replace("\\", "/").rsplit("/", 1)[-1]
        if name.lower().endswith(".pdf"):
            response.headers["content-type"] = "application/pdf"
            response.headers["content-disposition"] = f'attachment; filename="{name}"'
            response.headers["cache-control"] = "no-store"
        return response


app = FastAPI(title="PDF Tools")
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
app.mount("/uploads", UploadsStaticFiles(directory=str(store.root)), name="uploads")


@app.on_event("startup")
async def on_startup():
    store.ensure_directory()
    app.state.cleanup_task = asyncio.create_task(scheduler.run_forever(config.CLEANUP_POLL_SECONDS))
    logger.info(f"Serving uploads from {store.root}")


@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "cleanup_task", None)
    if task is not None:
        task.cancel()
    if scheduler.pending():
        logger.info(f"Dropping {scheduler.pending()} scheduled cleanups on shutdown")


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Server error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


async def _receive(request: Request, st: ArtifactStore, *fields: str):
    return await receive_parts(
        request,
        st,
        fields,
        max_file_bytes=config.MAX_UPLOAD_BYTES,
        max_form_bytes=config.MAX_REQUEST_BYTES,
    )


def _password(form: FormData) -> str:
    value = form.get("password")
    if value is None or isinstance(value, UploadFile):
        return ""
    return str(value)


# ----------------------------
# Health
# ----------------------------
@app.get("/health")
def health():
    return PlainTextResponse("OK")


# ----------------------------
# OCR
# ----------------------------
@app.post("/upload")
async def upload_for_text(request: Request, st: ArtifactStore = Depends(get_store)):
    parts, _ = await _receive(request, st, "file")
    return await operations.extract_text(parts, config.OCR_LANG)


# ----------------------------
# PDF APIs
# ----------------------------
@app.get("/api/merged-pdfs")
def merged_pdfs(st: ArtifactStore = Depends(get_store)):
    return operations.list_merged(st)


@app.post("/api/merge-pdfs")
async def merge_pdfs(request: Request, st: ArtifactStore = Depends(get_store)):
    parts, form = await _receive(request, st, "pdfs")
    return await operations.merge_pdfs(st, parts, form)


@app.post("/api/split-pdf")
async def split_pdf(
    request: Request,
    st: ArtifactStore = Depends(get_store),
    sched: CleanupScheduler = Depends(get_scheduler),
):
    parts, _ = await _receive(request, st, "pdf")
    return await operations.split_pdf(st, sched, parts, config.SPLIT_RETENTION_SECONDS)


@app.post("/api/compress-pdf")
async def compress_pdf(request: Request, st: ArtifactStore = Depends(get_store)):
    parts, form = await _receive(request, st, "pdf")
    level = form_text(form, "compressionLevel", "medium")
    return await operations.compress_pdf(st, parts, level)


@app.post("/api/image-to-pdf")
async def image_to_pdf(request: Request, st: ArtifactStore = Depends(get_store)):
    parts, form = await _receive(request, st, "images")
    return await operations.images_to_pdf(st, parts, form)


@app.post("/api/pdf-to-image")
async def pdf_to_image(
    request: Request,
    st: ArtifactStore = Depends(get_store),
    sched: CleanupScheduler = Depends(get_scheduler),
):
    parts, form = await _receive(request, st, "pdf")
    return await operations.pdf_to_images(
        st,
        sched,
        parts,
        image_format=form_text(form, "imageFormat", "png"),
        image_quality=form_text(form, "imageQuality", "medium"),
        retention_seconds=config.IMAGE_BATCH_RETENTION_SECONDS,
    )


@app.post("/api/protect-pdf")
async def protect_pdf(request: Request, st: ArtifactStore = Depends(get_store)):
    parts, form = await _receive(request, st, "pdf")
    return await operations.protect_pdf(st, parts, _password(form), config.QPDF_BIN)


@app.post("/api/unprotect-pdf")
async def unprotect_pdf(request: Request, st: ArtifactStore = Depends(get_store)):
    parts, form = await _receive(request, st, "pdf")
    return await operations.unprotect_pdf(st, parts, _password(form), config.QPDF_BIN)


# ----------------------------
# Download
# ----------------------------
@app.get("/api/download")
@app.get("/download")
def download(file: Optional[str] = None, st: ArtifactStore = Depends(get_store)):
    if not file:
        return PlainTextResponse("File query parameter is missing", status_code=400)

    logger.info(f"Download request for file: {file}")
    try:
        path = resolve_download(st, file)
    except ArtifactNotFound:
        logger.warning(f"Download target not found: {file}")
        return PlainTextResponse("File not found", status_code=404)

    return FileResponse(path=str(path), filename=path.name)
