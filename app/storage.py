# app/storage.py
"""
Artifact store backed by the shared upload directory.

Every file a request creates (uploaded parts, intermediates, results) lives
under one root. Names are generated as ``<prefix>-<unix-millis><ext>`` and
reserved with an exclusive create, so concurrent requests never share a path.
"""
import logging
import os
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple, Union

from app.errors import ArtifactNotFound, StorageError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ArtifactInfo:
    name: str
    path: Path
    size: int
    modified: datetime


class ArtifactStore:
    def __init__(self, root: PathLike):
        self.root = Path(root).resolve()

    # ----------------------------
    # Addressing
    # ----------------------------
    def ensure_directory(self) -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError("Upload directory is not writable", details=str(e)) from e
        return self.root

    def contains(self, path: PathLike) -> bool:
        candidate = Path(path).resolve()
        return candidate == self.root or candidate.is_relative_to(self.root)

    def path_for(self, name: PathLike) -> Path:
        """Resolve ``name`` under the root, refusing anything that escapes it."""
        candidate = Path(name)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        candidate = candidate.resolve()
        if not self.contains(candidate) or candidate == self.root:
            raise StorageError("Path is outside the upload directory", details=str(name))
        return candidate

    def url_for(self, path: PathLike) -> str:
        rel = self.path_for(path).relative_to(self.root)
        return f"/uploads/{rel.as_posix()}"

    # ----------------------------
    # Naming
    # ----------------------------
    def reserve(self, prefix: str, ext: str, directory: Optional[Path] = None) -> Path:
        """
        Create an empty, uniquely named file ``<prefix>-<millis><ext>``.
        On a name clash the timestamp is bumped until the create succeeds.
        """
        if ext and not ext.startswith("."):
            ext = f".{ext}"
        parent = self.path_for(directory) if directory is not None else self.ensure_directory()
        stamp = _millis()
        while True:
            dst = parent / f"{prefix}-{stamp}{ext}"
            try:
                with dst.open("xb"):
                    pass
                return dst
            except FileExistsError:
                stamp += 1
            except OSError as e:
                raise StorageError("Could not create file in upload directory", details=str(e)) from e

    def create_batch(self, prefix: str) -> Tuple[Path, int]:
        """Create a ``<prefix>-<millis>`` subdirectory; returns it with its timestamp."""
        self.ensure_directory()
        stamp = _millis()
        while True:
            batch = self.root / f"{prefix}-{stamp}"
            try:
                batch.mkdir()
                return batch, stamp
            except FileExistsError:
                stamp += 1
            except OSError as e:
                raise StorageError("Could not create batch directory", details=str(e)) from e

    # ----------------------------
    # Content
    # ----------------------------
    def put(self, name: PathLike, data: bytes) -> Path:
        dst = self.path_for(name)
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            dst.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Could not write {dst.name}", details=str(e)) from e
        return dst

    def get(self, name: PathLike) -> bytes:
        src = self.path_for(name)
        try:
            return src.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as e:
            raise ArtifactNotFound("File not found", details=src.name) from e

    def list_by_suffix(self, ext: str, prefix: Optional[str] = None) -> List[ArtifactInfo]:
        """Direct entries of the root ending in ``ext``, newest first."""
        try:
            names = os.listdir(self.root)
        except FileNotFoundError:
            return []

        found: List[ArtifactInfo] = []
        for name in names:
            if not name.endswith(ext):
                continue
            if prefix and not name.startswith(prefix):
                continue
            path = self.root / name
            try:
                st = path.stat()
            except FileNotFoundError:
                # removed by another request while listing
                continue
            if not path.is_file():
                continue
            found.append(
                ArtifactInfo(
                    name=name,
                    path=path,
                    size=st.st_size,
                    modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                )
            )
        found.sort(key=lambda a: a.modified, reverse=True)
        return found

    def delete(self, name: PathLike) -> bool:
        """Remove one file. A missing file is not an error; returns whether it existed."""
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Removed %s", path)
        return True

    def delete_tree(self, name: PathLike) -> bool:
        path = self.path_for(name)
        if not path.exists():
            return False
        shutil.rmtree(path)
        logger.info("Removed directory %s", path)
        return True


# ----------------------------
# Download resolution
# ----------------------------
def resolve_download(store: ArtifactStore, ref: str) -> Path:
    """
    Map a client supplied reference onto a readable file inside the store.

    Absolute paths inside the root are used as they are. Anything that would
    land outside the root is reduced to its basename under the root. When the
    candidate is not a readable file, the root's direct entries are scanned for
    the same basename before giving up with ``ArtifactNotFound``.
    """
    ref = (ref or "").strip()
    if not ref:
        raise ArtifactNotFound("File query parameter is missing")
    if "\x00" in ref:
        raise ArtifactNotFound("File not found", details="Reference contains a NUL byte")

    normalized = os.path.normpath(ref)
    basename = os.path.basename(normalized)

    if os.path.isabs(normalized):
        candidate = Path(normalized).resolve()
        if not store.contains(candidate):
            candidate = store.root / basename
            logger.info("Adjusted download path to upload directory: %s", candidate)
    else:
        candidate = (store.root / normalized).resolve()
        if not store.contains(candidate):
            candidate = store.root / basename
            logger.info("Adjusted download path to upload directory: %s", candidate)

    if _readable_file(candidate) and store.contains(candidate):
        return candidate.resolve()

    logger.info("Download candidate %s not readable, scanning for %s", candidate, basename)
    try:
        entries = os.listdir(store.root)
    except FileNotFoundError:
        entries = []
    for entry in entries:
        if entry == basename:
            match = (store.root / entry).resolve()
            if _readable_file(match) and store.contains(match):
                return match
            break

    raise ArtifactNotFound("File not found", details=basename or ref)


def _readable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)
