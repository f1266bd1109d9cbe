"""Request-scoped upload storage.

Uploads are streamed to `upload_dir` under collision-free names and must be
released by the caller when the request ends. Nothing here is shared between
requests except the directory itself.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import time
from pathlib import Path
from typing import Optional
from uuid import uuid4

from fastapi import UploadFile
from PIL import Image, UnidentifiedImageError

from scan4care.shared.analyze_contract import StorageError, UploadedImage, UploadValidationError


logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def _suffix_for(mime_type: str) -> str:
    if mime_type == "image/jpeg":
        return ".jpg"
    return mimetypes.guess_extension(mime_type) or ""


class EphemeralFileStore:
    def __init__(self, upload_dir: Path, max_bytes: int, *, verify_images: bool = True) -> None:
        self.upload_dir = Path(upload_dir)
        self.max_bytes = int(max_bytes)
        self.verify_images = verify_images

    def _ensure_dir(self) -> None:
        try:
            self.upload_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Upload directory unavailable: {exc.strerror or exc}") from exc

    def check_type(self, upload: UploadFile) -> str:
        mime_type = (upload.content_type or "").strip().lower()
        if not mime_type.startswith("image/"):
            raise UploadValidationError("Only image files allowed")
        return mime_type

    def _limit_message(self) -> str:
        limit_mb = self.max_bytes / (1024 * 1024)
        return f"Image exceeds the {limit_mb:g} MB upload limit"

    async def store(self, field_name: str, upload: UploadFile) -> UploadedImage:
        """Stream one upload to disk, enforcing type and size limits.

        On any failure the partially written file is removed before raising,
        so the caller only needs to release handles that were returned.
        """

        mime_type = self.check_type(upload)
        self._ensure_dir()
        path = self.upload_dir / f"{field_name}-{uuid4().hex}{_suffix_for(mime_type)}"

        size = 0
        try:
            with path.open("xb") as fh:
                while True:
                    chunk = await upload.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise UploadValidationError(self._limit_message())
                    await asyncio.to_thread(fh.write, chunk)
            if size == 0:
                raise UploadValidationError("Uploaded image is empty")
            if self.verify_images:
                await asyncio.to_thread(self._verify, path)
        except UploadValidationError:
            self._discard(path)
            raise
        except OSError as exc:
            self._discard(path)
            raise StorageError(f"Could not store upload: {exc.strerror or exc}") from exc

        logger.debug("stored %s upload at %s (%d bytes)", field_name, path.name, size)
        return UploadedImage(field_name=field_name, path=path, mime_type=mime_type, size_bytes=size)

    def _verify(self, path: Path) -> None:
        """Reject files Pillow recognises but cannot verify.

        Formats Pillow has no plugin for (HEIC, AVIF on older builds) pass
        through untouched; the inference backend decides on those.
        """

        try:
            img = Image.open(path)
        except UnidentifiedImageError:
            logger.debug("skipping verification of unrecognised format: %s", path.name)
            return
        try:
            with img:
                img.verify()
        except (OSError, SyntaxError, ValueError) as exc:
            raise UploadValidationError("Invalid image") from exc

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("could not remove partial upload %s: %s", path.name, exc)

    def release(self, image: Optional[UploadedImage]) -> None:
        """Delete the backing file. Safe to call twice or on a missing file."""

        if image is None:
            return
        try:
            image.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("could not release %s: %s", image.path.name, exc)

    def sweep_stale(self, max_age_s: float, *, now: Optional[float] = None) -> int:
        """Remove files older than `max_age_s` left behind by interrupted requests."""

        if max_age_s <= 0 or not self.upload_dir.is_dir():
            return 0
        cutoff = (time.time() if now is None else now) - max_age_s
        removed = 0
        for entry in self.upload_dir.iterdir():
            try:
                if entry.is_file() and entry.stat().st_mtime < cutoff:
                    entry.unlink(missing_ok=True)
                    removed += 1
            except OSError as exc:
                logger.warning("sweep skipped %s: %s", entry.name, exc)
        if removed:
            logger.info("swept %d stale upload(s) from %s", removed, self.upload_dir)
        return removed
