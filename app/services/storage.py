"""Local filesystem storage for generated PDFs."""

import asyncio
import logging
import os
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from uuid import UUID

from app.config import get_settings
from app.core.exceptions import StoredFileNotFoundError

settings = get_settings()
logger = logging.getLogger(__name__)

DOCUMENTS_DIR = "documents"
TEMP_DIR = "temp"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class StoredFile:
    path: str
    url: str
    size: int


@dataclass
class FileInfo:
    exists: bool
    size: int | None = None
    created_at: datetime | None = None
    modified_at: datetime | None = None


@dataclass
class CleanupStats:
    files: int = 0
    bytes: int = 0


def sanitize_filename(name: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", name).strip("._")
    return cleaned or "document"


def generate_unique_filename(name: str, extension: str = "pdf") -> str:
    """``<sanitized-name>_<timestamp-ms>_<random>.<extension>``."""
    stem = sanitize_filename(name)[:100]
    return f"{stem}_{int(time.time() * 1000)}_{secrets.token_hex(4)}.{extension}"


class FileStorageService:
    """Stores files under a root directory and maps them to public URLs.

    Paths handed out and accepted by this service are relative to the root,
    e.g. ``documents/<tenant>/2026/10/<document>_<file>.pdf``.
    """

    def __init__(self, root: str | Path | None = None, base_url: str | None = None) -> None:
        self.root = Path(root or settings.storage_path).resolve()
        self.base_url = (base_url or settings.file_base_url).rstrip("/")

    @property
    def temp_dir(self) -> Path:
        return self.root / TEMP_DIR

    def initialize(self) -> None:
        """Create the root, documents and temp directories."""
        for directory in (self.root, self.root / DOCUMENTS_DIR, self.temp_dir):
            directory.mkdir(parents=True, exist_ok=True)
        logger.info("File storage ready at %s", self.root)

    def _resolve(self, relative_path: str) -> Path:
        """Absolute path for ``relative_path``, refusing anything outside the root."""
        full = (self.root / relative_path).resolve()
        if full != self.root and self.root not in full.parents:
            raise ValueError(f"Path escapes storage root: {relative_path}")
        return full

    def build_path(
        self,
        tenant_id: UUID,
        document_id: UUID,
        file_name: str,
        now: datetime | None = None,
    ) -> str:
        now = now or datetime.now(timezone.utc)
        return (
            f"{DOCUMENTS_DIR}/{tenant_id}/{now.year:04d}/{now.month:02d}/"
            f"{document_id}_{sanitize_filename(file_name)}"
        )

    def public_url(self, relative_path: str) -> str:
        return f"{self.base_url}/{relative_path}"

    async def save(
        self,
        tenant_id: UUID,
        document_id: UUID,
        file_name: str,
        content: bytes,
    ) -> StoredFile:
        """Write ``content`` atomically and return its location.

        The bytes are staged in the temp directory and moved into place, so an
        interrupted write leaves only a temp file for the cleanup lane.
        """
        relative_path = self.build_path(tenant_id, document_id, file_name)
        target = self._resolve(relative_path)
        staged = await self.save_temp(f"{document_id}.pdf", content)
        await asyncio.to_thread(self._promote, staged, target)
        logger.info("Stored %d bytes at %s", len(content), relative_path)
        return StoredFile(path=relative_path, url=self.public_url(relative_path), size=len(content))

    @staticmethod
    def _promote(staged: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(staged, target)

    @staticmethod
    def _write_atomic(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.{secrets.token_hex(4)}.tmp")
        try:
            with open(tmp, "wb") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, target)
        finally:
            if tmp.exists():
                tmp.unlink()

    async def read(self, relative_path: str) -> bytes:
        target = self._resolve(relative_path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError:
            raise StoredFileNotFoundError(f"File not found: {relative_path}")

    async def delete(self, relative_path: str) -> bool:
        """Delete a file. Returns False when it did not exist."""
        target = self._resolve(relative_path)
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError:
            return False
        logger.info("Deleted %s", relative_path)
        return True

    async def stat(self, relative_path: str) -> FileInfo:
        target = self._resolve(relative_path)
        try:
            st = await asyncio.to_thread(target.stat)
        except FileNotFoundError:
            return FileInfo(exists=False)
        return FileInfo(
            exists=True,
            size=st.st_size,
            created_at=datetime.fromtimestamp(st.st_ctime, tz=timezone.utc),
            modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    async def save_temp(self, file_name: str, content: bytes) -> Path:
        name = Path(file_name)
        target = self.temp_dir / generate_unique_filename(name.stem, name.suffix.lstrip(".") or "tmp")
        await asyncio.to_thread(self._write_atomic, target, content)
        return target

    async def cleanup_older_than(self, hours: float, dry_run: bool = False) -> CleanupStats:
        """Remove temp-directory entries last modified before the cutoff."""
        return await asyncio.to_thread(self._cleanup_temp, hours, dry_run)

    def _cleanup_temp(self, hours: float, dry_run: bool) -> CleanupStats:
        stats = CleanupStats()
        if not self.temp_dir.exists():
            return stats
        cutoff = time.time() - hours * 3600
        for entry in self.temp_dir.iterdir():
            if not entry.is_file():
                continue
            st = entry.stat()
            if st.st_mtime >= cutoff:
                continue
            stats.files += 1
            stats.bytes += st.st_size
            if not dry_run:
                entry.unlink(missing_ok=True)
        if stats.files:
            logger.info(
                "%s %d temp files (%d bytes)",
                "Would remove" if dry_run else "Removed",
                stats.files,
                stats.bytes,
            )
        return stats


# Global instance
storage_service = FileStorageService()
