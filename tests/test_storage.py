"""Tests for the local file store."""

import os
import re
import time
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from app.core.exceptions import StoredFileNotFoundError
from app.services.storage import generate_unique_filename, sanitize_filename


# ─── Names & paths ───────────────────────────────────────────────────────────

class TestNames:
    def test_sanitize(self):
        assert sanitize_filename("Contrato: Acme/2026 (v2).pdf") == "Contrato_Acme_2026_v2_.pdf"
        assert sanitize_filename("///") == "document"

    def test_unique_filename_shape(self):
        name = generate_unique_filename("Propuesta Acme")
        assert re.fullmatch(r"Propuesta_Acme_\d{13}_[0-9a-f]{8}\.pdf", name)
        assert generate_unique_filename("x") != generate_unique_filename("x")

    def test_build_path(self, file_store):
        tenant_id, document_id = uuid4(), uuid4()
        path = file_store.build_path(
            tenant_id, document_id, "a b.pdf", now=datetime(2026, 3, 1, tzinfo=timezone.utc)
        )
        assert path == f"documents/{tenant_id}/2026/03/{document_id}_a_b.pdf"
        assert file_store.public_url(path) == f"http://files.test/{path}"


# ─── Read / write / delete ───────────────────────────────────────────────────

class TestFileOperations:
    @pytest.mark.asyncio
    async def test_save_and_read(self, file_store):
        stored = await file_store.save(uuid4(), uuid4(), "doc.pdf", b"%PDF-1.7 data")
        assert stored.size == 13
        assert stored.url.startswith("http://files.test/documents/")
        assert await file_store.read(stored.path) == b"%PDF-1.7 data"

        info = await file_store.stat(stored.path)
        assert info.exists and info.size == 13

        # No temp files left beside the target
        directory = (file_store.root / stored.path).parent
        assert [p.name for p in directory.iterdir()] == [os.path.basename(stored.path)]
        assert list(file_store.temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_interrupted_save_leaves_only_temp_file(self, file_store, monkeypatch):
        def fail(staged, target):
            raise OSError("disk full")

        monkeypatch.setattr(file_store, "_promote", fail)
        with pytest.raises(OSError):
            await file_store.save(uuid4(), uuid4(), "doc.pdf", b"%PDF-1.7 data")

        assert not any((file_store.root / "documents").rglob("*.pdf"))
        assert len(list(file_store.temp_dir.iterdir())) == 1
        stats = await file_store.cleanup_older_than(hours=-1)
        assert stats.files == 1

    @pytest.mark.asyncio
    async def test_read_missing(self, file_store):
        with pytest.raises(StoredFileNotFoundError):
            await file_store.read("documents/nope.pdf")

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, file_store):
        stored = await file_store.save(uuid4(), uuid4(), "doc.pdf", b"x")
        assert await file_store.delete(stored.path) is True
        assert await file_store.delete(stored.path) is False
        assert not (await file_store.stat(stored.path)).exists

    @pytest.mark.asyncio
    async def test_refuses_paths_outside_root(self, file_store):
        with pytest.raises(ValueError):
            await file_store.read("../../etc/passwd")


# ─── Temp cleanup ────────────────────────────────────────────────────────────

class TestTempCleanup:
    @pytest.mark.asyncio
    async def test_removes_only_old_files(self, file_store):
        old = await file_store.save_temp("old.html", b"12345")
        fresh = await file_store.save_temp("fresh.html", b"1")
        two_days_ago = time.time() - 48 * 3600
        os.utime(old, (two_days_ago, two_days_ago))

        stats = await file_store.cleanup_older_than(24)

        assert stats.files == 1
        assert stats.bytes == 5
        assert not old.exists()
        assert fresh.exists()

    @pytest.mark.asyncio
    async def test_dry_run_keeps_files(self, file_store):
        old = await file_store.save_temp("old.html", b"12345")
        two_days_ago = time.time() - 48 * 3600
        os.utime(old, (two_days_ago, two_days_ago))

        stats = await file_store.cleanup_older_than(24, dry_run=True)

        assert stats.files == 1
        assert old.exists()
