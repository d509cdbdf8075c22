"""
Unit tests for the JSON document store.
"""
import asyncio
import os
import time

import msgspec
import pytest

import infrastructure.storage as storage_module
from infrastructure.storage import (
    CorruptDocumentError,
    FileStorage,
    LockAcquisitionError,
    PathTraversalError,
)


class Doc(msgspec.Struct, kw_only=True, rename="camel"):
    doc_id: str
    count: int = 0


# =============================================================================
# READ / WRITE
# =============================================================================

class TestReadWrite:

    @pytest.mark.asyncio
    async def test_missing_document_is_none(self, storage):
        assert await storage.read_json("p/f/nothing.json") is None
        assert await storage.read_struct("p/f/nothing.json", Doc) is None

    @pytest.mark.asyncio
    async def test_struct_round_trip(self, storage):
        await storage.write_json("p/f/doc.json", Doc(doc_id="a", count=2))
        assert await storage.read_json("p/f/doc.json") == {"docId": "a", "count": 2}
        assert await storage.read_struct("p/f/doc.json", Doc) == Doc(doc_id="a", count=2)

    @pytest.mark.asyncio
    async def test_previous_version_kept_as_backup(self, storage, tmp_path):
        await storage.write_json("p/doc.json", {"v": 1})
        await storage.write_json("p/doc.json", {"v": 2})
        backup = msgspec.json.decode((tmp_path / "p" / "doc.json.bak").read_bytes())
        assert backup == {"v": 1}
        assert await storage.read_json("p/doc.json") == {"v": 2}

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, storage, tmp_path):
        await storage.write_json("p/doc.json", {"v": 1})
        assert not [name for name in os.listdir(tmp_path / "p") if ".tmp." in name]

    @pytest.mark.asyncio
    async def test_corrupt_json(self, storage, tmp_path):
        (tmp_path / "bad.json").write_text("{not json")
        with pytest.raises(CorruptDocumentError):
            await storage.read_json("bad.json")

    @pytest.mark.asyncio
    async def test_wrong_shape(self, storage):
        await storage.write_json("doc.json", {"count": "many"})
        with pytest.raises(CorruptDocumentError):
            await storage.read_struct("doc.json", Doc)

    @pytest.mark.asyncio
    async def test_list_exists_delete(self, storage):
        await storage.write_json("p/b.json", {})
        await storage.write_json("p/a.json", {})
        await storage.ensure_dir("p/sub")
        assert await storage.list("p") == ["a.json", "b.json"]
        assert await storage.list("missing") == []

        await storage.delete("p/a.json")
        assert not await storage.exists("p/a.json")
        await storage.delete("p")
        assert not await storage.exists("p")

    @pytest.mark.asyncio
    async def test_directory_operations_run_in_worker_thread(self, storage, monkeypatch):
        calls = []
        real_to_thread = asyncio.to_thread

        async def recording_to_thread(func, /, *args, **kwargs):
            calls.append(func)
            return await real_to_thread(func, *args, **kwargs)

        monkeypatch.setattr(storage_module.asyncio, "to_thread", recording_to_thread)
        await storage.ensure_dir("q")
        await storage.exists("q")
        await storage.list("q")
        await storage.delete("q")
        assert len(calls) == 4

    def test_traversal_rejected(self, storage):
        with pytest.raises(PathTraversalError):
            storage.resolve("../outside.json")


# =============================================================================
# LOCKS
# =============================================================================

class TestLocks:

    @pytest.mark.asyncio
    async def test_lock_released_after_block(self, storage, tmp_path):
        async with storage.with_lock("p/doc.json"):
            assert (tmp_path / "p" / "doc.json.lock").exists()
        assert not (tmp_path / "p" / "doc.json.lock").exists()

    @pytest.mark.asyncio
    async def test_held_lock_times_out(self, storage):
        async with storage.with_lock("p/doc.json"):
            with pytest.raises(LockAcquisitionError):
                async with storage.with_lock("p/doc.json"):
                    pass

    @pytest.mark.asyncio
    async def test_stale_lock_is_broken(self, tmp_path):
        storage = FileStorage(tmp_path, lock_stale_s=1.0, lock_retries=2, lock_min_wait_s=0.01, lock_max_wait_s=0.02)
        lock = tmp_path / "doc.json.lock"
        lock.write_text("12345")
        old = time.time() - 60
        os.utime(lock, (old, old))

        async with storage.with_lock("doc.json"):
            await storage.write_json("doc.json", {"ok": True})
        assert await storage.read_json("doc.json") == {"ok": True}

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self, storage, tmp_path):
        with pytest.raises(RuntimeError):
            async with storage.with_lock("doc.json"):
                raise RuntimeError("boom")
        assert not (tmp_path / "doc.json.lock").exists()
