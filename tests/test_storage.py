"""Tests for LocalBlobStorage (local filesystem blob storage)."""

import hashlib
import os

import pytest

from pailstore.errors import ErrorKind, InvalidRequestError, NotFoundError, SizeLimitError
from pailstore.storage import LocalBlobStorage


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


@pytest.fixture
async def storage(tmp_path):
    backend = LocalBlobStorage(tmp_path / "data")
    await backend.init()
    backend.create_bucket("photos")
    return backend


async def _read(storage, path) -> bytes:
    return b"".join([chunk async for chunk in storage.get_stream(path)])


class TestInit:
    async def test_creates_layout(self, tmp_path):
        backend = LocalBlobStorage(tmp_path / "data")
        await backend.init()
        assert (tmp_path / "data" / "buckets").is_dir()
        assert (tmp_path / "data" / "multipart").is_dir()

    async def test_removes_orphan_temp_files(self, tmp_path):
        bucket = tmp_path / "data" / "buckets" / "photos"
        bucket.mkdir(parents=True)
        (bucket / "a.txt").write_text("keep")
        (bucket / "a.txt.tmp.1234abcd").write_text("partial")

        await LocalBlobStorage(tmp_path / "data").init()
        assert (bucket / "a.txt").exists()
        assert not (bucket / "a.txt.tmp.1234abcd").exists()


class TestObjects:
    async def test_put_and_get(self, storage):
        md5_hex, size = await storage.put_stream(
            "photos", "dir/hello.txt", _chunks(b"hello ", b"world"), max_size=1024
        )
        assert md5_hex == hashlib.md5(b"hello world").hexdigest()
        assert size == 11

        path, stat = storage.stat_object("photos", "dir/hello.txt")
        assert stat.st_size == 11
        assert await _read(storage, path) == b"hello world"

    async def test_put_overwrites(self, storage):
        await storage.put_stream("photos", "k", _chunks(b"old"), max_size=1024)
        await storage.put_stream("photos", "k", _chunks(b"newer"), max_size=1024)
        path, _ = storage.stat_object("photos", "k")
        assert await _read(storage, path) == b"newer"

    async def test_size_limit_leaves_nothing_behind(self, storage):
        with pytest.raises(SizeLimitError):
            await storage.put_stream(
                "photos", "big.bin", _chunks(b"a" * 600, b"b" * 600), max_size=1000
            )
        bucket = storage.buckets_dir / "photos"
        assert not (bucket / "big.bin").exists()
        assert not any(".tmp." in name for name in os.listdir(bucket))

    async def test_size_limit_keeps_previous_object(self, storage):
        await storage.put_stream("photos", "k", _chunks(b"original"), max_size=1000)
        with pytest.raises(SizeLimitError):
            await storage.put_stream("photos", "k", _chunks(b"x" * 2000), max_size=1000)
        path, _ = storage.stat_object("photos", "k")
        assert await _read(storage, path) == b"original"

    async def test_stat_missing(self, storage):
        with pytest.raises(NotFoundError) as exc_info:
            storage.stat_object("photos", "nope.txt")
        assert exc_info.value.kind is ErrorKind.OBJECT_NOT_FOUND

    async def test_stat_directory_is_not_an_object(self, storage):
        await storage.put_stream("photos", "dir/file.txt", _chunks(b"x"), max_size=10)
        with pytest.raises(NotFoundError):
            storage.stat_object("photos", "dir")

    async def test_delete_prunes_empty_parents(self, storage):
        await storage.put_stream("photos", "a/b/c.txt", _chunks(b"x"), max_size=10)
        await storage.delete("photos", "a/b/c.txt")

        bucket = storage.buckets_dir / "photos"
        assert not (bucket / "a").exists()
        assert bucket.is_dir()

    async def test_delete_keeps_non_empty_parents(self, storage):
        await storage.put_stream("photos", "a/one.txt", _chunks(b"1"), max_size=10)
        await storage.put_stream("photos", "a/two.txt", _chunks(b"2"), max_size=10)
        await storage.delete("photos", "a/one.txt")
        assert (storage.buckets_dir / "photos" / "a" / "two.txt").exists()

    async def test_delete_missing(self, storage):
        with pytest.raises(NotFoundError):
            await storage.delete("photos", "nope.txt")

    async def test_traversal_rejected(self, storage):
        with pytest.raises(InvalidRequestError):
            storage.object_path("photos", "../escape.txt")

    async def test_invalid_bucket_rejected(self, storage):
        with pytest.raises(InvalidRequestError) as exc_info:
            storage.object_path("Bad_Bucket", "k")
        assert exc_info.value.kind is ErrorKind.INVALID_BUCKET_NAME


class TestParts:
    async def test_assemble_in_given_order(self, storage):
        upload_id = "1717243200000-abcDEF_123"
        await storage.put_part(upload_id, 2, _chunks(b"world"), max_size=100)
        await storage.put_part(upload_id, 1, _chunks(b"hello "), max_size=100)

        size = await storage.assemble_parts("photos", "joined.txt", upload_id, [1, 2])
        assert size == 11
        path, _ = storage.stat_object("photos", "joined.txt")
        assert await _read(storage, path) == b"hello world"

        await storage.delete_parts(upload_id)
        assert not (storage.multipart_dir / upload_id).exists()

    async def test_missing_part(self, storage):
        upload_id = "1717243200000-abc"
        await storage.put_part(upload_id, 1, _chunks(b"x"), max_size=100)
        with pytest.raises(NotFoundError):
            await storage.assemble_parts("photos", "k", upload_id, [1, 2])
        assert not (storage.buckets_dir / "photos" / "k").exists()

    async def test_malformed_upload_id_rejected(self, storage):
        with pytest.raises(InvalidRequestError):
            storage.part_path("../../keys", 1)

    async def test_delete_parts_missing_is_noop(self, storage):
        await storage.delete_parts("1717243200000-gone")


class TestAdminHelpers:
    async def test_list_buckets(self, storage):
        storage.create_bucket("videos")
        assert storage.list_buckets() == ["photos", "videos"]
        assert storage.bucket_exists("videos")
        assert not storage.bucket_exists("absent")
