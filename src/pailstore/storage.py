"""Local filesystem blob storage for PailStore.

Layout under the data directory::

    buckets/{bucket}/{key}                 objects
    multipart/{upload_id}/part-{number}    in-flight multipart parts

Writes use the temp-fsync-rename pattern so a reader never observes a
partially written object, and request bodies are streamed to disk while the
upload size limit is enforced.
"""

import hashlib
import logging
import os
import re
import shutil
import uuid
from collections.abc import AsyncIterable, AsyncIterator
from pathlib import Path

from pailstore.errors import (
    ErrorKind,
    InvalidRequestError,
    NotFoundError,
    SizeLimitError,
    StorageIOError,
)
from pailstore.validation import resolve_object_path, validate_bucket_name, validate_object_key

logger = logging.getLogger(__name__)

# Streaming chunk size: 64 KB
CHUNK_SIZE = 64 * 1024

_UPLOAD_ID_RE = re.compile(r"^[0-9]+-[A-Za-z0-9_-]+$")


class LocalBlobStorage:
    """Blob storage rooted at a data directory.

    Attributes:
        data_dir: Root data directory.
        buckets_dir: Parent directory of all bucket directories.
        multipart_dir: Parent directory of per-upload part directories.
    """

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)
        self.buckets_dir = self.data_dir / "buckets"
        self.multipart_dir = self.data_dir / "multipart"

    async def init(self) -> None:
        """Create the directory layout and remove temp files left by crashes."""
        self.buckets_dir.mkdir(parents=True, exist_ok=True)
        self.multipart_dir.mkdir(parents=True, exist_ok=True)
        self._clean_temp_files()
        logger.info("Blob storage initialized at %s", self.data_dir)

    def _clean_temp_files(self) -> None:
        count = 0
        for dirpath, _dirnames, filenames in os.walk(self.data_dir):
            for fname in filenames:
                if ".tmp." in fname:
                    try:
                        os.unlink(os.path.join(dirpath, fname))
                        count += 1
                    except OSError as exc:
                        logger.warning("Could not remove temp file %s: %s", fname, exc)
        if count > 0:
            logger.info("Cleaned %d orphan temp files on startup", count)

    # -- Paths -----------------------------------------------------------------

    def bucket_dir(self, bucket: str) -> Path:
        validate_bucket_name(bucket)
        return self.buckets_dir / bucket

    def bucket_exists(self, bucket: str) -> bool:
        return self.bucket_dir(bucket).is_dir()

    def object_path(self, bucket: str, key: str) -> Path:
        """Validated on-disk path for ``bucket``/``key``.

        Raises:
            InvalidRequestError: Bad bucket name, bad key or path traversal.
        """
        validate_object_key(key)
        return resolve_object_path(self.bucket_dir(bucket), key)

    def _parts_dir(self, upload_id: str) -> Path:
        if not _UPLOAD_ID_RE.match(upload_id):
            raise InvalidRequestError(ErrorKind.INVALID_ARGUMENT, "Malformed upload id.")
        return self.multipart_dir / upload_id

    def part_path(self, upload_id: str, part_number: int) -> Path:
        return self._parts_dir(upload_id) / f"part-{part_number}"

    # -- Objects ---------------------------------------------------------------

    async def put_stream(
        self,
        bucket: str,
        key: str,
        chunks: AsyncIterable[bytes],
        max_size: int,
    ) -> tuple[str, int]:
        """Stream a request body into ``bucket``/``key`` atomically.

        Returns:
            (hex MD5 of the stored bytes, size in bytes)

        Raises:
            SizeLimitError: The body exceeded ``max_size``; nothing is stored.
            StorageIOError: The write failed.
        """
        path = self.object_path(bucket, key)
        return await _write_atomic(path, chunks, max_size)

    def stat_object(self, bucket: str, key: str) -> tuple[Path, os.stat_result]:
        """Return the path and stat of an existing regular file.

        Raises:
            NotFoundError: No regular file at that key.
        """
        path = self.object_path(bucket, key)
        try:
            stat = path.stat()
        except FileNotFoundError:
            raise NotFoundError(ErrorKind.OBJECT_NOT_FOUND, resource=key)
        except OSError as exc:
            raise StorageIOError(message=f"Could not stat object: {exc.strerror}") from exc
        if path.is_symlink() or not path.is_file():
            raise NotFoundError(ErrorKind.OBJECT_NOT_FOUND, resource=key)
        return path, stat

    async def get_stream(self, path: Path) -> AsyncIterator[bytes]:
        """Yield the file at ``path`` in 64 KB chunks."""
        with open(path, "rb") as f:
            while True:
                chunk = f.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    async def delete(self, bucket: str, key: str) -> None:
        """Delete an object and prune empty parent directories.

        Raises:
            NotFoundError: The object does not exist.
        """
        path = self.object_path(bucket, key)
        if not path.is_file():
            raise NotFoundError(ErrorKind.OBJECT_NOT_FOUND, resource=key)
        try:
            path.unlink()
        except FileNotFoundError:
            raise NotFoundError(ErrorKind.OBJECT_NOT_FOUND, resource=key)
        except OSError as exc:
            raise StorageIOError(message=f"Could not delete object: {exc.strerror}") from exc

        bucket_dir = Path(os.path.realpath(self.buckets_dir / bucket))
        parent = path.parent
        while parent != bucket_dir and bucket_dir in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    # -- Multipart parts -------------------------------------------------------

    async def put_part(
        self,
        upload_id: str,
        part_number: int,
        chunks: AsyncIterable[bytes],
        max_size: int,
    ) -> tuple[str, int]:
        """Stream one part to ``multipart/{upload_id}/part-{n}``.

        Returns:
            (hex MD5 of the part, size in bytes)
        """
        return await _write_atomic(self.part_path(upload_id, part_number), chunks, max_size)

    async def assemble_parts(
        self, bucket: str, key: str, upload_id: str, part_numbers: list[int]
    ) -> int:
        """Concatenate parts in the given order into the final object.

        Returns:
            Total size of the assembled object.

        Raises:
            NotFoundError: A listed part file is missing.
            StorageIOError: The write failed.
        """
        dest = self.object_path(bucket, key)

        async def _chunks() -> AsyncIterator[bytes]:
            for pn in part_numbers:
                part = self.part_path(upload_id, pn)
                try:
                    f = open(part, "rb")
                except FileNotFoundError:
                    raise NotFoundError(
                        ErrorKind.UPLOAD_NOT_FOUND,
                        f"Part {pn} of upload {upload_id} is missing on disk.",
                        resource=upload_id,
                    )
                with f:
                    while True:
                        chunk = f.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        yield chunk

        _, size = await _write_atomic(dest, _chunks(), max_size=None)
        return size

    async def delete_parts(self, upload_id: str) -> None:
        """Remove the part directory of an upload, if present."""
        parts_dir = self._parts_dir(upload_id)
        if not parts_dir.exists():
            return
        try:
            shutil.rmtree(parts_dir)
        except OSError as exc:
            logger.warning(
                "Failed to remove parts for upload %s: %s",
                upload_id,
                exc,
                extra={"upload_id": upload_id},
            )

    # -- Admin helpers ---------------------------------------------------------

    def list_buckets(self) -> list[str]:
        if not self.buckets_dir.is_dir():
            return []
        return sorted(p.name for p in self.buckets_dir.iterdir() if p.is_dir())

    def create_bucket(self, bucket: str) -> Path:
        path = self.bucket_dir(bucket)
        path.mkdir(parents=True, exist_ok=True)
        return path


async def _write_atomic(
    path: Path, chunks: AsyncIterable[bytes], max_size: int | None
) -> tuple[str, int]:
    """Write chunks to a temp file, fsync and rename over ``path``."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StorageIOError(message=f"Could not create directory: {exc.strerror}") from exc

    tmp = path.with_name(f"{path.name}.tmp.{uuid.uuid4().hex[:8]}")
    md5 = hashlib.md5()
    size = 0
    try:
        fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        try:
            async for chunk in chunks:
                if not chunk:
                    continue
                size += len(chunk)
                if max_size is not None and size > max_size:
                    raise SizeLimitError(max_size)
                md5.update(chunk)
                os.write(fd, chunk)
            os.fsync(fd)
        finally:
            os.close(fd)
        os.replace(tmp, path)
    except BaseException as exc:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove temp file %s", tmp)
        if isinstance(exc, OSError):
            raise StorageIOError(message=f"Could not write {path.name}: {exc.strerror}") from exc
        raise

    return md5.hexdigest(), size
