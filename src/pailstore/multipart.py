"""In-memory multipart upload session tracking for PailStore.

The ``UploadSessionTracker`` owns every in-progress multipart upload. It
records which parts have arrived (part number, ETag, size) and hands callers
snapshots, never the live session. Sessions end by ``complete``, ``abort``
or the background expiry sweep.

Part bytes are not stored here; the HTTP layer writes them to disk and only
reports their metadata.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone

from pailstore import metrics
from pailstore.errors import ErrorKind, InvalidRequestError, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86400
DEFAULT_SWEEP_INTERVAL_SECONDS = 3600


@dataclass(frozen=True)
class PartInfo:
    """Metadata for one uploaded part.

    Attributes:
        part_number: Positive part number.
        etag: Quoted MD5 hex of the part bytes.
        size: Part size in bytes.
    """

    part_number: int
    etag: str
    size: int


@dataclass(frozen=True)
class UploadSession:
    """Snapshot of a multipart upload.

    Attributes:
        upload_id: Opaque URL-safe identifier.
        bucket: Target bucket name.
        key: Target object key.
        initiated_at: UTC time the upload was initiated.
        parts: Part number to part metadata; last write per number wins.
    """

    upload_id: str
    bucket: str
    key: str
    initiated_at: datetime
    parts: dict[int, PartInfo] = field(default_factory=dict)

    def sorted_parts(self) -> list[PartInfo]:
        return [self.parts[n] for n in sorted(self.parts)]

    @property
    def total_size(self) -> int:
        return sum(p.size for p in self.parts.values())


ExpireCallback = Callable[[list[UploadSession]], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_upload_id(now: datetime) -> str:
    """``{epoch millis}-{16 random bytes, urlsafe base64, unpadded}``."""
    millis = int(now.timestamp() * 1000)
    token = base64.urlsafe_b64encode(secrets.token_bytes(16)).rstrip(b"=").decode()
    return f"{millis}-{token}"


class UploadSessionTracker:
    """Concurrent registry of in-progress multipart uploads.

    Mutations and the expiry sweep serialize on one ``asyncio.Lock``.
    ``get``, ``list_parts`` and ``list_uploads`` read without locking; since
    sessions are replaced rather than mutated, a reader always sees a whole
    session.

    Attributes:
        ttl_seconds: Age after which a session is swept.
        sweep_interval_seconds: Delay between sweeps.
        clock: Returns the current UTC time; injectable for tests.
        on_expire: Optional coroutine called with swept sessions, outside
            the lock, so part files can be removed.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], datetime] | None = None,
        on_expire: ExpireCallback | None = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.clock = clock or _utcnow
        self.on_expire = on_expire
        self._sessions: dict[str, UploadSession] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: asyncio.Task | None = None

    # -- Mutations -------------------------------------------------------------

    async def initiate(self, bucket: str, key: str) -> str:
        """Register a new upload and return its id."""
        now = self.clock()
        async with self._lock:
            upload_id = new_upload_id(now)
            while upload_id in self._sessions:
                upload_id = new_upload_id(now)
            self._sessions[upload_id] = UploadSession(
                upload_id=upload_id, bucket=bucket, key=key, initiated_at=now
            )
            metrics.set_active_uploads(len(self._sessions))
        logger.info(
            "Initiated multipart upload %s for %s/%s",
            upload_id,
            bucket,
            key,
            extra={"upload_id": upload_id, "bucket": bucket, "key": key},
        )
        return upload_id

    async def add_part(self, upload_id: str, part_number: int, etag: str, size: int) -> None:
        """Record a part. Re-uploading a part number replaces the earlier one.

        Raises:
            InvalidRequestError: ``part_number`` is not a positive integer.
            NotFoundError: The upload does not exist.
        """
        if isinstance(part_number, bool) or not isinstance(part_number, int) or part_number < 1:
            raise InvalidRequestError(
                ErrorKind.INVALID_ARGUMENT, "Part number must be a positive integer."
            )
        async with self._lock:
            session = self._require(upload_id)
            parts = dict(session.parts)
            parts[part_number] = PartInfo(part_number=part_number, etag=etag, size=size)
            self._sessions[upload_id] = replace(session, parts=parts)

    async def complete(self, upload_id: str) -> UploadSession:
        """Remove the session and return its final snapshot. Succeeds once.

        Raises:
            NotFoundError: The upload does not exist (or was already completed).
        """
        async with self._lock:
            session = self._require(upload_id)
            del self._sessions[upload_id]
            metrics.set_active_uploads(len(self._sessions))
        return session

    async def abort(self, upload_id: str) -> UploadSession:
        """Remove the session, returning it so its parts can be cleaned up.

        Raises:
            NotFoundError: The upload does not exist.
        """
        async with self._lock:
            session = self._require(upload_id)
            del self._sessions[upload_id]
            metrics.set_active_uploads(len(self._sessions))
        logger.info("Aborted multipart upload %s", upload_id, extra={"upload_id": upload_id})
        return session

    # -- Reads -----------------------------------------------------------------

    def get(self, upload_id: str) -> UploadSession | None:
        session = self._sessions.get(upload_id)
        if session is None:
            return None
        return replace(session, parts=dict(session.parts))

    def list_parts(self, upload_id: str) -> list[PartInfo]:
        """Parts of an upload sorted by ascending part number.

        Raises:
            NotFoundError: The upload does not exist.
        """
        session = self._sessions.get(upload_id)
        if session is None:
            raise self._not_found(upload_id)
        return session.sorted_parts()

    def list_uploads(self, bucket: str) -> list[UploadSession]:
        """In-progress uploads for ``bucket``, oldest first."""
        sessions = [s for s in list(self._sessions.values()) if s.bucket == bucket]
        sessions.sort(key=lambda s: (s.initiated_at, s.upload_id))
        return [replace(s, parts=dict(s.parts)) for s in sessions]

    def count(self) -> int:
        return len(self._sessions)

    # -- Expiry ----------------------------------------------------------------

    async def sweep(self) -> list[UploadSession]:
        """Remove every session older than ``ttl_seconds``.

        Returns:
            The removed sessions.
        """
        cutoff = self.clock() - timedelta(seconds=self.ttl_seconds)
        async with self._lock:
            expired = [s for s in self._sessions.values() if s.initiated_at < cutoff]
            for session in expired:
                del self._sessions[session.upload_id]
            metrics.set_active_uploads(len(self._sessions))

        if expired:
            metrics.record_expired_uploads(len(expired))
            logger.info("Expired %d stale multipart uploads", len(expired))
            if self.on_expire is not None:
                await self.on_expire(expired)
        return expired

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the periodic sweep and wait for it to finish."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Multipart upload sweep failed")

    # -- Helpers ---------------------------------------------------------------

    def _require(self, upload_id: str) -> UploadSession:
        session = self._sessions.get(upload_id)
        if session is None:
            raise self._not_found(upload_id)
        return session

    @staticmethod
    def _not_found(upload_id: str) -> NotFoundError:
        return NotFoundError(
            ErrorKind.UPLOAD_NOT_FOUND,
            "The specified multipart upload does not exist.",
            resource=upload_id,
        )
