"""Multipart upload request handlers for PailStore.

Implements:
    - CreateMultipartUpload (POST /{bucket}/{key}?uploads)
    - UploadPart (PUT /{bucket}/{key}?partNumber&uploadId)
    - CompleteMultipartUpload (POST /{bucket}/{key}?uploadId)
    - AbortMultipartUpload (DELETE /{bucket}/{key}?uploadId)
    - ListParts (GET /{bucket}/{key}?uploadId)
    - ListMultipartUploads (GET /{bucket}?uploads)

Every operation is signed and requires the ``put`` permission. Session
state lives in the ``UploadSessionTracker``; part bytes live on disk under
``multipart/{upload_id}`` until completion or abort.
"""

import binascii
import hashlib
import logging

from fastapi import Request, Response

from pailstore import metrics
from pailstore.errors import ErrorKind, InvalidRequestError, NotFoundError
from pailstore.handlers.base import BaseHandler
from pailstore.keystore import PERMISSION_PUT
from pailstore.multipart import PartInfo, UploadSession
from pailstore.validation import parse_part_number, validate_bucket_name
from pailstore.xml_utils import (
    parse_complete_multipart_upload,
    render_complete_multipart_upload,
    render_initiate_multipart_upload,
    render_list_multipart_uploads,
    render_list_parts,
    xml_response,
)

logger = logging.getLogger(__name__)

_INVALID_PART_MESSAGE = (
    "One or more of the specified parts could not be found. The part may not have "
    "been uploaded, or the specified entity tag may not have matched the part's entity tag."
)


def compute_composite_etag(part_etags: list[str]) -> str:
    """S3 multipart ETag: MD5 of the concatenated binary part MD5s, ``-N`` suffix.

    Args:
        part_etags: Part ETags, quoted or not, in assembly order.

    Returns:
        A quoted composite ETag string, e.g. '"abc123-3"'.
    """
    binary_md5s = b"".join(binascii.unhexlify(etag.strip('"')) for etag in part_etags)
    final_md5 = hashlib.md5(binary_md5s).hexdigest()
    return f'"{final_md5}-{len(part_etags)}"'


class MultipartHandler(BaseHandler):
    """Handles the multipart upload lifecycle."""

    def _upload_id(self, request: Request) -> str:
        upload_id = request.query_params.get("uploadId", "")
        if not upload_id:
            raise InvalidRequestError(ErrorKind.INVALID_ARGUMENT, "uploadId is required")
        return upload_id

    def _session_for(self, upload_id: str, bucket: str, key: str) -> UploadSession:
        """Fetch the session and make sure it belongs to ``bucket``/``key``."""
        session = self.tracker.get(upload_id)
        if session is None or session.bucket != bucket or session.key != key:
            raise NotFoundError(
                ErrorKind.UPLOAD_NOT_FOUND,
                "The specified multipart upload does not exist.",
                resource=upload_id,
            )
        return session

    async def create_multipart_upload(self, request: Request, bucket: str, key: str) -> Response:
        self.storage.object_path(bucket, key)
        self.authorize(request, bucket, PERMISSION_PUT)

        upload_id = await self.tracker.initiate(bucket, key)
        body = render_initiate_multipart_upload(bucket, key, upload_id)
        return xml_response(body, status=200)

    async def upload_part(self, request: Request, bucket: str, key: str) -> Response:
        """Store one part and record it in the tracker.

        Re-uploading a part number overwrites the earlier part.

        Returns:
            200 OK with the part's quoted ETag.
        """
        self.storage.object_path(bucket, key)
        upload_id = self._upload_id(request)
        part_number = parse_part_number(request.query_params.get("partNumber", ""))
        self.authorize(request, bucket, PERMISSION_PUT)
        self._session_for(upload_id, bucket, key)

        md5_hex, size = await self.storage.put_part(
            upload_id,
            part_number,
            self.body_stream(request),
            self.config.server.max_upload_size,
        )
        if metrics.bytes_received_total is not None:
            metrics.bytes_received_total.inc(size)

        etag = f'"{md5_hex}"'
        try:
            await self.tracker.add_part(upload_id, part_number, etag, size)
        except NotFoundError:
            # Completed or aborted while the part was being written
            await self.storage.delete_parts(upload_id)
            raise
        return Response(status_code=200, headers={"ETag": etag})

    async def complete_multipart_upload(self, request: Request, bucket: str, key: str) -> Response:
        """Assemble the parts into the final object.

        With an XML body, the listed parts must be in ascending order and
        their ETags must match the uploaded parts. With an empty body every
        tracked part is used in ascending order.

        Returns:
            XML CompleteMultipartUploadResult.
        """
        self.storage.object_path(bucket, key)
        upload_id = self._upload_id(request)
        self.authorize(request, bucket, PERMISSION_PUT)
        session = self._session_for(upload_id, bucket, key)

        body = await request.body()
        parts = self._select_parts(session, body)
        if not parts:
            raise InvalidRequestError(
                ErrorKind.INVALID_PART, "You must specify at least one part."
            )

        # Claim the session; a concurrent complete now gets NoSuchUpload
        await self.tracker.complete(upload_id)
        try:
            size = await self.storage.assemble_parts(
                bucket, key, upload_id, [p.part_number for p in parts]
            )
        finally:
            await self.storage.delete_parts(upload_id)

        etag = compute_composite_etag([p.etag for p in parts])
        logger.info(
            "Completed multipart upload %s into %s/%s (%d parts, %d bytes)",
            upload_id,
            bucket,
            key,
            len(parts),
            size,
            extra={"upload_id": upload_id, "bucket": bucket, "key": key},
        )

        location = f"{request.base_url}{bucket}/{key}"
        body_xml = render_complete_multipart_upload(
            location=location, bucket=bucket, key=key, etag=etag
        )
        return xml_response(body_xml, status=200)

    @staticmethod
    def _select_parts(session: UploadSession, body: bytes) -> list[PartInfo]:
        if not body.strip():
            return session.sorted_parts()

        requested = parse_complete_multipart_upload(body)
        selected: list[PartInfo] = []
        prev = 0
        for part_number, etag in requested:
            if part_number <= prev:
                raise InvalidRequestError(
                    ErrorKind.INVALID_PART_ORDER,
                    "The list of parts was not in ascending order.",
                )
            prev = part_number
            stored = session.parts.get(part_number)
            if stored is None or stored.etag.strip('"') != etag:
                raise InvalidRequestError(ErrorKind.INVALID_PART, _INVALID_PART_MESSAGE)
            selected.append(stored)
        return selected

    async def abort_multipart_upload(self, request: Request, bucket: str, key: str) -> Response:
        self.storage.object_path(bucket, key)
        upload_id = self._upload_id(request)
        self.authorize(request, bucket, PERMISSION_PUT)
        self._session_for(upload_id, bucket, key)

        await self.tracker.abort(upload_id)
        await self.storage.delete_parts(upload_id)
        return Response(status_code=204)

    async def list_parts(self, request: Request, bucket: str, key: str) -> Response:
        self.storage.object_path(bucket, key)
        upload_id = self._upload_id(request)
        self.authorize(request, bucket, PERMISSION_PUT)
        session = self._session_for(upload_id, bucket, key)

        parts = self.tracker.list_parts(upload_id)
        return xml_response(render_list_parts(session, parts), status=200)

    async def list_uploads(self, request: Request, bucket: str) -> Response:
        validate_bucket_name(bucket)
        self.authorize(request, bucket, PERMISSION_PUT)

        uploads = self.tracker.list_uploads(bucket)
        return xml_response(render_list_multipart_uploads(bucket, uploads), status=200)

    async def expire_sessions(self, sessions: list[UploadSession]) -> None:
        """Sweep callback: drop the part files of expired uploads."""
        for session in sessions:
            await self.storage.delete_parts(session.upload_id)
