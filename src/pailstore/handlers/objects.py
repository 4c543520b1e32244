"""Bucket listing and object request handlers for PailStore.

Implements:
    - ListObjects (GET /{bucket}), public, JSON body
    - GetObject (GET /{bucket}/{key}), public, streamed
    - HeadObject (HEAD /{bucket}/{key}), public
    - PutObject (PUT /{bucket}/{key}), signed, ``put`` permission
    - DeleteObject (DELETE /{bucket}/{key}), signed, ``delete`` permission
"""

import email.utils
import logging
import mimetypes

from fastapi import Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from pailstore import metrics
from pailstore.errors import ErrorKind, NotFoundError
from pailstore.handlers.base import BaseHandler
from pailstore.keystore import PERMISSION_DELETE, PERMISSION_PUT
from pailstore.listing import list_objects, md5_file, parse_max_keys

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=3600"


class ObjectHandler(BaseHandler):
    """Handles public reads and signed writes of whole objects."""

    async def list_objects(self, request: Request, bucket: str) -> Response:
        """List a bucket as JSON.

        Query parameters: ``prefix``, ``delimiter`` and ``max-keys`` (also
        accepted as ``max_keys``).
        """
        if not self.storage.bucket_exists(bucket):
            raise NotFoundError(
                ErrorKind.BUCKET_NOT_FOUND, "The specified bucket does not exist.", resource=bucket
            )

        params = request.query_params
        prefix = params.get("prefix", "")
        delimiter = params.get("delimiter") or None
        max_keys = parse_max_keys(params.get("max-keys", params.get("max_keys")))

        bucket_dir = self.storage.bucket_dir(bucket)
        result = list_objects(bucket_dir, prefix=prefix, delimiter=delimiter, max_keys=max_keys)
        return JSONResponse(
            {
                "bucket": bucket,
                "prefix": prefix,
                "objects": [obj.to_dict() for obj in result.objects],
                "common_prefixes": sorted(result.common_prefixes),
                "is_truncated": result.is_truncated,
                "key_count": len(result.objects),
            }
        )

    def _object_headers(self, key: str, path, stat) -> dict[str, str]:
        content_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
        return {
            "Content-Type": content_type,
            "Content-Length": str(stat.st_size),
            "ETag": f'"{md5_file(path)}"',
            "Last-Modified": email.utils.formatdate(stat.st_mtime, usegmt=True),
            "Cache-Control": CACHE_CONTROL,
        }

    async def get_object(self, request: Request, bucket: str, key: str) -> Response:
        """Stream an object's bytes in 64 KB chunks."""
        path, stat = self.storage.stat_object(bucket, key)
        headers = self._object_headers(key, path, stat)
        return StreamingResponse(
            content=self.storage.get_stream(path),
            status_code=200,
            headers=headers,
            media_type=headers["Content-Type"],
        )

    async def head_object(self, request: Request, bucket: str, key: str) -> Response:
        path, stat = self.storage.stat_object(bucket, key)
        return Response(status_code=200, headers=self._object_headers(key, path, stat))

    async def put_object(self, request: Request, bucket: str, key: str) -> Response:
        """Store the request body at ``bucket``/``key``.

        The key is validated before authentication so malformed paths are
        rejected without touching the key store.

        Returns:
            200 OK with the quoted MD5 ETag.
        """
        self.storage.object_path(bucket, key)
        self.authorize(request, bucket, PERMISSION_PUT)

        md5_hex, size = await self.storage.put_stream(
            bucket, key, self.body_stream(request), self.config.server.max_upload_size
        )
        if metrics.bytes_received_total is not None:
            metrics.bytes_received_total.inc(size)

        logger.info(
            "Stored %s/%s (%d bytes)",
            bucket,
            key,
            size,
            extra={
                "bucket": bucket,
                "key": key,
                "access_key_id": request.state.access_key_id,
            },
        )
        return Response(status_code=200, headers={"ETag": f'"{md5_hex}"'})

    async def delete_object(self, request: Request, bucket: str, key: str) -> Response:
        """Delete an object. 404 if it does not exist."""
        self.storage.object_path(bucket, key)
        self.authorize(request, bucket, PERMISSION_DELETE)

        await self.storage.delete(bucket, key)
        logger.info(
            "Deleted %s/%s",
            bucket,
            key,
            extra={
                "bucket": bucket,
                "key": key,
                "access_key_id": request.state.access_key_id,
            },
        )
        return Response(status_code=204)
