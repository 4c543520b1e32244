"""Shared plumbing for PailStore request handlers."""

import logging
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request

from pailstore import metrics
from pailstore.auth import SignatureValidator, SignedRequest, authenticate
from pailstore.config import PailStoreConfig
from pailstore.errors import PailStoreError, SizeLimitError
from pailstore.keystore import AccessKey, KeyStore
from pailstore.multipart import UploadSessionTracker
from pailstore.storage import LocalBlobStorage

logger = logging.getLogger(__name__)


class BaseHandler:
    """Gives handlers access to the components wired onto ``app.state``.

    Attributes:
        app: The parent FastAPI application.
    """

    def __init__(self, app: FastAPI) -> None:
        self.app = app

    @property
    def config(self) -> PailStoreConfig:
        return self.app.state.config

    @property
    def keystore(self) -> KeyStore:
        return self.app.state.keystore

    @property
    def tracker(self) -> UploadSessionTracker:
        return self.app.state.tracker

    @property
    def storage(self) -> LocalBlobStorage:
        return self.app.state.storage

    @property
    def validator(self) -> SignatureValidator:
        return self.app.state.validator

    def authorize(self, request: Request, bucket: str, permission: str) -> AccessKey:
        """Authenticate the request and check it may ``permission`` on ``bucket``.

        Stores the access key id on ``request.state`` for access logging.

        Raises:
            PailStoreError: Any authentication or authorization failure.
        """
        try:
            access_key = authenticate(
                SignedRequest.from_starlette(request), self.keystore, self.validator
            )
            access_key.check_access(bucket, permission)
        except PailStoreError as exc:
            metrics.record_auth_failure(exc.kind.value)
            logger.warning(
                "Rejected %s %s: %s",
                request.method,
                request.url.path,
                exc.kind.value,
                extra={"bucket": bucket, "reason": exc.kind.value},
            )
            raise
        request.state.access_key_id = access_key.access_key_id
        return access_key

    def body_stream(self, request: Request) -> AsyncIterator[bytes]:
        """The request body as a chunk stream, rejecting oversized bodies early.

        A declared Content-Length over the limit fails before any byte is
        read; otherwise the storage layer enforces the limit while writing.
        """
        limit = self.config.server.max_upload_size
        declared = request.headers.get("content-length")
        if declared is not None:
            try:
                too_large = int(declared) > limit
            except ValueError:
                too_large = False
            if too_large:
                raise SizeLimitError(limit)
        return request.stream()
