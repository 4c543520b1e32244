"""FastAPI application factory and route setup for PailStore."""

import asyncio
import logging
import secrets
import signal
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from pailstore import metrics
from pailstore.auth import SignatureValidator
from pailstore.config import PailStoreConfig
from pailstore.errors import ErrorKind, PailStoreError
from pailstore.handlers.multipart import MultipartHandler
from pailstore.handlers.objects import ObjectHandler
from pailstore.keystore import KeyStore
from pailstore.multipart import UploadSessionTracker
from pailstore.storage import LocalBlobStorage
from pailstore.xml_utils import render_error, xml_response

logger = logging.getLogger(__name__)

# ErrorKind -> (HTTP status, S3 error code)
ERROR_RESPONSES: dict[ErrorKind, tuple[int, str]] = {
    ErrorKind.MISSING_AUTHENTICATION: (401, "MissingSecurityHeader"),
    ErrorKind.INVALID_AUTH_FORMAT: (401, "AuthorizationHeaderMalformed"),
    ErrorKind.MISSING_CREDENTIAL: (401, "AuthorizationHeaderMalformed"),
    ErrorKind.INVALID_CREDENTIAL_FORMAT: (401, "AuthorizationHeaderMalformed"),
    ErrorKind.MISSING_SIGNED_HEADERS: (401, "AuthorizationHeaderMalformed"),
    ErrorKind.MISSING_QUERY_PARAMETER: (401, "AuthorizationQueryParametersError"),
    ErrorKind.INVALID_ALGORITHM: (401, "AuthorizationQueryParametersError"),
    ErrorKind.INVALID_DATE_FORMAT: (401, "AuthorizationQueryParametersError"),
    ErrorKind.INVALID_EXPIRES: (401, "AuthorizationQueryParametersError"),
    ErrorKind.SIGNATURE_MISMATCH: (403, "SignatureDoesNotMatch"),
    ErrorKind.SIGNATURE_EXPIRED: (403, "AccessDenied"),
    ErrorKind.REQUEST_TIME_TOO_SKEWED: (403, "RequestTimeTooSkewed"),
    ErrorKind.ACCESS_KEY_NOT_FOUND: (403, "InvalidAccessKeyId"),
    ErrorKind.BUCKET_ACCESS_DENIED: (403, "AccessDenied"),
    ErrorKind.PERMISSION_DENIED: (403, "AccessDenied"),
    ErrorKind.BUCKET_NOT_FOUND: (404, "NoSuchBucket"),
    ErrorKind.OBJECT_NOT_FOUND: (404, "NoSuchKey"),
    ErrorKind.UPLOAD_NOT_FOUND: (404, "NoSuchUpload"),
    ErrorKind.INVALID_BUCKET_NAME: (400, "InvalidBucketName"),
    ErrorKind.INVALID_KEY: (400, "InvalidArgument"),
    ErrorKind.PATH_TRAVERSAL: (400, "InvalidArgument"),
    ErrorKind.INVALID_ARGUMENT: (400, "InvalidArgument"),
    ErrorKind.INVALID_PART: (400, "InvalidPart"),
    ErrorKind.INVALID_PART_ORDER: (400, "InvalidPartOrder"),
    ErrorKind.MALFORMED_XML: (400, "MalformedXML"),
    ErrorKind.BODY_TOO_LARGE: (413, "EntityTooLarge"),
    ErrorKind.STORAGE_IO: (500, "InternalError"),
}

# Module-level singleton so multiple create_app() calls (e.g. in tests)
# don't re-register the same Prometheus collectors in the global registry.
_instrumentator = None


def _get_instrumentator():
    global _instrumentator
    if _instrumentator is None:
        from prometheus_fastapi_instrumentator import Instrumentator

        _instrumentator = Instrumentator(
            should_instrument_requests_inprogress=False,
            excluded_handlers=["/metrics"],
        )
    return _instrumentator


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(config: PailStoreConfig) -> FastAPI:
    """Create and configure the PailStore FastAPI application.

    Components (key store, upload tracker, blob storage, signature
    validator) are constructed here and hung on ``app.state``; the lifespan
    hook initializes them via ``startup`` and tears them down via
    ``shutdown``.

    Args:
        config: The loaded PailStore configuration.

    Returns:
        A configured FastAPI application ready to run.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await startup(app)
        _install_reload_signal(app)
        yield
        _remove_reload_signal()
        await shutdown(app)

    app = FastAPI(
        title="PailStore",
        version="0.1.0",
        lifespan=lifespan,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.storage = LocalBlobStorage(config.storage.data_dir)
    app.state.keystore = KeyStore(config.storage.keys_dir)
    app.state.validator = SignatureValidator(
        max_clock_skew_seconds=config.auth.max_clock_skew_seconds
    )

    multipart_handler = MultipartHandler(app)
    app.state.tracker = UploadSessionTracker(
        ttl_seconds=config.multipart.ttl_seconds,
        sweep_interval_seconds=config.multipart.sweep_interval_seconds,
        on_expire=multipart_handler.expire_sessions,
    )

    _register_exception_handlers(app)

    # /metrics must be registered before the /{bucket} catch-all
    if config.observability.metrics:
        metrics.init_metrics()
        _get_instrumentator().instrument(app, metric_namespace="pailstore").expose(
            app, endpoint="/metrics"
        )

    _register_middleware(app, config)
    _setup_routes(app, config, ObjectHandler(app), multipart_handler)
    return app


async def startup(app: FastAPI) -> None:
    """Create the data layout, load access keys and start the expiry sweep."""
    await app.state.storage.init()
    app.state.keystore.load()
    app.state.tracker.start()
    logger.info("PailStore started with data directory %s", app.state.config.storage.data_dir)


async def shutdown(app: FastAPI) -> None:
    await app.state.tracker.stop()
    logger.info("PailStore stopped")


def _install_reload_signal(app: FastAPI) -> None:
    """Reload access keys on SIGHUP, where the platform supports it."""
    try:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGHUP, app.state.keystore.reload)
    except (AttributeError, NotImplementedError, RuntimeError, ValueError):
        logger.info("SIGHUP key reload unavailable on this platform")


def _remove_reload_signal() -> None:
    try:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGHUP)
    except (AttributeError, NotImplementedError, RuntimeError, ValueError):
        pass


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _error_response(request: Request, status: int, code: str, message: str, resource: str = "") -> Response:
    if request.method == "HEAD":
        return Response(status_code=status)
    body = render_error(
        code=code,
        message=message,
        resource=resource or request.url.path,
        request_id=getattr(request.state, "request_id", ""),
    )
    return xml_response(body, status=status)


def _register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on the FastAPI app."""

    @app.exception_handler(PailStoreError)
    async def pailstore_error_handler(request: Request, exc: PailStoreError) -> Response:
        """Render core errors as S3 error XML. HEAD responses have no body."""
        status, code = ERROR_RESPONSES.get(exc.kind, (500, "InternalError"))
        if status >= 500:
            logger.error("Request failed: %s", exc.message)
        return _error_response(request, status, code, exc.message)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> Response:
        logger.exception("Unhandled exception in request handler")
        return _error_response(
            request, 500, "InternalError", "We encountered an internal error. Please try again."
        )


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _register_middleware(app: FastAPI, config: PailStoreConfig) -> None:
    """Register middleware. The last one registered runs first, so CORS
    wraps everything and answers preflight requests directly."""

    _QUIET_PATHS = {"/metrics", "/health", "/healthz"}

    @app.middleware("http")
    async def common_headers_middleware(request: Request, call_next) -> Response:
        """Add request id and server headers, count bytes sent, log the request."""
        request_id = secrets.token_hex(8).upper()
        request.state.request_id = request_id
        start = time.monotonic()

        response = await call_next(request)

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        response.headers["x-amz-request-id"] = request_id
        response.headers["Server"] = "PailStore"

        sent = response.headers.get("content-length")
        if (
            sent
            and sent.isdigit()
            and request.method != "HEAD"
            and metrics.bytes_sent_total is not None
        ):
            metrics.bytes_sent_total.inc(int(sent))

        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "%s %s %d %.2fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "request_id": request_id,
                    "access_key_id": getattr(request.state, "access_key_id", None),
                },
            )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors.allow_origins,
        allow_credentials=config.cors.allow_credentials,
        allow_methods=["GET", "HEAD", "PUT", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["ETag", "x-amz-request-id"],
        max_age=config.cors.max_age,
    )


# ---------------------------------------------------------------------------
# Health check helpers
# ---------------------------------------------------------------------------


def _check_key_store(app: FastAPI) -> dict:
    keystore = getattr(app.state, "keystore", None)
    if keystore is None:
        return {"status": "unhealthy", "message": "Key store not initialized"}
    return {"status": "healthy", "keys_loaded": keystore.count()}


def _check_data_directory(config: PailStoreConfig) -> dict:
    data_dir = Path(config.storage.data_dir)
    if not data_dir.exists():
        return {
            "status": "unhealthy",
            "message": "Data directory does not exist",
            "path": str(data_dir),
        }
    if not data_dir.is_dir():
        return {
            "status": "unhealthy",
            "message": "Data directory path is not a directory",
            "path": str(data_dir),
        }

    buckets_exist = config.storage.buckets_dir.is_dir()
    keys_exist = config.storage.keys_dir.is_dir()
    if buckets_exist and keys_exist:
        return {"status": "healthy", "path": str(data_dir)}
    return {
        "status": "degraded",
        "message": "Some subdirectories missing",
        "path": str(data_dir),
        "buckets_dir": buckets_exist,
        "keys_dir": keys_exist,
    }


def _overall_status(checks: dict[str, dict]) -> str:
    statuses = {check["status"] for check in checks.values()}
    if "unhealthy" in statuses:
        return "unhealthy"
    if "degraded" in statuses:
        return "degraded"
    return "healthy"


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _setup_routes(
    app: FastAPI,
    config: PailStoreConfig,
    object_handler: ObjectHandler,
    multipart_handler: MultipartHandler,
) -> None:
    """Register all routes. Fixed paths come before the /{bucket} catch-alls."""

    @app.get("/health")
    async def health_check() -> Response:
        """Report key store and data directory status; 503 when unhealthy."""
        if not config.observability.health_check:
            return JSONResponse({"status": "healthy"})

        checks = {
            "key_store": _check_key_store(app),
            "data_directory": _check_data_directory(config),
        }
        status = _overall_status(checks)
        return JSONResponse(
            {
                "status": status,
                "checks": checks,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            status_code=503 if status == "unhealthy" else 200,
        )

    @app.get("/healthz")
    async def healthz() -> Response:
        """Liveness probe. Returns 200 with empty body."""
        return Response(status_code=200)

    @app.get("/{bucket}")
    async def handle_bucket_get(bucket: str, request: Request) -> Response:
        """GET /{bucket}: ?uploads -> ListMultipartUploads, else ListObjects."""
        if "uploads" in request.query_params:
            return await multipart_handler.list_uploads(request, bucket)
        return await object_handler.list_objects(request, bucket)

    @app.get("/{bucket}/{key:path}")
    async def handle_object_get(bucket: str, key: str, request: Request) -> Response:
        """GET /{bucket}/{key}: ?uploadId -> ListParts, else GetObject."""
        if "uploadId" in request.query_params:
            return await multipart_handler.list_parts(request, bucket, key)
        return await object_handler.get_object(request, bucket, key)

    @app.head("/{bucket}/{key:path}")
    async def handle_object_head(bucket: str, key: str, request: Request) -> Response:
        return await object_handler.head_object(request, bucket, key)

    @app.put("/{bucket}/{key:path}")
    async def handle_object_put(bucket: str, key: str, request: Request) -> Response:
        """PUT /{bucket}/{key}: ?uploadId&partNumber -> UploadPart, else PutObject."""
        if "uploadId" in request.query_params and "partNumber" in request.query_params:
            return await multipart_handler.upload_part(request, bucket, key)
        return await object_handler.put_object(request, bucket, key)

    @app.delete("/{bucket}/{key:path}")
    async def handle_object_delete(bucket: str, key: str, request: Request) -> Response:
        """DELETE /{bucket}/{key}: ?uploadId -> AbortMultipartUpload, else DeleteObject."""
        if "uploadId" in request.query_params:
            return await multipart_handler.abort_multipart_upload(request, bucket, key)
        return await object_handler.delete_object(request, bucket, key)

    @app.post("/{bucket}/{key:path}")
    async def handle_object_post(bucket: str, key: str, request: Request) -> Response:
        """POST /{bucket}/{key}: ?uploads -> Create, ?uploadId -> Complete."""
        if "uploads" in request.query_params:
            return await multipart_handler.create_multipart_upload(request, bucket, key)
        if "uploadId" in request.query_params:
            return await multipart_handler.complete_multipart_upload(request, bucket, key)
        raise PailStoreError(
            ErrorKind.INVALID_ARGUMENT, "POST requires the uploads or uploadId parameter."
        )
