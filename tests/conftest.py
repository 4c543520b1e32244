"""Shared pytest fixtures for PailStore tests.

A single FastAPI app is created per test session to avoid duplicate
Prometheus metric registration errors (the instrumentator registers
collectors in the global prometheus_client registry).

The storage, key store and upload tracker are rebuilt on ``app.state`` for
every test against a fresh temporary data directory, because the lifespan
context does not run with ASGITransport.
"""

from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from pailstore.auth import SignatureValidator, presign_url, sign_request
from pailstore.config import (
    MultipartConfig,
    PailStoreConfig,
    ServerConfig,
    StorageConfig,
)
from pailstore.keystore import AccessKey, KeyStore, write_key_file
from pailstore.multipart import UploadSessionTracker
from pailstore.server import create_app
from pailstore.storage import LocalBlobStorage

TEST_HOST = "test"
TEST_ENDPOINT = f"http://{TEST_HOST}"
TEST_BUCKET = "test-bucket"
TEST_ACCESS_KEY_ID = "AKIAPAILSTORETEST001"
TEST_SECRET_KEY = "wJalrXUtnFEMI/K7MDENG/bPxRfiCYEXAMPLEKEY"
OTHER_BUCKET = "other-bucket"
OTHER_ACCESS_KEY_ID = "AKIAPAILSTORETEST002"
OTHER_SECRET_KEY = "c2VjcmV0LWZvci10aGUtb3RoZXItYnVja2V0LWtleQ"
READONLY_ACCESS_KEY_ID = "AKIAPAILSTORETEST003"
READONLY_SECRET_KEY = "cmVhZC1vbmx5LXNlY3JldC1mb3ItdGVzdC1idWNrZXQ"

# Keeps the body-size tests cheap
TEST_MAX_UPLOAD_SIZE = 1024 * 1024


def make_key(
    access_key_id: str = TEST_ACCESS_KEY_ID,
    secret_key: str = TEST_SECRET_KEY,
    bucket: str = TEST_BUCKET,
    permissions: frozenset[str] = frozenset({"put", "delete"}),
    created_at: datetime | None = None,
) -> AccessKey:
    return AccessKey(
        access_key_id=access_key_id,
        secret_key=secret_key,
        bucket=bucket,
        created_at=created_at or datetime(2025, 1, 1, tzinfo=timezone.utc),
        permissions=permissions,
    )


def signed_headers(
    method: str,
    path: str,
    query_string: str = "",
    access_key_id: str = TEST_ACCESS_KEY_ID,
    secret_key: str = TEST_SECRET_KEY,
    extra: dict[str, str] | None = None,
    now: datetime | None = None,
) -> dict[str, str]:
    """SigV4 headers for a request sent through the test client."""
    headers = {"host": TEST_HOST}
    headers.update(extra or {})
    return sign_request(
        method=method,
        path=path,
        headers=headers,
        access_key_id=access_key_id,
        secret_key=secret_key,
        query_string=query_string,
        now=now,
    )


def presigned(
    method: str,
    path: str,
    access_key_id: str = TEST_ACCESS_KEY_ID,
    secret_key: str = TEST_SECRET_KEY,
    expires: int = 3600,
    now: datetime | None = None,
    extra_params: dict[str, str] | None = None,
) -> str:
    return presign_url(
        method=method,
        endpoint=TEST_ENDPOINT,
        path=path,
        access_key_id=access_key_id,
        secret_key=secret_key,
        expires=expires,
        now=now,
        extra_params=extra_params,
    )


@pytest.fixture(scope="session")
def config(tmp_path_factory) -> PailStoreConfig:
    """Session config; ``client`` points data_dir at a fresh directory per test."""
    return PailStoreConfig(
        server=ServerConfig(host="127.0.0.1", port=4010, max_upload_size=TEST_MAX_UPLOAD_SIZE),
        storage=StorageConfig(data_dir=str(tmp_path_factory.mktemp("pailstore"))),
        multipart=MultipartConfig(ttl_seconds=86400, sweep_interval_seconds=3600),
    )


@pytest.fixture(scope="session")
def app(config: PailStoreConfig):
    """Create a single test FastAPI application for the whole session."""
    return create_app(config)


@pytest.fixture
def data_dir(config: PailStoreConfig, tmp_path):
    path = tmp_path / "data"
    config.storage.data_dir = str(path)
    return path


@pytest.fixture
async def client(app, config, data_dir) -> AsyncClient:
    """Async test client with fresh storage, keys and tracker.

    Three keys are installed: a put/delete key for ``test-bucket``, a key
    for ``other-bucket`` and a put-only key for ``test-bucket``.
    """
    storage = LocalBlobStorage(data_dir)
    await storage.init()
    storage.create_bucket(TEST_BUCKET)
    storage.create_bucket(OTHER_BUCKET)
    app.state.storage = storage

    keys_dir = config.storage.keys_dir
    write_key_file(keys_dir, make_key())
    write_key_file(
        keys_dir,
        make_key(OTHER_ACCESS_KEY_ID, OTHER_SECRET_KEY, bucket=OTHER_BUCKET),
    )
    write_key_file(
        keys_dir,
        make_key(READONLY_ACCESS_KEY_ID, READONLY_SECRET_KEY, permissions=frozenset({"put"})),
    )
    keystore = KeyStore(keys_dir)
    keystore.load()
    app.state.keystore = keystore

    app.state.validator = SignatureValidator(
        max_clock_skew_seconds=config.auth.max_clock_skew_seconds
    )
    app.state.tracker = UploadSessionTracker(
        ttl_seconds=config.multipart.ttl_seconds,
        sweep_interval_seconds=config.multipart.sweep_interval_seconds,
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url=TEST_ENDPOINT) as ac:
        yield ac
