"""Access key storage for PailStore.

Access keys are JSON files under ``{data_dir}/keys``, one per key::

    {
      "access_key_id": "AKIA...",
      "secret_key": "...",
      "bucket": "photos",
      "created_at": "2025-01-01T00:00:00+00:00",
      "permissions": ["delete", "put"]
    }

The ``KeyStore`` keeps an in-memory table built from those files. Lookups
are plain dict reads and never block; ``reload()`` builds a complete new
table from disk and swaps it in with one reference assignment.
"""

import base64
import json
import logging
import os
import secrets
import threading
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer

from pailstore import metrics
from pailstore.errors import AuthDeniedError, ErrorKind

logger = logging.getLogger(__name__)

PERMISSION_PUT = "put"
PERMISSION_DELETE = "delete"
DEFAULT_PERMISSIONS = frozenset({PERMISSION_PUT, PERMISSION_DELETE})


class AccessKey(BaseModel):
    """A credential bound to exactly one bucket.

    The secret is excluded from ``repr`` so keys can be logged safely.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    access_key_id: str = Field(min_length=1)
    secret_key: str = Field(min_length=1, repr=False)
    bucket: str = Field(min_length=1)
    created_at: datetime
    permissions: frozenset[str]

    @field_serializer("permissions")
    def _serialize_permissions(self, value: frozenset[str]) -> list[str]:
        return sorted(value)

    def check_access(self, bucket: str, permission: str) -> None:
        """Raise ``AuthDeniedError`` unless this key may ``permission`` on ``bucket``."""
        if bucket != self.bucket:
            raise AuthDeniedError(
                ErrorKind.BUCKET_ACCESS_DENIED,
                "Access key is not authorized for this bucket.",
                resource=bucket,
            )
        if permission not in self.permissions:
            raise AuthDeniedError(
                ErrorKind.PERMISSION_DENIED,
                f"Access key lacks the '{permission}' permission.",
                resource=bucket,
            )


class KeyStore:
    """In-memory table of access keys loaded from a directory.

    Attributes:
        keys_dir: Directory scanned for ``*.json`` key files.
    """

    def __init__(self, keys_dir: str | Path) -> None:
        self.keys_dir = Path(keys_dir)
        self._keys: dict[str, AccessKey] = {}
        self._lock = threading.Lock()

    def load(self) -> int:
        """Initial load. Creates the key directory if it is missing."""
        self.keys_dir.mkdir(parents=True, exist_ok=True)
        return self.reload()

    def reload(self) -> int:
        """Rebuild the table from disk and swap it in atomically.

        Returns:
            The number of keys now loaded.
        """
        fresh = _read_key_dir(self.keys_dir)
        with self._lock:
            self._keys = fresh
        metrics.set_access_keys_loaded(len(fresh))
        logger.info("Loaded %d access keys from %s", len(fresh), self.keys_dir)
        return len(fresh)

    def lookup(self, access_key_id: str) -> AccessKey | None:
        return self._keys.get(access_key_id)

    def list_keys(self) -> list[AccessKey]:
        return list(self._keys.values())

    def count(self) -> int:
        return len(self._keys)


def _read_key_dir(keys_dir: Path) -> dict[str, AccessKey]:
    """Decode every ``*.json`` file in ``keys_dir``, skipping bad ones."""
    table: dict[str, AccessKey] = {}
    if not keys_dir.is_dir():
        logger.warning("Key directory %s does not exist", keys_dir)
        return table

    for path in sorted(keys_dir.glob("*.json")):
        try:
            key = AccessKey.model_validate_json(path.read_bytes())
        except (OSError, ValidationError) as exc:
            logger.warning("Skipping unreadable key file %s: %s", path.name, exc)
            continue
        if key.access_key_id in table:
            logger.warning(
                "Duplicate access key id %s in %s; later file wins",
                key.access_key_id,
                path.name,
            )
        table[key.access_key_id] = key
    return table


# ---------------------------------------------------------------------------
# Key file management (used by the admin CLI)
# ---------------------------------------------------------------------------


def generate_access_key(
    bucket: str,
    permissions: frozenset[str] | set[str] = DEFAULT_PERMISSIONS,
) -> AccessKey:
    """Create a new random key pair bound to ``bucket``.

    The id is ``AKIA`` followed by 16 base32 characters; the secret is 40
    base64 characters.
    """
    access_key_id = "AKIA" + base64.b32encode(secrets.token_bytes(12)).decode()[:16]
    secret_key = base64.b64encode(secrets.token_bytes(30)).decode()
    return AccessKey(
        access_key_id=access_key_id,
        secret_key=secret_key,
        bucket=bucket,
        created_at=datetime.now(timezone.utc),
        permissions=frozenset(permissions),
    )


def key_file_path(keys_dir: str | Path, access_key_id: str) -> Path:
    return Path(keys_dir) / f"{access_key_id}.json"


def write_key_file(keys_dir: str | Path, key: AccessKey) -> Path:
    """Persist ``key`` as ``{keys_dir}/{access_key_id}.json`` with mode 0600."""
    keys_dir = Path(keys_dir)
    keys_dir.mkdir(parents=True, exist_ok=True)
    path = key_file_path(keys_dir, key.access_key_id)
    payload = json.dumps(key.model_dump(mode="json"), indent=2)

    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, payload.encode("utf-8"))
        os.fsync(fd)
    finally:
        os.close(fd)
    os.chmod(path, 0o600)
    return path


def remove_key_file(keys_dir: str | Path, access_key_id: str) -> bool:
    """Delete the key file. Returns False if it did not exist."""
    try:
        key_file_path(keys_dir, access_key_id).unlink()
    except FileNotFoundError:
        return False
    return True
