"""Input validation helpers for PailStore.

These functions enforce bucket/key naming rules independently of any HTTP
handler so they can be unit-tested in isolation and shared with the admin
CLI. Each raises ``InvalidRequestError`` on invalid input.
"""

import logging
import os
import re
from pathlib import Path

from pailstore.errors import ErrorKind, InvalidRequestError

logger = logging.getLogger(__name__)

# Bucket naming rules:
#   - 3-63 characters
#   - lowercase letters, digits and hyphens
#   - must start and end with a letter or digit
_BUCKET_RE = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")

MAX_KEY_BYTES = 1024
MAX_PART_NUMBER = 10000


def validate_bucket_name(name: str) -> None:
    """Validate a bucket name.

    Raises:
        InvalidRequestError: If the name violates the naming rules.
    """
    if len(name) < 3 or len(name) > 63 or not _BUCKET_RE.match(name):
        raise InvalidRequestError(
            ErrorKind.INVALID_BUCKET_NAME, "The specified bucket is not valid.", resource=name
        )


def validate_object_key(key: str) -> None:
    """Validate an object key.

    Rejects empty keys, keys starting with ``/``, ``..`` path segments,
    control characters and keys longer than 1024 bytes.

    Raises:
        InvalidRequestError: If the key is not acceptable.
    """
    if not key or key == "/" or key.startswith("/"):
        raise InvalidRequestError(ErrorKind.INVALID_KEY, "Invalid object key.", resource=key)
    if ".." in key.split("/"):
        raise InvalidRequestError(ErrorKind.INVALID_KEY, "Invalid object key.", resource=key)
    if _CONTROL_RE.search(key):
        raise InvalidRequestError(ErrorKind.INVALID_KEY, "Invalid object key.", resource=key)
    if len(key.encode("utf-8")) > MAX_KEY_BYTES:
        raise InvalidRequestError(
            ErrorKind.INVALID_KEY, "Your key is too long.", resource=key
        )


def resolve_object_path(bucket_dir: str | Path, key: str) -> Path:
    """Join ``key`` onto ``bucket_dir`` and make sure it stays inside it.

    Raises:
        InvalidRequestError: With kind ``PATH_TRAVERSAL`` if the resolved
            path escapes the bucket directory.
    """
    base = os.path.realpath(bucket_dir)
    candidate = os.path.realpath(os.path.join(base, key))
    if candidate != base and not candidate.startswith(base + os.sep):
        logger.warning(
            "Path traversal attempt detected",
            extra={"bucket": Path(bucket_dir).name, "key": key},
        )
        raise InvalidRequestError(ErrorKind.PATH_TRAVERSAL, "Invalid object key.", resource=key)
    if candidate == base:
        raise InvalidRequestError(ErrorKind.INVALID_KEY, "Invalid object key.", resource=key)
    return Path(candidate)


def parse_part_number(value: str) -> int:
    """Parse a ``partNumber`` query value (1..10000).

    Raises:
        InvalidRequestError: If it is not an integer in range.
    """
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise InvalidRequestError(ErrorKind.INVALID_ARGUMENT, "partNumber must be an integer.")
    if n < 1 or n > MAX_PART_NUMBER:
        raise InvalidRequestError(
            ErrorKind.INVALID_ARGUMENT,
            f"Part number must be an integer between 1 and {MAX_PART_NUMBER}, inclusive.",
        )
    return n
