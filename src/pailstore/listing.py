"""Object listing over a bucket directory.

Turns the flat tree of files under a bucket directory into an S3-style
listing: objects, common prefixes (when a delimiter is given) and a
truncation flag. Nothing is cached; every call walks the tree and hashes
the surviving files.
"""

import hashlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_KEYS_LIMIT = 1000
_CHUNK_SIZE = 64 * 1024
_TEMP_MARKER = ".tmp."


@dataclass
class ObjectEntry:
    """One object in a listing.

    Attributes:
        key: Path relative to the bucket root, ``/``-separated.
        size: Size in bytes.
        last_modified: ISO-8601 UTC modification time.
        etag: MD5 hex digest of the content (unquoted).
    """

    key: str
    size: int
    last_modified: str
    etag: str

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "size": self.size,
            "last_modified": self.last_modified,
            "etag": self.etag,
        }


@dataclass
class ListingResult:
    """Result of ``list_objects``."""

    objects: list[ObjectEntry] = field(default_factory=list)
    common_prefixes: set[str] = field(default_factory=set)
    is_truncated: bool = False


def parse_max_keys(value: str | int | None) -> int:
    """Clamp a ``max-keys`` value into 1..1000; anything unusable becomes 1000."""
    try:
        n = int(value) if value is not None else MAX_KEYS_LIMIT
    except (TypeError, ValueError):
        return MAX_KEYS_LIMIT
    if n <= 0 or n > MAX_KEYS_LIMIT:
        return MAX_KEYS_LIMIT
    return n


def md5_file(path: str | Path) -> str:
    """Hex MD5 of a file, read in 64 KB chunks."""
    digest = hashlib.md5()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(_CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def iso8601_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def walk_keys(bucket_root: str | Path) -> list[str]:
    """All regular-file keys under ``bucket_root``, sorted.

    Symlinks and in-flight ``.tmp.`` files are skipped.

    Raises:
        OSError: If the tree cannot be read.
    """
    root = str(bucket_root)
    keys: list[str] = []

    def _raise(err: OSError) -> None:
        raise err

    for dirpath, _dirnames, filenames in os.walk(root, onerror=_raise):
        for fname in filenames:
            if _TEMP_MARKER in fname:
                continue
            full = os.path.join(dirpath, fname)
            if os.path.islink(full) or not os.path.isfile(full):
                continue
            rel = os.path.relpath(full, root)
            keys.append(rel.replace(os.sep, "/"))
    keys.sort()
    return keys


def group_keys(
    keys: list[str], prefix: str = "", delimiter: str | None = None
) -> tuple[list[str], set[str]]:
    """Filter ``keys`` by ``prefix`` and fold them on ``delimiter``.

    A key whose remainder after ``prefix`` contains the delimiter collapses
    into the common prefix ``prefix + remainder[:first delimiter + len]``.

    Returns:
        (object keys in input order, set of common prefixes)
    """
    objects: list[str] = []
    prefixes: set[str] = set()
    for key in keys:
        if not key.startswith(prefix):
            continue
        if delimiter:
            remainder = key[len(prefix) :]
            idx = remainder.find(delimiter)
            if idx >= 0:
                prefixes.add(prefix + remainder[: idx + len(delimiter)])
                continue
        objects.append(key)
    return objects, prefixes


def list_objects(
    bucket_root: str | Path,
    prefix: str = "",
    delimiter: str | None = None,
    max_keys: int = MAX_KEYS_LIMIT,
) -> ListingResult:
    """List a bucket directory.

    Args:
        bucket_root: The bucket's directory.
        prefix: Only keys starting with this are considered.
        delimiter: Optional grouping delimiter (usually ``/``).
        max_keys: Cap on returned objects, clamped to 1..1000. Common
            prefixes are not counted against it.

    Returns:
        The listing. A filesystem failure yields an empty listing.
    """
    max_keys = parse_max_keys(max_keys)
    prefix = prefix or ""

    try:
        keys = walk_keys(bucket_root)
    except OSError as exc:
        logger.warning("Failed to walk bucket directory %s: %s", bucket_root, exc)
        return ListingResult()

    object_keys, common_prefixes = group_keys(keys, prefix, delimiter)

    is_truncated = len(object_keys) > max_keys
    object_keys = object_keys[:max_keys]

    root = Path(bucket_root)
    objects: list[ObjectEntry] = []
    for key in object_keys:
        path = root / key
        try:
            stat = path.stat()
            etag = md5_file(path)
        except OSError as exc:
            # Deleted between the walk and the stat
            logger.warning("Skipping %s in listing: %s", key, exc)
            continue
        objects.append(
            ObjectEntry(
                key=key,
                size=stat.st_size,
                last_modified=iso8601_utc(stat.st_mtime),
                etag=etag,
            )
        )

    return ListingResult(
        objects=objects, common_prefixes=common_prefixes, is_truncated=is_truncated
    )
