"""Root logger setup for the pailstore server and admin tools.

Two output styles are supported: plain text lines for terminals and one
JSON object per line for log shippers. Request-scoped fields passed through
``extra=`` (request id, access key id, bucket, ...) survive into JSON output.
"""

import json
import logging
import sys
from datetime import datetime, timezone

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Record attributes emitted in JSON output when set
_EXTRA_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "request_id",
    "access_key_id",
    "bucket",
    "key",
    "upload_id",
    "reason",
)


class JSONFormatter(logging.Formatter):
    """One JSON document per record; unknown extras are dropped."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (name, getattr(record, name))
            for name in _EXTRA_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _formatter(fmt: str) -> logging.Formatter:
    if fmt == "json":
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT)


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Route all logging to stderr through a single handler.

    An unrecognised ``level`` name falls back to INFO. Handlers installed
    earlier (e.g. by ``logging.basicConfig``) are replaced.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(_formatter(fmt))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(numeric_level)
