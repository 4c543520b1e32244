"""Error taxonomy for PailStore.

Core components raise ``PailStoreError`` subclasses tagged with a closed
``ErrorKind``. Only the HTTP layer knows how a kind maps to a status code
and an S3 error code (see ``pailstore.server``).
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Closed set of failure reasons produced by the core components."""

    # Request carries no usable credentials at all
    MISSING_AUTHENTICATION = "missing_authentication"
    INVALID_AUTH_FORMAT = "invalid_auth_format"
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL_FORMAT = "invalid_credential_format"
    MISSING_SIGNED_HEADERS = "missing_signed_headers"
    MISSING_QUERY_PARAMETER = "missing_query_parameter"
    INVALID_ALGORITHM = "invalid_algorithm"
    INVALID_DATE_FORMAT = "invalid_date_format"
    INVALID_EXPIRES = "invalid_expires"

    # Cryptographic / temporal failures
    SIGNATURE_MISMATCH = "signature_mismatch"
    SIGNATURE_EXPIRED = "signature_expired"
    REQUEST_TIME_TOO_SKEWED = "request_time_too_skewed"

    # Authorization
    ACCESS_KEY_NOT_FOUND = "access_key_not_found"
    BUCKET_ACCESS_DENIED = "bucket_access_denied"
    PERMISSION_DENIED = "permission_denied"

    # Resources
    BUCKET_NOT_FOUND = "bucket_not_found"
    OBJECT_NOT_FOUND = "object_not_found"
    UPLOAD_NOT_FOUND = "upload_not_found"

    # Request validation
    INVALID_BUCKET_NAME = "invalid_bucket_name"
    INVALID_KEY = "invalid_key"
    PATH_TRAVERSAL = "path_traversal"
    INVALID_ARGUMENT = "invalid_argument"
    INVALID_PART = "invalid_part"
    INVALID_PART_ORDER = "invalid_part_order"
    MALFORMED_XML = "malformed_xml"

    # Limits and I/O
    BODY_TOO_LARGE = "body_too_large"
    STORAGE_IO = "storage_io"


class PailStoreError(Exception):
    """Base error carrying a machine-readable kind and a human message.

    Attributes:
        kind: The ``ErrorKind`` describing the failure.
        message: Human-readable description. Never contains secrets.
        resource: Optional name of the bucket, key or upload involved.
    """

    default_kind: ErrorKind = ErrorKind.INVALID_ARGUMENT
    default_message: str = "The request could not be processed."

    def __init__(
        self,
        kind: ErrorKind | None = None,
        message: str | None = None,
        resource: str = "",
    ) -> None:
        self.kind = kind or self.default_kind
        self.message = message or self.default_message
        self.resource = resource
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class AuthFormatError(PailStoreError):
    """The request's authentication data is missing or malformed."""

    default_kind = ErrorKind.INVALID_AUTH_FORMAT
    default_message = "The authorization information provided is malformed."


class AuthNotFoundError(PailStoreError):
    """The claimed access key is not registered."""

    default_kind = ErrorKind.ACCESS_KEY_NOT_FOUND
    default_message = "The AWS access key ID you provided does not exist in our records."


class AuthDeniedError(PailStoreError):
    """The key is valid but may not perform this operation."""

    default_kind = ErrorKind.PERMISSION_DENIED
    default_message = "Access Denied"


class SignatureError(PailStoreError):
    """Signature verification failed (mismatch, expiry or skew)."""

    default_kind = ErrorKind.SIGNATURE_MISMATCH
    default_message = (
        "The request signature we calculated does not match the signature you provided."
    )


class NotFoundError(PailStoreError):
    """A bucket, object or upload does not exist."""

    default_kind = ErrorKind.OBJECT_NOT_FOUND
    default_message = "The specified resource does not exist."


class SizeLimitError(PailStoreError):
    """The request body exceeded the configured upload limit."""

    default_kind = ErrorKind.BODY_TOO_LARGE
    default_message = "Your proposed upload exceeds the maximum allowed size."

    def __init__(self, limit: int = 0, message: str | None = None) -> None:
        self.limit = limit
        if message is None and limit:
            message = f"Your proposed upload exceeds the maximum allowed size of {limit} bytes."
        super().__init__(message=message)


class StorageIOError(PailStoreError):
    """A filesystem operation failed."""

    default_kind = ErrorKind.STORAGE_IO
    default_message = "We encountered an internal error. Please try again."


class InvalidRequestError(PailStoreError):
    """The request is well-authenticated but its arguments are invalid."""

    default_kind = ErrorKind.INVALID_ARGUMENT
    default_message = "Invalid Argument"
