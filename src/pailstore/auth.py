"""AWS Signature Version 4 request validation for PailStore.

Implements SigV4 verification for both header-based auth (Authorization
header) and query-string auth (presigned URLs). The validator is stateless:
it is handed a ``SignedRequest`` view and the candidate secret, and returns
the authenticated access key id or raises a ``PailStoreError`` subclass.

Client-side helpers (``sign_request`` and ``presign_url``) produce requests
this module accepts; the admin CLI and the test-suite use them.

References:
    - https://docs.aws.amazon.com/AmazonS3/latest/API/sig-v4-authenticating-requests.html
"""

import hashlib
import hmac
import logging
import re
import urllib.parse
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from pailstore.errors import (
    AuthFormatError,
    AuthNotFoundError,
    ErrorKind,
    SignatureError,
)

logger = logging.getLogger(__name__)

# Constants
ALGORITHM = "AWS4-HMAC-SHA256"
KEY_PREFIX = "AWS4"
SCOPE_TERMINATOR = "aws4_request"
SERVICE_NAME = "s3"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"

PRESIGNED_PARAMS = (
    "X-Amz-Algorithm",
    "X-Amz-Credential",
    "X-Amz-SignedHeaders",
    "X-Amz-Signature",
    "X-Amz-Date",
    "X-Amz-Expires",
)

_SIGNATURE_PREFIX = "X-Amz-Signature="


@dataclass(frozen=True)
class SignedRequest:
    """Read-only view of the parts of an HTTP request that SigV4 covers.

    Attributes:
        method: Upper-case HTTP method.
        path: Decoded request path (e.g. ``/bucket/some key.txt``).
        headers: Header (name, value) pairs in arrival order; repeats allowed.
        query_string: The raw query string exactly as received, without ``?``.
    """

    method: str
    path: str
    headers: tuple[tuple[str, str], ...] = ()
    query_string: str = ""
    _query: dict[str, str] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        parsed: dict[str, str] = {}
        for name, value in urllib.parse.parse_qsl(self.query_string, keep_blank_values=True):
            parsed.setdefault(name, value)
        object.__setattr__(self, "_query", parsed)

    @classmethod
    def build(
        cls,
        method: str,
        path: str,
        headers: Iterable[tuple[str, str]] | dict[str, str] = (),
        query_string: str = "",
    ) -> "SignedRequest":
        """Construct a view from loosely typed inputs."""
        if isinstance(headers, dict):
            headers = headers.items()
        return cls(
            method=method.upper(),
            path=path,
            headers=tuple((str(k), str(v)) for k, v in headers),
            query_string=query_string,
        )

    @classmethod
    def from_starlette(cls, request: Any) -> "SignedRequest":
        """Build a view from a Starlette/FastAPI ``Request``."""
        return cls.build(
            method=request.method,
            path=request.url.path,
            headers=request.headers.items(),
            query_string=request.url.query or "",
        )

    @property
    def query(self) -> dict[str, str]:
        """Decoded query parameters (first value wins for repeated names)."""
        return self._query

    def header_values(self, name: str) -> list[str]:
        lower = name.lower()
        return [value for key, value in self.headers if key.lower() == lower]

    def header(self, name: str) -> str | None:
        values = self.header_values(name)
        if not values:
            return None
        return ",".join(values)


@dataclass(frozen=True)
class Credential:
    """Claimed identity and scope extracted from a signed request."""

    access_key_id: str
    date: str
    region: str
    service: str
    signed_headers: tuple[str, ...]
    signature: str
    is_presigned: bool = False

    @property
    def scope(self) -> str:
        return f"{self.date}/{self.region}/{self.service}/{SCOPE_TERMINATOR}"


class KeyLookup(Protocol):
    """Anything that resolves an access key id to a stored key."""

    def lookup(self, access_key_id: str) -> Any: ...


class SignatureValidator:
    """Verifies AWS Signature Version 4 signed requests.

    Attributes:
        max_clock_skew_seconds: Tolerance for header-auth ``x-amz-date``.
            Zero disables the check.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        max_clock_skew_seconds: int = 0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.max_clock_skew_seconds = max_clock_skew_seconds
        self.clock = clock or _utcnow

    def validate(self, request: SignedRequest, secret_key: str) -> str:
        """Validate the request signature against ``secret_key``.

        Args:
            request: The request view to verify.
            secret_key: The secret belonging to the claimed access key.

        Returns:
            The authenticated access key id.

        Raises:
            AuthFormatError: The auth data is absent or malformed.
            SignatureError: The signature is wrong, expired or too skewed.
        """
        credential = self.parse_credential(request)

        if credential.is_presigned:
            self._check_expiry(request)
            canonical_query = _build_presigned_query_string(request.query_string)
            payload_hash = UNSIGNED_PAYLOAD
        else:
            self._check_clock_skew(request)
            canonical_query = _build_canonical_query_string(request.query_string)
            payload_hash = request.header("x-amz-content-sha256") or UNSIGNED_PAYLOAD

        canonical_request = build_canonical_request(
            method=request.method,
            path=request.path,
            canonical_query=canonical_query,
            headers=request.headers,
            signed_headers=credential.signed_headers,
            payload_hash=payload_hash,
        )

        request_datetime = request.header("x-amz-date") or request.query.get("X-Amz-Date", "")
        string_to_sign = build_string_to_sign(request_datetime, credential.scope, canonical_request)
        signing_key = derive_signing_key(
            secret_key, credential.date, credential.region, credential.service
        )
        expected = compute_signature(signing_key, string_to_sign)

        provided = credential.signature.encode("utf-8", "replace")
        if not hmac.compare_digest(expected.encode(), provided):
            logger.warning(
                "Signature mismatch for access key %s",
                credential.access_key_id,
                extra={"access_key_id": credential.access_key_id, "path": request.path},
            )
            raise SignatureError(ErrorKind.SIGNATURE_MISMATCH)

        return credential.access_key_id

    # -- Parsing ---------------------------------------------------------------

    def parse_credential(self, request: SignedRequest) -> Credential:
        """Extract the claimed credential without verifying anything.

        The Authorization header takes precedence; otherwise the presigned
        query parameters are consulted.

        Raises:
            AuthFormatError: With the precise ``ErrorKind`` of the defect.
        """
        auth_values = request.header_values("authorization")
        if len(auth_values) > 1:
            raise AuthFormatError(
                ErrorKind.INVALID_AUTH_FORMAT, "Multiple Authorization headers present."
            )
        if auth_values:
            return _parse_authorization_header(auth_values[0])

        query = request.query
        if any(name in query for name in PRESIGNED_PARAMS):
            return _parse_presigned_query(query)

        raise AuthFormatError(
            ErrorKind.MISSING_AUTHENTICATION,
            "Missing authentication: no Authorization header or presigned URL parameters.",
        )

    # -- Temporal checks -------------------------------------------------------

    def _check_expiry(self, request: SignedRequest) -> None:
        """Fail unless now is strictly before X-Amz-Date + X-Amz-Expires."""
        request_time = parse_amz_date(request.query["X-Amz-Date"])
        try:
            expires_seconds = int(request.query["X-Amz-Expires"])
            expiry_time = request_time + timedelta(seconds=expires_seconds)
        except (ValueError, OverflowError):
            raise AuthFormatError(ErrorKind.INVALID_EXPIRES, "Invalid X-Amz-Expires value.")

        if not self.clock() < expiry_time:
            logger.warning("Presigned URL expired at %s", expiry_time.isoformat())
            raise SignatureError(ErrorKind.SIGNATURE_EXPIRED, "Request has expired.")

    def _check_clock_skew(self, request: SignedRequest) -> None:
        if self.max_clock_skew_seconds <= 0:
            return
        amz_date = request.header("x-amz-date")
        if not amz_date:
            raise AuthFormatError(ErrorKind.INVALID_DATE_FORMAT, "Missing x-amz-date header.")
        request_time = parse_amz_date(amz_date)
        diff = abs((self.clock() - request_time).total_seconds())
        if diff > self.max_clock_skew_seconds:
            logger.warning("Request time %s outside clock skew tolerance", amz_date)
            raise SignatureError(
                ErrorKind.REQUEST_TIME_TOO_SKEWED,
                "The difference between the request time and the current time is too large.",
            )


def authenticate(
    request: SignedRequest,
    keys: KeyLookup,
    validator: SignatureValidator,
) -> Any:
    """Resolve the claimed key, verify the signature and return the key.

    Raises:
        AuthFormatError: Malformed or missing auth data.
        AuthNotFoundError: The claimed access key id is unknown.
        SignatureError: The signature does not verify.
    """
    credential = validator.parse_credential(request)
    access_key = keys.lookup(credential.access_key_id)
    if access_key is None:
        raise AuthNotFoundError()
    validator.validate(request, access_key.secret_key)
    return access_key


# ---------------------------------------------------------------------------
# Module-level utility functions
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_amz_date(value: str) -> datetime:
    """Parse a ``YYYYMMDDTHHMMSSZ`` timestamp into an aware UTC datetime."""
    try:
        return datetime.strptime(value, AMZ_DATE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        raise AuthFormatError(ErrorKind.INVALID_DATE_FORMAT, f"Invalid date: {value!r}")


def format_amz_date(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(AMZ_DATE_FORMAT)


def _parse_authorization_header(header: str) -> Credential:
    if not header.startswith(ALGORITHM + " "):
        raise AuthFormatError(ErrorKind.INVALID_AUTH_FORMAT, "Invalid Authorization header format.")

    parts: dict[str, str] = {}
    for item in header[len(ALGORITHM) + 1 :].split(","):
        name, sep, value = item.strip().partition("=")
        if sep:
            parts[name] = value

    if "Credential" not in parts or "Signature" not in parts:
        raise AuthFormatError(
            ErrorKind.INVALID_AUTH_FORMAT,
            "Authorization header is missing Credential or Signature.",
        )
    if "SignedHeaders" not in parts:
        raise AuthFormatError(
            ErrorKind.MISSING_SIGNED_HEADERS, "Authorization header is missing SignedHeaders."
        )

    return _build_credential(
        parts["Credential"], parts["SignedHeaders"], parts["Signature"], is_presigned=False
    )


def _parse_presigned_query(query: dict[str, str]) -> Credential:
    for name in PRESIGNED_PARAMS:
        if name not in query:
            raise AuthFormatError(
                ErrorKind.MISSING_QUERY_PARAMETER, f"Missing query parameter: {name}"
            )

    algorithm = query["X-Amz-Algorithm"]
    if algorithm != ALGORITHM:
        raise AuthFormatError(ErrorKind.INVALID_ALGORITHM, f"Unsupported algorithm: {algorithm}")

    return _build_credential(
        query["X-Amz-Credential"],
        query["X-Amz-SignedHeaders"],
        query["X-Amz-Signature"],
        is_presigned=True,
    )


def _build_credential(
    credential: str, signed_headers: str, signature: str, is_presigned: bool
) -> Credential:
    if not credential:
        raise AuthFormatError(ErrorKind.MISSING_CREDENTIAL, "Missing Credential.")

    credential_parts = credential.split("/")
    if len(credential_parts) != 5 or credential_parts[4] != SCOPE_TERMINATOR:
        raise AuthFormatError(ErrorKind.INVALID_CREDENTIAL_FORMAT, "Invalid Credential format.")

    access_key_id, date, region, service, _ = credential_parts
    return Credential(
        access_key_id=access_key_id,
        date=date,
        region=region,
        service=service,
        signed_headers=tuple(h.strip().lower() for h in signed_headers.split(";") if h.strip()),
        signature=signature.strip(),
        is_presigned=is_presigned,
    )


def build_canonical_request(
    method: str,
    path: str,
    canonical_query: str,
    headers: Iterable[tuple[str, str]],
    signed_headers: Iterable[str],
    payload_hash: str,
) -> str:
    """Build the canonical request string.

    Args:
        method: HTTP method (uppercase).
        path: The decoded request path.
        canonical_query: The already-canonicalized query string.
        headers: All request headers as (name, value) pairs.
        signed_headers: Names of the headers covered by the signature.
        payload_hash: SHA-256 hex digest or UNSIGNED-PAYLOAD.

    Returns:
        The canonical request string.
    """
    lower_headers: dict[str, str] = {}
    for name, value in headers:
        lower_name = name.lower()
        if lower_name in lower_headers:
            lower_headers[lower_name] += "," + _trim_header_value(value)
        else:
            lower_headers[lower_name] = _trim_header_value(value)

    sorted_signed = sorted({name.lower() for name in signed_headers})
    canonical_headers = "".join(
        f"{name}:{lower_headers.get(name, '')}\n" for name in sorted_signed
    )

    return "\n".join(
        [
            method,
            _uri_encode_path(path),
            canonical_query,
            canonical_headers,
            ";".join(sorted_signed),
            payload_hash,
        ]
    )


def build_string_to_sign(timestamp: str, scope: str, canonical_request: str) -> str:
    canonical_hash = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()
    return f"{ALGORITHM}\n{timestamp}\n{scope}\n{canonical_hash}"


def derive_signing_key(secret_key: str, date: str, region: str, service: str) -> bytes:
    """Derive the SigV4 signing key via the HMAC-SHA256 chain.

    Args:
        secret_key: The secret access key.
        date: Date string (YYYYMMDD).
        region: AWS region.
        service: AWS service name.

    Returns:
        The 32-byte signing key.
    """
    k_date = hmac.new(
        (KEY_PREFIX + secret_key).encode("utf-8"),
        date.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    k_region = hmac.new(k_date, region.encode("utf-8"), hashlib.sha256).digest()
    k_service = hmac.new(k_region, service.encode("utf-8"), hashlib.sha256).digest()
    return hmac.new(k_service, SCOPE_TERMINATOR.encode("utf-8"), hashlib.sha256).digest()


def compute_signature(signing_key: bytes, string_to_sign: str) -> str:
    return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


def _uri_encode(s: str, encode_slash: bool = True) -> str:
    """S3-compatible URI encoding.

    Characters A-Z, a-z, 0-9, '-', '_', '.', '~' are not encoded.
    All other characters are percent-encoded with uppercase hex.
    Spaces become %20 (not +).

    Args:
        s: The string to encode.
        encode_slash: If True (default), '/' is encoded as %2F.

    Returns:
        The URI-encoded string.
    """
    safe = "-_.~" if encode_slash else "-_.~/"
    return urllib.parse.quote(s, safe=safe)


def _uri_encode_path(path: str) -> str:
    """URI-encode a path segment by segment, preserving forward slashes."""
    if not path:
        return "/"
    result = "/".join(_uri_encode(seg) for seg in path.split("/"))
    if not result.startswith("/"):
        result = "/" + result
    return result


def _split_query(query_string: str) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for pair in query_string.split("&"):
        if not pair:
            continue
        name, _, value = pair.partition("=")
        pairs.append((name, value))
    return pairs


def _build_canonical_query_string(query_string: str) -> str:
    """Build the canonical query string for header-signed requests.

    Parameters are decoded, sorted by name then value, and re-encoded with
    the unreserved character set. Valueless parameters get an empty value.
    """
    if not query_string:
        return ""

    params = [
        (urllib.parse.unquote_plus(name), urllib.parse.unquote_plus(value))
        for name, value in _split_query(query_string)
    ]
    params.sort()
    return "&".join(f"{_uri_encode(name)}={_uri_encode(value)}" for name, value in params)


def _build_presigned_query_string(query_string: str) -> str:
    """Build the canonical query string for presigned URLs.

    Drops ``X-Amz-Signature`` and keeps every other pair byte-for-byte as
    the client encoded it, ordered by decoded name.
    """
    if not query_string:
        return ""

    kept = [
        pair
        for pair in query_string.split("&")
        if pair and not pair.startswith(_SIGNATURE_PREFIX)
    ]
    kept.sort(key=lambda pair: urllib.parse.unquote_plus(pair.partition("=")[0]))
    return "&".join(kept)


def _trim_header_value(value: str) -> str:
    """Strip surrounding whitespace and collapse runs of spaces."""
    return re.sub(r" +", " ", value.strip())


# ---------------------------------------------------------------------------
# Client-side signing helpers
# ---------------------------------------------------------------------------


def sign_request(
    method: str,
    path: str,
    headers: dict[str, str],
    access_key_id: str,
    secret_key: str,
    query_string: str = "",
    region: str = "us-east-1",
    now: datetime | None = None,
    payload_hash: str = UNSIGNED_PAYLOAD,
) -> dict[str, str]:
    """Return ``headers`` plus x-amz-date, x-amz-content-sha256 and Authorization.

    Every header passed in (plus the two added ones) is signed.
    """
    timestamp = format_amz_date(now or _utcnow())
    signed = dict(headers)
    signed["x-amz-date"] = timestamp
    signed["x-amz-content-sha256"] = payload_hash

    credential = Credential(
        access_key_id=access_key_id,
        date=timestamp[:8],
        region=region,
        service=SERVICE_NAME,
        signed_headers=tuple(sorted(name.lower() for name in signed)),
        signature="",
    )
    canonical_request = build_canonical_request(
        method=method.upper(),
        path=path,
        canonical_query=_build_canonical_query_string(query_string),
        headers=signed.items(),
        signed_headers=credential.signed_headers,
        payload_hash=payload_hash,
    )
    string_to_sign = build_string_to_sign(timestamp, credential.scope, canonical_request)
    signature = compute_signature(
        derive_signing_key(secret_key, credential.date, region, SERVICE_NAME), string_to_sign
    )
    signed["Authorization"] = (
        f"{ALGORITHM} Credential={access_key_id}/{credential.scope}, "
        f"SignedHeaders={';'.join(credential.signed_headers)}, "
        f"Signature={signature}"
    )
    return signed


def presign_url(
    method: str,
    endpoint: str,
    path: str,
    access_key_id: str,
    secret_key: str,
    expires: int = 3600,
    region: str = "us-east-1",
    now: datetime | None = None,
    extra_params: dict[str, str] | None = None,
) -> str:
    """Build a presigned URL signing only the ``host`` header.

    Args:
        method: HTTP method the URL will be used with.
        endpoint: Scheme and authority, e.g. ``http://localhost:4000``.
        path: Decoded request path, e.g. ``/bucket/key.txt``.
        access_key_id: The access key id to embed.
        secret_key: The matching secret.
        expires: Validity window in seconds.
        region: Signing region.
        now: Signing time (defaults to the current time).
        extra_params: Additional query parameters (e.g. uploadId).

    Returns:
        The full URL including ``X-Amz-Signature``.
    """
    parsed = urllib.parse.urlsplit(endpoint)
    host = parsed.hostname or ""
    if parsed.port and not (
        (parsed.scheme == "http" and parsed.port == 80)
        or (parsed.scheme == "https" and parsed.port == 443)
    ):
        host = f"{host}:{parsed.port}"

    timestamp = format_amz_date(now or _utcnow())
    scope = f"{timestamp[:8]}/{region}/{SERVICE_NAME}/{SCOPE_TERMINATOR}"
    params = dict(extra_params or {})
    params.update(
        {
            "X-Amz-Algorithm": ALGORITHM,
            "X-Amz-Credential": f"{access_key_id}/{scope}",
            "X-Amz-Date": timestamp,
            "X-Amz-Expires": str(expires),
            "X-Amz-SignedHeaders": "host",
        }
    )
    query = "&".join(
        f"{_uri_encode(name)}={_uri_encode(value)}" for name, value in sorted(params.items())
    )

    canonical_request = build_canonical_request(
        method=method.upper(),
        path=path,
        canonical_query=query,
        headers=[("host", host)],
        signed_headers=["host"],
        payload_hash=UNSIGNED_PAYLOAD,
    )
    string_to_sign = build_string_to_sign(timestamp, scope, canonical_request)
    signature = compute_signature(
        derive_signing_key(secret_key, timestamp[:8], region, SERVICE_NAME), string_to_sign
    )
    base = endpoint.rstrip("/")
    return f"{base}{_uri_encode_path(path)}?{query}&X-Amz-Signature={signature}"
