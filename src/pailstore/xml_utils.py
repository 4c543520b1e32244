"""S3 XML rendering and parsing helpers for PailStore."""

import xml.etree.ElementTree as ET
from xml.sax.saxutils import escape as _sax_escape

from fastapi.responses import Response

from pailstore.errors import ErrorKind, InvalidRequestError
from pailstore.multipart import PartInfo, UploadSession

S3_NS = "http://s3.amazonaws.com/doc/2006-03-01/"


def _escape_xml(value: str) -> str:
    return _sax_escape(str(value))


def _iso(session: UploadSession) -> str:
    return session.initiated_at.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def render_error(
    code: str,
    message: str,
    resource: str = "",
    request_id: str = "",
) -> str:
    """Render an S3 XML error response body.

    The Error element has no XML namespace, unlike success responses.

    Args:
        code: The S3 error code (e.g. "NoSuchKey").
        message: Human-readable error message.
        resource: The resource that triggered the error.
        request_id: An opaque request identifier.

    Returns:
        An XML string conforming to the S3 error response format.
    """
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        "<Error>",
        f"<Code>{_escape_xml(code)}</Code>",
        f"<Message>{_escape_xml(message)}</Message>",
    ]
    if resource:
        parts.append(f"<Resource>{_escape_xml(resource)}</Resource>")
    if request_id:
        parts.append(f"<RequestId>{_escape_xml(request_id)}</RequestId>")
    parts.append("</Error>")
    return "\n".join(parts)


def xml_response(body: str, status: int = 200) -> Response:
    """Wrap an XML body string in a Response with the XML media type."""
    return Response(
        content=body,
        status_code=status,
        media_type="application/xml",
    )


def render_initiate_multipart_upload(bucket: str, key: str, upload_id: str) -> str:
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<InitiateMultipartUploadResult xmlns="{S3_NS}">',
        f"<Bucket>{_escape_xml(bucket)}</Bucket>",
        f"<Key>{_escape_xml(key)}</Key>",
        f"<UploadId>{_escape_xml(upload_id)}</UploadId>",
        "</InitiateMultipartUploadResult>",
    ]
    return "\n".join(parts)


def render_complete_multipart_upload(location: str, bucket: str, key: str, etag: str) -> str:
    """Render a CompleteMultipartUpload result.

    Args:
        location: URL of the created object.
        bucket: Bucket name.
        key: Object key.
        etag: Quoted composite ETag (``"<md5>-<n>"``).
    """
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<CompleteMultipartUploadResult xmlns="{S3_NS}">',
        f"<Location>{_escape_xml(location)}</Location>",
        f"<Bucket>{_escape_xml(bucket)}</Bucket>",
        f"<Key>{_escape_xml(key)}</Key>",
        f"<ETag>{_escape_xml(etag)}</ETag>",
        "</CompleteMultipartUploadResult>",
    ]
    return "\n".join(parts)


def render_list_parts(session: UploadSession, parts: list[PartInfo]) -> str:
    xml_parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<ListPartsResult xmlns="{S3_NS}">',
        f"<Bucket>{_escape_xml(session.bucket)}</Bucket>",
        f"<Key>{_escape_xml(session.key)}</Key>",
        f"<UploadId>{_escape_xml(session.upload_id)}</UploadId>",
        "<StorageClass>STANDARD</StorageClass>",
        "<MaxParts>1000</MaxParts>",
        "<IsTruncated>false</IsTruncated>",
    ]
    for part in parts:
        xml_parts.append("<Part>")
        xml_parts.append(f"<PartNumber>{part.part_number}</PartNumber>")
        xml_parts.append(f"<ETag>{_escape_xml(part.etag)}</ETag>")
        xml_parts.append(f"<Size>{part.size}</Size>")
        xml_parts.append("</Part>")
    xml_parts.append("</ListPartsResult>")
    return "\n".join(xml_parts)


def render_list_multipart_uploads(bucket: str, uploads: list[UploadSession]) -> str:
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<ListMultipartUploadsResult xmlns="{S3_NS}">',
        f"<Bucket>{_escape_xml(bucket)}</Bucket>",
        "<KeyMarker></KeyMarker>",
        "<UploadIdMarker></UploadIdMarker>",
        "<MaxUploads>1000</MaxUploads>",
        "<IsTruncated>false</IsTruncated>",
    ]
    for upload in uploads:
        parts.append("<Upload>")
        parts.append(f"<Key>{_escape_xml(upload.key)}</Key>")
        parts.append(f"<UploadId>{_escape_xml(upload.upload_id)}</UploadId>")
        parts.append("<StorageClass>STANDARD</StorageClass>")
        parts.append(f"<Initiated>{_iso(upload)}</Initiated>")
        parts.append("</Upload>")
    parts.append("</ListMultipartUploadsResult>")
    return "\n".join(parts)


def parse_complete_multipart_upload(body: bytes) -> list[tuple[int, str]]:
    """Parse a CompleteMultipartUpload request body.

    Returns:
        (part number, unquoted etag) pairs in document order.

    Raises:
        InvalidRequestError: Malformed XML or missing/invalid elements.
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        raise InvalidRequestError(
            ErrorKind.MALFORMED_XML,
            "The XML you provided was not well-formed or did not validate.",
        )

    ns = ""
    if root.tag.startswith("{"):
        ns = root.tag[: root.tag.index("}") + 1]

    requested: list[tuple[int, str]] = []
    for part_elem in root.findall(f"{ns}Part"):
        pn_elem = part_elem.find(f"{ns}PartNumber")
        etag_elem = part_elem.find(f"{ns}ETag")
        if pn_elem is None or pn_elem.text is None:
            raise InvalidRequestError(ErrorKind.MALFORMED_XML, "Missing PartNumber element")
        if etag_elem is None or etag_elem.text is None:
            raise InvalidRequestError(ErrorKind.MALFORMED_XML, "Missing ETag element")
        try:
            pn = int(pn_elem.text.strip())
        except ValueError:
            raise InvalidRequestError(
                ErrorKind.INVALID_ARGUMENT, f"Invalid part number: {pn_elem.text.strip()}"
            )
        requested.append((pn, etag_elem.text.strip().strip('"')))

    if not requested:
        raise InvalidRequestError(ErrorKind.MALFORMED_XML, "No parts specified in request body")
    return requested
