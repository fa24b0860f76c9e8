"""
Wire contract for chunked sessions.

A chunked request carries three headers:

- ``chibi-uuid``: the session id (UUID v4)
- ``chibi-chunk-number``: 1-based index of the chunk in this request
- ``chibi-chunks-total``: number of chunks in the session

Requests without ``chibi-uuid`` are single-shot uploads.
"""
import re
from dataclasses import dataclass
from typing import Mapping, Optional

from chibi_upload.core.exceptions import SizeLimitError, ValidationError

UUID_HEADER = "chibi-uuid"
CHUNK_NUMBER_HEADER = "chibi-chunk-number"
CHUNKS_TOTAL_HEADER = "chibi-chunks-total"

UUID_V4_PATTERN = re.compile(r"^[\da-f]{8}-[\da-f]{4}-4[\da-f]{3}-[89ab][\da-f]{3}-[\da-f]{12}$")
NUMBER_PATTERN = re.compile(r"^\d+$")

# Room for multipart boundaries, part headers and the auxiliary form fields
MULTIPART_OVERHEAD = 64 * 1024


@dataclass(frozen=True)
class ChunkHeaders:
    using_chunks: bool
    session_id: Optional[str] = None
    chunk_number: Optional[int] = None
    total_chunks: Optional[int] = None


def _get(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case sensitive, Starlette's Headers are not
        for key, candidate in headers.items():
            if key.lower() == name:
                return candidate
    return value


def check_if_uuid(headers: Mapping[str, str]) -> bool:
    """Return True when the request belongs to a chunked session.

    Raises ValidationError if the session header is present but malformed.
    """
    value = _get(headers, UUID_HEADER)
    if not value:
        return False
    if not isinstance(value, str):
        raise ValidationError("chibi-uuid is not a string")
    if len(value) != 36:
        raise ValidationError("chibi-uuid does not meet the length criteria")
    if not UUID_V4_PATTERN.match(value):
        raise ValidationError("chibi-uuid is not a valid uuid")
    return True


def check_headers(headers: Mapping[str, str]) -> bool:
    number = _get(headers, CHUNK_NUMBER_HEADER)
    total = _get(headers, CHUNKS_TOTAL_HEADER)
    return bool(
        number
        and total
        and NUMBER_PATTERN.match(str(number))
        and NUMBER_PATTERN.match(str(total))
    )


def is_bigger_than_max_size(max_file_size: int, max_chunk_size: int, total_chunks: int) -> bool:
    return max_chunk_size * total_chunks > max_file_size


def validate_upload_headers(
    headers: Mapping[str, str],
    max_file_size: int,
    max_chunk_size: int,
) -> ChunkHeaders:
    if not check_if_uuid(headers):
        return ChunkHeaders(using_chunks=False)

    if not check_headers(headers):
        # One of the chunk headers is missing or is not a number
        raise ValidationError("Invalid headers")

    total_chunks = int(_get(headers, CHUNKS_TOTAL_HEADER))
    if is_bigger_than_max_size(max_file_size, max_chunk_size, total_chunks):
        raise SizeLimitError(
            "Chunked upload is above size limit",
            {"total_chunks": total_chunks, "max_file_size": max_file_size},
        )

    return ChunkHeaders(
        using_chunks=True,
        session_id=_get(headers, UUID_HEADER),
        chunk_number=int(_get(headers, CHUNK_NUMBER_HEADER)),
        total_chunks=total_chunks,
    )


def check_content_length(headers: Mapping[str, str], max_part_size: int) -> None:
    """Reject a request whose declared body cannot hold a part of at most `max_part_size`.

    Requests without Content-Length pass; their part is still capped while it
    is copied into place.
    """
    value = _get(headers, "content-length")
    if value is None:
        return
    if not NUMBER_PATTERN.match(str(value)):
        raise ValidationError("Invalid Content-Length")
    if int(value) > max_part_size + MULTIPART_OVERHEAD:
        raise SizeLimitError(
            "Request body is too big",
            {"content_length": int(value), "max_part_size": max_part_size},
        )
