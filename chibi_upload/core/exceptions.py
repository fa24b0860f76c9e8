"""Error taxonomy shared by the uploader client and the receiving service."""
from typing import Any, Dict, Optional


class UploadError(Exception):
    """Base error for every upload failure."""

    kind = "upload_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(UploadError):
    """Malformed options, protocol headers or a disallowed extension."""

    kind = "validation_error"
    status_code = 400


class SizeLimitError(UploadError):
    """A file or chunk is above the configured ceiling."""

    kind = "size_limit_error"
    status_code = 413


class TransientTransportError(UploadError):
    """Network fault or retryable status; worth another attempt."""

    kind = "transient_transport_error"
    status_code = 503


class FatalTransportError(UploadError):
    """Non-retryable response from the server."""

    kind = "fatal_transport_error"
    status_code = 502


class AssemblyError(UploadError):
    """A chunk file could not be joined into the final artifact."""

    kind = "assembly_error"
    status_code = 500
