from chibi_upload.client.options import UploaderOptions
from chibi_upload.client.planner import ChunkDescriptor, plan_chunks, total_chunks
from chibi_upload.client.transport import ChunkTransport, NormalizedResponse
from chibi_upload.client.uploader import (
    ChunkedUploader,
    EventType,
    SessionState,
    UploadEvent,
    UploadOutcome,
    create_uploader,
    upload_file,
)

__all__ = [
    "ChunkDescriptor",
    "ChunkTransport",
    "ChunkedUploader",
    "EventType",
    "NormalizedResponse",
    "SessionState",
    "UploadEvent",
    "UploadOutcome",
    "UploaderOptions",
    "create_uploader",
    "plan_chunks",
    "total_chunks",
    "upload_file",
]
