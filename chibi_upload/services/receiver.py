import os
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple
from uuid import uuid4

from chibi_upload.core.config import Settings, settings
from chibi_upload.core.exceptions import SizeLimitError, ValidationError
from chibi_upload.core.extensions import get_suffix, validate_extension
from chibi_upload.core.headers import UUID_HEADER, ChunkHeaders, check_if_uuid, validate_upload_headers
from chibi_upload.schemas.upload import UploadResult
from chibi_upload.services import storage

logger = logging.getLogger(__name__)

STREAM_BUFFER_SIZE = 64 * 1024


class FileStream(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


class UploadReceiver:
    """Receives single-shot files and chunks of chunked sessions."""

    def __init__(self, upload_settings: Optional[Settings] = None):
        self.settings = upload_settings or settings

    @property
    def destination(self) -> str:
        return self.settings.UPLOAD_DESTINATION_PATH

    def _trace(self, message: str, *args: Any) -> None:
        level = logging.INFO if self.settings.DEBUG else logging.DEBUG
        logger.log(level, "[ChibiUploader] " + message, *args)

    async def process_file(
        self,
        headers: Mapping[str, str],
        file_stream: FileStream,
        metadata: Optional[Dict[str, str]] = None,
    ) -> UploadResult:
        """Validate the chunk headers and persist one inbound file part.

        Raises ValidationError or SizeLimitError before anything is written
        when the header contract is broken; AssemblyError when the final
        join fails.
        """
        metadata = dict(metadata or {})
        chunk_headers = validate_upload_headers(
            headers, self.settings.MAX_FILE_SIZE, self.settings.MAX_CHUNK_SIZE
        )

        await asyncio.to_thread(os.makedirs, self.destination, exist_ok=True)
        self._trace("Received new file (maxFileSize=%s, maxChunkSize=%s)",
                    self.settings.MAX_FILE_SIZE, self.settings.MAX_CHUNK_SIZE)

        if chunk_headers.using_chunks:
            return await self._handle_file_with_chunks(chunk_headers, file_stream, metadata)
        return await self._handle_file(file_stream, metadata)

    async def _stream_to_file(self, file_stream: FileStream, path: Path, limit: int) -> Tuple[int, bool]:
        """Copy the part into path; past `limit` bytes the rest is drained and dropped."""
        written = 0
        reached_limit = False
        f = await asyncio.to_thread(open, path, "wb")
        try:
            while True:
                data = await file_stream.read(STREAM_BUFFER_SIZE)
                if not data:
                    break
                if reached_limit:
                    continue
                if written + len(data) > limit:
                    reached_limit = True
                    continue
                await asyncio.to_thread(f.write, data)
                written += len(data)
        finally:
            await asyncio.to_thread(f.close)
        return written, reached_limit

    async def _handle_file(self, file_stream: FileStream, metadata: Dict[str, str]) -> UploadResult:
        session_id = str(uuid4())
        name = metadata.get("name", "")
        self._trace("Type: Single file upload, UUID: %s", session_id)

        validate_extension(name, self.settings.ALLOWED_EXTENSIONS, self.settings.BLOCKED_EXTENSIONS)

        file_path = Path(self.destination) / f"{session_id}{get_suffix(name)}"
        limit = min(self.settings.MAX_CHUNK_SIZE, self.settings.MAX_FILE_SIZE)
        _, reached_limit = await self._stream_to_file(file_stream, file_path, limit)

        if reached_limit:
            logger.warning(f"Deleting file {file_path} since it is too big")
            await asyncio.to_thread(storage.remove_file, file_path)
            raise SizeLimitError("File is too big", {"limit": limit})

        stat = await asyncio.to_thread(os.stat, file_path)
        self._trace("Done: %s -> %s", name, file_path)
        return UploadResult(
            is_chunked_upload=False,
            ready=True,
            session_id=session_id,
            path=str(file_path),
            size=stat.st_size,
            metadata=metadata,
        )

    async def _handle_file_with_chunks(
        self,
        chunk_headers: ChunkHeaders,
        file_stream: FileStream,
        metadata: Dict[str, str],
    ) -> UploadResult:
        session_id = chunk_headers.session_id
        chunk_number = chunk_headers.chunk_number
        total_chunks = chunk_headers.total_chunks
        chunk_dir = storage.session_dir(self.destination, session_id)
        is_final = chunk_number == total_chunks

        self._trace("Type: Chunked upload, UUID: %s, Chunk number: %s/%s",
                    session_id, chunk_number, total_chunks)

        if total_chunks < 1 or chunk_number < 1 or chunk_number > total_chunks:
            raise ValidationError(
                "Chunk is out of range",
                {"chunk_number": chunk_number, "total_chunks": total_chunks},
            )

        if is_final:
            # File name only appears on the last chunk
            try:
                validate_extension(
                    metadata.get("name", ""),
                    self.settings.ALLOWED_EXTENSIONS,
                    self.settings.BLOCKED_EXTENSIONS,
                )
            except ValidationError:
                await storage.cleanup_session(self.destination, session_id)
                raise

        partial_path = chunk_dir / f"{chunk_number}{storage.PARTIAL_SUFFIX}"
        try:
            await asyncio.to_thread(chunk_dir.mkdir, parents=True, exist_ok=True)
            _, reached_limit = await self._stream_to_file(
                file_stream, partial_path, self.settings.MAX_CHUNK_SIZE
            )
            if not reached_limit:
                await asyncio.to_thread(
                    os.replace, partial_path, storage.chunk_path(chunk_dir, chunk_number)
                )
        except FileNotFoundError as e:
            # Another request discarded the session while this chunk was streaming
            raise ValidationError("Upload session was discarded", {"session_id": session_id}) from e

        if reached_limit:
            # One oversized chunk means a config mismatch, the session can't complete
            logger.warning(f"Deleting chunk folder {chunk_dir} since chunk {chunk_number} is too big")
            await storage.cleanup_session(self.destination, session_id)
            raise SizeLimitError("Chunk is too big", {"chunk_number": chunk_number})

        if is_final:
            await asyncio.to_thread(storage.write_metadata, chunk_dir, metadata)

        return await self._assemble_if_complete(session_id, chunk_dir, total_chunks, metadata, is_final)

    async def _assemble_if_complete(
        self,
        session_id: str,
        chunk_dir: Path,
        total_chunks: int,
        metadata: Dict[str, str],
        is_final: bool,
    ) -> UploadResult:
        received = await asyncio.to_thread(storage.received_chunks, chunk_dir)
        final_metadata = metadata if is_final else await asyncio.to_thread(storage.read_metadata, chunk_dir)

        pending = UploadResult(
            is_chunked_upload=True,
            ready=False,
            session_id=session_id,
            metadata=metadata,
        )

        if len(received) < total_chunks or final_metadata is None:
            self._trace("Waiting for chunks: %s/%s received", len(received), total_chunks)
            return pending

        if not await asyncio.to_thread(storage.claim_assembly, chunk_dir):
            self._trace("Assembly of %s already claimed by another request", session_id)
            return pending

        self._trace("Attempting to join chunks for %s", session_id)
        final_path = Path(self.destination) / f"{session_id}{get_suffix(final_metadata.get('name', ''))}"
        size = await storage.assemble_chunks_async(final_path, chunk_dir, total_chunks)

        self._trace("Done: %s -> %s", final_metadata.get("name"), final_path)
        return UploadResult(
            is_chunked_upload=True,
            ready=True,
            session_id=session_id,
            path=str(final_path),
            size=size,
            metadata=final_metadata,
        )

    async def discard_session(self, session_id: str) -> bool:
        """Remove the partial state of an abandoned chunked session."""
        if not check_if_uuid({UUID_HEADER: session_id}):
            raise ValidationError("chibi-uuid is missing")
        return await storage.cleanup_session(self.destination, session_id)


upload_receiver = UploadReceiver()


def get_receiver() -> UploadReceiver:
    return upload_receiver
