"""Client-side upload scheduler.

Splits a file into chunks, sends them in batches of ``max_parallel_uploads``
and finally sends the last chunk on its own, which tells the server it may
assemble the file. Every notification is recorded as an ``UploadEvent``
and forwarded to the optional ``on_*`` callbacks.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Sequence, Union
from uuid import uuid4

import httpx
from pydantic import ValidationError as PydanticValidationError

from chibi_upload.client.options import UploaderOptions
from chibi_upload.client.planner import ChunkDescriptor, plan_chunks, total_chunks
from chibi_upload.client.transport import ChunkTransport, NormalizedResponse
from chibi_upload.core.exceptions import (
    FatalTransportError,
    SizeLimitError,
    TransientTransportError,
    UploadError,
    ValidationError,
)
from chibi_upload.core.extensions import validate_extension

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({200, 201, 204})
RETRYABLE_STATUSES = frozenset({408, 502, 503, 504})
PAYLOAD_TOO_LARGE = 413


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class EventType(str, Enum):
    START = "start"
    PROGRESS = "progress"
    RETRY = "retry"
    ERROR = "error"
    FINISH = "finish"


class ResponseAction(str, Enum):
    ACCEPTED = "accepted"
    RETRY = "retry"
    OVERSIZE = "oversize"
    FATAL = "fatal"


@dataclass(frozen=True)
class UploadEvent:
    type: EventType
    session_id: str
    payload: Any = None


@dataclass(frozen=True)
class UploadOutcome:
    session_id: str
    state: SessionState
    progress: int
    response: Optional[Dict[str, Any]] = None
    error: Optional[UploadError] = None


def classify_status(status_code: int) -> ResponseAction:
    if status_code in SUCCESS_STATUSES:
        return ResponseAction.ACCEPTED
    if status_code in RETRYABLE_STATUSES:
        return ResponseAction.RETRY
    if status_code == PAYLOAD_TOO_LARGE:
        return ResponseAction.OVERSIZE
    return ResponseAction.FATAL


def _batches(chunks: Sequence[ChunkDescriptor], size: int) -> Iterator[Sequence[ChunkDescriptor]]:
    for i in range(0, len(chunks), size):
        yield chunks[i:i + size]


class ChunkedUploader:
    """Uploads one file, chunked when it is bigger than ``chunk_size``.

    Callbacks may be plain functions or coroutines; an exception raised by a
    callback propagates out of ``start()``.
    """

    def __init__(
        self,
        path: Union[str, Path],
        options: Optional[UploaderOptions] = None,
        *,
        transport: Optional[ChunkTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
        **option_values: Any,
    ):
        if options is None:
            try:
                options = UploaderOptions(**option_values)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid uploader options: {e}") from e

        self.options = options
        self.path = Path(path)
        self.filename = self.path.name
        self.file_size = self.path.stat().st_size
        self.session_id = str(uuid4())
        self.total_chunks = total_chunks(self.file_size, options.chunk_size)

        self.state = SessionState.IDLE
        self.progress = 0
        self.retries_used: Dict[int, int] = {}
        self.events: List[UploadEvent] = []

        self._paused = False
        self._stopped = False
        self._started = False
        # Set when a pause made the current run skip a chunk
        self._interrupted = False
        self._response: Optional[Dict[str, Any]] = None
        self._error: Optional[UploadError] = None
        self._queue: "asyncio.Queue[Optional[UploadEvent]]" = asyncio.Queue()
        self._run_lock = asyncio.Lock()

        self.transport = transport or ChunkTransport(
            options,
            session_id=self.session_id,
            total_chunks=self.total_chunks,
            filename=self.filename,
            file_size=self.file_size,
            client=client,
        )

    async def __aenter__(self) -> "ChunkedUploader":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.transport.aclose()

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def _halted(self) -> bool:
        return self._paused or self._stopped

    @property
    def outcome(self) -> UploadOutcome:
        return UploadOutcome(
            session_id=self.session_id,
            state=self.state,
            progress=self.progress,
            response=self._response,
            error=self._error,
        )

    def _trace(self, message: str, *args: Any) -> None:
        level = logging.INFO if self.options.debug else logging.DEBUG
        logger.log(level, "[ChibiUploader] %s: " + message, self.session_id, *args)

    async def _emit(self, event_type: EventType, payload: Any = None) -> None:
        event = UploadEvent(type=event_type, session_id=self.session_id, payload=payload)
        self.events.append(event)
        self._queue.put_nowait(event)

        callback = getattr(self.options, f"on_{event_type.value}")
        if callback is not None:
            result = callback(self.session_id, payload)
            if inspect.isawaitable(result):
                await result

    async def _emit_error(self, error: UploadError) -> None:
        logger.error(f"Upload {self.session_id} error: {error.message}")
        self._error = error
        await self._emit(EventType.ERROR, error)

    def _end_session(self, state: SessionState) -> None:
        self.state = state
        # Wakes up iter_events() consumers
        self._queue.put_nowait(None)

    async def iter_events(self) -> AsyncIterator[UploadEvent]:
        """Yield events in emission order until the session completes or fails."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def _validate(self) -> None:
        validate_extension(self.filename, self.options.allowed_extensions, self.options.blocked_extensions)
        self._trace("File size: %s, maxFileSize: %s", self.file_size, self.options.max_file_size)
        if self.file_size > self.options.max_file_size:
            raise SizeLimitError("File size is too big", {"size": self.file_size})

    async def start(self) -> UploadOutcome:
        """Send every chunk; returns when the run completes, fails or pauses."""
        if self._halted or self.state in (SessionState.COMPLETED, SessionState.FAILED):
            return self.outcome
        if self._run_lock.locked():
            self._trace("Upload already running")
            return self.outcome

        async with self._run_lock:
            if not self._started:
                self._started = True
                self._trace("Chunk size: %s, total chunks: %s", self.options.chunk_size, self.total_chunks)
                await self._emit(EventType.START, {"total_chunks": self.total_chunks})
                try:
                    self._validate()
                except UploadError as e:
                    await self._emit_error(e)
                    self._end_session(SessionState.FAILED)
                    return self.outcome

            self.state = SessionState.RUNNING
            while True:
                self._interrupted = False
                await self._send_chunks()
                if self.state is SessionState.COMPLETED or self._halted or not self._interrupted:
                    break
                # Resumed before this run drained; skipped chunks need another pass
                self._trace("Sending the chunk plan again after resume")

            if self.state is not SessionState.COMPLETED:
                if self._paused and not self._stopped:
                    self.state = SessionState.PAUSED
                else:
                    self._end_session(SessionState.FAILED)

        return self.outcome

    def pause(self) -> None:
        if self.state in (SessionState.COMPLETED, SessionState.FAILED):
            return
        self._paused = True
        self.state = SessionState.PAUSED
        self._trace("Paused")

    async def resume(self) -> UploadOutcome:
        """Clear the pause flag and send the whole chunk plan again."""
        if not self._paused:
            return self.outcome
        self._paused = False
        self._trace("Resumed")
        if self._run_lock.locked():
            # The running start() sends the plan again if a chunk was skipped while paused
            self.state = SessionState.RUNNING
            return self.outcome
        return await self.start()

    async def toggle_pause(self) -> UploadOutcome:
        if self._paused:
            return await self.resume()
        self.pause()
        return self.outcome

    async def _send_chunks(self) -> None:
        if self._halted:
            return

        chunks = plan_chunks(self.file_size, self.options.chunk_size)
        *leading, last_chunk = chunks

        for batch in _batches(leading, self.options.max_parallel_uploads):
            if self._halted or self._interrupted:
                self._trace("Skipping remaining batches")
                return
            await asyncio.gather(*(self._send_chunk(chunk) for chunk in batch))

        if self._halted or self._interrupted:
            return
        # The last chunk triggers assembly, so it never overlaps with others
        await self._send_chunk(last_chunk)
        self._trace("Upload finished")

    def _read_chunk(self, chunk: ChunkDescriptor) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(chunk.start)
            return f.read(chunk.size)

    async def _send_chunk(self, chunk: ChunkDescriptor) -> None:
        is_last = chunk.index == self.total_chunks
        data = await asyncio.to_thread(self._read_chunk, chunk)

        while not self._halted:
            try:
                response = await self.transport.send(data, chunk.index, is_last)
            except TransientTransportError as e:
                logger.warning(f"Upload {self.session_id}: {e.message}")
                if await self._schedule_retry(chunk.index):
                    continue
                return

            self._trace("Chunk %s response: %s", chunk.index, response.status_code)
            action = classify_status(response.status_code)

            if action is ResponseAction.ACCEPTED:
                await self._accept(chunk, response)
                return

            if action is ResponseAction.RETRY:
                if await self._schedule_retry(chunk.index):
                    continue
                return

            if self._stopped:
                # Another chunk already reported the fatal stop
                return

            if action is ResponseAction.OVERSIZE:
                self._stopped = True
                await self._emit_error(FatalTransportError(
                    "Chunks are too big. Stopping upload",
                    {"chunk": chunk.index, "status": response.status_code},
                ))
                return

            if self._paused:
                self._skip(chunk.index)
                return
            self._stopped = True
            message = f"Server responded with {response.status_code}. Stopping upload"
            if response.message:
                message = f"{message}: {response.message}"
            await self._emit_error(FatalTransportError(
                message, {"chunk": chunk.index, "status": response.status_code}
            ))
            return

        self._skip(chunk.index)

    def _skip(self, index: int) -> None:
        if not self._stopped:
            # Paused before this chunk got through
            self._interrupted = True
            self._trace("Chunk %s skipped while paused", index)

    async def _schedule_retry(self, index: int) -> bool:
        """Wait before another attempt; False when no attempt should follow."""
        if self._halted:
            self._skip(index)
            return False

        retries = self.options.retries
        used = self.retries_used.get(index, 0)
        if used >= retries:
            await self._emit_error(TransientTransportError(
                f"An error occured uploading chunk {index}. No more retries, stopping upload",
                {"chunk": index},
            ))
            return False

        used += 1
        self.retries_used[index] = used
        await self._emit(EventType.RETRY, {
            "message": f"An error occured uploading chunk {index}. {retries - used} retries left",
            "chunk": index,
            "retries_left": retries - used,
        })
        await asyncio.sleep(self.options.delay_before_retry)
        if self._halted:
            self._skip(index)
            return False
        return True

    async def _accept(self, chunk: ChunkDescriptor, response: NormalizedResponse) -> None:
        self.retries_used.pop(chunk.index, None)

        if self.total_chunks == 1:
            if response.json_error:
                await self._emit_error(FatalTransportError("There was a problem parsing the JSON response"))
                return
            self.progress = 100
            await self._emit(EventType.PROGRESS, self.progress)
            await self._complete(response.body)
            return

        progress = round(100 * chunk.index / self.total_chunks)
        if not self._paused:
            self.progress = progress
            await self._emit(EventType.PROGRESS, progress)
            self._trace("Progress: %s%%", progress)

        if chunk.index != self.total_chunks:
            return

        # Last chunk has a JSON response with the URL
        if response.json_error:
            await self._emit_error(FatalTransportError("There was a problem parsing the JSON response"))
        elif not response.body or not response.body.get("url"):
            await self._emit_error(FatalTransportError(
                "No URL returned by the server", {"status": response.status_code}
            ))
        else:
            await self._complete(response.body)

    async def _complete(self, body: Optional[Dict[str, Any]]) -> None:
        self._response = body
        self.state = SessionState.COMPLETED
        await self._emit(EventType.FINISH, body)
        self._end_session(SessionState.COMPLETED)


async def create_uploader(
    path: Union[str, Path],
    options: Optional[UploaderOptions] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    **option_values: Any,
) -> ChunkedUploader:
    """Build an uploader and, unless ``auto_start`` is off, run it."""
    uploader = ChunkedUploader(path, options, client=client, **option_values)
    if uploader.options.auto_start:
        await uploader.start()
    return uploader


async def upload_file(path: Union[str, Path], endpoint: str, **option_values: Any) -> UploadOutcome:
    async with ChunkedUploader(path, endpoint=endpoint, **option_values) as uploader:
        return await uploader.start()
