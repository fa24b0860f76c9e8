import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from chibi_upload.client.options import UploaderOptions
from chibi_upload.core.exceptions import TransientTransportError
from chibi_upload.core.headers import CHUNK_NUMBER_HEADER, CHUNKS_TOTAL_HEADER, UUID_HEADER

logger = logging.getLogger(__name__)

CHUNK_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class NormalizedResponse:
    status_code: int
    text: str = ""
    body: Optional[Dict[str, Any]] = None
    json_error: bool = False

    @property
    def message(self) -> str:
        """Error text sent by the server, preferring a JSON message/detail."""
        try:
            payload = json.loads(self.text)
        except ValueError:
            return self.text
        if isinstance(payload, dict):
            return str(payload.get("message") or payload.get("detail") or self.text)
        return self.text


class ChunkTransport:
    """Sends a whole file or one chunk of it as a multipart request."""

    def __init__(
        self,
        options: UploaderOptions,
        session_id: str,
        total_chunks: int,
        filename: str,
        file_size: int,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.options = options
        self.session_id = session_id
        self.total_chunks = total_chunks
        self.filename = filename
        self.file_size = file_size
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=options.timeout)

    def _aux_fields(self) -> Dict[str, str]:
        fields = {"name": self.filename, "size": str(self.file_size)}
        fields.update(self.options.post_params or {})
        return fields

    async def send(self, chunk: bytes, index: int, is_last: bool) -> NormalizedResponse:
        """Send one request; network faults raise TransientTransportError."""
        headers = dict(self.options.headers)

        if self.total_chunks == 1:
            files = {"file": (self.filename, chunk, CHUNK_CONTENT_TYPE)}
            data = self._aux_fields()
            parse_json = True
        else:
            headers[UUID_HEADER] = self.session_id
            headers[CHUNKS_TOTAL_HEADER] = str(self.total_chunks)
            headers[CHUNK_NUMBER_HEADER] = str(index)
            files = {"file": ("blob", chunk, CHUNK_CONTENT_TYPE)}
            # Post fields only make sense once the file is complete
            data = self._aux_fields() if is_last else None
            parse_json = is_last

        try:
            response = await self._client.request(
                self.options.method,
                self.options.endpoint,
                headers=headers,
                data=data,
                files=files,
            )
        except httpx.TransportError as e:
            raise TransientTransportError(
                f"An error occured uploading chunk {index}: {e!r}",
                {"chunk": index},
            ) from e

        return self._normalize(response, parse_json)

    @staticmethod
    def _normalize(response: httpx.Response, parse_json: bool) -> NormalizedResponse:
        text = response.text
        if not parse_json or not response.is_success or not response.content:
            return NormalizedResponse(status_code=response.status_code, text=text)

        try:
            body = response.json()
        except ValueError:
            logger.warning(f"Could not parse JSON response ({response.status_code}): {text[:200]}")
            return NormalizedResponse(status_code=response.status_code, text=text, json_error=True)

        if not isinstance(body, dict):
            return NormalizedResponse(status_code=response.status_code, text=text, json_error=True)
        return NormalizedResponse(status_code=response.status_code, text=text, body=body)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
