from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import FileResponse
from starlette.datastructures import UploadFile
from chibi_upload.core.exceptions import UploadError, ValidationError
from chibi_upload.core.headers import check_content_length, validate_upload_headers
from chibi_upload.schemas.upload import DiscardSessionResponse, UploadResponse
from chibi_upload.services.receiver import UploadReceiver, get_receiver
from pathlib import Path
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

def _raise_http(e: UploadError):
    logger.error(f"Upload failed: {e.to_dict()}")
    raise HTTPException(status_code=e.status_code, detail=e.message)

@router.api_route("", methods=["POST", "PUT"], response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def receive_upload(
    request: Request,
    receiver: UploadReceiver = Depends(get_receiver),
):
    """
    POST|PUT /upload - Receive a whole file or one chunk of a chunked session
    """
    try:
        # Reject a broken header contract before reading the body
        chunk_headers = validate_upload_headers(
            request.headers,
            receiver.settings.MAX_FILE_SIZE,
            receiver.settings.MAX_CHUNK_SIZE,
        )
        # Starlette spools the whole part to disk before process_file() sees it
        max_part_size = receiver.settings.MAX_CHUNK_SIZE
        if not chunk_headers.using_chunks:
            max_part_size = min(max_part_size, receiver.settings.MAX_FILE_SIZE)
        check_content_length(request.headers, max_part_size)

        async with request.form(max_files=1) as form:
            file_part = None
            metadata = {}
            for key, value in form.multi_items():
                if isinstance(value, UploadFile):
                    file_part = value
                else:
                    metadata[key] = value

            if file_part is None:
                raise ValidationError("Missing file part")

            result = await receiver.process_file(request.headers, file_part, metadata)
    except UploadError as e:
        _raise_http(e)

    if result.is_chunked_upload and not result.ready:
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    file_url = f"{receiver.settings.UPLOAD_SERVICE_BASE_URL}/upload/files/{Path(result.path).name}"
    return UploadResponse(**result.model_dump(), url=file_url)

@router.get("/files/{filename}")
async def download_file(
    filename: str,
    receiver: UploadReceiver = Depends(get_receiver),
):
    """
    GET /upload/files/{filename} - Download a finished upload
    """
    if Path(filename).name != filename or filename.startswith("."):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found.")

    file_path = Path(receiver.destination) / filename
    if not file_path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found.")

    return FileResponse(
        path=file_path,
        filename=filename,
        media_type='application/octet-stream'
    )

@router.delete("/{session_id}", response_model=DiscardSessionResponse)
async def discard_session(
    session_id: str,
    receiver: UploadReceiver = Depends(get_receiver),
):
    """
    DELETE /upload/{session_id} - Drop the chunks of an abandoned session
    """
    try:
        removed = await receiver.discard_session(session_id)
    except UploadError as e:
        _raise_http(e)

    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload session not found.")
    return DiscardSessionResponse(session_id=session_id)
