from pydantic import BaseModel, Field
from typing import Dict, Optional

class UploadResult(BaseModel):
    """Outcome of processing one inbound request."""
    is_chunked_upload: bool
    ready: bool = True
    session_id: str
    path: Optional[str] = None
    size: Optional[int] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

class UploadResponse(UploadResult):
    url: Optional[str] = None

class DiscardSessionResponse(BaseModel):
    status: str = "success"
    message: str = "Session folder and related files deleted."
    session_id: str
