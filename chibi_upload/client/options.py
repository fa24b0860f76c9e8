from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Callback = Callable[[str, Any], Union[None, Awaitable[None]]]


class UploaderOptions(BaseModel):
    """Sender-side configuration for one upload session."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    endpoint: str
    method: Literal["POST", "PUT"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    post_params: Optional[Dict[str, str]] = None
    max_file_size: int = Field(default=1 * 10**9, gt=0)  # 1GB
    chunk_size: int = Field(default=90 * 10**6, gt=0)  # 90MB
    retries: int = Field(default=5, ge=0)
    delay_before_retry: float = Field(default=3, ge=0)  # seconds
    max_parallel_uploads: int = Field(default=3, ge=1)
    allowed_extensions: List[str] = Field(default_factory=list)
    blocked_extensions: List[str] = Field(default_factory=list)
    timeout: Optional[float] = 120.0
    auto_start: bool = True
    debug: bool = False

    on_start: Optional[Callback] = None
    on_progress: Optional[Callback] = None
    on_retry: Optional[Callback] = None
    on_error: Optional[Callback] = None
    on_finish: Optional[Callback] = None

    @field_validator("endpoint")
    @classmethod
    def endpoint_must_be_defined(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("endpoint must be defined")
        return value

    @field_validator("method", mode="before")
    @classmethod
    def method_upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value
