from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    ENV: str = "local"

    # Where single-shot files, chunk directories and assembled files live
    UPLOAD_DESTINATION_PATH: str = "/tmp/chibi_uploads"

    MAX_FILE_SIZE: int = 100 * 1000 * 1000 * 1000  # 100GB
    MAX_CHUNK_SIZE: int = 90 * 1000 * 1000  # 90MB

    # Extensions without the leading dot, e.g. ["png", "zip"]
    ALLOWED_EXTENSIONS: List[str] = []
    BLOCKED_EXTENSIONS: List[str] = []

    DEBUG: bool = False

    UPLOAD_SERVICE_BASE_URL: str = "http://localhost:8000"  # Or your actual service URL
    CORS_ALLOWED_ORIGINS: List[str] = ["*"]

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env" if ENV == "local" else None,
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()
