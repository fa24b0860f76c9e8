import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from chibi_upload.api.endpoints.upload import router as upload_router
from chibi_upload.core.config import settings
from chibi_upload.core.headers import CHUNK_NUMBER_HEADER, CHUNKS_TOTAL_HEADER, UUID_HEADER

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Chibi Upload Service",
    version="1.0.0",
    openapi_url=None if settings.ENV == "production" else f"/openapi.json",
    docs_url=None if settings.ENV == "production" else f"/docs",
    redoc_url=None if settings.ENV == "production" else f"/redoc"
)

@app.middleware("http")
async def upload_debug_middleware(request: Request, call_next):
    session_id = request.headers.get(UUID_HEADER)
    if settings.DEBUG and session_id:
        logger.info(
            f"Chunk request {request.method} {request.url.path}: "
            f"session={session_id} chunk={request.headers.get(CHUNK_NUMBER_HEADER)}"
            f"/{request.headers.get(CHUNKS_TOTAL_HEADER)}"
        )
    return await call_next(request)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["POST", "PUT", "GET", "DELETE", "OPTIONS"],
    allow_headers=[
        "Accept",
        "Content-Type",
        "Origin",
        "Authorization",
        "X-Requested-With",
        UUID_HEADER,
        CHUNK_NUMBER_HEADER,
        CHUNKS_TOTAL_HEADER,
    ],
    max_age=86400,
)

@app.get("/health")
async def health_check():
    return {"status": "healthy"}

app.include_router(upload_router, prefix="/upload", tags=["upload"])
