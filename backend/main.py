import asyncio
import logging
import mimetypes
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from config import settings
from models.upload_models import DirectoryCreateRequest, NetworkImageRequest
from services.cleanup_service import CleanupService
from services.exceptions import UploadError
from services.staging_area import StagingArea
from services.upload_service import UploadService

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    cleanup_service = CleanupService(
        StagingArea(settings.staging_dir),
        ttl_hours=settings.staging_ttl_hours,
        interval_seconds=settings.cleanup_interval_seconds,
    )
    cleanup_task = asyncio.create_task(cleanup_service.start_cleanup_scheduler())

    yield

    # Shutdown
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass
    if get_upload_service.cache_info().currsize:
        await get_upload_service().close()

app = FastAPI(title="Chunked File Upload Service", lifespan=lifespan)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_upload_service() -> UploadService:
    return UploadService(settings)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.post("/upload")
async def upload_file(
    file: UploadFile = File(...),
    storage: Optional[str] = Form(None),
    upload_service: UploadService = Depends(get_upload_service)
):
    """Upload a whole file in a single request"""
    try:
        result = await upload_service.upload(file.file, file.filename or "", file.content_type, storage)
        return result
    except UploadError as e:
        raise HTTPException(status_code=e.code, detail=e.message)


@app.post("/upload/chunk")
async def upload_chunk(
    package: Optional[UploadFile] = File(None),
    hash: Optional[str] = Form(None),
    total: Optional[str] = Form(None),
    index: Optional[str] = Form(None),
    suffix: Optional[str] = Form(None),
    name: Optional[str] = Form(None),
    size: Optional[str] = Form(None),
    mime_type: Optional[str] = Form(None),
    storage: Optional[str] = Form(None),
    upload_service: UploadService = Depends(get_upload_service)
):
    """Submit one chunk; responds 201 while chunks are missing and 200 once stored"""
    fields = {
        "package": package.file if package is not None else None,
        "hash": hash,
        "total": total,
        "index": index,
        "suffix": suffix,
        "name": name,
        "size": size,
        "mime_type": mime_type,
    }
    data = {key: value for key, value in fields.items() if value is not None}
    try:
        result = await upload_service.chunk_upload(data, storage)
        return JSONResponse(status_code=result["code"], content=result)
    except UploadError as e:
        raise HTTPException(status_code=e.code, detail=e.message)


@app.post("/upload/network-image")
async def save_network_image(
    request: NetworkImageRequest,
    upload_service: UploadService = Depends(get_upload_service)
):
    """Import a jpeg or png image from a URL"""
    try:
        return await upload_service.save_network_image(request.url, request.storage)
    except UploadError as e:
        raise HTTPException(status_code=e.code, detail=e.message)


@app.get("/files/{location:path}")
async def read_file(
    location: str,
    storage: Optional[str] = Query(None),
    upload_service: UploadService = Depends(get_upload_service)
):
    try:
        content = await upload_service.read(location, storage)
    except UploadError as e:
        raise HTTPException(status_code=e.code, detail=e.message)
    media_type = mimetypes.guess_type(location)[0] or "application/octet-stream"
    return Response(content=content, media_type=media_type)


@app.post("/directories")
async def create_directory(
    request: DirectoryCreateRequest,
    upload_service: UploadService = Depends(get_upload_service)
):
    try:
        created = await upload_service.create_directory(request.location, request.storage)
        return {"created": created}
    except UploadError as e:
        raise HTTPException(status_code=e.code, detail=e.message)


@app.get("/directories")
async def list_directory(
    path: str = Query(""),
    recursive: bool = Query(False),
    storage: Optional[str] = Query(None),
    upload_service: UploadService = Depends(get_upload_service)
):
    try:
        contents = await upload_service.get_directory(path, recursive, storage)
    except UploadError as e:
        raise HTTPException(status_code=e.code, detail=e.message)
    if contents is None:
        raise HTTPException(status_code=404, detail=f"Unable to list directory: {path}")
    return {"contents": contents}


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
