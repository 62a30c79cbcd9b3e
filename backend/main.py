import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Body, Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from core.config import settings
from models.upload_models import ByteKind, Endianness, SessionStatus, UploadSessionCreate
from services import inspector
from services.cleanup_service import CleanupService
from services.errors import MultipartError, TokenInvalid
from services.presign import parse_token, to_compact
from services.upload_service import UploadService

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Initialize services
upload_service = UploadService(settings)


def get_upload_service() -> UploadService:
    return upload_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    cleanup_service = CleanupService(upload_service, settings)
    cleanup_task = asyncio.create_task(cleanup_service.start_cleanup_scheduler())

    yield

    # Shutdown
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass

app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(e: MultipartError) -> HTTPException:
    detail = str(e)
    if isinstance(e, TokenInvalid):
        detail = {"message": str(e), "reason": e.reason.value}
    return HTTPException(status_code=e.status_code, detail=detail)


@app.post("/upload/initiate")
async def initiate_upload(
    file: UploadFile = File(...),
    part_size: Optional[int] = Form(None),
    min_part_size: Optional[int] = Form(None),
    max_parts: Optional[int] = Form(None),
    part_count: Optional[int] = Form(None),
    service: UploadService = Depends(get_upload_service),
):
    """Initialize a new multipart upload session for the uploaded payload"""
    payload = await file.read()
    try:
        session = await service.create_session(
            payload,
            UploadSessionCreate(
                part_size=part_size,
                min_part_size=min_part_size,
                max_parts=max_parts,
                part_count=part_count,
            ),
        )
    except MultipartError as e:
        raise _http_error(e)
    return {
        "session_id": session.session_id,
        "payload_size": session.payload_size,
        "part_size": session.part_size_policy.fixed_part_size,
        "part_count": session.part_count,
        "parts": [p.model_dump(mode="json") for p in session.ordered_parts()],
        "created_at": session.created_at.isoformat(),
    }


@app.post("/upload/presigned-url")
async def get_presigned_url(
    session_id: str = Form(...),
    part_number: int = Form(...),
    ttl_seconds: Optional[int] = Form(None),
    service: UploadService = Depends(get_upload_service),
):
    """Issue a presigned token for uploading a specific part"""
    try:
        token = service.issue_token(session_id, part_number, ttl_seconds)
    except MultipartError as e:
        raise _http_error(e)
    return {
        "token": to_compact(token),
        "url": service.presigned_url(session_id, token),
        "expires_at": token.expires_at.isoformat(),
    }


@app.post("/upload/part")
async def upload_part(
    session_id: str = Form(...),
    part_number: int = Form(...),
    token: str = Form(...),
    service: UploadService = Depends(get_upload_service),
):
    """Upload one part using a presigned token (compact form or URL)"""
    try:
        state = await service.submit_part(session_id, part_number, parse_token(token))
    except MultipartError as e:
        raise _http_error(e)
    return state.model_dump(mode="json")


@app.post("/upload/run")
async def run_upload(
    session_id: str = Body(..., embed=True),
    service: UploadService = Depends(get_upload_service),
):
    """Upload every remaining part with bounded concurrency and complete"""
    try:
        return await service.run_upload(session_id)
    except MultipartError as e:
        raise _http_error(e)


@app.post("/upload/complete")
async def complete_upload(
    session_id: str = Body(..., embed=True),
    service: UploadService = Depends(get_upload_service),
):
    """Complete the multipart upload"""
    try:
        etag = await service.complete_upload(session_id)
    except MultipartError as e:
        raise _http_error(e)
    return {
        "status": SessionStatus.COMPLETED.value,
        "etag": etag.value,
        "part_count": etag.part_count,
    }


@app.post("/upload/abort")
async def abort_upload(
    session_id: str = Body(..., embed=True),
    service: UploadService = Depends(get_upload_service),
):
    """Abort an ongoing upload"""
    try:
        await service.abort_upload(session_id)
    except MultipartError as e:
        raise _http_error(e)
    return {"status": SessionStatus.ABORTED.value}


@app.post("/upload/resume")
async def resume_upload(
    session_id: str = Body(..., embed=True),
    service: UploadService = Depends(get_upload_service),
):
    """Resume an aborted upload as a new session, keeping uploaded parts"""
    try:
        session = await service.resume_upload(session_id)
    except MultipartError as e:
        raise _http_error(e)
    return {
        "status": "resumed",
        "session": session,
        "missing_parts": session.missing_parts(),
    }


@app.post("/upload/verify")
async def verify_upload(
    session_id: str = Body(...),
    expected_etag: Optional[str] = Body(None),
    service: UploadService = Depends(get_upload_service),
):
    """Recompute part digests from received data and compare"""
    try:
        result = service.verify_session(session_id, expected_etag)
        reassembly = service.verify_reassembly(session_id) if not result.missing_parts else None
    except MultipartError as e:
        raise _http_error(e)
    return {"result": result, "reassembly": reassembly}


@app.get("/upload/session/{session_id}")
async def get_session(session_id: str, service: UploadService = Depends(get_upload_service)):
    """Get upload session details"""
    session = await service.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.get("/upload/sessions/active")
async def get_active_sessions(service: UploadService = Depends(get_upload_service)):
    """Get all active upload sessions"""
    sessions = await service.get_active_sessions()
    return {"sessions": sessions}


@app.post("/inspect")
async def inspect_bytes(
    file: UploadFile = File(...),
    offset: int = Form(0),
    kinds: str = Form(",".join(k.value for k in ByteKind)),
    endianness: Endianness = Form(Endianness.BIG),
):
    """Interpret the bytes at an offset as each of the requested kinds"""
    data = await file.read()
    try:
        requested: List[ByteKind] = [ByteKind(k.strip()) for k in kinds.split(",") if k.strip()]
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        rows = inspector.inspect(data, offset, requested, endianness)
    except MultipartError as e:
        raise _http_error(e)
    return {"size": inspector.format_bytes(len(data)), "rows": rows}


@app.post("/inspect/hexdump")
async def hex_dump(
    file: UploadFile = File(...),
    offset: int = Form(0),
    rows: int = Form(8),
):
    """Hex dump rows of 16 bytes with their printable ASCII"""
    data = await file.read()
    try:
        dump = inspector.hex_dump(data, offset, rows)
    except MultipartError as e:
        raise _http_error(e)
    return {"total_bytes": len(data), "rows": dump, "has_more": offset + rows * inspector.BYTES_PER_ROW < len(data)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
