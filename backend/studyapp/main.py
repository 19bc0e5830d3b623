"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the study-set backend.
Controllers are intentionally thin: they stage uploads, delegate to
`services.StudySetService`, and translate service errors into HTTP
status codes.

Endpoints implemented:
- POST /api/study-set
- GET /api/study-sets
- GET /api/study-set/{id}
- GET /api/study-set/{id}/files
- PUT /api/study-set/{id}
- DELETE /api/study-set/{id}
- DELETE /api/study-set/file/{file_id}
- GET /health
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, UploadFile, File, HTTPException, Form, Request
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session
from pathlib import Path
from typing import List, Optional
import json
import logging
import time
import uuid
from .database import engine, create_db_and_tables, get_session
from . import services
from .errors import NotFoundError, StorageError, StudySetError, ValidationError
from .schemas import (
    FileDeleted,
    IncomingFile,
    StudySetDeleted,
    StudySetDetails,
    StudySetFileRow,
    StudySetOut,
    StudySetSaved,
)
from .utils.staging import discard_staged, stage_upload
from .config import settings

logger = logging.getLogger("studyapp.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

create_db_and_tables()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Settle file operations left unfinished by a previous process."""
    with Session(engine) as session:
        services.StudySetService(session).reconcile()
    yield


app = FastAPI(title="Study Set API", lifespan=lifespan)

# Wide-open CORS keeps the local single-page frontend working without extra config in dev.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        if request.url.path.startswith("/api"):
            logger.exception(
                "request_failed %s",
                json.dumps(
                    {
                        "request_id": req_id,
                        "path": request.url.path,
                        "method": request.method,
                        "duration_ms": elapsed_ms,
                        "client": request.client.host if request.client else "unknown",
                    },
                    ensure_ascii=True,
                ),
            )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if request.url.path.startswith("/api"):
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
    return response


def get_study_set_service(db: Session = Depends(get_session)) -> services.StudySetService:
    return services.StudySetService(db)


def get_staging_dir() -> Path:
    return settings.STAGING_DIR


def _http_error(exc: StudySetError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StorageError):
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=500, detail="internal error")


def _validate_upload_filename(filename: str) -> None:
    if not filename or len(filename) > 200:
        raise HTTPException(status_code=400, detail="invalid filename")
    if "/" in filename or "\\" in filename:
        raise HTTPException(status_code=400, detail="invalid filename path")


def _stage_files(files: Optional[List[UploadFile]], staging_dir: Path) -> List[IncomingFile]:
    """Write uploads to the staging area, enforcing count and size limits."""
    uploads = list(files or [])
    if len(uploads) > settings.MAX_FILES_PER_REQUEST:
        raise HTTPException(status_code=400, detail=f"at most {settings.MAX_FILES_PER_REQUEST} files per request")
    staged: List[IncomingFile] = []
    try:
        for f in uploads:
            _validate_upload_filename(f.filename)
            staged.append(stage_upload(f.file, f.filename, staging_dir, settings.MAX_UPLOAD_BYTES))
    except ValueError as e:
        discard_staged(staged)
        raise HTTPException(status_code=400, detail=str(e))
    except (HTTPException, OSError):
        discard_staged(staged)
        raise
    return staged


@app.post('/api/study-set', status_code=201, response_model=StudySetSaved)
def create_study_set(
    user_id: Optional[int] = Form(default=None),
    name: Optional[str] = Form(default=None),
    description: Optional[str] = Form(default=None),
    files: Optional[List[UploadFile]] = File(default=None),
    svc: services.StudySetService = Depends(get_study_set_service),
    staging_dir: Path = Depends(get_staging_dir),
):
    """Create a study set and attach up to `MAX_FILES_PER_REQUEST` files.

    Uploads are staged first and then moved into
    `{user_id}/{study_set_id}/` by the service.
    """
    # reject bad input before anything touches the staging area
    if user_id is None:
        raise HTTPException(status_code=400, detail="User ID is required.")
    if not name or not name.strip():
        raise HTTPException(status_code=400, detail="Study set name is required.")
    staged = _stage_files(files, staging_dir)
    try:
        result = svc.create_study_set(user_id, name, description, staged)
    except StudySetError as e:
        raise _http_error(e)
    finally:
        # anything not moved into the study set is still in staging
        discard_staged(staged)
    suffix = 'with files.' if result['files'] else 'without files.'
    return {**result, 'message': f'Study set created successfully {suffix}'}


@app.get('/api/study-sets', response_model=List[StudySetOut])
def list_study_sets(user_id: Optional[int] = None, svc: services.StudySetService = Depends(get_study_set_service)):
    """List every study set owned by `user_id`."""
    try:
        return svc.get_all_study_sets(user_id)
    except StudySetError as e:
        raise _http_error(e)


@app.get('/api/study-set/{study_set_id}', response_model=StudySetDetails)
def get_study_set(study_set_id: int, svc: services.StudySetService = Depends(get_study_set_service)):
    """Return a study set together with its `{file_id, file_path}` list."""
    try:
        return svc.get_study_set_details(study_set_id)
    except StudySetError as e:
        raise _http_error(e)


@app.get('/api/study-set/{study_set_id}/files', response_model=List[StudySetFileRow])
def get_study_set_files(study_set_id: int, svc: services.StudySetService = Depends(get_study_set_service)):
    try:
        return svc.get_files_for_study_set(study_set_id)
    except StudySetError as e:
        raise _http_error(e)


@app.put('/api/study-set/{study_set_id}', response_model=StudySetSaved)
def update_study_set(
    study_set_id: int,
    name: Optional[str] = Form(default=None),
    description: Optional[str] = Form(default=None),
    files: Optional[List[UploadFile]] = File(default=None),
    svc: services.StudySetService = Depends(get_study_set_service),
    staging_dir: Path = Depends(get_staging_dir),
):
    """Update name/description and attach any newly uploaded files.

    Existing files are kept; use the file delete endpoint to remove one.
    """
    if not name or not name.strip():
        raise HTTPException(status_code=400, detail="Study set name is required.")
    staged = _stage_files(files, staging_dir)
    try:
        result = svc.update_study_set(study_set_id, name, description, staged)
    except StudySetError as e:
        raise _http_error(e)
    finally:
        discard_staged(staged)
    suffix = 'with files.' if result['files'] else 'without files.'
    return {**result, 'message': f'Study set updated successfully {suffix}'}


@app.delete('/api/study-set/file/{file_id}', response_model=FileDeleted)
def delete_study_set_file(file_id: int, svc: services.StudySetService = Depends(get_study_set_service)):
    """Delete one file row and the file on disk."""
    try:
        result = svc.delete_file_from_study_set(file_id)
    except StudySetError as e:
        raise _http_error(e)
    return {**result, 'message': 'File deleted successfully.'}


@app.delete('/api/study-set/{study_set_id}', response_model=StudySetDeleted)
def delete_study_set(study_set_id: int, svc: services.StudySetService = Depends(get_study_set_service)):
    """Delete a study set, its file rows and its directory."""
    try:
        result = svc.delete_study_set(study_set_id)
    except StudySetError as e:
        raise _http_error(e)
    return {**result, 'message': 'Study set deleted successfully.'}


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
