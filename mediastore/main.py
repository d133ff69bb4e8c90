import asyncio
import hashlib
import math
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mediastore.auth import (
    REFRESH_TOKEN_TYPE,
    AuthUser,
    authenticate,
    decode_token,
    issue_token_pair,
    require_admin,
    require_user,
)
from mediastore.config import settings
from mediastore.db import Base, SessionLocal, engine, get_db
from mediastore.logs import audit_logger, log_event, request_logger, trace_id
from mediastore.maintenance import cleanup_once
from mediastore.media import (
    correct_orientation,
    file_type_for,
    final_object_key,
    guess_mime_type,
    is_md5_digest,
    public_url,
)
from mediastore.merge import claim_merge, schedule_merge
from mediastore.metrics import (
    bytes_received_total,
    chunks_received_total,
    duplicate_chunks_total,
    http_request_duration_seconds,
    images_uploaded_total,
    instant_uploads_total,
    metrics_response,
)
from mediastore.models import (
    FileType,
    Folder,
    StoredFile,
    UploadChunk,
    UploadSession,
    UploadStatus,
    new_id,
    utc_now,
)
from mediastore.schemas import (
    BatchUploadResult,
    CheckUploadRequest,
    ErrorResponse,
    FileMoveRequest,
    FileOut,
    FileResult,
    FolderCreate,
    FolderMoveRequest,
    FolderOut,
    FolderUpdate,
    InitUploadRequest,
    InitUploadResult,
    LoginRequest,
    RefreshRequest,
    StorageStats,
    TokenPair,
    UploadCheck,
    UploadProgress,
)
from mediastore.storage import storage
from mediastore.tracing import setup_tracing


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.auto_create_tables:
        Base.metadata.create_all(bind=engine)
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                with SessionLocal() as db:
                    stats = await asyncio.to_thread(cleanup_once, db)
                _log_event({"event": "cleanup_completed", **stats})
            except Exception as exc:
                _log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_cleanup_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _log_event(payload: dict) -> None:
    log_event(request_logger, payload)


def _audit_event(payload: dict) -> None:
    log_event(audit_logger, payload)


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        409: "conflict",
        413: "payload_too_large",
        422: "validation_error",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_body(request: Request, status_code: int, message: str) -> dict:
    return {
        "code": status_code,
        "message": message,
        "error_code": _error_code_for_status(status_code),
        "request_id": _request_id(request),
        "trace_id": trace_id(),
    }


def _dump(data):
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True, mode="json")
    if isinstance(data, list):
        return [_dump(item) for item in data]
    return data


def _ok(data=None, message: str = "success", total: int | None = None) -> dict:
    body = {"code": 0, "message": message, "data": _dump(data)}
    if total is not None:
        body["total"] = total
    return body


COMMON_ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
    403: {"model": ErrorResponse, "description": "Forbidden"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Mediastore-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    _log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_class": "client_error" if 400 <= exc.status_code < 500 else "server_error",
            "detail": str(exc.detail),
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, str(exc.detail)),
        headers=exc.headers or {},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else first.get("msg", "invalid request")
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": 422,
            "error_class": "validation_error",
            "detail": message,
        }
    )
    return JSONResponse(status_code=422, content=_error_body(request, 422, message))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": 500,
            "error_class": "unhandled_exception",
            "detail": str(exc),
        }
    )
    return JSONResponse(status_code=500, content=_error_body(request, 500, "internal server error"))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_backend": settings.storage_backend,
    }


@app.get("/metrics")
def metrics():
    return metrics_response()


@app.post("/api/auth/login", responses={401: {"model": ErrorResponse, "description": "Bad credentials"}})
def login(payload: LoginRequest) -> dict:
    user_id = authenticate(payload.username, payload.password)
    _audit_event({"event": "audit", "action": "login", "user_id": user_id})
    return _ok(TokenPair(**issue_token_pair(user_id)))


@app.post("/api/auth/refresh", responses={401: {"model": ErrorResponse, "description": "Invalid refresh token"}})
def refresh(payload: RefreshRequest) -> dict:
    user_id = decode_token(payload.refresh_token, REFRESH_TOKEN_TYPE)
    return _ok(TokenPair(**issue_token_pair(user_id)))


def _folder_clause(column, folder_id: str | None):
    return column.is_(None) if folder_id is None else column == folder_id


def _require_folder(db: Session, folder_id: str | None) -> Folder | None:
    if not folder_id:
        return None
    folder = db.get(Folder, folder_id)
    if folder is None:
        raise HTTPException(status_code=404, detail="folder not found")
    return folder


def _get_owned_session(db: Session, file_id: str, user: AuthUser) -> UploadSession:
    upload = db.get(UploadSession, file_id)
    if not upload:
        raise HTTPException(status_code=404, detail="upload session not found")
    if upload.owner_id != user.user_id:
        raise HTTPException(status_code=403, detail="forbidden for this upload owner")
    return upload


def _received_chunks(db: Session, session_id: str) -> dict[int, int]:
    rows = db.execute(
        select(UploadChunk.chunk_index, UploadChunk.size_bytes).where(UploadChunk.session_id == session_id)
    ).all()
    return {index: size for index, size in rows}


def _chunk_bitmap(db: Session, upload: UploadSession) -> tuple[list[int], int]:
    if upload.status == UploadStatus.completed.value:
        return [1] * upload.chunk_count, upload.size
    received = _received_chunks(db, upload.id)
    bitmap = [1 if index in received else 0 for index in range(upload.chunk_count)]
    return bitmap, sum(received.values())


def _expected_chunk_size(upload: UploadSession, chunk_num: int) -> int:
    if chunk_num == upload.chunk_count - 1:
        return upload.size - chunk_num * upload.chunk_size
    return upload.chunk_size


@app.post(
    "/api/files/upload/check",
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Folder not found"}},
)
def check_upload(
    payload: CheckUploadRequest,
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    folder_id = payload.folder_id or None
    _require_folder(db, folder_id)
    if payload.size > settings.max_file_size_bytes:
        raise HTTPException(status_code=400, detail="file size exceeds the limit")

    md5 = payload.md5.lower()
    if is_md5_digest(md5):
        existing = db.scalar(
            select(StoredFile)
            .where(
                _folder_clause(StoredFile.folder_id, folder_id),
                StoredFile.name == payload.name,
                or_(
                    and_(StoredFile.md5 == md5, StoredFile.size == payload.size),
                    and_(StoredFile.source_md5 == md5, StoredFile.source_size == payload.size),
                ),
            )
            .limit(1)
        )
        if existing:
            instant_uploads_total.inc()
            return _ok(
                UploadCheck(
                    exists=True,
                    file_id=existing.id,
                    status=UploadStatus.completed.value,
                    url=existing.url,
                    md5=existing.md5,
                )
            )
        resumable = db.scalar(
            select(UploadSession)
            .where(
                _folder_clause(UploadSession.folder_id, folder_id),
                UploadSession.owner_id == user.user_id,
                UploadSession.name == payload.name,
                UploadSession.size == payload.size,
                UploadSession.md5 == md5,
                UploadSession.status == UploadStatus.uploading.value,
            )
            .order_by(UploadSession.created_at.desc())
            .limit(1)
        )
        if resumable:
            return _ok(
                UploadCheck(
                    exists=False,
                    file_id=resumable.id,
                    chunk_size=resumable.chunk_size,
                    chunk_count=resumable.chunk_count,
                    status=resumable.status,
                    md5=md5,
                )
            )

    chunk_size = settings.chunk_size_bytes
    return _ok(
        UploadCheck(
            exists=False,
            file_id=new_id(),
            chunk_size=chunk_size,
            chunk_count=math.ceil(payload.size / chunk_size),
            status=UploadStatus.uploading.value,
            md5=payload.md5,
        )
    )


@app.post(
    "/api/files/upload/init",
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Folder not found"},
        409: {"model": ErrorResponse, "description": "Conflicting upload session"},
    },
)
def init_upload(
    request: Request,
    payload: InitUploadRequest,
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    upload = db.get(UploadSession, payload.id)
    if upload is not None:
        if upload.owner_id != user.user_id:
            raise HTTPException(status_code=403, detail="forbidden for this upload owner")
        if upload.size != payload.size:
            raise HTTPException(status_code=409, detail="upload session exists with a different size")
        if upload.status == UploadStatus.failed.value:
            raise HTTPException(status_code=409, detail="upload session failed, start a new upload")
    else:
        folder_id = payload.folder_id or None
        _require_folder(db, folder_id)
        if payload.size > settings.max_file_size_bytes:
            raise HTTPException(status_code=400, detail="file size exceeds the limit")
        chunk_size = settings.chunk_size_bytes
        upload = UploadSession(
            id=payload.id,
            owner_id=user.user_id,
            name=payload.name,
            size=payload.size,
            mime_type=guess_mime_type(payload.name, payload.mime_type),
            md5=payload.md5.lower() if is_md5_digest(payload.md5) else payload.md5,
            folder_id=folder_id,
            chunk_size=chunk_size,
            chunk_count=math.ceil(payload.size / chunk_size),
            status=UploadStatus.uploading.value,
        )
        db.add(upload)
        db.commit()
        _audit_event(
            {
                "event": "audit",
                "action": "upload_init",
                "request_id": _request_id(request),
                "upload_id": upload.id,
                "user_id": user.user_id,
                "file_size": upload.size,
                "chunk_size": upload.chunk_size,
                "chunk_count": upload.chunk_count,
            }
        )

    bitmap, _ = _chunk_bitmap(db, upload)
    return _ok(InitUploadResult(success=True, chunks=bitmap))


@app.post(
    "/api/files/upload/chunk",
    responses={
        **COMMON_ERROR_RESPONSES,
        400: {"model": ErrorResponse, "description": "Invalid chunk"},
        404: {"model": ErrorResponse, "description": "Upload session not found"},
        409: {"model": ErrorResponse, "description": "Session not accepting chunks"},
    },
)
def upload_chunk(
    file_id: str = Query(min_length=1),
    chunk_num: int = Query(),
    total: int | None = Query(default=None),
    file: UploadFile = File(...),
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    upload = _get_owned_session(db, file_id, user)
    if upload.status in (UploadStatus.merging.value, UploadStatus.completed.value):
        return _ok(None, message="chunk already stored")
    if upload.status != UploadStatus.uploading.value:
        raise HTTPException(status_code=409, detail="upload session is not accepting chunks")
    if chunk_num < 0 or chunk_num >= upload.chunk_count:
        raise HTTPException(status_code=400, detail=f"invalid chunk number: {chunk_num}")
    if total is not None and total != upload.chunk_count:
        raise HTTPException(status_code=400, detail=f"chunk total mismatch: {total} != {upload.chunk_count}")

    data = file.file.read()
    expected = _expected_chunk_size(upload, chunk_num)
    if len(data) != expected:
        raise HTTPException(status_code=400, detail=f"chunk size mismatch: {len(data)} != {expected}")

    existing = db.scalar(
        select(UploadChunk.id).where(UploadChunk.session_id == upload.id, UploadChunk.chunk_index == chunk_num)
    )
    if existing is not None:
        duplicate_chunks_total.inc()
    else:
        result = storage.write_object(storage.chunk_key(upload.id, chunk_num), data)
        db.add(UploadChunk(session_id=upload.id, chunk_index=chunk_num, size_bytes=len(data), storage_key=result.key))
        upload.updated_at = utc_now()
        try:
            db.commit()
        except IntegrityError:
            # A concurrent request stored the same chunk first.
            db.rollback()
            duplicate_chunks_total.inc()
        else:
            chunks_received_total.inc()
            bytes_received_total.inc(len(data))

    received_count = db.scalar(select(func.count(UploadChunk.id)).where(UploadChunk.session_id == upload.id))
    if received_count == upload.chunk_count and claim_merge(db, upload.id):
        _audit_event(
            {"event": "audit", "action": "merge_scheduled", "upload_id": upload.id, "user_id": user.user_id}
        )
        schedule_merge(upload.id)
    return _ok(None)


@app.get(
    "/api/files/upload/progress",
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Upload session not found"}},
)
def upload_progress(
    file_id: str = Query(alias="fileId", min_length=1),
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    upload = _get_owned_session(db, file_id, user)
    bitmap, uploaded_size = _chunk_bitmap(db, upload)
    return _ok(
        UploadProgress(
            file_id=upload.id,
            status=upload.status,
            chunks=bitmap,
            chunk_count=upload.chunk_count,
            chunk_size=upload.chunk_size,
            uploaded_size=uploaded_size,
            total_size=upload.size,
            progress=round(uploaded_size / upload.size * 100, 2) if upload.size else 0.0,
            error_message=upload.error_message,
        )
    )


def _store_image(db: Session, upload: UploadFile, folder_id: str, user: AuthUser) -> FileResult:
    name = upload.filename or "image"
    mime_type = guess_mime_type(name, upload.content_type)
    if file_type_for(name, mime_type) is not FileType.image:
        return FileResult(name=name, success=False, error="unsupported image format")
    data = upload.file.read()
    if len(data) > settings.max_image_size_bytes:
        limit_mb = settings.max_image_size_bytes // (1024 * 1024)
        return FileResult(name=name, success=False, error=f"file exceeds the {limit_mb}MB limit")
    if not data:
        return FileResult(name=name, success=False, error="file is empty")

    corrected = correct_orientation(data)
    file_id = new_id()
    key = final_object_key(file_id, name)
    storage.write_object(key, corrected)
    stored = StoredFile(
        id=file_id,
        name=name,
        path=key,
        url=public_url(key),
        size=len(corrected),
        type=FileType.image.value,
        mime_type=mime_type,
        md5=hashlib.md5(corrected).hexdigest(),
        folder_id=folder_id,
        user_id=user.user_id,
    )
    if corrected is not data:
        stored.source_md5 = hashlib.md5(data).hexdigest()
        stored.source_size = len(data)
    db.add(stored)
    try:
        db.commit()
    except Exception:
        db.rollback()
        storage.delete_key(key)
        raise
    images_uploaded_total.inc()
    return FileResult(name=name, success=True, file_id=file_id, url=stored.url)


@app.post(
    "/api/files/upload/images",
    responses={**COMMON_ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Invalid batch"}},
)
def upload_images(
    request: Request,
    files: list[UploadFile] = File(...),
    folder_id: str = Form(default=""),
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    if not folder_id:
        raise HTTPException(status_code=400, detail="missing folder id")
    _require_folder(db, folder_id)

    result = BatchUploadResult()
    for upload in files:
        file_result = _store_image(db, upload, folder_id, user)
        result.files.append(file_result)
        if file_result.success:
            result.success_count += 1
        else:
            result.fail_count += 1
    _audit_event(
        {
            "event": "audit",
            "action": "upload_images",
            "request_id": _request_id(request),
            "user_id": user.user_id,
            "folder_id": folder_id,
            "success_count": result.success_count,
            "fail_count": result.fail_count,
        }
    )
    return _ok(result)


@app.get("/api/files", responses={**COMMON_ERROR_RESPONSES})
def list_files(
    folder_id: str | None = Query(default=None, alias="folderId"),
    file_type: str | None = Query(default=None, alias="type"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100, alias="pageSize"),
    _: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    conditions = [_folder_clause(StoredFile.folder_id, folder_id or None)]
    if file_type:
        conditions.append(StoredFile.type == file_type.upper())
    total = db.scalar(select(func.count(StoredFile.id)).where(*conditions))
    rows = db.scalars(
        select(StoredFile)
        .where(*conditions)
        .order_by(StoredFile.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return _ok([FileOut.model_validate(row) for row in rows], total=total)


def _get_file(db: Session, file_id: str, user: AuthUser) -> StoredFile:
    stored = db.get(StoredFile, file_id)
    if stored is None:
        raise HTTPException(status_code=404, detail="file not found")
    if stored.user_id != user.user_id and not user.is_admin:
        raise HTTPException(status_code=403, detail="forbidden for this file owner")
    return stored


@app.delete("/api/files/{file_id}", responses={**COMMON_ERROR_RESPONSES})
def delete_file(request: Request, file_id: str, user: AuthUser = Depends(require_user), db: Session = Depends(get_db)) -> dict:
    stored = _get_file(db, file_id, user)
    key = stored.path
    db.delete(stored)
    db.commit()
    storage.delete_key(key)
    _audit_event(
        {
            "event": "audit",
            "action": "file_delete",
            "request_id": _request_id(request),
            "file_id": file_id,
            "user_id": user.user_id,
        }
    )
    return _ok(None)


@app.post("/api/files/{file_id}/move", responses={**COMMON_ERROR_RESPONSES})
def move_file(
    file_id: str,
    payload: FileMoveRequest,
    user: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    stored = _get_file(db, file_id, user)
    target = _require_folder(db, payload.target_folder_id)
    stored.folder_id = target.id if target else None
    db.commit()
    return _ok(None)


def _child_path(parent: Folder | None, name: str) -> str:
    return f"{parent.path}/{name}" if parent else f"/{name}"


def _rewrite_descendant_paths(db: Session, old_path: str, new_path: str) -> None:
    descendants = db.scalars(select(Folder).where(Folder.path.startswith(old_path + "/", autoescape=True))).all()
    for child in descendants:
        child.path = new_path + child.path[len(old_path) :]


def _commit_folder(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail="a folder with this path already exists") from exc


def _get_folder(db: Session, folder_id: str) -> Folder:
    folder = db.get(Folder, folder_id)
    if folder is None:
        raise HTTPException(status_code=404, detail="folder not found")
    return folder


@app.post("/api/folders", status_code=201, responses={**COMMON_ERROR_RESPONSES})
def create_folder(payload: FolderCreate, _: AuthUser = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    parent = _require_folder(db, payload.parent_id)
    folder = Folder(
        name=payload.name,
        path=_child_path(parent, payload.name),
        description=payload.description,
        parent_id=parent.id if parent else None,
    )
    db.add(folder)
    _commit_folder(db)
    return _ok(FolderOut.model_validate(folder))


@app.get("/api/folders", responses={**COMMON_ERROR_RESPONSES})
def list_folders(
    parent_id: str | None = Query(default=None, alias="parentId"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200, alias="pageSize"),
    _: AuthUser = Depends(require_user),
    db: Session = Depends(get_db),
) -> dict:
    condition = _folder_clause(Folder.parent_id, parent_id or None)
    total = db.scalar(select(func.count(Folder.id)).where(condition))
    rows = db.scalars(
        select(Folder).where(condition).order_by(Folder.name).offset((page - 1) * page_size).limit(page_size)
    ).all()
    return _ok([FolderOut.model_validate(row) for row in rows], total=total)


@app.get("/api/folders/{folder_id}", responses={**COMMON_ERROR_RESPONSES})
def get_folder(folder_id: str, _: AuthUser = Depends(require_user), db: Session = Depends(get_db)) -> dict:
    return _ok(FolderOut.model_validate(_get_folder(db, folder_id)))


@app.patch("/api/folders/{folder_id}", responses={**COMMON_ERROR_RESPONSES})
def update_folder(
    folder_id: str,
    payload: FolderUpdate,
    _: AuthUser = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    folder = _get_folder(db, folder_id)
    if payload.description is not None:
        folder.description = payload.description
    if payload.name and payload.name != folder.name:
        parent = db.get(Folder, folder.parent_id) if folder.parent_id else None
        old_path = folder.path
        folder.name = payload.name
        folder.path = _child_path(parent, payload.name)
        _rewrite_descendant_paths(db, old_path, folder.path)
    _commit_folder(db)
    return _ok(FolderOut.model_validate(folder))


@app.delete("/api/folders/{folder_id}", responses={**COMMON_ERROR_RESPONSES})
def delete_folder(folder_id: str, _: AuthUser = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    folder = _get_folder(db, folder_id)
    has_children = db.scalar(select(func.count(Folder.id)).where(Folder.parent_id == folder_id))
    has_files = db.scalar(select(func.count(StoredFile.id)).where(StoredFile.folder_id == folder_id))
    if has_children or has_files:
        raise HTTPException(status_code=409, detail="folder is not empty")
    db.delete(folder)
    db.commit()
    return _ok(None)


@app.post("/api/folders/{folder_id}/move", responses={**COMMON_ERROR_RESPONSES})
def move_folder(
    folder_id: str,
    payload: FolderMoveRequest,
    _: AuthUser = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    folder = _get_folder(db, folder_id)
    target = _require_folder(db, payload.target_parent_id)
    if target is not None and (target.id == folder.id or target.path.startswith(folder.path + "/")):
        raise HTTPException(status_code=400, detail="cannot move a folder into itself or a descendant")
    old_path = folder.path
    folder.parent_id = target.id if target else None
    folder.path = _child_path(target, folder.name)
    _rewrite_descendant_paths(db, old_path, folder.path)
    _commit_folder(db)
    return _ok(None)


@app.get("/api/storage/stats", responses={**COMMON_ERROR_RESPONSES})
def storage_stats(_: AuthUser = Depends(require_user), db: Session = Depends(get_db)) -> dict:
    total_files, total_size = db.execute(select(func.count(StoredFile.id), func.coalesce(func.sum(StoredFile.size), 0))).one()
    counts = dict(db.execute(select(StoredFile.type, func.count(StoredFile.id)).group_by(StoredFile.type)).all())
    return _ok(
        StorageStats(
            total_files=total_files,
            total_size=total_size,
            image_count=counts.get(FileType.image.value, 0),
            video_count=counts.get(FileType.video.value, 0),
            folder_count=db.scalar(select(func.count(Folder.id))),
        )
    )
