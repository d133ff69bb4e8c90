import time
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock

from sqlalchemy import select, update

from mediastore.config import settings
from mediastore.db import SessionLocal
from mediastore.logs import audit_logger, log_event
from mediastore.media import file_type_for, final_object_key, is_md5_digest, public_url
from mediastore.metrics import merge_duration_seconds, merges_completed_total, merges_failed_total, merges_inflight
from mediastore.models import StoredFile, UploadChunk, UploadSession, UploadStatus
from mediastore.storage import storage
from mediastore.tracing import tracer


class MergeError(Exception):
    pass


def claim_merge(db, session_id: str) -> bool:
    """Flip a fully received session to merging; only one caller ever wins."""
    result = db.execute(
        update(UploadSession)
        .where(UploadSession.id == session_id, UploadSession.status == UploadStatus.uploading.value)
        .values(status=UploadStatus.merging.value)
    )
    db.commit()
    return result.rowcount == 1


def merge_upload(session_id: str) -> str:
    started = time.perf_counter()
    with tracer.start_as_current_span("merge_upload"), SessionLocal() as db:
        upload = db.get(UploadSession, session_id)
        if upload is None or upload.status != UploadStatus.merging.value:
            return upload.status if upload else "missing"
        final_key = final_object_key(upload.id, upload.name)
        try:
            chunks = list(
                db.scalars(
                    select(UploadChunk).where(UploadChunk.session_id == session_id).order_by(UploadChunk.chunk_index)
                ).all()
            )
            if len(chunks) != upload.chunk_count:
                raise MergeError(f"expected {upload.chunk_count} chunks, found {len(chunks)}")
            digest = storage.merge_objects([chunk.storage_key for chunk in chunks], final_key)
            if is_md5_digest(upload.md5) and digest != upload.md5.lower():
                storage.delete_key(final_key)
                raise MergeError(f"md5 mismatch: expected {upload.md5.lower()}, got {digest}")

            db.add(
                StoredFile(
                    id=upload.id,
                    name=upload.name,
                    path=final_key,
                    url=public_url(final_key),
                    size=upload.size,
                    type=file_type_for(upload.name, upload.mime_type).value,
                    mime_type=upload.mime_type,
                    md5=digest,
                    folder_id=upload.folder_id or None,
                    user_id=upload.owner_id,
                )
            )
            for chunk in chunks:
                db.delete(chunk)
            upload.status = UploadStatus.completed.value
            upload.stored_file_id = upload.id
            upload.error_message = None
            db.commit()
        except Exception as exc:
            db.rollback()
            upload = db.get(UploadSession, session_id)
            upload.status = UploadStatus.failed.value
            upload.error_message = str(exc)
            db.commit()
            merges_failed_total.inc()
            log_event(
                audit_logger,
                {"event": "audit", "action": "merge_failed", "upload_id": session_id, "detail": str(exc)},
            )
            return upload.status

    merge_duration_seconds.observe(time.perf_counter() - started)
    merges_completed_total.inc()
    storage.delete_prefix(f"chunks/{session_id}/")
    log_event(
        audit_logger,
        {"event": "audit", "action": "merge_completed", "upload_id": session_id, "key": final_key},
    )
    return UploadStatus.completed.value


class MergeExecutor:
    def __init__(self, workers: int) -> None:
        self.executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="merge")
        self._lock = Lock()
        self._inflight = 0

    def _on_start(self) -> None:
        with self._lock:
            self._inflight += 1
            merges_inflight.set(self._inflight)

    def _on_end(self) -> None:
        with self._lock:
            self._inflight -= 1
            merges_inflight.set(self._inflight)

    def submit(self, session_id: str) -> Future:
        def wrapped() -> str:
            self._on_start()
            try:
                return merge_upload(session_id)
            finally:
                self._on_end()

        return self.executor.submit(wrapped)


executor = MergeExecutor(workers=settings.merge_workers)


def schedule_merge(session_id: str) -> None:
    if settings.merge_in_background:
        executor.submit(session_id)
    else:
        merge_upload(session_id)
