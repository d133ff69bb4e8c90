from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from mediastore.config import settings
from mediastore.logs import json_logger, log_event
from mediastore.models import UploadChunk, UploadSession, UploadStatus
from mediastore.storage import storage

maintenance_logger = json_logger("mediastore.maintenance")

# Sessions whose chunk objects may still be written or read.
ACTIVE_STATUSES = (UploadStatus.uploading.value, UploadStatus.merging.value)
EXPIRING_STATUSES = (UploadStatus.uploading.value, UploadStatus.failed.value)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _storage_warning(action: str, target: str, exc: Exception) -> None:
    log_event(
        maintenance_logger,
        {"event": "cleanup_storage_error", "action": action, "target": target, "detail": str(exc)},
        logging.WARNING,
    )


def _session_id_from_key(key: str) -> str | None:
    parts = key.split("/")
    if len(parts) < 3 or parts[0] != "chunks" or not parts[1]:
        return None
    return parts[1]


def cleanup_once(db: Session) -> dict[str, int]:
    """Drop expired sessions, then sweep chunk objects no live session can use.

    A session expires when it has been ``uploading`` or ``failed`` with no
    activity for the TTL; every stored chunk refreshes ``updated_at``. An
    unreferenced chunk object is only swept once its session is gone or
    finished, since an uploading session writes the object before its row.
    Storage failures are logged and left for the next run.
    """
    stale_before = _utc_now() - timedelta(seconds=settings.stale_upload_ttl_seconds)

    stale_ids = list(
        db.scalars(
            select(UploadSession.id).where(
                UploadSession.status.in_(EXPIRING_STATUSES),
                UploadSession.updated_at < stale_before,
            )
        ).all()
    )

    deleted_storage_keys = 0
    for session_id in stale_ids:
        prefix = f"chunks/{session_id}/"
        try:
            deleted_storage_keys += storage.delete_prefix(prefix)
        except Exception as exc:
            _storage_warning("delete_prefix", prefix, exc)

    if stale_ids:
        db.execute(delete(UploadChunk).where(UploadChunk.session_id.in_(stale_ids)))
        db.execute(delete(UploadSession).where(UploadSession.id.in_(stale_ids)))

    referenced_keys = set(db.scalars(select(UploadChunk.storage_key)).all())
    active_ids = set(db.scalars(select(UploadSession.id).where(UploadSession.status.in_(ACTIVE_STATUSES))).all())
    try:
        chunk_keys = storage.list_keys("chunks/")
    except Exception as exc:
        _storage_warning("list_keys", "chunks/", exc)
        chunk_keys = []

    for key in chunk_keys:
        if key in referenced_keys or _session_id_from_key(key) in active_ids:
            continue
        try:
            storage.delete_key(key)
            deleted_storage_keys += 1
        except Exception as exc:
            _storage_warning("delete_key", key, exc)

    db.commit()
    return {
        "stale_uploads_deleted": len(stale_ids),
        "storage_keys_deleted": deleted_storage_keys,
    }
