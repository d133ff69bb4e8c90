from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from mediastore.auth import ACCESS_TOKEN_TYPE, issue_token
from mediastore.config import settings
from mediastore.db import Base, SessionLocal, engine
from mediastore.main import app
from mediastore.maintenance import cleanup_once
from mediastore.models import UploadChunk, UploadSession


class _FakeStorage:
    def __init__(self) -> None:
        self.keys: set[str] = set()

    def delete_key(self, key: str) -> None:
        self.keys.discard(key)

    def list_keys(self, prefix: str = "") -> list[str]:
        return sorted([k for k in self.keys if k.startswith(prefix)])

    def delete_prefix(self, prefix: str) -> int:
        keys = self.list_keys(prefix)
        for key in keys:
            self.delete_key(key)
        return len(keys)


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _session(session_id: str, updated_at: datetime, status: str = "uploading") -> UploadSession:
    return UploadSession(
        id=session_id,
        owner_id="admin",
        name=f"{session_id}.mp4",
        size=10,
        chunk_size=5,
        chunk_count=2,
        status=status,
        created_at=updated_at,
        updated_at=updated_at,
    )


def test_cleanup_deletes_stale_uploads_and_orphans(monkeypatch) -> None:
    _reset_state()
    fake_storage = _FakeStorage()
    fake_storage.keys.update(
        {
            "chunks/stale-upload/0",
            "chunks/fresh-upload/0",
            "chunks/orphan-upload/0",
            "files/2026/10/19/done.mp4",
        }
    )
    monkeypatch.setattr("mediastore.maintenance.storage", fake_storage)

    old = datetime.now(timezone.utc) - timedelta(days=2)
    now = datetime.now(timezone.utc)
    with SessionLocal() as db:
        db.add(_session("stale-upload", old))
        db.add(_session("fresh-upload", now))
        db.add(_session("old-but-merging", old, status="merging"))
        db.add(UploadChunk(session_id="stale-upload", chunk_index=0, size_bytes=5, storage_key="chunks/stale-upload/0"))
        db.add(UploadChunk(session_id="fresh-upload", chunk_index=0, size_bytes=5, storage_key="chunks/fresh-upload/0"))
        db.commit()

    with SessionLocal() as db:
        stats = cleanup_once(db)
        assert stats["stale_uploads_deleted"] == 1
        assert stats["storage_keys_deleted"] == 2

    with SessionLocal() as db:
        assert db.get(UploadSession, "stale-upload") is None
        assert db.get(UploadSession, "fresh-upload") is not None
        assert db.get(UploadSession, "old-but-merging") is not None

    assert fake_storage.keys == {"chunks/fresh-upload/0", "files/2026/10/19/done.mp4"}


class _BrokenListingStorage(_FakeStorage):
    def list_keys(self, prefix: str = "") -> list[str]:
        raise OSError("listing unavailable")


def test_cleanup_logs_storage_errors_and_still_drops_rows(monkeypatch, caplog) -> None:
    _reset_state()
    monkeypatch.setattr("mediastore.maintenance.storage", _BrokenListingStorage())
    caplog.set_level("WARNING", logger="mediastore.maintenance")

    old = datetime.now(timezone.utc) - timedelta(days=2)
    with SessionLocal() as db:
        db.add(_session("stale-upload", old))
        db.commit()

    with SessionLocal() as db:
        stats = cleanup_once(db)

    assert stats == {"stale_uploads_deleted": 1, "storage_keys_deleted": 0}
    with SessionLocal() as db:
        assert db.get(UploadSession, "stale-upload") is None
    messages = [record.getMessage() for record in caplog.records if record.name == "mediastore.maintenance"]
    assert any('"action":"delete_prefix"' in message for message in messages)
    assert any('"action":"list_keys"' in message for message in messages)


def test_sweep_keeps_chunk_written_before_its_row(monkeypatch) -> None:
    _reset_state()
    fake_storage = _FakeStorage()
    fake_storage.keys.update(
        {
            "chunks/live-upload/0",
            "chunks/live-upload/1",
            "chunks/merging-upload/0",
            "chunks/done-upload/0",
        }
    )
    monkeypatch.setattr("mediastore.maintenance.storage", fake_storage)

    now = datetime.now(timezone.utc)
    with SessionLocal() as db:
        db.add(_session("live-upload", now))
        db.add(_session("merging-upload", now, status="merging"))
        db.add(_session("done-upload", now, status="completed"))
        db.add(UploadChunk(session_id="live-upload", chunk_index=0, size_bytes=5, storage_key="chunks/live-upload/0"))
        db.commit()

    with SessionLocal() as db:
        stats = cleanup_once(db)

    assert stats == {"stale_uploads_deleted": 0, "storage_keys_deleted": 1}
    assert fake_storage.keys == {"chunks/live-upload/0", "chunks/live-upload/1", "chunks/merging-upload/0"}


def test_failed_session_expires_after_ttl(monkeypatch) -> None:
    _reset_state()
    fake_storage = _FakeStorage()
    fake_storage.keys.add("chunks/failed-upload/0")
    monkeypatch.setattr("mediastore.maintenance.storage", fake_storage)

    old = datetime.now(timezone.utc) - timedelta(days=2)
    with SessionLocal() as db:
        db.add(_session("failed-upload", old, status="failed"))
        db.add(UploadChunk(session_id="failed-upload", chunk_index=0, size_bytes=5, storage_key="chunks/failed-upload/0"))
        db.commit()

    with SessionLocal() as db:
        stats = cleanup_once(db)

    assert stats == {"stale_uploads_deleted": 1, "storage_keys_deleted": 1}
    assert fake_storage.keys == set()
    with SessionLocal() as db:
        assert db.get(UploadSession, "failed-upload") is None


def test_storing_a_chunk_keeps_slow_upload_alive(monkeypatch) -> None:
    _reset_state()
    monkeypatch.setattr(settings, "merge_in_background", False)
    monkeypatch.setattr(settings, "stale_upload_ttl_seconds", 3600)
    old = datetime.now(timezone.utc) - timedelta(days=2)
    with SessionLocal() as db:
        db.add(_session("slow-upload", old))
        db.commit()

    with TestClient(app) as client:
        response = client.post(
            "/api/files/upload/chunk",
            params={"file_id": "slow-upload", "chunk_num": 0, "total": 2},
            files={"file": ("chunk-0", b"01234", "application/octet-stream")},
            headers={"Authorization": f"Bearer {issue_token('admin', ACCESS_TOKEN_TYPE)}"},
        )
        assert response.status_code == 200, response.text

    with SessionLocal() as db:
        stats = cleanup_once(db)
        assert stats["stale_uploads_deleted"] == 0
        upload = db.get(UploadSession, "slow-upload")
        assert upload is not None
        assert upload.status == "uploading"
        assert upload.updated_at.replace(tzinfo=timezone.utc) > old
