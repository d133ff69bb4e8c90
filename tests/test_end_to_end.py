import asyncio
import hashlib
import shutil
from pathlib import Path

import httpx

from mediastore.chunking import UploadCandidate
from mediastore.config import settings
from mediastore.db import Base, engine
from mediastore.http_client import ApiClient
from mediastore.main import app
from mediastore.session import AuthSession
from mediastore.storage import storage
from mediastore.storage_client import StorageClient
from mediastore.uploader import UploadOrchestrator

VIDEO_BYTES = b"0123456789abcdefghij-video"
IMAGE_BYTES = b"\x89PNG\r\n\x1a\n-image"


def _reset_state() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    shutil.rmtree(Path(settings.storage_root), ignore_errors=True)


def test_client_uploads_through_service_and_repeat_is_instant(tmp_path: Path, monkeypatch) -> None:
    _reset_state()
    monkeypatch.setattr(settings, "chunk_size_bytes", 8)
    monkeypatch.setattr(settings, "merge_in_background", False)
    video_path = tmp_path / "clip.mp4"
    video_path.write_bytes(VIDEO_BYTES)
    image_path = tmp_path / "cover.png"
    image_path.write_bytes(IMAGE_BYTES)

    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with ApiClient(AuthSession(), base_url="http://testserver/api", transport=transport) as api:
            await api.login("admin", "admin")
            client = StorageClient(api)
            folder = await client.create_folder("uploads")
            orchestrator = UploadOrchestrator(client, poll_interval=0)

            first = await orchestrator.run([video_path, image_path], folder.id)
            listing = await client.list_files(folder.id)
            second = await orchestrator.run(
                [UploadCandidate.from_path(video_path), UploadCandidate.from_path(image_path)], folder.id
            )
            stats = await client.get_stats()
            return first, listing, second, stats

    first, listing, second, stats = asyncio.run(scenario())

    assert first.status == "success", [n.message for n in first.notices]
    assert sorted(first.uploaded) == ["clip.mp4", "cover.png"]
    assert listing.total == 2
    by_name = {item.name: item for item in listing.items}
    assert by_name["clip.mp4"].md5 == hashlib.md5(VIDEO_BYTES).hexdigest()
    assert storage.read_object(by_name["clip.mp4"].url.removeprefix("/uploads/")) == VIDEO_BYTES
    assert storage.read_object(by_name["cover.png"].url.removeprefix("/uploads/")) == IMAGE_BYTES

    assert second.status == "success"
    assert sum("instant upload" in n.message for n in second.notices) == 2
    assert stats.total_files == 2
    assert stats.video_count == 1


def test_renamed_copy_is_stored_under_its_own_name(tmp_path: Path) -> None:
    _reset_state()
    first_path = tmp_path / "a.png"
    first_path.write_bytes(IMAGE_BYTES)
    second_path = tmp_path / "b.png"
    second_path.write_bytes(IMAGE_BYTES)

    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with ApiClient(AuthSession(), base_url="http://testserver/api", transport=transport) as api:
            await api.login("admin", "admin")
            client = StorageClient(api)
            folder = await client.create_folder("covers")
            orchestrator = UploadOrchestrator(client, poll_interval=0)
            first = await orchestrator.run([first_path], folder.id)
            second = await orchestrator.run([second_path], folder.id)
            listing = await client.list_files(folder.id)
            return first, second, listing

    first, second, listing = asyncio.run(scenario())

    assert first.uploaded == ["a.png"]
    assert second.status == "success"
    assert second.uploaded == ["b.png"]
    assert not any("instant upload" in n.message for n in second.notices)
    assert sorted(item.name for item in listing.items) == ["a.png", "b.png"]
