import hashlib
from pathlib import Path

from mediastore.storage import LocalObjectStorage


def test_local_storage_write_and_read(tmp_path: Path) -> None:
    storage = LocalObjectStorage(str(tmp_path))

    key = storage.chunk_key("session-123", 2)
    result = storage.write_object(key, b"payload")
    assert result.key == "chunks/session-123/2"
    assert result.etag is None
    assert storage.read_object(result.key) == b"payload"


def test_local_storage_merges_in_order_and_returns_md5(tmp_path: Path) -> None:
    storage = LocalObjectStorage(str(tmp_path))
    keys = [storage.write_object(storage.chunk_key("s1", i), part).key for i, part in enumerate((b"ab", b"cd", b"e"))]

    digest = storage.merge_objects(keys, "files/2026/10/19/s1.mp4")

    assert storage.read_object("files/2026/10/19/s1.mp4") == b"abcde"
    assert digest == hashlib.md5(b"abcde").hexdigest()
    assert not (tmp_path / "files/2026/10/19/s1.mp4.tmp").exists()


def test_local_storage_list_and_delete_prefix(tmp_path: Path) -> None:
    storage = LocalObjectStorage(str(tmp_path))
    storage.write_object("chunks/a/0", b"1")
    storage.write_object("chunks/a/1", b"2")
    storage.write_object("chunks/b/0", b"3")

    assert sorted(storage.list_keys("chunks/")) == ["chunks/a/0", "chunks/a/1", "chunks/b/0"]
    assert storage.delete_prefix("chunks/a/") == 2
    assert storage.list_keys("chunks/") == ["chunks/b/0"]
    storage.delete_key("chunks/missing")
