import asyncio
import hashlib
import json
from pathlib import Path

import pytest

from mediastore.chunking import UploadCandidate, compute_md5, plan_chunks, read_chunk
from mediastore.config import MIB


@pytest.mark.parametrize(
    ("size", "chunk_size", "expected_count"),
    [(1, 4, 1), (4, 4, 1), (5, 4, 2), (11, 4, 3), (12 * MIB, 5 * MIB, 3), (10 * MIB, 5 * MIB, 2)],
)
def test_plan_covers_whole_range_without_overlap(size: int, chunk_size: int, expected_count: int) -> None:
    plan = plan_chunks(size, chunk_size)

    assert plan.count == expected_count
    assert plan[0].start == 0
    assert plan[plan.count - 1].end == size
    for previous, current in zip(plan, list(plan)[1:]):
        assert previous.end == current.start
    assert sum(chunk.length for chunk in plan) == size
    assert all(0 < chunk.length <= chunk_size for chunk in plan)


def test_plan_rejects_non_positive_chunk_size() -> None:
    with pytest.raises(ValueError):
        plan_chunks(10, 0)


def test_candidate_mime_class(tmp_path: Path) -> None:
    for name, expected in (("a.png", "image"), ("b.MP4", "video"), ("c.txt", None)):
        path = tmp_path / name
        path.write_bytes(b"x")
        assert UploadCandidate.from_path(path).mime_class == expected


def test_compute_md5_reads_in_windows(tmp_path: Path) -> None:
    path = tmp_path / "clip.mp4"
    data = bytes(range(256)) * 40
    path.write_bytes(data)
    candidate = UploadCandidate.from_path(path, folder_id="f1")

    digest = asyncio.run(compute_md5(candidate, block_size=1000))

    assert digest == hashlib.md5(data).hexdigest()
    assert candidate.folder_id == "f1"
    assert candidate.size == len(data)


def test_compute_md5_falls_back_to_synthetic_identifier(tmp_path: Path, caplog) -> None:
    caplog.set_level("WARNING", logger="mediastore.upload")
    candidate = UploadCandidate(path=tmp_path / "gone.mp4", name="gone.mp4", size=42, mime_type="video/mp4")

    digest = asyncio.run(compute_md5(candidate))

    name, size, stamp = digest.rsplit("-", 2)
    assert (name, size) == ("gone.mp4", "42")
    assert stamp.isdigit()
    events = [json.loads(record.message) for record in caplog.records if record.name == "mediastore.upload"]
    assert events[-1]["event"] == "digest_fallback"


def test_read_chunk_returns_byte_range(tmp_path: Path) -> None:
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"abcdefghijk")
    candidate = UploadCandidate.from_path(path)
    plan = plan_chunks(candidate.size, 4)

    parts = [asyncio.run(read_chunk(candidate, chunk)) for chunk in plan]

    assert parts == [b"abcd", b"efgh", b"ijk"]
