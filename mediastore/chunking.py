import asyncio
import hashlib
import logging
import math
import time
from dataclasses import dataclass
from pathlib import Path

from mediastore.config import settings
from mediastore.logs import log_event, upload_logger
from mediastore.media import file_type_for, guess_mime_type
from mediastore.models import FileType


@dataclass(frozen=True)
class UploadCandidate:
    path: Path
    name: str
    size: int
    mime_type: str
    folder_id: str = ""

    @classmethod
    def from_path(cls, path: str | Path, folder_id: str = "", mime_type: str | None = None) -> "UploadCandidate":
        path = Path(path)
        return cls(
            path=path,
            name=path.name,
            size=path.stat().st_size,
            mime_type=guess_mime_type(path.name, mime_type),
            folder_id=folder_id,
        )

    @property
    def mime_class(self) -> str | None:
        file_type = file_type_for(self.name, self.mime_type)
        if file_type is FileType.image:
            return "image"
        if file_type is FileType.video:
            return "video"
        return None


@dataclass(frozen=True)
class Chunk:
    index: int
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class ChunkPlan:
    size: int
    chunk_size: int
    chunks: tuple[Chunk, ...]

    @property
    def count(self) -> int:
        return len(self.chunks)

    def __iter__(self):
        return iter(self.chunks)

    def __len__(self) -> int:
        return len(self.chunks)

    def __getitem__(self, index: int) -> Chunk:
        return self.chunks[index]


def plan_chunks(size: int, chunk_size: int) -> ChunkPlan:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if size < 0:
        raise ValueError(f"size must not be negative, got {size}")
    count = math.ceil(size / chunk_size)
    chunks = tuple(Chunk(index=i, start=i * chunk_size, end=min((i + 1) * chunk_size, size)) for i in range(count))
    return ChunkPlan(size=size, chunk_size=chunk_size, chunks=chunks)


def _md5_file(path: Path, block_size: int) -> str:
    digest = hashlib.md5()
    with path.open("rb") as handle:
        while True:
            block = handle.read(block_size)
            if not block:
                break
            digest.update(block)
    return digest.hexdigest()


async def compute_md5(candidate: UploadCandidate, block_size: int | None = None) -> str:
    """MD5 of the candidate's bytes, read in sequential windows off the event loop.

    An unreadable file yields a synthetic ``name-size-epoch_ms`` identifier
    instead; the upload still proceeds but can never be deduplicated.
    """
    block_size = block_size or settings.md5_read_block_bytes
    try:
        return await asyncio.to_thread(_md5_file, candidate.path, block_size)
    except OSError as exc:
        fallback = f"{candidate.name}-{candidate.size}-{int(time.time() * 1000)}"
        log_event(
            upload_logger,
            {"event": "digest_fallback", "name": candidate.name, "detail": str(exc), "digest": fallback},
            logging.WARNING,
        )
        return fallback


def _read_range(path: Path, start: int, length: int) -> bytes:
    with path.open("rb") as handle:
        handle.seek(start)
        data = handle.read(length)
    if len(data) != length:
        raise OSError(f"short read from {path}: expected {length} bytes, got {len(data)}")
    return data


async def read_chunk(candidate: UploadCandidate, chunk: Chunk) -> bytes:
    return await asyncio.to_thread(_read_range, candidate.path, chunk.start, chunk.length)


async def read_file(candidate: UploadCandidate) -> bytes:
    return await asyncio.to_thread(candidate.path.read_bytes)
