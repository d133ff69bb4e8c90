from dataclasses import dataclass, field
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from mediastore.errors import MalformedResponse
from mediastore.http_client import ApiClient
from mediastore.schemas import (
    BatchUploadResult,
    FileOut,
    FolderOut,
    InitUploadResult,
    StorageStats,
    UploadCheck,
    UploadProgress,
)


ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse(model: type[ModelT], envelope: dict) -> ModelT:
    try:
        return model.model_validate(envelope.get("data"))
    except ValidationError as exc:
        raise MalformedResponse(f"malformed {model.__name__} in response: {exc.errors()[0]['msg']}") from exc


def _parse_list(model: type[ModelT], envelope: dict) -> list[ModelT]:
    items = envelope.get("data")
    if not isinstance(items, list):
        raise MalformedResponse(f"expected a list of {model.__name__} in response")
    return [_parse(model, {"data": item}) for item in items]


@dataclass
class FilePage:
    items: list[FileOut] = field(default_factory=list)
    total: int = 0


class ListingCache:
    """File listings per folder plus storage stats, dropped on writes."""

    def __init__(self) -> None:
        self._files: dict[str | None, dict[tuple, FilePage]] = {}
        self._stats: StorageStats | None = None

    def get_files(self, folder_id: str | None, key: tuple) -> FilePage | None:
        return self._files.get(folder_id, {}).get(key)

    def put_files(self, folder_id: str | None, key: tuple, page: FilePage) -> None:
        self._files.setdefault(folder_id, {})[key] = page

    def get_stats(self) -> StorageStats | None:
        return self._stats

    def put_stats(self, stats: StorageStats) -> None:
        self._stats = stats

    def folders_containing(self, file_id: str) -> set[str | None]:
        return {
            folder_id
            for folder_id, pages in self._files.items()
            if any(item.id == file_id for page in pages.values() for item in page.items)
        }

    def invalidate_folder(self, folder_id: str | None) -> None:
        self._files.pop(folder_id or None, None)
        self._stats = None

    def clear(self) -> None:
        self._files.clear()
        self._stats = None


class StorageClient:
    def __init__(self, api: ApiClient, cache: ListingCache | None = None) -> None:
        self.api = api
        self.cache = cache or ListingCache()

    async def check_file_exists(self, name: str, size: int, folder_id: str, md5: str) -> UploadCheck:
        envelope = await self.api.request(
            "POST",
            "/files/upload/check",
            json={"name": name, "size": size, "folderId": folder_id, "md5": md5},
        )
        return _parse(UploadCheck, envelope)

    async def init_upload(
        self,
        file_id: str,
        name: str,
        size: int,
        folder_id: str,
        md5: str,
        mime_type: str = "application/octet-stream",
    ) -> InitUploadResult:
        envelope = await self.api.request(
            "POST",
            "/files/upload/init",
            json={
                "id": file_id,
                "name": name,
                "size": size,
                "folderId": folder_id,
                "md5": md5,
                "mimeType": mime_type,
            },
        )
        return _parse(InitUploadResult, envelope)

    async def upload_chunk(self, file_id: str, chunk_num: int, total: int, data: bytes) -> None:
        await self.api.request(
            "POST",
            "/files/upload/chunk",
            params={"file_id": file_id, "chunk_num": chunk_num, "total": total},
            files={"file": (f"chunk-{chunk_num}", data, "application/octet-stream")},
        )

    async def get_upload_progress(self, file_id: str) -> UploadProgress:
        envelope = await self.api.request("GET", "/files/upload/progress", params={"fileId": file_id})
        return _parse(UploadProgress, envelope)

    async def upload_images(self, files: list[tuple[str, bytes, str]], folder_id: str) -> BatchUploadResult:
        envelope = await self.api.request(
            "POST",
            "/files/upload/images",
            data={"folder_id": folder_id},
            files=[("files", item) for item in files],
        )
        return _parse(BatchUploadResult, envelope)

    async def list_files(
        self,
        folder_id: str | None = None,
        page: int = 1,
        page_size: int = 20,
        file_type: str | None = None,
    ) -> FilePage:
        key = (page, page_size, file_type)
        cached = self.cache.get_files(folder_id, key)
        if cached is not None:
            return cached
        params = {"page": page, "pageSize": page_size}
        if folder_id:
            params["folderId"] = folder_id
        if file_type:
            params["type"] = file_type
        envelope = await self.api.request("GET", "/files", params=params)
        result = FilePage(
            items=_parse_list(FileOut, envelope),
            total=envelope.get("total", 0),
        )
        self.cache.put_files(folder_id, key, result)
        return result

    async def delete_file(self, file_id: str, folder_id: str | None = None) -> None:
        await self.api.request("DELETE", f"/files/{file_id}")
        for cached_folder in self.cache.folders_containing(file_id) | {folder_id}:
            self.cache.invalidate_folder(cached_folder)

    async def move_file(self, file_id: str, target_folder_id: str | None) -> None:
        affected = self.cache.folders_containing(file_id)
        await self.api.request("POST", f"/files/{file_id}/move", json={"targetFolderId": target_folder_id})
        for folder_id in affected | {target_folder_id}:
            self.cache.invalidate_folder(folder_id)

    async def create_folder(
        self, name: str, parent_id: str | None = None, description: str | None = None
    ) -> FolderOut:
        envelope = await self.api.request(
            "POST",
            "/folders",
            json={"name": name, "parentId": parent_id, "description": description},
        )
        self.cache.invalidate_folder(parent_id)
        return _parse(FolderOut, envelope)

    async def list_folders(
        self, parent_id: str | None = None, page: int = 1, page_size: int = 50
    ) -> tuple[list[FolderOut], int]:
        params = {"page": page, "pageSize": page_size}
        if parent_id:
            params["parentId"] = parent_id
        envelope = await self.api.request("GET", "/folders", params=params)
        return _parse_list(FolderOut, envelope), envelope.get("total", 0)

    async def get_folder(self, folder_id: str) -> FolderOut:
        envelope = await self.api.request("GET", f"/folders/{folder_id}")
        return _parse(FolderOut, envelope)

    async def update_folder(
        self, folder_id: str, name: str | None = None, description: str | None = None
    ) -> FolderOut:
        payload = {}
        if name is not None:
            payload["name"] = name
        if description is not None:
            payload["description"] = description
        envelope = await self.api.request("PATCH", f"/folders/{folder_id}", json=payload)
        return _parse(FolderOut, envelope)

    async def delete_folder(self, folder_id: str) -> None:
        await self.api.request("DELETE", f"/folders/{folder_id}")
        self.cache.invalidate_folder(folder_id)

    async def move_folder(self, folder_id: str, target_parent_id: str | None) -> None:
        await self.api.request("POST", f"/folders/{folder_id}/move", json={"targetParentId": target_parent_id})

    async def get_stats(self) -> StorageStats:
        cached = self.cache.get_stats()
        if cached is not None:
            return cached
        envelope = await self.api.request("GET", "/storage/stats")
        stats = _parse(StorageStats, envelope)
        self.cache.put_stats(stats)
        return stats
