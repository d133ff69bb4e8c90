from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ErrorResponse(BaseModel):
    code: int
    message: str
    error_code: str | None = None
    request_id: str | None = None


class LoginRequest(CamelModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(min_length=1)


class TokenPair(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class CheckUploadRequest(CamelModel):
    name: str = Field(min_length=1)
    size: int = Field(gt=0)
    folder_id: str = ""
    md5: str = ""


class UploadCheck(CamelModel):
    exists: bool
    file_id: str
    chunk_size: int = 0
    chunk_count: int = 0
    status: str = ""
    url: str | None = None
    md5: str = ""


class InitUploadRequest(CamelModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    size: int = Field(gt=0)
    folder_id: str = ""
    md5: str = ""
    mime_type: str = "application/octet-stream"


class InitUploadResult(CamelModel):
    success: bool
    chunks: list[int] = Field(default_factory=list)


class UploadProgress(CamelModel):
    file_id: str
    status: str
    chunks: list[int] = Field(default_factory=list)
    chunk_count: int = 0
    chunk_size: int = 0
    uploaded_size: int = 0
    total_size: int = 0
    progress: float = 0.0
    error_message: str | None = None


class FileResult(CamelModel):
    name: str
    success: bool
    error: str = ""
    file_id: str = ""
    url: str = ""


class BatchUploadResult(CamelModel):
    success_count: int = 0
    fail_count: int = 0
    files: list[FileResult] = Field(default_factory=list)


class FileOut(CamelModel):
    id: str
    name: str
    url: str
    size: int
    type: str
    mime_type: str
    md5: str
    folder_id: str | None = None
    user_id: str
    created_at: datetime


class FileMoveRequest(CamelModel):
    target_folder_id: str | None = None


class FolderCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    parent_id: str | None = None


class FolderUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None


class FolderMoveRequest(CamelModel):
    target_parent_id: str | None = None


class FolderOut(CamelModel):
    id: str
    name: str
    path: str
    description: str | None = None
    parent_id: str | None = None
    created_at: datetime
    updated_at: datetime


class StorageStats(CamelModel):
    total_files: int = 0
    total_size: int = 0
    image_count: int = 0
    video_count: int = 0
    folder_count: int = 0
