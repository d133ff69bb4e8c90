class UploadError(Exception):
    """Base class for everything the upload client raises."""


class ApiError(UploadError):
    def __init__(self, message: str, status_code: int | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    @property
    def transient(self) -> bool:
        # No status means the request never got an HTTP answer.
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code == 429


class AuthenticationError(ApiError):
    pass


class MalformedResponse(ApiError):
    """The service answered, but the payload does not match the expected shape."""

    @property
    def transient(self) -> bool:
        return False


class ValidationRejected(UploadError):
    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"{name}: {reason}")
        self.name = name
        self.reason = reason


class ChunkTransferError(UploadError):
    def __init__(self, failed_indexes: list[int], cause: Exception | None = None) -> None:
        super().__init__(f"chunk upload failed for chunks {sorted(failed_indexes)}: {cause}")
        self.failed_indexes = sorted(failed_indexes)
        self.cause = cause

    @property
    def transient(self) -> bool:
        return isinstance(self.cause, ApiError) and self.cause.transient


class UploadFailed(UploadError):
    pass


class UploadTimeout(UploadError):
    pass


class UploadCancelled(UploadError):
    pass
