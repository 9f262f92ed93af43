from typing import Optional


class ShareBoxError(Exception):
    """Base class for failures raised by the storage core."""

    def __init__(self, message: str, name: Optional[str] = None) -> None:
        super().__init__(message)
        self.name = name


class InvalidName(ShareBoxError):
    """Raised when a user supplied file name violates the naming rules."""


class NameCollision(ShareBoxError):
    """Raised when a file with the requested name already exists."""

    def __init__(self, name: str) -> None:
        super().__init__(f"A file named '{name}' already exists", name)


class NotFound(ShareBoxError):
    """Raised when the referenced file is not present in storage."""

    def __init__(self, name: str) -> None:
        super().__init__(f"File '{name}' was not found", name)


class QuotaExceeded(ShareBoxError):
    """Raised when an upload would exceed the per-file or storage limit."""

    FILE_TOO_LARGE = "file_too_large"
    STORAGE_QUOTA = "storage_quota"

    def __init__(self, name: str, reason: str, limit_bytes: int) -> None:
        if reason == self.FILE_TOO_LARGE:
            message = f"File '{name}' exceeds the maximum size of {limit_bytes} bytes"
        else:
            message = f"Storing '{name}' would exceed the storage quota of {limit_bytes} bytes"
        super().__init__(message, name)
        self.reason = reason
        self.limit_bytes = limit_bytes


class StorageFailure(ShareBoxError):
    """Environment or disk failure; callers may retry once."""


class WriteFailure(StorageFailure):
    """Raised when an upload could not be written completely."""


class DeleteFailure(StorageFailure):
    """Raised when a stored file could not be removed."""


class PersistenceFailure(StorageFailure):
    """Raised when persistent activity counters cannot be read or updated."""
