import logging
import os
import stat
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Optional, Union

from .errors import (
    DeleteFailure,
    NameCollision,
    NotFound,
    QuotaExceeded,
    WriteFailure,
)
from .paths import PathResolver

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
TEMP_PREFIX = ".upload-"
TEMP_SUFFIX = ".part"

logger = logging.getLogger("sharebox.storage")


@dataclass(frozen=True)
class StoredFile:
    name: str
    size_bytes: int
    created_at: float
    is_directory: bool = False

    @classmethod
    def from_stat(cls, name: str, result: os.stat_result) -> "StoredFile":
        return cls(
            name=name,
            size_bytes=0 if stat.S_ISDIR(result.st_mode) else int(result.st_size),
            created_at=float(result.st_mtime),
            is_directory=stat.S_ISDIR(result.st_mode),
        )


def _fsync_directory(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError as error:
        logger.warning("directory_fsync_open_failed path=%s error=%s", directory, error)
        return
    try:
        os.fsync(fd)
    except OSError as error:
        logger.warning("directory_fsync_failed path=%s error=%s", directory, error)
    finally:
        os.close(fd)


class FileStore:
    """Flat directory of uploaded files, addressed by their names.

    The directory itself is the index: listings come from a live scan and
    mutations rely on the filesystem's own atomicity (hard-link publication
    for uploads, unlink for deletes) instead of a store-wide lock.
    """

    def __init__(
        self,
        root: Union[str, Path],
        *,
        max_file_bytes: Optional[int] = None,
        quota_bytes: Optional[int] = None,
    ) -> None:
        self.resolver = PathResolver(root)
        self.root = self.resolver.root
        self.configure_limits(max_file_bytes, quota_bytes)
        self.root.mkdir(parents=True, exist_ok=True)

    def configure_limits(
        self,
        max_file_bytes: Optional[int] = None,
        quota_bytes: Optional[int] = None,
    ) -> None:
        """Set the per-file and total limits; zero or ``None`` means unlimited."""

        self.max_file_bytes = max_file_bytes if max_file_bytes and max_file_bytes > 0 else None
        self.quota_bytes = quota_bytes if quota_bytes and quota_bytes > 0 else None

    def put(
        self,
        name: str,
        stream: BinaryIO,
        expected_size: Optional[int] = None,
    ) -> StoredFile:
        """Persist *stream* under *name* and return the stored entry.

        The content is written to a hidden temporary file, flushed to disk and
        only then published under its final name, so readers never observe a
        partial upload. An existing file with the same name is never replaced.
        """

        final_path = self.resolver.resolve(name)
        if final_path.exists():
            raise NameCollision(name)

        allowance = self._remaining_quota()
        temp_path = self.root / f"{TEMP_PREFIX}{uuid.uuid4().hex}{TEMP_SUFFIX}"
        try:
            written = self._write_temp(name, stream, temp_path, allowance)
            if expected_size is not None and written != expected_size:
                logger.warning(
                    "file_write_truncated name=%s expected=%d written=%d",
                    name,
                    expected_size,
                    written,
                )
                raise WriteFailure(
                    f"Upload of '{name}' ended after {written} of {expected_size} bytes",
                    name,
                )
            self._publish(name, temp_path, final_path)
        finally:
            self._discard_temp(temp_path)

        _fsync_directory(self.root)
        try:
            return StoredFile.from_stat(name, final_path.stat())
        except OSError as error:
            logger.warning("file_stat_after_write_failed name=%s error=%s", name, error)
            raise WriteFailure(f"Stored file '{name}' could not be read back", name) from error

    def list(self, include_directories: bool = False) -> List[StoredFile]:
        entries: List[StoredFile] = []
        with os.scandir(self.root) as iterator:
            for entry in iterator:
                if entry.name.startswith("."):
                    continue
                try:
                    result = entry.stat(follow_symlinks=False)
                except FileNotFoundError:
                    # Removed between the scan and the stat.
                    continue
                if stat.S_ISREG(result.st_mode) or (
                    include_directories and stat.S_ISDIR(result.st_mode)
                ):
                    entries.append(StoredFile.from_stat(entry.name, result))
        entries.sort(key=lambda item: item.name)
        return entries

    def get(self, name: str) -> StoredFile:
        path = self.resolver.resolve(name)
        return StoredFile.from_stat(name, self._stat_regular(name, path))

    def path_for(self, name: str) -> Path:
        """Return the on-disk path of *name* for a static file server."""

        path = self.resolver.resolve(name)
        self._stat_regular(name, path)
        return path

    def delete(self, name: str) -> None:
        path = self.resolver.resolve(name)
        self._stat_regular(name, path)
        try:
            path.unlink()
        except FileNotFoundError:
            raise NotFound(name) from None
        except OSError as error:
            logger.warning("file_delete_failed name=%s path=%s error=%s", name, path, error)
            raise DeleteFailure(f"File '{name}' could not be deleted", name) from error

    def usage_bytes(self) -> int:
        return sum(entry.size_bytes for entry in self.list())

    def cleanup_temp_files(self, max_age_seconds: float = 3600) -> int:
        """Remove temporary upload files abandoned by a crashed process."""

        removed = 0
        cutoff = time.time() - max_age_seconds
        for temp_file in self.root.glob(f"{TEMP_PREFIX}*{TEMP_SUFFIX}"):
            try:
                if temp_file.stat().st_mtime < cutoff:
                    temp_file.unlink()
                    removed += 1
                    logger.info("temp_file_removed path=%s", temp_file)
            except FileNotFoundError:
                continue
            except OSError as error:
                logger.warning("temp_cleanup_failed path=%s error=%s", temp_file, error)
        return removed

    def _stat_regular(self, name: str, path: Path) -> os.stat_result:
        try:
            result = os.lstat(path)
        except FileNotFoundError:
            raise NotFound(name) from None
        if not stat.S_ISREG(result.st_mode):
            raise NotFound(name)
        return result

    def _remaining_quota(self) -> Optional[int]:
        if self.quota_bytes is None:
            return None
        return max(self.quota_bytes - self.usage_bytes(), 0)

    def _write_temp(
        self,
        name: str,
        stream: BinaryIO,
        temp_path: Path,
        allowance: Optional[int],
    ) -> int:
        written = 0
        try:
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except OSError as error:
            logger.warning("file_write_open_failed name=%s path=%s error=%s", name, temp_path, error)
            raise WriteFailure(f"Could not create storage for '{name}'", name) from error

        with os.fdopen(fd, "wb") as destination:
            while True:
                try:
                    chunk = stream.read(CHUNK_SIZE_BYTES)
                except Exception as error:
                    logger.warning(
                        "file_write_stream_aborted name=%s written=%d error=%s",
                        name,
                        written,
                        error,
                    )
                    raise WriteFailure(f"Upload of '{name}' was interrupted", name) from error
                if not chunk:
                    break
                written += len(chunk)
                if self.max_file_bytes is not None and written > self.max_file_bytes:
                    raise QuotaExceeded(name, QuotaExceeded.FILE_TOO_LARGE, self.max_file_bytes)
                if allowance is not None and written > allowance:
                    raise QuotaExceeded(name, QuotaExceeded.STORAGE_QUOTA, self.quota_bytes)
                try:
                    destination.write(chunk)
                except OSError as error:
                    logger.warning("file_write_failed name=%s written=%d error=%s", name, written, error)
                    raise WriteFailure(f"Could not write '{name}'", name) from error
            try:
                destination.flush()
                os.fsync(destination.fileno())
            except OSError as error:
                logger.warning("file_fsync_failed name=%s error=%s", name, error)
                raise WriteFailure(f"Could not flush '{name}' to disk", name) from error
        return written

    def _publish(self, name: str, temp_path: Path, final_path: Path) -> None:
        try:
            os.link(temp_path, final_path)
            return
        except FileExistsError:
            raise NameCollision(name) from None
        except OSError as error:
            link_error = error

        # Filesystems without hard links: reserve the name exclusively, then
        # move the finished content over the empty placeholder.
        logger.debug("file_link_unsupported name=%s error=%s", name, link_error)
        try:
            os.close(os.open(final_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644))
        except FileExistsError:
            raise NameCollision(name) from None
        except OSError as error:
            logger.warning("file_publish_failed name=%s error=%s", name, error)
            raise WriteFailure(f"Could not publish '{name}'", name) from error
        try:
            os.replace(temp_path, final_path)
        except OSError as error:
            logger.warning("file_publish_failed name=%s error=%s", name, error)
            final_path.unlink(missing_ok=True)
            raise WriteFailure(f"Could not publish '{name}'", name) from error

    def _discard_temp(self, temp_path: Path) -> None:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as error:
            logger.warning("temp_file_remove_failed path=%s error=%s", temp_path, error)
