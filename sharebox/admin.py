import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Union

from .storage import FileStore, StoredFile

BYTES_PER_MB = 1024 * 1024
LARGE_LOG_BYTES = 10 * BYTES_PER_MB
DEFAULT_LOG_TAIL_LINES = 200

logger = logging.getLogger("sharebox.admin")


@dataclass(frozen=True)
class AdminSnapshot:
    uploads_today: int = 0
    downloads_today: int = 0
    log_tail: List[str] = field(default_factory=list)
    files: List[StoredFile] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)


class LogTailReader:
    """Return the last ``max_lines`` lines of a log file, oldest first."""

    def __init__(self, path: Union[str, Path], max_lines: int = DEFAULT_LOG_TAIL_LINES) -> None:
        self.path = Path(path)
        self.max_lines = max(1, int(max_lines))

    def __call__(self) -> List[str]:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return []

        if size > LARGE_LOG_BYTES:
            # Assume ~100 bytes per line and read twice that from the end.
            bytes_to_read = min(self.max_lines * 200, size)
            with self.path.open("rb") as handle:
                handle.seek(size - bytes_to_read)
                text = handle.read().decode("utf-8", errors="replace")
            lines = text.splitlines()
            if size > bytes_to_read and lines:
                lines = lines[1:]
            return lines[-self.max_lines:]

        with self.path.open("r", encoding="utf-8", errors="replace") as handle:
            return [line.rstrip("\r\n") for line in deque(handle, maxlen=self.max_lines)]


class AdminViewAssembler:
    """Build the admin dashboard snapshot from storage, counters and logs.

    A failing source never fails the snapshot; its field is left empty and
    its name is recorded in ``AdminSnapshot.degraded``.
    """

    def __init__(
        self,
        store: FileStore,
        counters,
        log_reader: Callable[[], List[str]],
    ) -> None:
        self.store = store
        self.counters = counters
        self.log_reader = log_reader

    def snapshot(self) -> AdminSnapshot:
        degraded: List[str] = []

        def collect(field_name: str, source: Callable, placeholder):
            try:
                return source()
            except Exception as error:
                logger.warning(
                    "admin_snapshot_partial field=%s error=%s",
                    field_name,
                    error,
                    exc_info=True,
                )
                degraded.append(field_name)
                return placeholder

        uploads = collect("uploads_today", self.counters.today_uploads, 0)
        downloads = collect("downloads_today", self.counters.today_downloads, 0)
        log_tail = collect("log_tail", self.log_reader, [])
        files = collect("files", self.store.list, [])
        return AdminSnapshot(
            uploads_today=uploads,
            downloads_today=downloads,
            log_tail=list(log_tail),
            files=list(files),
            degraded=degraded,
        )
