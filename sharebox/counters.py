import logging
import sqlite3
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date
from pathlib import Path
from typing import Callable, Deque, Generator, List, Union

from .errors import PersistenceFailure

logger = logging.getLogger("sharebox.counters")


@dataclass
class DailyCounters:
    day: date
    uploads: int = 0
    downloads: int = 0


class ActivityCounters:
    """Per-day upload and download counts held in memory.

    Counts are keyed by the local date returned by ``clock``. The first call on
    a new date moves the live counters into a bounded history and starts again
    from zero. Every operation runs under one lock.
    """

    def __init__(
        self,
        clock: Callable[[], date] = date.today,
        history_days: int = 30,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._current = DailyCounters(day=clock())
        self._history: Deque[DailyCounters] = deque(maxlen=max(0, history_days))

    def _roll_over(self) -> DailyCounters:
        # Caller must hold self._lock.
        today = self._clock()
        if today != self._current.day:
            self._history.appendleft(self._current)
            self._current = DailyCounters(day=today)
        return self._current

    def record_upload(self) -> None:
        with self._lock:
            self._roll_over().uploads += 1

    def record_download(self) -> None:
        with self._lock:
            self._roll_over().downloads += 1

    def today_uploads(self) -> int:
        with self._lock:
            return self._roll_over().uploads

    def today_downloads(self) -> int:
        with self._lock:
            return self._roll_over().downloads

    def today(self) -> DailyCounters:
        with self._lock:
            return replace(self._roll_over())

    def history(self) -> List[DailyCounters]:
        """Return previous days' counters, newest first."""

        with self._lock:
            self._roll_over()
            return [replace(entry) for entry in self._history]


class SQLiteActivityCounters:
    """Activity counters that survive restarts, stored in SQLite.

    Each increment is a single upsert, so concurrent requests and worker
    processes never lose updates. Database errors surface as
    :class:`PersistenceFailure`.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        clock: Callable[[], date] = date.today,
        history_days: int = 30,
    ) -> None:
        self.db_path = Path(db_path)
        self._clock = clock
        self._history_days = max(0, history_days)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect("init") as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS daily_counters (
                    day TEXT PRIMARY KEY,
                    uploads INTEGER NOT NULL DEFAULT 0,
                    downloads INTEGER NOT NULL DEFAULT 0
                )
                """
            )

    @contextmanager
    def _connect(self, operation: str) -> Generator[sqlite3.Connection, None, None]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
        except sqlite3.Error as error:
            logger.warning("counters_db_open_failed operation=%s path=%s error=%s", operation, self.db_path, error)
            raise PersistenceFailure(f"Could not open counters database: {error}") from error
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA busy_timeout=5000")
            yield conn
            if conn.in_transaction:
                conn.commit()
        except sqlite3.Error as error:
            if conn.in_transaction:
                conn.rollback()
            logger.warning("counters_db_failed operation=%s path=%s error=%s", operation, self.db_path, error)
            raise PersistenceFailure(f"Counters database {operation} failed: {error}") from error
        finally:
            conn.close()

    def _increment(self, column: str) -> None:
        today = self._clock().isoformat()
        with self._connect(f"record_{column}") as conn:
            conn.execute(
                f"""
                INSERT INTO daily_counters (day, {column}) VALUES (?, 1)
                ON CONFLICT(day) DO UPDATE SET {column} = {column} + 1
                """,
                (today,),
            )

    def record_upload(self) -> None:
        self._increment("uploads")

    def record_download(self) -> None:
        self._increment("downloads")

    def today(self) -> DailyCounters:
        today = self._clock()
        with self._connect("read_today") as conn:
            row = conn.execute(
                "SELECT uploads, downloads FROM daily_counters WHERE day = ?",
                (today.isoformat(),),
            ).fetchone()
        if row is None:
            return DailyCounters(day=today)
        return DailyCounters(day=today, uploads=int(row["uploads"]), downloads=int(row["downloads"]))

    def today_uploads(self) -> int:
        return self.today().uploads

    def today_downloads(self) -> int:
        return self.today().downloads

    def history(self) -> List[DailyCounters]:
        with self._connect("read_history") as conn:
            rows = conn.execute(
                "SELECT day, uploads, downloads FROM daily_counters WHERE day < ? ORDER BY day DESC LIMIT ?",
                (self._clock().isoformat(), self._history_days),
            ).fetchall()
        return [
            DailyCounters(
                day=date.fromisoformat(row["day"]),
                uploads=int(row["uploads"]),
                downloads=int(row["downloads"]),
            )
            for row in rows
        ]
