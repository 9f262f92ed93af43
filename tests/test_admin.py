import io
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from sharebox import admin
from sharebox.admin import AdminViewAssembler, LogTailReader
from sharebox.counters import ActivityCounters
from sharebox.errors import PersistenceFailure
from sharebox.storage import FileStore


class LogTailReaderTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.log_path = Path(self.tmp.name) / "application.log"

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_file_yields_empty_tail(self):
        self.assertEqual(LogTailReader(self.log_path)(), [])

    def test_returns_last_lines_in_order(self):
        self.log_path.write_text("".join(f"line {i}\n" for i in range(10)), encoding="utf-8")
        self.assertEqual(LogTailReader(self.log_path, max_lines=3)(), ["line 7", "line 8", "line 9"])

    def test_large_file_reads_only_the_end(self):
        self.log_path.write_text("".join(f"entry {i:06d}\n" for i in range(2000)), encoding="utf-8")
        with mock.patch.object(admin, "LARGE_LOG_BYTES", 1024):
            tail = LogTailReader(self.log_path, max_lines=5)()
        self.assertEqual(tail, [f"entry {i:06d}" for i in range(1995, 2000)])


class AdminViewAssemblerTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = FileStore(Path(self.tmp.name) / "uploads")
        self.counters = ActivityCounters()

    def tearDown(self):
        self.tmp.cleanup()

    def test_snapshot_combines_all_sources(self):
        self.store.put("b.txt", io.BytesIO(b"b"))
        self.store.put("a.txt", io.BytesIO(b"a"))
        self.counters.record_upload()
        self.counters.record_upload()
        self.counters.record_download()

        snapshot = AdminViewAssembler(self.store, self.counters, lambda: ["one", "two"]).snapshot()

        self.assertEqual(snapshot.uploads_today, 2)
        self.assertEqual(snapshot.downloads_today, 1)
        self.assertEqual(snapshot.log_tail, ["one", "two"])
        self.assertEqual([entry.name for entry in snapshot.files], ["a.txt", "b.txt"])
        self.assertEqual(snapshot.degraded, [])

    def test_failing_sources_produce_placeholders(self):
        self.store.put("kept.txt", io.BytesIO(b"x"))
        broken_counters = mock.Mock()
        broken_counters.today_uploads.side_effect = PersistenceFailure("db down")
        broken_counters.today_downloads.return_value = 4

        def broken_log():
            raise OSError("permission denied")

        with self.assertLogs("sharebox.admin", level="WARNING"):
            snapshot = AdminViewAssembler(self.store, broken_counters, broken_log).snapshot()

        self.assertEqual(snapshot.uploads_today, 0)
        self.assertEqual(snapshot.downloads_today, 4)
        self.assertEqual(snapshot.log_tail, [])
        self.assertEqual([entry.name for entry in snapshot.files], ["kept.txt"])
        self.assertEqual(snapshot.degraded, ["uploads_today", "log_tail"])

    def test_listing_failure_yields_empty_files(self):
        broken_store = mock.Mock()
        broken_store.list.side_effect = OSError("storage offline")
        with self.assertLogs("sharebox.admin", level="WARNING"):
            snapshot = AdminViewAssembler(broken_store, self.counters, lambda: []).snapshot()
        self.assertEqual(snapshot.files, [])
        self.assertEqual(snapshot.degraded, ["files"])


if __name__ == "__main__":
    unittest.main()
