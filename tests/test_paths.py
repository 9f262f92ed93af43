import tempfile
import unittest
from pathlib import Path

from sharebox.errors import InvalidName
from sharebox.paths import MAX_FILENAME_LENGTH, PathResolver, validate_name


class PathResolverTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name) / "uploads"
        self.root.mkdir()
        self.resolver = PathResolver(self.root)

    def tearDown(self):
        self.tmp.cleanup()

    def test_resolves_plain_name_inside_root(self):
        path = self.resolver.resolve("report.pdf")
        self.assertEqual(path, self.root.resolve() / "report.pdf")

    def test_accepts_unicode_and_spaces(self):
        path = self.resolver.resolve("年度 报告.pdf")
        self.assertEqual(path.name, "年度 报告.pdf")
        self.assertEqual(path.parent, self.root.resolve())

    def test_rejects_traversal_and_separators(self):
        for name in [
            "..",
            "../etc/passwd",
            "a/../b",
            "nested/file.txt",
            "..\\windows\\system.ini",
            "/etc/passwd",
            "C:\\temp\\x",
            "file..txt",
        ]:
            with self.subTest(name=name):
                with self.assertRaises(InvalidName):
                    self.resolver.resolve(name)

    def test_rejects_empty_and_non_string(self):
        for name in ["", "   ", None, 42]:
            with self.subTest(name=name):
                with self.assertRaises(InvalidName):
                    validate_name(name)

    def test_rejects_reserved_characters(self):
        for name in ["a<b", "a>b", "a:b", 'a"b', "a|b", "a?b", "a*b", "a\x00b", "a\nb", "a\x7fb"]:
            with self.subTest(name=repr(name)):
                with self.assertRaises(InvalidName):
                    validate_name(name)

    def test_rejects_hidden_names(self):
        with self.assertRaises(InvalidName):
            validate_name(".bashrc")
        with self.assertRaises(InvalidName):
            validate_name(".upload-abc.part")

    def test_rejects_device_names(self):
        for name in ["CON", "nul.txt", "com1", "LPT9.log"]:
            with self.subTest(name=name):
                with self.assertRaises(InvalidName):
                    validate_name(name)
        self.assertEqual(validate_name("console.txt"), "console.txt")

    def test_rejects_overlong_names(self):
        with self.assertRaises(InvalidName):
            validate_name("a" * (MAX_FILENAME_LENGTH + 1))
        self.assertEqual(len(validate_name("a" * MAX_FILENAME_LENGTH)), MAX_FILENAME_LENGTH)

    def test_rejects_names_too_long_once_encoded(self):
        name = "年" * 100 + ".txt"
        self.assertLessEqual(len(name), MAX_FILENAME_LENGTH)
        with self.assertRaises(InvalidName):
            validate_name(name)
        with self.assertRaises(InvalidName):
            self.resolver.resolve(name)
        self.assertEqual(validate_name("年" * 80 + ".txt"), "年" * 80 + ".txt")

    def test_rejects_unencodable_names(self):
        with self.assertRaises(InvalidName):
            validate_name("bad\ud800name.txt")

    def test_invalid_name_carries_offending_name(self):
        with self.assertRaises(InvalidName) as ctx:
            validate_name("../x")
        self.assertEqual(ctx.exception.name, "../x")


if __name__ == "__main__":
    unittest.main()
