import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from lookout.context_path import MISSING, ContextPathError, get_path, split_path


class TestContextPath(unittest.TestCase):
    def setUp(self) -> None:
        self.doc = {
            "type": "aws",
            "service": {"name": "lambda", "region": None},
            "tags": ["prod", "eu"],
            "items": [{"id": "i1"}],
            "flat.key": "literal",
        }

    def test_split_handles_brackets(self) -> None:
        self.assertEqual(split_path("a.b[0].c"), ["a", "b", "0", "c"])

    def test_split_rejects_empty_segments(self) -> None:
        with self.assertRaises(ContextPathError):
            split_path("a..b")
        with self.assertRaises(ContextPathError):
            split_path("")

    def test_nested_lookup(self) -> None:
        self.assertEqual(get_path(self.doc, "service.name"), "lambda")
        self.assertEqual(get_path(self.doc, "tags.1"), "eu")
        self.assertEqual(get_path(self.doc, "items[0].id"), "i1")

    def test_null_is_present(self) -> None:
        self.assertIsNone(get_path(self.doc, "service.region"))
        self.assertIsNot(get_path(self.doc, "service.region"), MISSING)

    def test_missing_values(self) -> None:
        self.assertIs(get_path(self.doc, "service.owner"), MISSING)
        self.assertIs(get_path(self.doc, "tags.5"), MISSING)
        self.assertIs(get_path(self.doc, "type.length"), MISSING)
        self.assertIs(get_path(self.doc, "nope"), MISSING)
        self.assertFalse(MISSING)

    def test_literal_key_wins(self) -> None:
        self.assertEqual(get_path(self.doc, "flat.key"), "literal")


if __name__ == "__main__":
    unittest.main()
