import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from tabula import content_hash, djb2_hex


class TestContentHash(unittest.TestCase):
    def test_hash_deterministic_with_key_order(self) -> None:
        self.assertEqual(content_hash({"b": 1, "a": 2}), content_hash({"a": 2, "b": 1}))

    def test_hash_differs_for_different_content(self) -> None:
        self.assertNotEqual(content_hash({"a": 1}), content_hash({"a": 2}))

    def test_hash_format(self) -> None:
        h = content_hash({"a": 1})
        self.assertTrue(h.startswith("sha256:"))
        self.assertEqual(len(h), len("sha256:") + 64)

    def test_hash_rejects_nan(self) -> None:
        with self.assertRaises(ValueError):
            content_hash({"bad": float("nan")})


class TestDjb2(unittest.TestCase):
    def test_empty_string_is_seed(self) -> None:
        self.assertEqual(djb2_hex(""), format(5381, "x"))

    def test_single_char(self) -> None:
        self.assertEqual(djb2_hex("a"), format((5381 * 33) ^ ord("a"), "x"))

    def test_stays_within_32_bits(self) -> None:
        value = int(djb2_hex("x" * 500), 16)
        self.assertLess(value, 2 ** 32)

    def test_order_sensitive(self) -> None:
        self.assertNotEqual(djb2_hex("a,b"), djb2_hex("b,a"))


if __name__ == "__main__":
    unittest.main()
