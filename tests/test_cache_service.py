import json
import os
import sys
import time
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
for path in (ROOT, SRC):
    if path not in sys.path:
        sys.path.insert(0, path)

from app.cache_service import QUERY_KV_TTL_S, QUERY_TTL_S, CacheService, query_key
from app.kv import KVError, MemoryKV


class BrokenKV:
    def get(self, key):
        raise KVError("down")

    def put(self, key, value, expiration_ttl=None):
        raise KVError("down")

    def delete(self, key):
        raise KVError("down")

    def list(self, prefix=""):
        raise KVError("down")


class TestMemoryKV(unittest.TestCase):
    def test_put_get_delete_list(self) -> None:
        kv = MemoryKV()
        kv.put("a:1", "x")
        kv.put("a:2", "y")
        kv.put("b:1", "z")
        self.assertEqual(kv.get("a:1"), "x")
        self.assertEqual(kv.list("a:"), ["a:1", "a:2"])
        kv.delete("a:1")
        self.assertIsNone(kv.get("a:1"))

    def test_expired_entries_disappear(self) -> None:
        kv = MemoryKV()
        kv.put("k", "v", expiration_ttl=60)
        kv._data["k"] = ("v", 0.0)
        self.assertIsNone(kv.get("k"))
        self.assertEqual(kv.list(""), [])


class TestCacheService(unittest.TestCase):
    def setUp(self) -> None:
        self.cache = CacheService(MemoryKV())

    def test_table_metadata_and_columns(self) -> None:
        self.assertIsNone(self.cache.get_table_metadata("t1"))
        self.cache.set_table_metadata("t1", {"id": "t1", "name": "Products"})
        self.cache.set_table_columns("t1", [{"id": "c1", "name": "price"}])
        self.assertEqual(self.cache.get_table_metadata("t1")["name"], "Products")
        self.assertEqual(self.cache.get_table_columns("t1")[0]["name"], "price")

    def test_row_counts_batch(self) -> None:
        self.cache.set_row_counts_batch({"t1": 3, "t2": 0})
        self.assertEqual(self.cache.get_row_counts_batch(["t1", "t2", "t3"]), {"t1": 3, "t2": 0})
        self.cache.invalidate_row_count("t1")
        self.assertIsNone(self.cache.get_row_count("t1"))

    def test_item_invalidation_by_table(self) -> None:
        self.cache.set_item("t1", "r1", {"id": "r1"})
        self.cache.set_item("t1", "r2", {"id": "r2"})
        self.cache.set_item("t2", "r1", {"id": "r1"})
        self.cache.invalidate_table_items("t1")
        self.assertIsNone(self.cache.get_item("t1", "r1"))
        self.assertIsNone(self.cache.get_item("t1", "r2"))
        self.assertIsNotNone(self.cache.get_item("t2", "r1"))

    def test_access_decisions(self) -> None:
        self.cache.set_table_access("token:a", "t1", True)
        self.cache.set_table_access("token:b", "t1", False)
        self.cache.set_table_access("token:a", "t2", True)
        self.assertTrue(self.cache.get_table_access("token:a", "t1"))
        self.assertFalse(self.cache.get_table_access("token:b", "t1"))
        self.cache.invalidate_table_access("t1")
        self.assertIsNone(self.cache.get_table_access("token:a", "t1"))
        self.assertTrue(self.cache.get_table_access("token:a", "t2"))
        self.cache.invalidate_user_access("token:a")
        self.assertIsNone(self.cache.get_table_access("token:a", "t2"))

    def test_query_results_invalidated_per_table(self) -> None:
        self.cache.set_query_result(["t1", "t2"], {"a": "1"}, 10, 0, [{"id": "r1"}])
        self.cache.set_query_result(["t3"], None, 10, 0, [])
        self.assertEqual(self.cache.get_query_result(["t2", "t1"], {"a": "1"}, 10, 0), [{"id": "r1"}])
        self.assertEqual(self.cache.invalidate_query_results(["t2"]), 1)
        self.assertIsNone(self.cache.get_query_result(["t1", "t2"], {"a": "1"}, 10, 0))
        self.assertEqual(self.cache.get_query_result(["t3"], None, 10, 0), [])

    def test_query_results_expire_after_logical_ttl(self) -> None:
        self.cache.set_query_result(["t1"], {"a": "1"}, 10, 0, [{"id": "r1"}])
        key = query_key(["t1"], {"a": "1"}, 10, 0)
        entry = json.loads(self.cache.kv.get(key))
        entry["cached_at"] = time.time() - (QUERY_TTL_S + 1)
        self.cache.kv.put(key, json.dumps(entry), expiration_ttl=QUERY_KV_TTL_S)
        self.assertIsNone(self.cache.get_query_result(["t1"], {"a": "1"}, 10, 0))
        self.assertIsNone(self.cache.kv.get(key))

    def test_fresh_query_result_within_ttl(self) -> None:
        self.cache.set_query_result(["t1"], None, 10, 0, {"total": 0})
        key = query_key(["t1"], None, 10, 0)
        entry = json.loads(self.cache.kv.get(key))
        entry["cached_at"] = time.time() - (QUERY_TTL_S - 5)
        self.cache.kv.put(key, json.dumps(entry))
        self.assertEqual(self.cache.get_query_result(["t1"], None, 10, 0), {"total": 0})

    def test_backend_failures_are_misses(self) -> None:
        cache = CacheService(BrokenKV())
        self.assertIsNone(cache.get_token("tbl_x"))
        cache.set_token("tbl_x", {"id": "x"})
        cache.invalidate_table_items("t1")
        self.assertIsNone(cache.get_table_access("u", "t"))


class TestQueryKey(unittest.TestCase):
    def test_table_order_and_condition_case_ignored(self) -> None:
        a = query_key(["t2", "t1"], {"color": "Red", "size": "M"}, 10, 0)
        b = query_key(["t1", "t2"], {"size": "m", "color": "red"}, 10, 0)
        self.assertEqual(a, b)
        self.assertTrue(a.startswith("query:"))

    def test_paging_in_key(self) -> None:
        self.assertNotEqual(query_key(["t1"], None, 10, 0), query_key(["t1"], None, 10, 10))
        self.assertTrue(query_key(["t1"], None, 10, 0).endswith(":0:10:0"))


if __name__ == "__main__":
    unittest.main()
