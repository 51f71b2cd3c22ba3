import os
import sys
import unittest

from fastapi.testclient import TestClient


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

os.environ["USE_DB"] = "0"
os.environ["TABULA_DISABLE_AUTH"] = "1"

import app.main as main


client = TestClient(main.app)


class TestTableDataApi(unittest.TestCase):
    def setUp(self) -> None:
        res = client.post(
            "/tables",
            json={
                "name": "Contacts",
                "columns": [
                    {"name": "title", "type": "text", "is_required": True},
                    {"name": "price", "type": "number"},
                    {"name": "email", "type": "email"},
                    {"name": "sku", "type": "text", "allow_duplicates": False},
                ],
            },
        )
        self.assertEqual(res.status_code, 201, res.json())
        self.table_id = res.json()["table"]["id"]
        self.base = f"/tables/{self.table_id}"

    def _row(self, **data) -> dict:
        res = client.post(f"{self.base}/data", json={"data": data})
        body = res.json()
        self.assertEqual(res.status_code, 201, body)
        return body["row"]

    def test_row_crud(self) -> None:
        row = self._row(title="Alpha", price="10.5", email="a@example.com")
        self.assertEqual(row["data"]["price"], 10.5)
        fetched = client.get(f"{self.base}/data/{row['id']}").json()
        self.assertTrue(fetched.get("ok"), fetched)
        self.assertEqual(fetched["row"]["data"]["title"], "Alpha")

        updated = client.put(f"{self.base}/data/{row['id']}", json={"data": {"price": 12}}).json()
        self.assertTrue(updated.get("ok"), updated)
        self.assertEqual(updated["row"]["data"], {"title": "Alpha", "price": 12, "email": "a@example.com"})
        again = client.get(f"{self.base}/data/{row['id']}").json()
        self.assertEqual(again["row"]["data"]["price"], 12)

        deleted = client.delete(f"{self.base}/data/{row['id']}").json()
        self.assertTrue(deleted.get("ok"), deleted)
        self.assertEqual(client.get(f"{self.base}/data/{row['id']}").status_code, 404)

    def test_unwrapped_body_accepted(self) -> None:
        res = client.post(f"{self.base}/data", json={"title": "Bare"})
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.json()["row"]["data"]["title"], "Bare")

    def test_row_validation_errors(self) -> None:
        res = client.post(f"{self.base}/data", json={"data": {"price": "abc", "email": "nope"}})
        self.assertEqual(res.status_code, 400)
        body = res.json()
        self.assertFalse(body.get("ok"))
        codes = sorted(e["code"] for e in body["errors"])
        self.assertEqual(codes, ["INVALID_VALUE", "INVALID_VALUE", "REQUIRED_FIELD"])
        email_error = [e for e in body["errors"] if e["path"] == "email"][0]
        self.assertIn("suggestion", email_error["detail"])

    def test_unknown_fields_are_warnings(self) -> None:
        res = client.post(f"{self.base}/data", json={"data": {"title": "x", "colour": "red"}})
        body = res.json()
        self.assertEqual(res.status_code, 201, body)
        self.assertEqual([w["code"] for w in body["warnings"]], ["UNKNOWN_FIELD"])
        self.assertNotIn("colour", body["row"]["data"])

    def test_unique_columns(self) -> None:
        first = self._row(title="a", sku="SKU-1")
        res = client.post(f"{self.base}/data", json={"data": {"title": "b", "sku": "sku-1"}})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "DUPLICATE_VALUE")
        same = client.put(f"{self.base}/data/{first['id']}", json={"data": {"sku": "SKU-1", "title": "a2"}})
        self.assertTrue(same.json().get("ok"), same.json())

    def test_list_filter_search_sort_page(self) -> None:
        self._row(title="Red chair", price=30)
        self._row(title="Blue chair", price=10)
        self._row(title="Red table", price=20)
        filtered = client.get(f"{self.base}/data", params={"filter.title": "red chair"}).json()
        self.assertEqual(filtered["total"], 1)
        searched = client.get(f"{self.base}/data", params={"search": "RED"}).json()
        self.assertEqual(searched["total"], 2)
        ordered = client.get(f"{self.base}/data", params={"sort_by": "price", "sort_dir": "desc"}).json()
        self.assertEqual([r["data"]["price"] for r in ordered["items"]], [30, 20, 10])
        page = client.get(f"{self.base}/data", params={"limit": 2}).json()
        self.assertEqual(len(page["items"]), 2)
        self.assertTrue(page["has_more"])
        self.assertEqual(page["items"][0]["data"]["title"], "Red chair")
        last = client.get(f"{self.base}/data", params={"limit": 2, "offset": 2}).json()
        self.assertFalse(last["has_more"])

    def test_mass_actions(self) -> None:
        ids = [self._row(title=f"r{i}", price=i)["id"] for i in range(3)]
        res = client.post(f"{self.base}/data/mass-action", json={"action": "set_field_value", "row_ids": ids[:2], "field": "price", "value": "99"})
        self.assertEqual(res.json()["affected"], 2)
        prices = sorted(r["data"]["price"] for r in client.get(f"{self.base}/data").json()["items"])
        self.assertEqual(prices, [2, 99, 99])

        exported = client.post(f"{self.base}/data/mass-action", json={"action": "export", "row_ids": ids}).json()
        self.assertEqual(len(exported["rows"]), 3)

        deleted = client.post(f"{self.base}/data/mass-action", json={"action": "delete", "row_ids": ids[:2] + ["missing"]}).json()
        self.assertEqual(deleted["affected"], 2)
        self.assertEqual(client.get(f"{self.base}/data").json()["total"], 1)

    def test_mass_set_checks_every_row_first(self) -> None:
        ids = [self._row(title="a", price=1)["id"], self._row(title="b", price=2)["id"]]
        res = client.post(f"{self.base}/data/mass-action", json={"action": "set_field_value", "row_ids": ids, "field": "price", "value": "lots"})
        self.assertEqual(res.status_code, 400)
        prices = sorted(r["data"]["price"] for r in client.get(f"{self.base}/data").json()["items"])
        self.assertEqual(prices, [1, 2])

    def test_mass_action_errors(self) -> None:
        res = client.post(f"{self.base}/data/mass-action", json={"action": "archive", "row_ids": ["x"]})
        self.assertEqual(res.json()["errors"][0]["code"], "INVALID_ACTION")
        res = client.post(f"{self.base}/data/mass-action", json={"action": "delete", "row_ids": []})
        self.assertEqual(res.json()["errors"][0]["code"], "ROW_IDS_REQUIRED")
        res = client.post(f"{self.base}/data/mass-action", json={"action": "set_field_value", "row_ids": ["x"], "field": "nope"})
        self.assertEqual(res.json()["errors"][0]["code"], "UNKNOWN_FIELD")

    def test_import_export_validate(self) -> None:
        res = client.post(
            f"{self.base}/import",
            json={
                "rows": [
                    {"Name": "Imported one", "price": "5"},
                    {"Name": "Imported two", "price": "cheap"},
                    "not a row",
                ],
                "column_mapping": {"Name": "title"},
            },
        )
        body = res.json()
        self.assertTrue(body.get("ok"), body)
        self.assertEqual(body["imported"], 2)
        self.assertEqual(body["skipped"], 1)
        self.assertEqual(body["warning_count"], 1)
        self.assertEqual(body["row_warnings"][0]["row"], 2)
        self.assertEqual([w["code"] for w in body["warnings"]], ["IMPORT_WARNINGS"])

        export = client.get(f"{self.base}/export").json()["export"]
        self.assertEqual(export["total"], 2)
        self.assertEqual({r["title"] for r in export["rows"]}, {"Imported one", "Imported two"})
        self.assertEqual([c["name"] for c in export["columns"]], ["title", "price", "email", "sku"])

        report = client.get(f"{self.base}/validate").json()["report"]
        self.assertEqual(report["total_rows"], 2)
        self.assertEqual(report["invalid_rows"], 1)

        cleaned = client.delete(f"{self.base}/invalid-rows").json()
        self.assertEqual(cleaned["deleted"], 1)
        self.assertEqual(cleaned["remaining"], 1)
        self.assertEqual(client.get(f"{self.base}/data").json()["total"], 1)

    def test_import_requires_rows(self) -> None:
        res = client.post(f"{self.base}/import", json={"rows": "nope"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "ROWS_REQUIRED")


class TestSaleTableRows(unittest.TestCase):
    def test_sale_defaults_and_inventory(self) -> None:
        created = client.post("/tables", json={"name": "Stock", "table_type": "sale", "columns": [{"name": "title"}]}).json()
        table_id = created["table"]["id"]
        res = client.post(f"/tables/{table_id}/data", json={"data": {"title": "Thing"}})
        body = res.json()
        self.assertEqual(res.status_code, 201, body)
        self.assertEqual(body["row"]["data"]["price"], 0)
        self.assertEqual(body["row"]["data"]["qty"], 1)
        client.put(f"/tables/{table_id}/data/{body['row']['id']}", json={"data": {"qty": 4}})
        log = client.get("/inventory/transactions", params={"table_id": table_id}).json()
        self.assertTrue(log.get("ok"), log)
        kinds = [t["transaction_type"] for t in log["items"]]
        self.assertEqual(kinds, ["update", "add", "adjust"])
        self.assertEqual(log["items"][0]["quantity_change"], 3)


if __name__ == "__main__":
    unittest.main()
