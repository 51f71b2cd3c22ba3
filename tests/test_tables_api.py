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


def _create_table(**overrides) -> dict:
    payload = {
        "name": "Products",
        "columns": [
            {"name": "title", "type": "text", "is_required": True},
            {"name": "Unit Cost", "type": "number"},
        ],
    }
    payload.update(overrides)
    res = client.post("/tables", json=payload)
    body = res.json()
    assert res.status_code == 201, body
    return body


class TestTablesApi(unittest.TestCase):
    def test_health(self) -> None:
        res = client.get("/health")
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.json().get("ok"))

    def test_create_table_normalizes_column_names(self) -> None:
        body = _create_table()
        self.assertTrue(body.get("ok"), body)
        self.assertEqual(body["table"]["table_type"], "default")
        self.assertEqual(body["table"]["visibility"], "private")
        self.assertEqual([c["name"] for c in body["columns"]], ["title", "unitCost"])

    def test_create_sale_table_adds_protected_columns(self) -> None:
        body = _create_table(name="Shop", table_type="sale")
        names = {c["name"] for c in body["columns"]}
        self.assertTrue({"price", "qty"}.issubset(names))
        res = client.get(f"/tables/{body['table']['id']}")
        described = res.json()
        self.assertTrue(described.get("ok"), described)
        self.assertEqual(described["protected_columns"], ["price", "qty"])
        self.assertEqual(described["row_count"], 0)
        self.assertTrue(described["can_manage"])

    def test_create_rent_table_defaults_period(self) -> None:
        body = _create_table(name="Gear", table_type="rent")
        self.assertEqual(body["table"]["rental_period"], "day")
        names = {c["name"] for c in body["columns"]}
        self.assertTrue({"price", "fee", "used", "available"}.issubset(names))

    def test_for_sale_flag_maps_to_sale_type(self) -> None:
        body = _create_table(name="Legacy", for_sale=True)
        self.assertEqual(body["table"]["table_type"], "sale")

    def test_create_table_validation(self) -> None:
        res = client.post(
            "/tables",
            json={"name": "", "visibility": "secret", "columns": [{"name": "bad_name"}, {"name": "x", "type": "widget"}]},
        )
        self.assertEqual(res.status_code, 400)
        body = res.json()
        self.assertFalse(body.get("ok"))
        codes = {e["code"] for e in body["errors"]}
        self.assertEqual(codes, {"TABLE_INVALID", "COLUMN_INVALID", "COLUMN_TYPE_UNKNOWN"})

    def test_duplicate_columns_rejected(self) -> None:
        res = client.post("/tables", json={"name": "Dupes", "columns": [{"name": "title"}, {"name": "Title"}]})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "COLUMN_EXISTS")

    def test_invalid_default_value_rejected(self) -> None:
        res = client.post("/tables", json={"name": "Bad default", "columns": [{"name": "count", "type": "integer", "default_value": "many"}]})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "COLUMN_DEFAULT_INVALID")

    def test_invalid_json_body(self) -> None:
        res = client.post("/tables", content=b"{not json", headers={"Content-Type": "application/json"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "INVALID_JSON")

    def test_unknown_table_is_not_found(self) -> None:
        res = client.get("/tables/does-not-exist")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "NOT_FOUND")

    def test_list_tables_filters_and_paging(self) -> None:
        marker = "Zebra catalogue"
        _create_table(name=marker, visibility="public")
        _create_table(name=f"{marker} two", visibility="shared")
        res = client.get("/tables", params={"search": "zebra", "visibility": "public"})
        body = res.json()
        self.assertTrue(body.get("ok"), body)
        self.assertEqual(body["total"], 1)
        self.assertEqual(body["items"][0]["row_count"], 0)
        paged = client.get("/tables", params={"search": "zebra", "limit": 1}).json()
        self.assertEqual(paged["total"], 2)
        self.assertEqual(len(paged["items"]), 1)

    def test_bad_paging_params(self) -> None:
        res = client.get("/tables", params={"limit": "abc"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "INVALID_NUMBER")
        res = client.get("/tables", params={"limit": "0"})
        self.assertEqual(res.json()["errors"][0]["code"], "OUT_OF_RANGE")
        res = client.get("/tables", params={"table_type": "lease"})
        self.assertEqual(res.json()["errors"][0]["code"], "TABLE_INVALID")

    def test_change_type_adds_columns_with_warning(self) -> None:
        table_id = _create_table(name="Convert")["table"]["id"]
        res = client.put(f"/tables/{table_id}", json={"table_type": "rent", "name": "Converted"})
        body = res.json()
        self.assertTrue(body.get("ok"), body)
        self.assertEqual(body["table"]["name"], "Converted")
        self.assertEqual(body["table"]["rental_period"], "day")
        added = sorted(c["name"] for c in body["added_columns"])
        self.assertEqual(added, ["available", "fee", "price", "used"])
        self.assertEqual({w["code"] for w in body["warnings"]}, {"COLUMNS_ADDED"})

    def test_delete_table(self) -> None:
        table_id = _create_table(name="Doomed")["table"]["id"]
        client.post(f"/tables/{table_id}/data", json={"data": {"title": "a"}})
        res = client.delete(f"/tables/{table_id}")
        self.assertTrue(res.json().get("ok"), res.json())
        self.assertEqual(client.get(f"/tables/{table_id}").status_code, 404)

    def test_clone_with_data(self) -> None:
        table_id = _create_table(name="Original", table_type="sale")["table"]["id"]
        client.post(f"/tables/{table_id}/data", json={"data": {"title": "Widget", "price": 5, "qty": 2}})
        res = client.post(f"/tables/{table_id}/clone", json={"include_data": True})
        self.assertEqual(res.status_code, 201)
        body = res.json()
        self.assertEqual(body["table"]["name"], "Original (Copy)")
        self.assertEqual(body["table"]["table_type"], "sale")
        self.assertEqual(body["rows_copied"], 1)
        rows = client.get(f"/tables/{body['table']['id']}/data").json()
        self.assertEqual(rows["items"][0]["data"]["title"], "Widget")

    def test_clone_visibility_checked_and_listed_publicly(self) -> None:
        table_id = _create_table(name="Catalog source")["table"]["id"]
        client.get("/public/tables")
        res = client.post(f"/tables/{table_id}/clone", json={"visibility": "public"})
        self.assertEqual(res.status_code, 201, res.json())
        clone_id = res.json()["table"]["id"]
        listed = {t["id"] for t in client.get("/public/tables").json()["items"]}
        self.assertIn(clone_id, listed)
        res = client.post(f"/tables/{table_id}/clone", json={"visibility": "bogus"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["path"], "visibility")


class TestColumnsApi(unittest.TestCase):
    def setUp(self) -> None:
        created = _create_table(name="Columns", table_type="sale")
        self.table_id = created["table"]["id"]
        self.columns = {c["name"]: c for c in created["columns"]}

    def test_add_column(self) -> None:
        res = client.post(f"/tables/{self.table_id}/columns", json={"name": "Contact Email", "type": "email"})
        self.assertEqual(res.status_code, 201)
        column = res.json()["column"]
        self.assertEqual(column["name"], "contactEmail")
        dup = client.post(f"/tables/{self.table_id}/columns", json={"name": "contactEmail"})
        self.assertEqual(dup.json()["errors"][0]["code"], "COLUMN_EXISTS")

    def test_rename_column_moves_row_values(self) -> None:
        client.post(f"/tables/{self.table_id}/data", json={"data": {"title": "Lamp", "price": 12, "qty": 1}})
        column_id = self.columns["title"]["id"]
        res = client.put(f"/tables/{self.table_id}/columns/{column_id}", json={"name": "Product Name"})
        body = res.json()
        self.assertTrue(body.get("ok"), body)
        self.assertEqual(body["column"]["name"], "productName")
        row = client.get(f"/tables/{self.table_id}/data").json()["items"][0]
        self.assertEqual(row["data"]["productName"], "Lamp")
        self.assertNotIn("title", row["data"])

    def test_protected_columns(self) -> None:
        price_id = self.columns["price"]["id"]
        res = client.put(f"/tables/{self.table_id}/columns/{price_id}", json={"name": "cost"})
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.json()["errors"][0]["code"], "COLUMN_PROTECTED")
        res = client.delete(f"/tables/{self.table_id}/columns/{price_id}")
        self.assertEqual(res.status_code, 403)
        res = client.post(f"/tables/{self.table_id}/columns/{price_id}/apply-type", json={"new_type": "text"})
        self.assertEqual(res.status_code, 403)
        ok = client.put(f"/tables/{self.table_id}/columns/{price_id}", json={"default_value": 10})
        self.assertTrue(ok.json().get("ok"), ok.json())
        self.assertEqual(ok.json()["column"]["default_value"], "10")

    def test_delete_column(self) -> None:
        column_id = self.columns["unitCost"]["id"]
        res = client.delete(f"/tables/{self.table_id}/columns/{column_id}")
        self.assertTrue(res.json().get("ok"), res.json())
        names = [c["name"] for c in client.get(f"/tables/{self.table_id}").json()["columns"]]
        self.assertNotIn("unitCost", names)

    def test_reorder_columns(self) -> None:
        qty_id = self.columns["qty"]["id"]
        res = client.post(f"/tables/{self.table_id}/columns/reorder", json={"column_ids": [qty_id]})
        body = res.json()
        self.assertTrue(body.get("ok"), body)
        self.assertEqual(body["columns"][0]["name"], "qty")
        bad = client.post(f"/tables/{self.table_id}/columns/reorder", json={"column_ids": ["nope"]})
        self.assertEqual(bad.json()["errors"][0]["code"], "COLUMN_ORDER_INVALID")

    def test_column_mass_action(self) -> None:
        ids = [self.columns["title"]["id"], self.columns["unitCost"]["id"]]
        res = client.post(f"/tables/{self.table_id}/columns/mass-action", json={"action": "make_optional", "column_ids": ids})
        self.assertEqual(res.json()["affected"], 2)
        described = client.get(f"/tables/{self.table_id}").json()
        title = [c for c in described["columns"] if c["name"] == "title"][0]
        self.assertFalse(title["is_required"])
        blocked = client.post(
            f"/tables/{self.table_id}/columns/mass-action",
            json={"action": "delete", "column_ids": [self.columns["qty"]["id"]]},
        )
        self.assertEqual(blocked.status_code, 403)
        unknown = client.post(f"/tables/{self.table_id}/columns/mass-action", json={"action": "rename", "column_ids": ids})
        self.assertEqual(unknown.json()["errors"][0]["code"], "INVALID_ACTION")

    def test_fix_column_names(self) -> None:
        legacy = main.table_store.create_column(self.table_id, {"name": "first_name", "type": "text", "position": 99})
        main.cache.invalidate_all_table_caches(self.table_id)
        client.post(f"/tables/{self.table_id}/data", json={"data": {"title": "x", "price": 1, "qty": 1}})
        row = main.row_store.list_rows(self.table_id)[0][0]
        main.row_store.update_row(self.table_id, row["id"], dict(row["data"], first_name="Ada"))
        res = client.post(f"/tables/{self.table_id}/columns/fix-names")
        body = res.json()
        self.assertTrue(body.get("ok"), body)
        self.assertEqual(body["total"], 1)
        self.assertEqual(body["fixed"][0]["column_id"], legacy["id"])
        self.assertEqual(body["fixed"][0]["to"], "firstname")
        self.assertEqual(body["fixed"][0]["rows_updated"], 1)
        stored = main.row_store.get_row(self.table_id, row["id"])
        self.assertEqual(stored["data"]["firstname"], "Ada")

    def test_preview_and_apply_type_change(self) -> None:
        column = client.post(f"/tables/{self.table_id}/columns", json={"name": "stock", "type": "text"}).json()["column"]
        client.post(f"/tables/{self.table_id}/data", json={"data": {"title": "a", "price": 1, "stock": "12"}})
        client.post(f"/tables/{self.table_id}/data", json={"data": {"title": "b", "price": 1, "stock": "lots"}})
        preview = client.post(f"/tables/{self.table_id}/columns/{column['id']}/preview-type", json={"new_type": "integer"}).json()
        self.assertTrue(preview.get("ok"), preview)
        self.assertEqual(preview["preview"]["compatible_rows"], 1)
        self.assertEqual(preview["preview"]["incompatible_rows"], 1)
        applied = client.post(f"/tables/{self.table_id}/columns/{column['id']}/apply-type", json={"new_type": "integer"}).json()
        self.assertTrue(applied.get("ok"), applied)
        self.assertEqual(applied["column"]["type"], "integer")
        self.assertEqual(applied["converted_rows"], 1)
        values = sorted(str(r["data"]["stock"]) for r in client.get(f"/tables/{self.table_id}/data").json()["items"])
        self.assertEqual(values, ["12", "lots"])
        unknown = client.post(f"/tables/{self.table_id}/columns/{column['id']}/preview-type", json={"new_type": "widget"})
        self.assertEqual(unknown.json()["errors"][0]["code"], "COLUMN_TYPE_UNKNOWN")


class TestSchemaApi(unittest.TestCase):
    def test_column_types(self) -> None:
        body = client.get("/schema/column-types").json()
        self.assertTrue(body.get("ok"), body)
        types = {t["type"] for t in body["items"]}
        self.assertTrue({"text", "email", "currency", "rating"}.issubset(types))

    def test_generators(self) -> None:
        body = client.get("/schema/generators").json()
        self.assertEqual({g["id"] for g in body["generators"]}, {"phone-number", "did-number"})
        res = client.post("/schema/generators/phone-number/generate", json={"count": 3, "options": {"format": "e164"}})
        values = res.json()["values"]
        self.assertEqual(len(values), 3)
        self.assertTrue(all(v.startswith("+1") for v in values))
        missing = client.post("/schema/generators/nope/generate", json={})
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["errors"][0]["code"], "GENERATOR_NOT_FOUND")

    def test_table_generators(self) -> None:
        body = client.get("/schema/table-generators").json()
        ids = {g["id"] for g in body["items"]}
        self.assertTrue({"test-tables", "sale-tables", "rental-tables"}.issubset(ids))


if __name__ == "__main__":
    unittest.main()
