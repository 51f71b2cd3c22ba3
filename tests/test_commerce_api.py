import os
import re
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
from app.errors import NotFoundError


client = TestClient(main.app)


def _table(name: str, table_type: str, visibility: str = "public") -> str:
    res = client.post("/tables", json={"name": name, "table_type": table_type, "visibility": visibility, "columns": [{"name": "title"}]})
    assert res.status_code == 201, res.json()
    return res.json()["table"]["id"]


def _item(table_id: str, **data) -> str:
    res = client.post(f"/tables/{table_id}/data", json={"data": data})
    assert res.status_code == 201, res.json()
    return res.json()["row"]["id"]


class TestPurchases(unittest.TestCase):
    def setUp(self) -> None:
        self.table_id = _table("Phones for sale", "sale")
        self.item_id = _item(self.table_id, title="Number", price=25, qty=3)

    def test_buy_decrements_quantity(self) -> None:
        res = client.post(
            "/public/buy",
            json={"table_id": self.table_id, "item_id": self.item_id, "customer_id": "cust-1", "quantity_sold": 2},
        )
        body = res.json()
        self.assertEqual(res.status_code, 201, body)
        sale = body["sale"]
        self.assertRegex(sale["sale_number"], r"^SALE-\d{4}-\d{3,}$")
        self.assertEqual(sale["total_amount"], 50.0)
        self.assertEqual(sale["sale_status"], "completed")
        self.assertEqual(sale["item_snapshot"]["qty"], 3)
        item = client.get(f"/public/tables/{self.table_id}/items/{self.item_id}").json()["item"]
        self.assertEqual(item["data"]["qty"], 1)
        log = client.get("/inventory/transactions", params={"table_id": self.table_id, "transaction_type": "sale"}).json()
        self.assertEqual(log["total"], 1)
        self.assertEqual(log["items"][0]["quantity_change"], -2)
        self.assertEqual(log["items"][0]["reference_id"], sale["id"])

    def test_sale_numbers_increase(self) -> None:
        first = client.post("/public/buy", json={"table_id": self.table_id, "item_id": self.item_id, "customer_id": "c"}).json()["sale"]
        second = client.post("/public/buy", json={"table_id": self.table_id, "item_id": self.item_id, "customer_id": "c"}).json()["sale"]
        seq = lambda s: int(re.match(r"^SALE-\d{4}-(\d+)$", s["sale_number"]).group(1))
        self.assertEqual(seq(second), seq(first) + 1)

    def test_insufficient_quantity(self) -> None:
        res = client.post(
            "/public/buy",
            json={"table_id": self.table_id, "item_id": self.item_id, "customer_id": "c", "quantity_sold": 5},
        )
        self.assertEqual(res.status_code, 400)
        error = res.json()["errors"][0]
        self.assertEqual(error["code"], "INSUFFICIENT_QUANTITY")
        self.assertEqual(error["detail"], {"available": 3, "requested": 5})

    def test_buy_validation(self) -> None:
        res = client.post("/public/buy", json={"table_id": self.table_id, "item_id": self.item_id})
        self.assertEqual(res.json()["errors"][0]["path"], "customer_id")
        res = client.post("/public/buy", json={"table_id": self.table_id, "item_id": self.item_id, "customer_id": "c", "quantity_sold": 0})
        self.assertEqual(res.json()["errors"][0]["code"], "INVALID_QUANTITY")

    def test_free_item_not_for_sale(self) -> None:
        free_id = _item(self.table_id, title="Free", price=0, qty=5)
        res = client.post("/public/buy", json={"table_id": self.table_id, "item_id": free_id, "customer_id": "c"})
        self.assertEqual(res.status_code, 403)

    def test_private_table_hidden_from_public_api(self) -> None:
        private_id = _table("Back office", "sale", visibility="private")
        item_id = _item(private_id, title="Hidden", price=10, qty=1)
        res = client.post("/public/buy", json={"table_id": private_id, "item_id": item_id, "customer_id": "c"})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(client.get(f"/public/tables/{private_id}/items").status_code, 404)

    def test_availability(self) -> None:
        res = client.get(f"/public/tables/{self.table_id}/items/{self.item_id}/availability", params={"quantity": 2})
        availability = res.json()["availability"]
        self.assertTrue(availability["available"])
        self.assertEqual(availability["max_available"], 3)
        res = client.get(f"/public/tables/{self.table_id}/items/{self.item_id}/availability", params={"quantity": 4})
        self.assertFalse(res.json()["availability"]["available"])

    def test_sales_reports(self) -> None:
        client.post("/public/buy", json={"table_id": self.table_id, "item_id": self.item_id, "customer_id": "report", "quantity_sold": 3})
        listed = client.get("/sales", params={"table_id": self.table_id}).json()
        self.assertTrue(listed.get("ok"), listed)
        self.assertEqual(listed["total"], 1)
        by_customer = client.get("/sales", params={"customer_id": "report"}).json()
        self.assertEqual(by_customer["total"], 1)
        analytics = client.get("/sales/analytics", params={"table_id": self.table_id}).json()["analytics"]
        self.assertEqual(analytics["total_sales"], 1)
        self.assertEqual(analytics["total_revenue"], 75.0)
        self.assertEqual(analytics["total_items_sold"], 3)
        self.assertEqual(analytics["top_tables"][0]["table_id"], self.table_id)
        summary = client.get("/sales/summary").json()["summary"]
        self.assertGreaterEqual(summary["today"]["total_sales"], 1)
        self.assertEqual(set(summary), {"today", "week", "month", "all_time"})
        bad = client.get("/sales", params={"date_from": "01/02/2024"})
        self.assertEqual(bad.json()["errors"][0]["code"], "INVALID_DATE")


class TestRentals(unittest.TestCase):
    def setUp(self) -> None:
        self.table_id = _table("Tools for rent", "rent", visibility="shared")
        self.item_id = _item(self.table_id, title="Drill", price=15, fee=5)

    def test_rent_and_release_cycle(self) -> None:
        rented = client.post("/public/rent", json={"table_id": self.table_id, "item_id": self.item_id, "customer_id": "c1"})
        body = rented.json()
        self.assertEqual(rented.status_code, 201, body)
        rental = body["rental"]
        self.assertRegex(rental["rental_number"], r"^RENT-\d{4}-\d{3,}$")
        self.assertEqual(rental["status"], "active")
        self.assertEqual(rental["rental_period"], "day")
        item = client.get(f"/public/tables/{self.table_id}/items/{self.item_id}").json()["item"]
        self.assertEqual((item["data"]["used"], item["data"]["available"]), (False, False))

        again = client.post("/public/rent", json={"table_id": self.table_id, "item_id": self.item_id})
        self.assertEqual(again.json()["errors"][0]["code"], "ITEM_NOT_AVAILABLE")

        released = client.post("/public/release", json={"table_id": self.table_id, "item_id": self.item_id})
        body = released.json()
        self.assertTrue(body.get("ok"), body)
        self.assertEqual(body["rental"]["status"], "released")
        self.assertIsNotNone(body["rental"]["released_at"])
        item = client.get(f"/public/tables/{self.table_id}/items/{self.item_id}").json()["item"]
        self.assertEqual((item["data"]["used"], item["data"]["available"]), (True, False))

        twice = client.post("/public/release", json={"rental_id": rental["id"]})
        self.assertEqual(twice.json()["errors"][0]["code"], "RENTAL_NOT_ACTIVE")
        used = client.post("/public/rent", json={"table_id": self.table_id, "item_id": self.item_id})
        self.assertIn("already been used", used.json()["errors"][0]["message"])

    def test_release_requires_reference(self) -> None:
        res = client.post("/public/release", json={})
        self.assertEqual(res.status_code, 400)
        res = client.post("/public/release", json={"table_id": self.table_id, "item_id": self.item_id})
        self.assertEqual(res.status_code, 404)

    def test_release_by_rental_id_respects_visibility(self) -> None:
        rental = client.post("/public/rent", json={"table_id": self.table_id, "item_id": self.item_id}).json()["rental"]
        res = client.put(f"/tables/{self.table_id}", json={"visibility": "private"})
        self.assertEqual(res.status_code, 200, res.json())
        res = client.post("/public/release", json={"rental_id": rental["id"]})
        self.assertEqual(res.status_code, 404)
        self.assertEqual(main.rental_store.get(rental["id"])["status"], "active")

    def test_release_by_rental_id_respects_table_access(self) -> None:
        other_id = _table("Other rentals", "rent")
        rental = client.post("/public/rent", json={"table_id": self.table_id, "item_id": self.item_id}).json()["rental"]
        scoped = {
            "id": "token:scoped",
            "token_id": "scoped",
            "workspace_id": "default",
            "permissions": ["read", "write"],
            "is_admin": False,
            "table_access": [other_id],
        }
        with self.assertRaises(NotFoundError):
            main.commerce.release(scoped, {"rental_id": rental["id"]})
        released = main.commerce.release(dict(scoped, table_access=[other_id, self.table_id]), {"rental_id": rental["id"]})
        self.assertEqual(released["status"], "released")

    def test_rent_wrong_table_type(self) -> None:
        sale_id = _table("Not rentable", "sale")
        item_id = _item(sale_id, title="x", price=5, qty=1)
        res = client.post("/public/rent", json={"table_id": sale_id, "item_id": item_id})
        self.assertEqual(res.status_code, 403)

    def test_rental_availability_and_listing(self) -> None:
        availability = client.get(f"/public/tables/{self.table_id}/items/{self.item_id}/availability").json()["availability"]
        self.assertEqual(availability["state"], "available")
        client.post("/public/rent", json={"table_id": self.table_id, "item_id": self.item_id})
        listed = client.get("/rentals", params={"table_id": self.table_id}).json()
        self.assertTrue(listed.get("ok"), listed)
        self.assertEqual(listed["total"], 1)
        self.assertEqual(listed["by_status"]["active"], 1)
        self.assertEqual(listed["total_revenue"], 20.0)
        bad = client.get("/rentals", params={"status": "lost"})
        self.assertEqual(bad.json()["errors"][0]["code"], "INVALID_STATUS")


class TestPublicRead(unittest.TestCase):
    def test_public_tables_and_record_search(self) -> None:
        table_id = _table("Searchable", "default")
        _item(table_id, title="Needle")
        _item(table_id, title="Hay")
        tables = client.get("/public/tables").json()["items"]
        self.assertIn(table_id, {t["id"] for t in tables})
        first = client.get("/public/records", params={"table_ids": table_id, "filter.title": "needle"}).json()
        self.assertTrue(first.get("ok"), first)
        self.assertEqual(first["total"], 1)
        self.assertEqual(first["items"][0]["table_name"], "Searchable")
        self.assertFalse(first["cached"])
        second = client.get("/public/records", params={"table_ids": table_id, "filter.title": "NEEDLE"}).json()
        self.assertTrue(second["cached"])
        _item(table_id, title="needle")
        third = client.get("/public/records", params={"table_ids": table_id, "filter.title": "needle"}).json()
        self.assertFalse(third["cached"])
        self.assertEqual(third["total"], 2)

    def test_record_search_rejects_private_tables(self) -> None:
        private_id = _table("Secret", "default", visibility="private")
        res = client.get("/public/records", params={"table_ids": private_id})
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.json()["errors"][0]["code"], "TABLE_NOT_ACCESSIBLE")

    def test_public_items_paging(self) -> None:
        table_id = _table("Paged", "default")
        for i in range(3):
            _item(table_id, title=f"item {i}")
        page = client.get(f"/public/tables/{table_id}/items", params={"limit": 2}).json()
        self.assertEqual(page["total"], 3)
        self.assertTrue(page["has_more"])
        missing = client.get(f"/public/tables/{table_id}/items/nope")
        self.assertEqual(missing.status_code, 404)


if __name__ == "__main__":
    unittest.main()
