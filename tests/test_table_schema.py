import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
for path in (ROOT, SRC):
    if path not in sys.path:
        sys.path.insert(0, path)

from app import table_schema


class TestTableTypes(unittest.TestCase):
    def test_normalize_table_type(self) -> None:
        self.assertEqual(table_schema.normalize_table_type("rent"), "rent")
        self.assertEqual(table_schema.normalize_table_type(None, True), "sale")
        self.assertEqual(table_schema.normalize_table_type("weird"), "default")

    def test_protected_columns(self) -> None:
        self.assertEqual(table_schema.get_protected_columns("sale"), {"price", "qty"})
        self.assertEqual(table_schema.get_protected_columns("rent"), {"price", "fee", "used", "available"})
        self.assertEqual(table_schema.get_protected_columns("default"), set())

    def test_missing_type_columns_appended_after_last(self) -> None:
        existing = [{"name": "price", "position": 5}, {"name": "title", "position": 20}]
        missing = table_schema.missing_type_columns("sale", existing)
        self.assertEqual([c["name"] for c in missing], ["qty"])
        self.assertEqual(missing[0]["position"], 30)

    def test_protected_change(self) -> None:
        column = {"name": "price", "type": "number"}
        errors = table_schema.check_protected_change("sale", column, {"name": "cost", "type": "text"})
        self.assertEqual([e["path"] for e in errors], ["name", "type"])
        self.assertEqual(table_schema.check_protected_change("sale", column, {"is_required": False}), [])
        self.assertEqual(table_schema.check_protected_change("default", column, {"name": "cost"}), [])


class TestColumnNames(unittest.TestCase):
    def test_validate_column_name(self) -> None:
        self.assertEqual(table_schema.validate_column_name("Monthly Cost")["internal_name"], "monthlyCost")
        self.assertEqual(table_schema.validate_column_name("price")["internal_name"], "price")
        self.assertEqual(table_schema.validate_column_name("unitPrice")["internal_name"], "unitPrice")
        self.assertEqual(table_schema.validate_column_name("Price")["internal_name"], "price")
        self.assertFalse(table_schema.validate_column_name("unit_price")["valid"])
        self.assertFalse(table_schema.validate_column_name("")["valid"])
        self.assertFalse(table_schema.validate_column_name("a" * 101)["valid"])

    def test_fix_column_name(self) -> None:
        self.assertEqual(table_schema.fix_column_name("first_name!"), "firstname")
        self.assertEqual(table_schema.fix_column_name("Unit Price 2"), "unitPrice")
        self.assertEqual(table_schema.fix_column_name("123"), "column")

    def test_display_name_round_trip(self) -> None:
        self.assertEqual(table_schema.to_display_name("monthlyCost"), "Monthly Cost")
        self.assertEqual(table_schema.to_internal_name("Monthly Cost"), "monthlyCost")


class TestRentalState(unittest.TestCase):
    def test_states(self) -> None:
        available = {"used": False, "available": True}
        rented = dict(available, **table_schema.RENTED_STATE)
        released = dict(rented, **table_schema.RELEASED_STATE)
        self.assertTrue(table_schema.can_rent(available))
        self.assertFalse(table_schema.can_release(available))
        self.assertEqual(table_schema.rental_state(rented), "rented")
        self.assertTrue(table_schema.can_release(rented))
        self.assertFalse(table_schema.can_rent(rented))
        self.assertEqual(table_schema.rental_state(released), "used")
        self.assertFalse(table_schema.can_rent(released))
        self.assertFalse(table_schema.can_release(released))

    def test_string_flags(self) -> None:
        self.assertTrue(table_schema.can_rent({"used": "false", "available": "true"}))
        self.assertTrue(table_schema.can_rent({}))

    def test_numbering(self) -> None:
        self.assertEqual(table_schema.format_sale_number(2024, 7), "SALE-2024-007")
        self.assertEqual(table_schema.format_rental_number(2025, 1234), "RENT-2025-1234")


if __name__ == "__main__":
    unittest.main()
