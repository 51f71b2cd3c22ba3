import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from manifest_store import ManifestStore
from module_registry import ModuleRegistry, validate_manifest


def _manifest(**overrides) -> dict:
    manifest = {
        "id": "phone-types",
        "name": "Phone types",
        "version": "1.0.0",
        "columnTypes": [
            {
                "id": "phone",
                "displayName": "Phone",
                "validation": {"handler": "phone"},
                "format": {"handler": "phone"},
            }
        ],
        "tableGenerators": [{"id": "contacts", "columns": [{"name": "phone", "type": "phone-types:phone"}]}],
    }
    manifest.update(overrides)
    return manifest


class TestValidateManifest(unittest.TestCase):
    def test_valid_manifest(self) -> None:
        result = validate_manifest(_manifest())
        self.assertTrue(result["ok"], result)
        self.assertEqual(result["warnings"], [])

    def test_scoped_ids_allowed(self) -> None:
        self.assertTrue(validate_manifest(_manifest(id="@acme/phones"))["ok"])
        self.assertFalse(validate_manifest(_manifest(id="@Acme/Phones"))["ok"])

    def test_required_fields(self) -> None:
        result = validate_manifest({"id": "x"})
        codes = {e["code"] for e in result["errors"]}
        self.assertEqual(codes, {"MANIFEST_REQUIRED", "MANIFEST_INVALID_VERSION"})
        self.assertEqual(validate_manifest([])["errors"][0]["code"], "MANIFEST_INVALID")

    def test_column_type_checks(self) -> None:
        types = [
            {"id": "a", "validation": {"handler": "eval"}},
            {"id": "a", "displayName": "Again"},
            {"id": "b", "displayName": "B", "validation": {"handler": "regex", "pattern": "("}},
            {"id": "c", "displayName": "C", "baseType": "blob"},
        ]
        result = validate_manifest(_manifest(columnTypes=types))
        codes = [e["code"] for e in result["errors"]]
        self.assertIn("MANIFEST_UNKNOWN_HANDLER", codes)
        self.assertIn("MANIFEST_DUPLICATE_TYPE", codes)
        self.assertEqual(codes.count("MANIFEST_INVALID"), 2)
        self.assertEqual([w["code"] for w in result["warnings"]], ["MANIFEST_MISSING_DISPLAY_NAME"])

    def test_settings_and_generators_checked(self) -> None:
        result = validate_manifest(
            _manifest(
                settings=[{"id": "mode", "type": "select"}, {"id": "mode", "type": "string"}, {"id": "x", "type": "date"}],
                tableGenerators=[{"id": "empty", "columns": []}],
            )
        )
        codes = [e["code"] for e in result["errors"]]
        self.assertEqual(codes.count("MANIFEST_DUPLICATE_SETTING"), 1)
        self.assertEqual(codes.count("MANIFEST_INVALID"), 3)


class TestModuleRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self.store = ManifestStore()
        self.registry = ModuleRegistry(self.store)

    def test_install(self) -> None:
        result = self.registry.install(_manifest(), actor={"id": "u1"})
        self.assertTrue(result["ok"], result)
        module = result["module"]
        self.assertTrue(module["enabled"])
        self.assertEqual(module["status"], "active")
        self.assertEqual(module["current_hash"], self.store.get_head("phone-types"))
        self.assertEqual(self.registry.history("phone-types")[0]["audit_id"], result["audit_id"])

    def test_install_invalid_manifest(self) -> None:
        result = self.registry.install({"id": "x"})
        self.assertFalse(result["ok"])
        self.assertIsNone(self.registry.get("x"))

    def test_upgrade_in_place(self) -> None:
        first = self.registry.install(_manifest())["module"]
        self.registry.set_enabled("phone-types", False)
        result = self.registry.install(_manifest(version="2.0.0"))
        module = result["module"]
        self.assertEqual(module["version"], "2.0.0")
        self.assertNotEqual(module["current_hash"], first["current_hash"])
        self.assertEqual(module["installed_at"], first["installed_at"])
        self.assertFalse(module["enabled"])
        self.assertEqual(self.registry.history("phone-types")[0]["action"], "upgrade")

    def test_enable_disable(self) -> None:
        self.registry.install(_manifest())
        result = self.registry.set_enabled("phone-types", False)
        self.assertEqual(result["module"]["status"], "disabled")
        again = self.registry.set_enabled("phone-types", False)
        self.assertEqual(again["warnings"][0]["code"], "MODULE_STATE_UNCHANGED")
        missing = self.registry.set_enabled("nope", True)
        self.assertEqual(missing["errors"][0]["code"], "MODULE_NOT_FOUND")

    def test_column_types_only_from_enabled_modules(self) -> None:
        self.registry.install(_manifest())
        self.assertIn("phone-types:phone", self.registry.column_types())
        self.assertEqual(self.registry.table_generators()[0]["module_id"], "phone-types")
        self.registry.set_enabled("phone-types", False)
        self.assertEqual(self.registry.column_types(), {})
        self.assertEqual(self.registry.table_generators(), [])

    def test_settings_round_trip_copies(self) -> None:
        self.registry.install(_manifest())
        values = {"a": [1]}
        self.registry.set_settings("phone-types", values)
        values["a"].append(2)
        self.assertEqual(self.registry.get_settings("phone-types"), {"a": [1]})
        with self.assertRaises(KeyError):
            self.registry.set_settings("nope", {})

    def test_uninstall_removes_snapshots(self) -> None:
        self.registry.install(_manifest())
        result = self.registry.uninstall("phone-types")
        self.assertTrue(result["ok"])
        self.assertIsNone(self.registry.get("phone-types"))
        self.assertIsNone(self.store.get_head("phone-types"))
        self.assertEqual(self.registry.history("phone-types")[0]["action"], "uninstall")
        self.assertFalse(self.registry.uninstall("phone-types")["ok"])


if __name__ == "__main__":
    unittest.main()
