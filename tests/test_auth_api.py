import os
import sys
import unittest
import uuid

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
from app import token_service
from app.auth import issue_session_token


client = TestClient(main.app)

_ENV_KEYS = ("TABULA_DISABLE_AUTH", "TABULA_ADMIN_TOKEN", "TABULA_JWT_SECRET")


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestTokenAuth(unittest.TestCase):
    def setUp(self) -> None:
        self._saved = {key: os.environ.get(key) for key in _ENV_KEYS}
        os.environ["TABULA_DISABLE_AUTH"] = "1"
        self.visible_id = self._private_table("Granted")
        self.hidden_id = self._private_table("Withheld")
        os.environ["TABULA_DISABLE_AUTH"] = "0"
        os.environ.pop("TABULA_ADMIN_TOKEN", None)
        os.environ.pop("TABULA_JWT_SECRET", None)

    def tearDown(self) -> None:
        for key, value in self._saved.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _private_table(self, name: str) -> str:
        res = client.post("/tables", json={"name": name, "visibility": "private", "columns": [{"name": "title"}]})
        self.assertEqual(res.status_code, 201, res.json())
        return res.json()["table"]["id"]

    def _token(self, permissions: str = "read", **extra) -> dict:
        payload = {"name": f"token {uuid.uuid4().hex[:8]}", "permissions": permissions, "table_access": [self.visible_id]}
        payload.update(extra)
        return token_service.create_token(main.token_store, main.table_store, "default", payload)

    def test_health_is_open(self) -> None:
        res = client.get("/health")
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.json()["ok"])

    def test_missing_token(self) -> None:
        res = client.get("/tables")
        self.assertEqual(res.status_code, 401)
        body = res.json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["errors"][0]["code"], "AUTH_MISSING_TOKEN")
        self.assertEqual(body["errors"][0]["path"], "Authorization")

    def test_unknown_token(self) -> None:
        res = client.get("/tables", headers=_bearer("tbl_doesnotexist"))
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.json()["errors"][0]["code"], "TOKEN_NOT_FOUND")

    def test_read_token_cannot_write_or_administer(self) -> None:
        headers = _bearer(self._token("read")["token"])
        self.assertEqual(client.get("/tables", headers=headers).status_code, 200)
        res = client.post("/tables", headers=headers, json={"name": "Nope"})
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.json()["errors"][0]["code"], "FORBIDDEN")
        self.assertEqual(client.get("/tokens", headers=headers).status_code, 403)

    def test_table_access_gates_private_tables(self) -> None:
        headers = _bearer(self._token("read")["token"])
        self.assertEqual(client.get(f"/tables/{self.visible_id}", headers=headers).status_code, 200)
        self.assertEqual(client.get(f"/tables/{self.hidden_id}", headers=headers).status_code, 403)
        listed = client.get("/tables", headers=headers).json()
        ids = {t["id"] for t in listed["items"]}
        self.assertIn(self.visible_id, ids)
        self.assertNotIn(self.hidden_id, ids)

    def test_ip_whitelist_enforced(self) -> None:
        record = self._token("read", allowed_ips=["10.0.0.0/8"])
        denied = client.get("/tables", headers={**_bearer(record["token"]), "X-Forwarded-For": "8.8.8.8"})
        self.assertEqual(denied.status_code, 401)
        self.assertEqual(denied.json()["errors"][0]["code"], "IP_NOT_ALLOWED")
        allowed = client.get("/tables", headers={**_bearer(record["token"]), "X-Forwarded-For": "10.2.3.4"})
        self.assertEqual(allowed.status_code, 200)

    def test_admin_token_from_env(self) -> None:
        os.environ["TABULA_ADMIN_TOKEN"] = "s3cret-admin"
        self.assertEqual(client.get("/tokens", headers=_bearer("s3cret-admin")).status_code, 200)
        self.assertEqual(client.get("/tokens", headers=_bearer("s3cret-admix")).status_code, 401)

    def test_session_jwt(self) -> None:
        os.environ["TABULA_JWT_SECRET"] = "jwt-secret"
        token = issue_session_token("user-1", "jwt-secret")
        res = client.get("/tokens", headers=_bearer(token))
        self.assertEqual(res.status_code, 200, res.json())
        forged = issue_session_token("user-1", "other-secret")
        res = client.get("/tokens", headers=_bearer(forged))
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.json()["errors"][0]["code"], "AUTH_INVALID_TOKEN")

    def test_token_routes(self) -> None:
        os.environ["TABULA_ADMIN_TOKEN"] = "s3cret-admin"
        admin = _bearer("s3cret-admin")
        created = client.post(
            "/tokens",
            headers=admin,
            json={"name": f"api {uuid.uuid4().hex[:8]}", "permissions": "read,write", "table_access": [self.visible_id]},
        )
        self.assertEqual(created.status_code, 201, created.json())
        token = created.json()["token"]
        self.assertTrue(token["token"].startswith("tbl_"))
        self.assertEqual(token["permissions_list"], ["read", "write"])

        listed = client.get("/tokens", headers=admin).json()["items"]
        mine = [t for t in listed if t["id"] == token["id"]][0]
        self.assertNotEqual(mine["token"], token["token"])
        self.assertIn("...", mine["token"])

        self.assertEqual(client.get("/tables", headers=_bearer(token["token"])).status_code, 200)
        regenerated = client.post(f"/tokens/{token['id']}/regenerate", headers=admin).json()["token"]
        self.assertNotEqual(regenerated["token"], token["token"])
        self.assertEqual(client.get("/tables", headers=_bearer(token["token"])).status_code, 401)
        self.assertEqual(client.get("/tables", headers=_bearer(regenerated["token"])).status_code, 200)

        updated = client.put(f"/tokens/{token['id']}", headers=admin, json={"permissions": "read"}).json()
        self.assertTrue(updated.get("ok"), updated)
        res = client.post("/tables", headers=_bearer(regenerated["token"]), json={"name": "Blocked"})
        self.assertEqual(res.status_code, 403)

        bad = client.post("/tokens/mass-action", headers=admin, json={"action": "disable", "token_ids": [token["id"]]})
        self.assertEqual(bad.json()["errors"][0]["code"], "INVALID_ACTION")
        deleted = client.post("/tokens/mass-action", headers=admin, json={"action": "delete", "token_ids": [token["id"]]}).json()
        self.assertEqual(deleted["affected"], 1)
        self.assertEqual(client.get(f"/tokens/{token['id']}", headers=admin).status_code, 404)


if __name__ == "__main__":
    unittest.main()
