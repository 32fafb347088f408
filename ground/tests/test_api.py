import base64
import os
import tempfile
import unittest
from decimal import Decimal

_DB_DIR = tempfile.mkdtemp()
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'api.db')}"

from fastapi.testclient import TestClient  # noqa: E402

from ground import investment_store as store  # noqa: E402
from ground.encryption import AesGcmCipher, DecryptionGate  # noqa: E402
from ground.main import app, engine  # noqa: E402

KEY = base64.b64encode(bytes(range(32))).decode("ascii")


class InvestmentApiTests(unittest.TestCase):
    def setUp(self) -> None:
        store.metadata.drop_all(engine)
        store.metadata.create_all(engine)
        self.client = TestClient(app)
        self.headers = {"x-user-id": "1"}
        response = self.client.post(
            "/investments",
            json={
                "name": "Fund A",
                "investment_class": "PORTFOLIO",
                "currency": "USD",
                "target_annual_return": "12",
                "yield_start_year": 2024,
                "yield_start_month": 1,
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)
        self.fund = response.json()

    def put_snapshot(self, month: int, body: dict):
        return self.client.put(
            f"/investments/{self.fund['id']}/snapshots/2024/{month}",
            json=body,
            headers=self.headers,
        )

    def test_requires_user_identity(self) -> None:
        self.assertEqual(self.client.get("/investments").status_code, 401)
        self.assertEqual(self.client.get("/investments", headers={"x-user-id": "abc"}).status_code, 400)

    def test_target_return_accepts_percent(self) -> None:
        self.assertEqual(Decimal(str(self.fund["target_annual_return"])), Decimal("0.12"))

    def test_rejects_unknown_class_and_currency(self) -> None:
        response = self.client.post(
            "/investments",
            json={"name": "X", "investment_class": "BOND", "currency": "USD"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 400)
        response = self.client.post(
            "/investments",
            json={"name": "X", "investment_class": "ACCOUNT", "currency": "EUR"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 400)

    def test_summary_projects_and_decomposes(self) -> None:
        self.assertEqual(self.put_snapshot(3, {"closing_capital": "1000"}).status_code, 200)
        response = self.client.post(
            "/investments/movements",
            json={
                "investment_id": self.fund["id"],
                "date": "2024-06-01",
                "type": "deposit",
                "currency": "USD",
                "amount": "200",
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["month"], 6)

        summary = self.client.get("/investments/summary", params={"year": 2024}, headers=self.headers)

        self.assertEqual(summary.status_code, 200)
        body = summary.json()
        usd = [Decimal(str(value)) for value in body["investments"][0]["usd"]]
        self.assertEqual(usd[3], Decimal("1010"))
        self.assertAlmostEqual(usd[11], Decimal("1093.69"), places=2)
        self.assertEqual(Decimal(str(body["flows"][5])), Decimal("200"))
        variation = Decimal(str(body["variation"][5]))
        real = Decimal(str(body["real_returns"][5]))
        self.assertAlmostEqual(real, variation - Decimal("200"), places=8)

    def test_closed_month_rejects_snapshot_writes(self) -> None:
        response = self.client.post("/month-closes", json={"year": 2024, "month": 5}, headers=self.headers)
        self.assertEqual(response.status_code, 200)

        for month, reason in ((5, "month_closed"), (6, "prior_month_closed")):
            response = self.put_snapshot(month, {"closing_capital": "10"})
            self.assertEqual(response.status_code, 409)
            self.assertEqual(response.json()["detail"]["reason"], reason)
        self.assertEqual(self.put_snapshot(7, {"closing_capital": "10"}).status_code, 200)

        closes = self.client.get("/month-closes", params={"year": 2024}, headers=self.headers).json()
        self.assertEqual(closes["rows"], [{"year": 2024, "month": 5}])

        snapshots = self.client.get(
            f"/investments/{self.fund['id']}/snapshots", params={"year": 2024}, headers=self.headers
        ).json()
        self.assertEqual([row["month"] for row in snapshots["months"]], [7])

    def test_closed_month_rejects_movements(self) -> None:
        self.client.post("/month-closes", json={"year": 2024, "month": 5}, headers=self.headers)

        response = self.client.post(
            "/investments/movements",
            json={
                "investment_id": self.fund["id"],
                "date": "2024-05-01",
                "type": "withdrawal",
                "amount": "20",
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 409)

    def test_local_currency_snapshot_rate_falls_back_to_default(self) -> None:
        response = self.client.post(
            "/investments",
            json={"name": "Caja", "investment_class": "ACCOUNT", "currency": "UYU"},
            headers=self.headers,
        )
        account_id = response.json()["id"]

        saved = self.client.put(
            f"/investments/{account_id}/snapshots/2024/1",
            json={"closing_capital": "4000", "usd_rate": "40"},
            headers=self.headers,
        )
        bad_rate = self.client.put(
            f"/investments/{account_id}/snapshots/2024/2",
            json={"closing_capital": "4000", "usd_rate": "0"},
            headers=self.headers,
        )

        self.assertEqual(saved.status_code, 200)
        self.assertEqual(Decimal(str(saved.json()["closing_capital_usd"])), Decimal("100"))
        self.assertEqual(bad_rate.status_code, 200)
        self.assertEqual(Decimal(str(bad_rate.json()["usd_rate"])), Decimal("37.983"))
        self.assertAlmostEqual(
            Decimal(str(bad_rate.json()["closing_capital_usd"])), Decimal("4000") / Decimal("37.983"), places=4
        )

    def test_encrypted_snapshot_needs_key_to_count(self) -> None:
        gate = DecryptionGate(AesGcmCipher(KEY))
        payload = gate.encrypt_snapshot(Decimal("1000"), Decimal("1000"))
        self.assertEqual(self.put_snapshot(3, {"encrypted_payload": payload}).status_code, 200)

        locked = self.client.get("/investments/summary", params={"year": 2024}, headers=self.headers).json()
        unlocked = self.client.get(
            "/investments/summary",
            params={"year": 2024},
            headers={**self.headers, "x-encryption-key": KEY},
        ).json()

        self.assertEqual({Decimal(str(v)) for v in locked["investments"][0]["usd"]}, {Decimal("0")})
        self.assertEqual(Decimal(str(unlocked["investments"][0]["usd"][2])), Decimal("1000"))

    def test_delete_blocked_by_closed_month(self) -> None:
        self.put_snapshot(2, {"closing_capital": "500"})
        self.client.post("/month-closes", json={"year": 2024, "month": 2}, headers=self.headers)

        response = self.client.delete(f"/investments/{self.fund['id']}", headers=self.headers)
        self.assertEqual(response.status_code, 409)

        self.client.delete("/month-closes/2024/2", headers=self.headers)
        response = self.client.delete(f"/investments/{self.fund['id']}", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/investments", headers=self.headers).json(), [])

    def test_keyed_writes_are_stored_encrypted(self) -> None:
        keyed = {**self.headers, "x-encryption-key": KEY}
        saved = self.client.put(
            f"/investments/{self.fund['id']}/snapshots/2024/3",
            json={"closing_capital": "1000"},
            headers=keyed,
        )
        moved = self.client.post(
            "/investments/movements",
            json={
                "investment_id": self.fund["id"],
                "date": "2024-06-15",
                "type": "deposit",
                "amount": "200",
            },
            headers=keyed,
        )

        self.assertEqual(saved.status_code, 200)
        self.assertEqual(Decimal(str(saved.json()["closing_capital"])), Decimal("0"))
        self.assertIsNotNone(saved.json()["encrypted_payload"])
        self.assertEqual(moved.status_code, 200)
        self.assertEqual(Decimal(str(moved.json()["amount"])), Decimal("0"))
        self.assertEqual(moved.json()["date"], "2024-06-01")

        gate = DecryptionGate(AesGcmCipher(KEY))
        record = gate.cipher.decrypt(saved.json()["encrypted_payload"])
        self.assertEqual(Decimal(record["closingCapital"]), Decimal("1000"))
        summary = self.client.get("/investments/summary", params={"year": 2024}, headers=keyed).json()
        self.assertEqual(Decimal(str(summary["investments"][0]["usd"][2])), Decimal("1000"))
        self.assertEqual(Decimal(str(summary["flows"][5])), Decimal("200"))

    def test_invalid_movement_amount_is_400(self) -> None:
        for amount in ("abc", "-5", None):
            with self.subTest(amount=amount):
                response = self.client.post(
                    "/investments/movements",
                    json={
                        "investment_id": self.fund["id"],
                        "date": "2024-06-01",
                        "type": "deposit",
                        "amount": amount,
                    },
                    headers=self.headers,
                )
                self.assertEqual(response.status_code, 400)

    def test_yield_start_month_requires_year(self) -> None:
        created = self.client.post(
            "/investments",
            json={"name": "Fund B", "investment_class": "PORTFOLIO", "yield_start_month": 4},
            headers=self.headers,
        )
        updated = self.client.put(
            f"/investments/{self.fund['id']}",
            json={"yield_start_year": None},
            headers=self.headers,
        )

        self.assertEqual(created.status_code, 400)
        self.assertEqual(updated.status_code, 400)

    def test_update_clears_only_sent_fields(self) -> None:
        renamed = self.client.put(
            f"/investments/{self.fund['id']}", json={"name": "Fund Z"}, headers=self.headers
        ).json()
        cleared = self.client.put(
            f"/investments/{self.fund['id']}",
            json={"yield_start_year": None, "yield_start_month": None},
            headers=self.headers,
        ).json()

        self.assertEqual((renamed["yield_start_year"], renamed["yield_start_month"]), (2024, 1))
        self.assertIsNone(cleared["yield_start_year"])
        self.assertIsNone(cleared["yield_start_month"])
        self.assertEqual(cleared["name"], "Fund Z")

    def test_migrate_then_rotate_key(self) -> None:
        self.put_snapshot(3, {"closing_capital": "1000"})
        new_key = base64.b64encode(bytes(range(1, 33))).decode("ascii")

        pending = self.client.get("/encryption/status", headers=self.headers).json()
        keyless = self.client.post("/encryption/migrate", headers=self.headers)
        migrated = self.client.post(
            "/encryption/migrate", headers={**self.headers, "x-encryption-key": KEY}
        ).json()
        done = self.client.get("/encryption/status", headers=self.headers).json()
        rotated = self.client.post(
            "/encryption/rotate",
            json={"new_key": new_key},
            headers={**self.headers, "x-encryption-key": KEY},
        ).json()
        summary = self.client.get(
            "/investments/summary",
            params={"year": 2024},
            headers={**self.headers, "x-encryption-key": new_key},
        ).json()

        self.assertEqual(pending, {"snapshots": 1, "movements": 0, "complete": False})
        self.assertEqual(keyless.status_code, 400)
        self.assertEqual(migrated, {"snapshots": 1, "movements": 0, "errors": []})
        self.assertTrue(done["complete"])
        self.assertEqual(rotated, {"snapshots": 1, "movements": 0, "errors": []})
        self.assertEqual(Decimal(str(summary["investments"][0]["usd"][2])), Decimal("1000"))

    def test_update_unknown_investment_is_404(self) -> None:
        response = self.client.put("/investments/999", json={"name": "Nope"}, headers=self.headers)

        self.assertEqual(response.status_code, 404)


if __name__ == "__main__":
    unittest.main()
