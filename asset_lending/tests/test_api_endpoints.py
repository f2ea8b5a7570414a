import dataclasses
import os
import sys
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent))

from lending_fixtures import TEST_GATEWAY, FixedVerifier, RecordingSignaler, add_asset, add_station, add_user, make_store, signed

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

import AssetLend as app_module
from services.user_access_service import issue_session_token


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_store()
        seed = self.Session()
        add_station(seed, "S1", "store")
        add_station(seed, "B1", "bike_station")
        add_user(seed, "u1", balance="100000")
        add_user(seed, "u2", balance="10000")
        add_user(seed, "u3", balance="200000", verified=False)
        add_asset(seed, "C1", "cup", home="S1")
        add_asset(seed, "C2", "cup", status="cleaning", home="S1")
        add_asset(seed, "BK1", "bike", home="B1")
        add_asset(seed, "BK2", "bike", home="B1")
        seed.close()

        self.signaler = RecordingSignaler()
        self.verifier = FixedVerifier(True)

        def _db_override():
            db = self.Session()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_lending_db] = _db_override
        app_module.app.dependency_overrides[app_module.get_device_signaler] = lambda: self.signaler
        app_module.app.dependency_overrides[app_module.get_location_verifier] = lambda: self.verifier
        app_module.app.dependency_overrides[app_module.get_gateway_config] = lambda: TEST_GATEWAY
        app_module._REQUESTS_BY_KEY.clear()
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.engine.dispose()

    def headers(self, user_id, role="User", station_ids=()):
        token = issue_session_token(user_id, role=role, station_ids=station_ids)
        return {"X-Session-Token": token}


class LendingEndpointTests(ApiTestCase):
    def test_health(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").status_code, 200)

    def test_store_failure_on_reads_is_structured(self):
        def _broken_db():
            db = self.Session()
            db.execute = mock.Mock(side_effect=OperationalError("SELECT", {}, Exception("store down")))
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_lending_db] = _broken_db
        headers = self.headers("u1")
        for path in ("/api/wallet", "/api/wallet/history", "/api/rewards", "/api/checkouts/active", "/api/checkouts/abc"):
            with self.subTest(path=path):
                response = self.client.get(path, headers=headers)
                self.assertEqual(response.status_code, 503)
                self.assertEqual(response.json()["detail"]["code"], "StoreUnavailable")

    def test_lending_requires_session(self):
        response = self.client.post("/api/cups/checkout", json={"assetID": "C1", "branchID": "S1"})
        self.assertEqual(response.status_code, 401)
        response = self.client.post(
            "/api/cups/checkout",
            json={"assetID": "C1", "branchID": "S1"},
            headers={"X-Session-Token": "forged.token"},
        )
        self.assertEqual(response.status_code, 401)

    def test_logout_revokes_session_token(self):
        headers = self.headers("u1")
        self.assertEqual(self.client.get("/api/wallet", headers=headers).status_code, 200)
        self.assertEqual(self.client.post("/api/auth/logout", headers=headers).json(), {"ok": True})
        self.assertEqual(self.client.get("/api/wallet", headers=headers).status_code, 401)

    def test_cup_checkout_and_return(self):
        headers = self.headers("u1")
        opened = self.client.post("/api/cups/checkout", json={"assetID": "C1", "branchID": "S1"}, headers=headers)
        self.assertEqual(opened.status_code, 200)
        body = opened.json()
        self.assertEqual(body["newBalance"], 70000)
        self.assertEqual(body["kind"], "cup")

        active = self.client.get("/api/checkouts/active", headers=headers).json()
        self.assertEqual([row["checkoutID"] for row in active], [body["checkoutID"]])

        returned = self.client.post(
            "/api/cups/return",
            json={"checkoutID": body["checkoutID"], "branchID": "S1", "condition": "clean"},
            headers=headers,
        )
        self.assertEqual(returned.status_code, 200)
        self.assertEqual(returned.json()["refund"], 30000)
        self.assertEqual(returned.json()["assetStatus"], "cleaning")

        again = self.client.post(
            "/api/cups/return",
            json={"checkoutID": body["checkoutID"], "branchID": "S1", "condition": "clean"},
            headers=headers,
        )
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["detail"]["code"], "CheckoutAlreadyClosed")

        wallet = self.client.get("/api/wallet", headers=headers).json()
        self.assertEqual(wallet["balance"], 100000)
        self.assertTrue(wallet["consistent"])
        history = self.client.get("/api/wallet/history", headers=headers).json()
        self.assertEqual([row["type"] for row in history], ["return_deposit", "borrow_fee", "deposit_topup"])
        rewards = self.client.get("/api/rewards", headers=headers).json()
        self.assertEqual(rewards["greenPoints"], 15)

    def test_structured_error_details(self):
        response = self.client.post("/api/cups/checkout", json={"assetID": "C1", "branchID": "S1"}, headers=self.headers("u2"))
        self.assertEqual(response.status_code, 402)
        detail = response.json()["detail"]
        self.assertEqual(detail["category"], "PreconditionFailed")
        self.assertEqual(detail["code"], "InsufficientBalance")
        self.assertEqual(detail["required"], 30000)
        self.assertEqual(detail["current"], 10000)

        missing = self.client.post("/api/cups/checkout", json={"assetID": "C404", "branchID": "S1"}, headers=self.headers("u1"))
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["detail"]["code"], "AssetNotFound")

    def test_request_validation(self):
        headers = self.headers("u1")
        self.assertEqual(
            self.client.post("/api/cups/return", json={"checkoutID": "x", "branchID": "S1", "condition": "lost"}, headers=headers).status_code,
            422,
        )
        self.assertEqual(
            self.client.post("/api/bikes/checkout", json={"assetID": "BK1", "stationID": "B1", "plannedDurationHours": 48}, headers=headers).status_code,
            422,
        )
        self.assertEqual(
            self.client.post("/api/bikes/return", json={"checkoutID": "x", "stationID": "B1", "distanceKm": 0.1}, headers=headers).status_code,
            422,
        )

    def test_bike_flow_with_device_signals(self):
        headers = self.headers("u1")
        opened = self.client.post(
            "/api/bikes/checkout",
            json={"assetID": "BK1", "stationID": "B1", "plannedDurationHours": 3},
            headers=headers,
        )
        self.assertEqual(opened.status_code, 200)
        self.assertEqual(opened.json()["charge"], 45000)

        second = self.client.post(
            "/api/bikes/checkout",
            json={"assetID": "BK2", "stationID": "B1", "plannedDurationHours": 1},
            headers=headers,
        )
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["detail"]["code"], "AlreadyRenting")

        self.verifier.answer = False
        refused = self.client.post(
            "/api/bikes/return",
            json={"checkoutID": opened.json()["checkoutID"], "stationID": "B1", "distanceKm": 4},
            headers=headers,
        )
        self.assertEqual(refused.status_code, 409)
        self.assertEqual(refused.json()["detail"]["code"], "NotAtStation")

        self.verifier.answer = True
        returned = self.client.post(
            "/api/bikes/return",
            json={"checkoutID": opened.json()["checkoutID"], "stationID": "B1", "distanceKm": 4},
            headers=headers,
        )
        self.assertEqual(returned.status_code, 200)
        self.assertEqual(returned.json()["pointsEarned"], 11)
        self.assertEqual(self.signaler.sent, [("BK1", "unlock"), ("BK1", "lock")])

    def test_unverified_bike_rider(self):
        response = self.client.post(
            "/api/bikes/checkout",
            json={"assetID": "BK1", "stationID": "B1", "plannedDurationHours": 1},
            headers=self.headers("u3"),
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["detail"]["action"], "complete_verification")

    def test_mobility_trip(self):
        response = self.client.post(
            "/api/mobility/trips",
            json={"tripType": "metro", "fare": 9000, "distanceKm": 4, "routeCode": "M1"},
            headers=self.headers("u1"),
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["newBalance"], 91000)

    def test_restock_requires_station_staff(self):
        user = self.client.post("/api/assets/C2/restock", json={"stationID": "S1"}, headers=self.headers("u1"))
        self.assertEqual(user.status_code, 403)
        staff = self.client.post(
            "/api/assets/C2/restock",
            json={"stationID": "S1"},
            headers=self.headers("staff1", role="Staff", station_ids=["S1"]),
        )
        self.assertEqual(staff.status_code, 200)
        self.assertEqual(staff.json()["previousStatus"], "cleaning")

    def test_throttle_returns_retry_after(self):
        headers = self.headers("u1")
        with mock.patch.object(app_module, "LENDING_THROTTLE_MAX_REQUESTS", 2):
            for _ in range(2):
                response = self.client.post("/api/cups/checkout", json={"assetID": "C404", "branchID": "S1"}, headers=headers)
                self.assertEqual(response.status_code, 404)
            throttled = self.client.post("/api/cups/checkout", json={"assetID": "C1", "branchID": "S1"}, headers=headers)
        self.assertEqual(throttled.status_code, 429)
        self.assertGreaterEqual(int(throttled.headers["Retry-After"]), 1)


class PaymentEndpointTests(ApiTestCase):
    def _topup(self, headers):
        response = self.client.post("/api/wallet/topup", json={"amount": 100000}, headers=headers)
        self.assertEqual(response.status_code, 200)
        return response.json()

    def _callback_params(self, code, amount_minor="10000000", response_code="00"):
        return signed(
            {
                "vnp_TxnRef": code,
                "vnp_Amount": amount_minor,
                "vnp_ResponseCode": response_code,
                "vnp_TransactionStatus": response_code,
                "vnp_TransactionNo": "14000002",
            }
        )

    def test_topup_callback_acknowledgements(self):
        headers = self.headers("u1")
        topup = self._topup(headers)
        self.assertTrue(topup["paymentUrl"].startswith(TEST_GATEWAY.gateway_url))

        params = self._callback_params(topup["externalCode"])
        first = self.client.get("/api/payment/callback", params=params)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["RspCode"], "00")
        duplicate = self.client.get("/api/payment/callback", params=params)
        self.assertEqual(duplicate.json()["RspCode"], "02")
        self.assertEqual(self.client.get("/api/wallet", headers=headers).json()["balance"], 200000)

        unknown = self.client.get("/api/payment/callback", params=self._callback_params("u1_42"))
        self.assertEqual(unknown.json()["RspCode"], "01")

        wrong_amount = self._topup(headers)
        mismatch = self.client.get(
            "/api/payment/callback", params=self._callback_params(wrong_amount["externalCode"], amount_minor="100")
        )
        self.assertEqual(mismatch.json()["RspCode"], "04")

        tampered = dict(params, vnp_Amount="99900000")
        rejected = self.client.get("/api/payment/callback", params=tampered)
        self.assertEqual(rejected.status_code, 400)
        self.assertEqual(rejected.json()["RspCode"], "97")

    def test_callback_ip_allowlist_in_production(self):
        params = self._callback_params("u1_42")
        env = {
            "APP_ENV": "production",
            "PAYMENT_GATEWAY_IPS": "203.0.113.0/24",
            "PAYMENT_TRUST_FORWARDED_FOR": "true",
        }
        with mock.patch.dict(os.environ, env):
            refused = self.client.get("/api/payment/callback", params=params, headers={"X-Forwarded-For": "198.51.100.1"})
            allowed = self.client.get("/api/payment/callback", params=params, headers={"X-Forwarded-For": "203.0.113.7"})
        self.assertEqual(refused.status_code, 403)
        self.assertEqual(refused.json()["RspCode"], "99")
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(allowed.json()["RspCode"], "01")

    def test_return_page(self):
        response = self.client.get("/api/payment/return", params=self._callback_params("u1_42", response_code="24"))
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["success"])
        self.assertEqual(response.json()["message"], "Transaction cancelled by customer.")

    def test_unconfigured_gateway_returns_structured_503(self):
        unconfigured = dataclasses.replace(TEST_GATEWAY, hash_secret="")
        app_module.app.dependency_overrides[app_module.get_gateway_config] = lambda: unconfigured
        params = self._callback_params("u1_42")

        callback = self.client.get("/api/payment/callback", params=params)
        self.assertEqual(callback.status_code, 503)
        self.assertEqual(callback.json()["RspCode"], "99")

        returned = self.client.get("/api/payment/return", params=params)
        self.assertEqual(returned.status_code, 503)
        self.assertEqual(returned.json()["detail"]["code"], "GatewayNotConfigured")

        headers = self.headers("u1")
        topup = self.client.post("/api/wallet/topup", json={"amount": 100000}, headers=headers)
        self.assertEqual(topup.status_code, 503)
        self.assertEqual(topup.json()["detail"]["category"], "Internal")
        self.assertEqual(self.client.get("/api/wallet", headers=headers).json()["balance"], 100000)

    def test_withdrawal_review_requires_reviewer_right(self):
        add_user(self.Session(), "rich", balance="2000000")
        rich = self.headers("rich")
        pending = self.client.post(
            "/api/wallet/withdraw",
            json={"amount": 600000, "bankName": "Test Bank", "accountNumber": "0123456789", "accountName": "A"},
            headers=rich,
        )
        self.assertEqual(pending.status_code, 200)
        self.assertEqual(pending.json()["status"], "pending")

        self.assertEqual(self.client.get("/api/admin/withdrawals", headers=rich).status_code, 403)
        admin = self.headers("admin", role="Admin")
        listed = self.client.get("/api/admin/withdrawals", params={"status": "pending"}, headers=admin).json()
        self.assertEqual([row["paymentID"] for row in listed], [pending.json()["paymentID"]])

        decided = self.client.post(
            f"/api/admin/withdrawals/{pending.json()['paymentID']}/decide",
            json={"decision": "approve"},
            headers=admin,
        )
        self.assertEqual(decided.status_code, 200)
        self.assertEqual(decided.json()["status"], "processing")
        self.assertEqual(self.client.get("/api/wallet", headers=rich).json()["balance"], 1400000)

    def test_withdrawal_account_number_is_validated(self):
        response = self.client.post(
            "/api/wallet/withdraw",
            json={"amount": 60000, "bankName": "Test Bank", "accountNumber": "12ab", "accountName": "A"},
            headers=self.headers("u1"),
        )
        self.assertEqual(response.status_code, 422)


class DeviceEndpointTests(ApiTestCase):
    def test_device_events_require_key(self):
        payload = {"eventType": "geofence_breach", "description": "Left service area", "assetID": "BK1"}
        self.assertEqual(self.client.post("/api/iot/events", json=payload).status_code, 401)
        self.assertEqual(
            self.client.post("/api/iot/events", json=payload, headers={"X-Device-Key": "wrong"}).status_code,
            401,
        )
        created = self.client.post(
            "/api/iot/events",
            json=dict(payload, priority="high"),
            headers={"X-Device-Key": os.environ["IOT_API_KEY"]},
        )
        self.assertEqual(created.status_code, 200)
        self.assertEqual(created.json()["status"], "open")

        staff = self.headers("staff1", role="Staff", station_ids=["B1"])
        incidents = self.client.get("/api/incidents", headers=staff).json()
        self.assertEqual([row["assetID"] for row in incidents], ["BK1"])
        self.assertEqual(self.client.get("/api/incidents", headers=self.headers("u1")).status_code, 403)

    def test_pending_notifications_for_staff(self):
        self.client.post("/api/cups/checkout", json={"assetID": "C1", "branchID": "S1"}, headers=self.headers("u1"))
        pending = self.client.get("/api/notifications/pending", headers=self.headers("staff1", role="Staff")).json()
        self.assertEqual([row["type"] for row in pending], ["CheckoutOpened"])


if __name__ == "__main__":
    unittest.main()
