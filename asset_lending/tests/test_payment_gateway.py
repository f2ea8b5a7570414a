import hashlib
import hmac
import sys
import unittest
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

sys.path.insert(0, str(Path(__file__).resolve().parent))

from lending_fixtures import T0, TEST_GATEWAY, signed

from services.errors import GatewayNotConfigured, InvalidSignature, PaymentAmountMismatch, PaymentNotFound, UserNotFound
from services.payment_gateway import (
    HASH_FIELD,
    HASH_TYPE_FIELD,
    RESPONSE_MESSAGES,
    ack_for_error,
    build_payment_params,
    build_payment_url,
    canonical_query,
    client_ip_allowed,
    describe_response_code,
    from_minor_units,
    gateway_timestamp,
    is_success,
    make_external_code,
    sign_params,
    strip_accents,
    to_minor_units,
    user_id_from_external_code,
    verify_callback,
)


class CanonicalSigningTests(unittest.TestCase):
    def test_canonical_query_sorts_encodes_and_skips_empty_values(self):
        query = canonical_query({"vnp_b": "x y&z", "vnp_a": "1", "vnp_c": "", "vnp_d": None})
        self.assertEqual(query, "vnp_a=1&vnp_b=x+y%26z")

    def test_signature_is_hmac_sha512_of_canonical_query(self):
        params = {"vnp_TxnRef": "u1_1", "vnp_Amount": "1000000"}
        expected = hmac.new(b"secret", b"vnp_Amount=1000000&vnp_TxnRef=u1_1", hashlib.sha512).hexdigest()
        self.assertEqual(sign_params(params, "secret"), expected)

    def test_signing_without_secret_is_refused(self):
        with self.assertRaises(GatewayNotConfigured):
            sign_params({"vnp_TxnRef": "u1_1"}, "")

    def test_payment_url_appends_hash_after_signing(self):
        params = build_payment_params(
            config=TEST_GATEWAY,
            external_code="u1_1772352000000",
            amount=Decimal("100000"),
            order_info="Nạp tiền ví",
            client_ip="127.0.0.1",
            now=T0,
        )
        url = build_payment_url(params, TEST_GATEWAY)
        self.assertTrue(url.startswith(TEST_GATEWAY.gateway_url + "?"))
        query = parse_qs(urlsplit(url).query)
        self.assertEqual(query["vnp_Amount"], ["10000000"])
        self.assertEqual(query["vnp_OrderInfo"], ["Nap tien vi"])
        self.assertEqual(query[HASH_FIELD], [sign_params(params, TEST_GATEWAY.hash_secret)])
        self.assertTrue(url.endswith(f"&{HASH_FIELD}={sign_params(params, TEST_GATEWAY.hash_secret)}"))

    def test_verify_callback_strips_hash_fields(self):
        params = signed({"vnp_TxnRef": "u1_1", "vnp_Amount": "1000000", "vnp_ResponseCode": "00"})
        params[HASH_TYPE_FIELD] = "HmacSHA512"
        verified = verify_callback(params, TEST_GATEWAY.hash_secret)
        self.assertNotIn(HASH_FIELD, verified)
        self.assertNotIn(HASH_TYPE_FIELD, verified)
        self.assertEqual(verified["vnp_TxnRef"], "u1_1")

    def test_verify_callback_rejects_tampering(self):
        params = signed({"vnp_TxnRef": "u1_1", "vnp_Amount": "1000000"})
        params["vnp_Amount"] = "9000000"
        with self.assertRaises(InvalidSignature):
            verify_callback(params, TEST_GATEWAY.hash_secret)
        with self.assertRaises(InvalidSignature):
            verify_callback({"vnp_TxnRef": "u1_1"}, TEST_GATEWAY.hash_secret)
        with self.assertRaises(InvalidSignature):
            verify_callback(signed({"vnp_TxnRef": "u1_1"}, "other-secret"), TEST_GATEWAY.hash_secret)

    def test_any_single_character_flip_breaks_verification(self):
        params = build_payment_params(
            config=TEST_GATEWAY,
            external_code="u1_1772352000000",
            amount=Decimal("250000"),
            order_info="Wallet top-up",
            client_ip="10.1.2.3",
            now=T0,
        )
        callback = signed(params)
        self.assertEqual(verify_callback(callback, TEST_GATEWAY.hash_secret), params)
        for key, value in params.items():
            with self.subTest(key=key):
                flipped = "X" if value[0] != "X" else "Y"
                tampered = dict(callback, **{key: flipped + value[1:]})
                with self.assertRaises(InvalidSignature):
                    verify_callback(tampered, TEST_GATEWAY.hash_secret)

class GatewayHelperTests(unittest.TestCase):
    def test_minor_units(self):
        self.assertEqual(to_minor_units(Decimal("100000")), 10000000)
        self.assertEqual(from_minor_units("10000000"), Decimal("100000.00"))

    def test_timestamps_are_rendered_in_gateway_zone(self):
        self.assertEqual(gateway_timestamp(datetime(2026, 3, 1, 20, 0, 0)), "20260302030000")

    def test_external_code_round_trip_keeps_user_id(self):
        code = make_external_code("user_a", T0, prefix="WD_")
        self.assertTrue(code.startswith("WD_user_a_"))
        self.assertEqual(user_id_from_external_code(code), "user_a")
        self.assertIsNone(user_id_from_external_code("garbage"))

    def test_success_requires_both_codes(self):
        self.assertTrue(is_success({"vnp_ResponseCode": "00"}))
        self.assertTrue(is_success({"vnp_ResponseCode": "00", "vnp_TransactionStatus": "00"}))
        self.assertFalse(is_success({"vnp_ResponseCode": "00", "vnp_TransactionStatus": "02"}))
        self.assertFalse(is_success({"vnp_ResponseCode": "24"}))

    def test_ack_codes(self):
        self.assertEqual(ack_for_error(PaymentNotFound())[0], "01")
        self.assertEqual(ack_for_error(PaymentAmountMismatch())[0], "04")
        self.assertEqual(ack_for_error(InvalidSignature())[0], "97")
        self.assertEqual(ack_for_error(UserNotFound())[0], "99")

    def test_client_ip_allowlist(self):
        allowlist = ["203.0.113.0/24", "198.51.100.7"]
        self.assertTrue(client_ip_allowed("203.0.113.9", allowlist))
        self.assertTrue(client_ip_allowed("198.51.100.7", allowlist))
        self.assertFalse(client_ip_allowed("198.51.100.8", allowlist))
        self.assertFalse(client_ip_allowed("unknown", allowlist))

    def test_strip_accents(self):
        self.assertEqual(strip_accents("Đổi trả đ"), "Doi tra d")

    def test_response_code_messages_fall_back_to_unknown(self):
        self.assertEqual(describe_response_code("24"), RESPONSE_MESSAGES["24"])
        self.assertEqual(describe_response_code("42"), RESPONSE_MESSAGES["99"])
        self.assertEqual(describe_response_code(None), RESPONSE_MESSAGES["99"])

if __name__ == "__main__":
    unittest.main()
