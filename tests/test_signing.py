import hashlib
import hmac
import unittest
from unittest.mock import patch

from tests.helpers import TEST_SECRET

from hub_auth.core.errors import ConfigError
from hub_auth.services.signing import (
    digest,
    hash_code,
    sign_code_issue,
    sign_payload,
    stable_stringify,
    verify_payload_signature,
    with_signature,
)


class HashCodeTests(unittest.TestCase):
    def test_is_deterministic(self):
        first = hash_code("HUB", "966500000000", "1234", TEST_SECRET)
        second = hash_code("HUB", "966500000000", "1234", TEST_SECRET)
        self.assertEqual(first, second)

    def test_matches_pipe_joined_hmac(self):
        expected = hmac.new(TEST_SECRET.encode(), b"HUB|966500000000|1234", hashlib.sha256).hexdigest()
        self.assertEqual(hash_code("HUB", "966500000000", "1234", TEST_SECRET), expected)

    def test_changes_when_any_input_changes(self):
        base = hash_code("HUB", "966500000000", "1234", TEST_SECRET)
        variants = [
            hash_code("APP2", "966500000000", "1234", TEST_SECRET),
            hash_code("HUB", "966500000001", "1234", TEST_SECRET),
            hash_code("HUB", "966500000000", "1235", TEST_SECRET),
            hash_code("HUB", "966500000000", "1234", "another-secret"),
        ]
        for variant in variants:
            self.assertNotEqual(base, variant)

    def test_digest_does_not_contain_code(self):
        value = hash_code("HUB", "966500000000", "987654", TEST_SECRET)
        self.assertNotIn("987654", value)
        self.assertEqual(len(value), 64)

    def test_timestamped_digest_binds_timestamp(self):
        first = sign_code_issue("HUB", "966500000000", "1234", 1700000000000, TEST_SECRET)
        second = sign_code_issue("HUB", "966500000000", "1234", 1700000000001, TEST_SECRET)
        self.assertNotEqual(first, second)

    def test_missing_secret_is_config_error(self):
        with self.assertRaises(ConfigError):
            hash_code("HUB", "966500000000", "1234", "")
        with self.assertRaises(ConfigError):
            digest("   ", "a")
        with patch("hub_auth.services.signing.settings.OTP_HMAC_SECRET", ""):
            with self.assertRaises(ConfigError):
                hash_code("HUB", "966500000000", "1234")


class PayloadSignatureTests(unittest.TestCase):
    def test_stable_stringify_sorts_keys_recursively(self):
        left = {"b": 1, "a": {"y": [1, {"d": 2, "c": 3}], "x": None}}
        right = {"a": {"x": None, "y": [1, {"c": 3, "d": 2}]}, "b": 1}
        self.assertEqual(stable_stringify(left), stable_stringify(right))
        self.assertEqual(stable_stringify(left), '{"a":{"x":null,"y":[1,{"c":3,"d":2}]},"b":1}')

    def test_stable_stringify_keeps_unicode(self):
        self.assertEqual(stable_stringify({"name": "نحل"}), '{"name":"نحل"}')

    def test_signature_ignores_existing_sig_field(self):
        payload = {"action": "otp.store", "appId": "HUB", "mobile": "966500000000"}
        unsigned = sign_payload(payload, TEST_SECRET)
        with_sig = sign_payload({**payload, "sig": "stale"}, TEST_SECRET)
        self.assertEqual(unsigned, with_sig)

    def test_signature_ignores_key_order(self):
        first = sign_payload({"a": 1, "b": 2}, TEST_SECRET)
        second = sign_payload({"b": 2, "a": 1}, TEST_SECRET)
        self.assertEqual(first, second)

    def test_signed_payload_verifies_and_detects_tampering(self):
        signed = with_signature({"action": "otp.store", "appId": "HUB", "mobile": "966500000000"}, TEST_SECRET)
        self.assertTrue(verify_payload_signature(signed, TEST_SECRET))

        tampered = dict(signed, mobile="966511111111")
        self.assertFalse(verify_payload_signature(tampered, TEST_SECRET))
        self.assertFalse(verify_payload_signature(signed, "other-secret"))
        self.assertFalse(verify_payload_signature({"action": "otp.store"}, TEST_SECRET))
