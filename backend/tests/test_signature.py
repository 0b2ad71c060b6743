"""Webhook signature and timestamp tests"""
import time

import pytest

from payhook.core.errors import WebhookValidationError
from payhook.services.signature_service import (
    compute_signature,
    is_timestamp_fresh,
    validate_webhook,
    verify_signature,
)

SECRET = "shh"
CONTENT = b'{"order_id":"ord_1","webhook_event_type":"order_approved"}'


@pytest.mark.critical
class TestSignature:
    def test_valid_signature_accepted(self):
        assert verify_signature(CONTENT, compute_signature(CONTENT, SECRET), SECRET)

    def test_uppercase_hex_accepted(self):
        assert verify_signature(CONTENT, compute_signature(CONTENT, SECRET).upper(), SECRET)

    def test_single_byte_tamper_rejected(self):
        signature = compute_signature(CONTENT, SECRET)
        tampered = CONTENT.replace(b"ord_1", b"ord_2")
        assert not verify_signature(tampered, signature, SECRET)

    def test_tampered_signature_rejected(self):
        signature = compute_signature(CONTENT, SECRET)
        flipped = ("0" if signature[0] != "0" else "1") + signature[1:]
        assert not verify_signature(CONTENT, flipped, SECRET)

    def test_wrong_secret_rejected(self):
        assert not verify_signature(CONTENT, compute_signature(CONTENT, "other"), SECRET)

    def test_missing_signature_rejected_when_secret_configured(self):
        assert not verify_signature(CONTENT, None, SECRET)

    def test_no_secret_skips_verification(self):
        assert verify_signature(CONTENT, None, "")


@pytest.mark.high
class TestTimestamp:
    def test_fresh(self):
        now = time.time()
        assert is_timestamp_fresh(str(int(now) - 10), tolerance_seconds=300, now=now)

    def test_stale(self):
        now = time.time()
        assert not is_timestamp_fresh(str(int(now) - 301), tolerance_seconds=300, now=now)

    def test_future_outside_window(self):
        now = time.time()
        assert not is_timestamp_fresh(str(int(now) + 600), tolerance_seconds=300, now=now)

    def test_unparseable(self):
        assert not is_timestamp_fresh("yesterday")


@pytest.mark.high
class TestValidateWebhook:
    def test_stale_timestamp_raises(self):
        with pytest.raises(WebhookValidationError) as exc:
            validate_webhook(CONTENT, compute_signature(CONTENT, SECRET), str(int(time.time()) - 3600), SECRET)
        assert exc.value.error == "Invalid timestamp"

    def test_bad_signature_raises(self):
        with pytest.raises(WebhookValidationError) as exc:
            validate_webhook(CONTENT, "deadbeef", None, SECRET)
        assert exc.value.error == "Invalid signature"

    def test_absent_timestamp_tolerated(self):
        validate_webhook(CONTENT, compute_signature(CONTENT, SECRET), None, SECRET)
