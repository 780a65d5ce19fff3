import time

import pytest
from conftest import build_signature_header

from webhook_pipeline.common.exceptions import SignatureVerificationError
from webhook_pipeline.receiver.signature import verify_stripe_signature

SECRET = "whsec_test_secret"
BODY = b'{"id": "evt_1", "type": "account.updated"}'


class TestVerifyStripeSignature:

    def test_valid_signature(self):
        header = build_signature_header(BODY, SECRET)
        verify_stripe_signature(BODY, header, SECRET)

    def test_any_matching_v1_signature_is_accepted(self):
        """Test that rotated secrets produce several v1 entries, one of which matches."""
        signed = build_signature_header(BODY, SECRET)
        timestamp, valid = signed.split(",")
        header = f"{timestamp},v1={'0' * 64},{valid},v0=ignored"
        verify_stripe_signature(BODY, header, SECRET)

    def test_missing_header(self):
        with pytest.raises(SignatureVerificationError, match="Missing signature header"):
            verify_stripe_signature(BODY, None, SECRET)

    def test_missing_timestamp(self):
        signature = build_signature_header(BODY, SECRET).split(",")[1]
        with pytest.raises(SignatureVerificationError, match="Unable to extract timestamp"):
            verify_stripe_signature(BODY, signature, SECRET)

    def test_invalid_timestamp(self):
        with pytest.raises(SignatureVerificationError, match="Unable to extract timestamp"):
            verify_stripe_signature(BODY, "t=yesterday,v1=abc", SECRET)

    def test_no_v1_signatures(self):
        header = f"t={int(time.time())},v0=abc"
        with pytest.raises(SignatureVerificationError, match="No signatures found with expected scheme"):
            verify_stripe_signature(BODY, header, SECRET)

    def test_wrong_secret(self):
        header = build_signature_header(BODY, "whsec_other")
        with pytest.raises(SignatureVerificationError, match="No signatures found matching"):
            verify_stripe_signature(BODY, header, SECRET)

    def test_tampered_body(self):
        header = build_signature_header(BODY, SECRET)
        with pytest.raises(SignatureVerificationError, match="No signatures found matching"):
            verify_stripe_signature(BODY + b" ", header, SECRET)

    def test_non_utf8_body(self):
        body = b"\xff\xfe"
        header = build_signature_header(body, SECRET)
        with pytest.raises(SignatureVerificationError, match="not valid UTF-8"):
            verify_stripe_signature(body, header, SECRET)

    def test_stale_timestamp(self):
        """Test that replays older than the tolerance are rejected."""
        header = build_signature_header(BODY, SECRET, timestamp=int(time.time()) - 301)
        with pytest.raises(SignatureVerificationError, match="tolerance"):
            verify_stripe_signature(BODY, header, SECRET, tolerance=300)

    def test_timestamp_within_tolerance(self):
        header = build_signature_header(BODY, SECRET, timestamp=int(time.time()) - 240)
        verify_stripe_signature(BODY, header, SECRET, tolerance=300)

    def test_future_timestamp_is_accepted(self):
        header = build_signature_header(BODY, SECRET, timestamp=int(time.time()) + 600)
        verify_stripe_signature(BODY, header, SECRET, tolerance=300)

    def test_zero_tolerance_disables_timestamp_check(self):
        header = build_signature_header(BODY, SECRET, timestamp=int(time.time()) - 86400)
        verify_stripe_signature(BODY, header, SECRET, tolerance=0)
