from typing import Optional

import stripe

from webhook_pipeline.common.exceptions import SignatureVerificationError

DEFAULT_TOLERANCE = 300


def verify_stripe_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE,
) -> None:
    """Check a ``Stripe-Signature`` header against the raw request body.

    Verification is delegated to the Stripe SDK: any ``v1`` entry matching the
    HMAC-SHA256 of ``"{t}." + body`` is accepted, and timestamps older than
    ``tolerance`` seconds are rejected. A ``tolerance`` of 0 skips the age check.

    Raises:
        SignatureVerificationError: when the header is missing or malformed,
            no signature matches, or the timestamp is too old.
    """
    if not header:
        raise SignatureVerificationError("Missing signature header")

    try:
        stripe.WebhookSignature.verify_header(payload.decode("utf-8"), header, secret, tolerance)
    except UnicodeDecodeError:
        raise SignatureVerificationError("Webhook body is not valid UTF-8") from None
    except stripe.SignatureVerificationError as e:
        raise SignatureVerificationError(str(e)) from e
