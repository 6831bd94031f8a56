import json
from typing import Any, Dict

import stripe

from .errors import InvalidSignature


def verify_event(raw_body: bytes, sig_header: str, secret: str, *, tolerance: int = 300) -> Dict[str, Any]:
    """
    Authenticate a Stripe webhook delivery and return the event as a plain dict.

    Verification runs over the exact bytes Stripe signed; the event is then
    parsed from those same bytes, never from a re-serialized object.
    """
    if not sig_header:
        raise InvalidSignature("missing Stripe-Signature header")
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidSignature("payload is not valid UTF-8") from exc

    try:
        stripe.Webhook.construct_event(
            payload=payload,
            sig_header=sig_header,
            secret=secret,
            tolerance=tolerance,
        )
    except stripe.SignatureVerificationError as exc:
        raise InvalidSignature(str(exc)) from exc
    except ValueError as exc:
        # construct_event parses JSON after verifying
        raise InvalidSignature(f"invalid payload: {exc}") from exc

    event = json.loads(payload)
    if not isinstance(event, dict):
        raise InvalidSignature("event payload is not an object")
    return event
