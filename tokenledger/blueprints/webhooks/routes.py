import hashlib
from datetime import datetime, timezone

from flask import request, jsonify, abort, current_app
from sqlalchemy.exc import IntegrityError

from . import bp
from tokenledger.billing.errors import InvalidSignature
from tokenledger.billing.router import handle_event
from tokenledger.billing.signature import verify_event
from tokenledger.extensions import db, csrf, limiter
from tokenledger.models import BillingEventLog
from tokenledger.observability import log_event


def _log_invalid_signature(raw_bytes: bytes, reason: str) -> None:
    # Deterministic synthetic id (no payload trust); repeats collapse onto one row
    digest = hashlib.sha256(raw_bytes).hexdigest()[:32]
    synthetic_id = f"invalid:{digest}"
    log = BillingEventLog.query.filter_by(stripe_event_id=synthetic_id).first()
    if log:
        log.retries = (log.retries or 0) + 1
    else:
        db.session.add(BillingEventLog(
            stripe_event_id=synthetic_id,
            type="signature_invalid",
            signature_valid=False,
            payload={},
            notes=reason[:255],
        ))
    db.session.commit()


def _find_log(ev_id: str):
    return BillingEventLog.query.filter_by(stripe_event_id=ev_id).first()


def _claim_event(ev_id: str, ev_type: str, payload: dict):
    """
    Return the log row for this delivery, or None when the event was already
    fully processed. Unfinished rows (an earlier attempt failed) are reused.
    """
    log = _find_log(ev_id)
    if log and log.processed_at is not None:
        return None
    if log:
        log.retries = (log.retries or 0) + 1
    else:
        log = BillingEventLog(
            stripe_event_id=ev_id,
            type=ev_type,
            signature_valid=True,
            payload=payload,
        )
        db.session.add(log)
    db.session.commit()
    return log


# ----- Stripe Webhook (subscriptions + token grants) -----
@csrf.exempt
@limiter.exempt
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe -> /webhooks/stripe
    Verifies signature, logs event, routes it to the projector/ledger.
    200 means processed or safely ignored; anything else asks Stripe to retry.
    """
    # 1) Verify signature over the untouched body
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        abort(500, description="Stripe webhook secret not configured")

    raw_bytes = request.get_data(cache=False, as_text=False)
    sig_header = request.headers.get("Stripe-Signature", "")

    try:
        event = verify_event(
            raw_bytes,
            sig_header,
            secret,
            tolerance=current_app.config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
        )
    except InvalidSignature as exc:
        log_event("webhook.invalid_signature", level="warning", reason=str(exc))
        _log_invalid_signature(raw_bytes, str(exc))
        return jsonify({"error": "invalid_signature"}), 400

    ev_id = event.get("id")
    ev_type = event.get("type")
    if not ev_id or not ev_type:
        return jsonify({"error": "malformed_event"}), 400

    # 2) Skip events that already went all the way through
    try:
        log = _claim_event(ev_id, ev_type, event)
    except IntegrityError:
        # a concurrent first delivery inserted the row; Stripe retries this one
        db.session.rollback()
        log_event("webhook.concurrent_delivery", level="warning", event_id=ev_id, type=ev_type)
        return jsonify({"error": "event_in_progress"}), 500
    if log is None:
        return jsonify({"ok": True, "duplicate": True}), 200

    # 3) Route
    try:
        outcome = handle_event(event)
    except Exception as e:
        db.session.rollback()
        log = _find_log(ev_id)
        log.notes = f"handler_error:{type(e).__name__}"
        db.session.commit()
        current_app.logger.exception("stripe_webhook_handler_error event_id=%s type=%s", ev_id, ev_type)
        return jsonify({"error": "handler_failed"}), 500

    log = _find_log(ev_id)
    log.processed_at = datetime.now(timezone.utc)
    log.notes = outcome.detail[:255]
    db.session.commit()

    log_event("webhook.processed", event_id=ev_id, type=ev_type, detail=outcome.detail)
    return jsonify({"ok": True}), 200
