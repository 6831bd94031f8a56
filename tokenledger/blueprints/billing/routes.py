from flask import Blueprint, request, current_app, jsonify
from flask_login import login_required, current_user
from stripe import StripeError

from tokenledger.billing import catalog, ledger
from tokenledger.extensions import db, limiter
from tokenledger.models import Subscription, BillingCustomer
from tokenledger.services import billing as billing_service

billing_bp = Blueprint("billing", __name__)


def _stripe_failure(what: str, e: Exception, **extra):
    current_app.logger.exception(f"billing.{what}.session_create_failed", extra={"user_id": current_user.id, **extra})
    user_msg = getattr(e, "user_message", None) or str(e)
    return jsonify({"error": user_msg}), 502


@billing_bp.get("/summary.json")
@login_required
def summary_json():
    sub = db.session.query(Subscription).filter_by(user_id=current_user.id).one_or_none()
    return jsonify({
        "balance": ledger.balance_of(current_user.id),
        "subscription": sub.to_dict() if sub else None,
        "plans": [p.to_dict() for p in catalog.list_active_plans()],
        "topups": [t.to_dict() for t in catalog.list_active_topups()],
        "recent_entries": [e.to_dict() for e in ledger.recent_entries(current_user.id)],
    })


@billing_bp.post("/checkout.json")
@limiter.limit("10/minute")
@login_required
def checkout_json():
    """Subscription checkout for a plan; returns the Stripe-hosted URL."""
    data = request.get_json(silent=True) or {}
    plan_id = (data.get("plan_id") or "").strip()
    if not plan_id:
        return jsonify({"error": "Missing plan_id"}), 400

    plan = catalog.active_plan(plan_id)
    if not plan:
        return jsonify({"error": "Unknown plan"}), 400

    # Block duplicate purchases if already active/trialing
    sub = db.session.query(Subscription).filter_by(user_id=current_user.id).one_or_none()
    if sub and sub.is_active:
        return jsonify({"error": "Subscription already active"}), 409

    try:
        payload = billing_service.create_checkout_session(
            price_id=plan.stripe_price_id,
            plan_id=plan.id,
            user=current_user,
        )
    except StripeError as e:
        return _stripe_failure("checkout_json", e, plan_id=plan_id)

    if not payload.get("url"):
        return jsonify({"error": "Could not create checkout session"}), 502
    return jsonify({"url": payload["url"], "sessionId": payload["id"]})


@billing_bp.post("/topup.json")
@limiter.limit("10/minute")
@login_required
def topup_json():
    """One-time token pack checkout. Only active packs can be bought."""
    data = request.get_json(silent=True) or {}
    price_id = (data.get("price_id") or "").strip()
    if not price_id:
        return jsonify({"error": "Missing price_id"}), 400

    if not catalog.active_topup(price_id):
        return jsonify({"error": "Invalid or inactive top-up price_id"}), 400

    try:
        payload = billing_service.create_topup_session(price_id=price_id, user=current_user)
    except StripeError as e:
        return _stripe_failure("topup_json", e, price_id=price_id)

    if not payload.get("url"):
        return jsonify({"error": "Could not create checkout session"}), 502
    return jsonify({"url": payload["url"], "sessionId": payload["id"]})


@billing_bp.post("/portal.json")
@limiter.limit("10/minute")
@login_required
def portal_json():
    bc = db.session.query(BillingCustomer).filter_by(user_id=current_user.id).one_or_none()
    if not bc:
        return jsonify({"error": "No billing profile for this account"}), 404

    try:
        payload = billing_service.create_portal_session(stripe_customer_id=bc.stripe_customer_id)
    except StripeError as e:
        return _stripe_failure("portal_json", e)

    url = payload.get("url")
    if not url:
        return jsonify({"error": "Could not create portal session"}), 502
    return jsonify({"url": url})
