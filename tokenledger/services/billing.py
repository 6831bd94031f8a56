"""All calls to Stripe go through here."""

import hashlib
import json
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from flask import current_app
from stripe import StripeClient

from tokenledger.extensions import db
from tokenledger.models import BillingCustomer, User


def _client() -> StripeClient:
    key = current_app.config.get("STRIPE_SECRET_KEY")
    if not key:
        raise RuntimeError("STRIPE_SECRET_KEY is not configured")
    return StripeClient(key)


def _absolute_url(path: str) -> str:
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/") + "/"
    return urljoin(base, path.lstrip("/"))


def to_plain(obj: Any) -> Dict[str, Any]:
    """Stripe SDK objects -> plain dicts (tests hand us dicts already)."""
    if obj is None:
        return {}
    for attr in ("to_dict_recursive", "to_dict"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            return fn()
    return dict(obj)


def object_id(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


def make_idempotency_key(*parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return "checkout:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def _params_hash(d: Dict[str, Any]) -> str:
    # Stable across runs if params identical; changes when fields change
    return hashlib.sha256(json.dumps(d, sort_keys=True, separators=(",", ":")).encode("utf-8")).hexdigest()[:16]


# ----- reads used by webhook reconciliation -----

def retrieve_subscription(subscription_id: str) -> Dict[str, Any]:
    """Current subscription snapshot; the source of truth for projected state."""
    return to_plain(_client().subscriptions.retrieve(subscription_id))


def list_checkout_line_items(session_id: str) -> List[Dict[str, Any]]:
    """Line items of a checkout session as [{"price_id", "quantity"}]."""
    result = _client().checkout.sessions.line_items.list(session_id, params={"limit": 100})
    data = getattr(result, "data", None)
    if data is None:
        data = to_plain(result).get("data") or []
    items = []
    for raw in data:
        item = to_plain(raw)
        items.append({
            "price_id": object_id(item.get("price")),
            "quantity": int(item.get("quantity") or 1),
        })
    return items


# ----- customer mapping + session creation -----

def ensure_customer(user: User) -> str:
    """
    Return the user's Stripe customer id, creating the customer and recording
    the mapping on first use. Webhooks attribute funds through this mapping.
    """
    bc = db.session.query(BillingCustomer).filter_by(user_id=user.id).one_or_none()
    if bc:
        return bc.stripe_customer_id

    customer = _client().customers.create(
        params={"email": user.email, "metadata": {"user_id": str(user.id)}},
        options={"idempotency_key": make_idempotency_key("customer", user.id)},
    )
    bc = BillingCustomer(user_id=user.id, stripe_customer_id=customer.id, billing_email=user.email)
    db.session.add(bc)
    db.session.commit()
    return bc.stripe_customer_id


def create_checkout_session(*, price_id: str, plan_id: str, user: User) -> Dict[str, Any]:
    """
    Create a Stripe Checkout Session for a subscription to the given Price.
    Returns: {"id": <session_id>, "url": <redirect_url or None>}
    """
    customer_id = ensure_customer(user)
    meta = {"user_id": str(user.id), "plan_id": plan_id}
    params: Dict[str, Any] = {
        "mode": "subscription",
        "customer": customer_id,
        "client_reference_id": str(user.id),
        "line_items": [{"price": price_id, "quantity": 1}],
        "allow_promotion_codes": True,
        "success_url": _absolute_url("billing/success?session_id={CHECKOUT_SESSION_ID}"),
        "cancel_url": _absolute_url("billing/cancel"),
        # user_id on both: invoice events only carry the subscription's metadata
        "metadata": meta,
        "subscription_data": {"metadata": meta},
    }
    idem = make_idempotency_key("checkout", "v1", user.id, price_id, _params_hash(params))
    session = _client().checkout.sessions.create(params=params, options={"idempotency_key": idem})
    return {"id": session.id, "url": getattr(session, "url", None)}


def create_topup_session(*, price_id: str, user: User) -> Dict[str, Any]:
    """One-time payment Checkout Session for a token pack."""
    customer_id = ensure_customer(user)
    params: Dict[str, Any] = {
        "mode": "payment",
        "customer": customer_id,
        "client_reference_id": str(user.id),
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": _absolute_url("billing/success?session_id={CHECKOUT_SESSION_ID}"),
        "cancel_url": _absolute_url("billing"),
        "metadata": {"user_id": str(user.id), "kind": "topup", "price_id": price_id},
    }
    idem = make_idempotency_key("topup", "v1", user.id, price_id, _params_hash(params))
    session = _client().checkout.sessions.create(params=params, options={"idempotency_key": idem})
    return {"id": session.id, "url": getattr(session, "url", None)}


def create_portal_session(*, stripe_customer_id: str) -> Dict[str, Any]:
    """Create a Stripe Customer Portal session for an existing Customer."""
    params = {
        "customer": stripe_customer_id,
        "return_url": _absolute_url("billing"),
    }
    session = _client().billing_portal.sessions.create(params)
    return {"url": session.url}
