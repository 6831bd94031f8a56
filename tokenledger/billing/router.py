"""
Dispatch of verified Stripe events to the projector and the ledger.

Every branch is safe to run any number of times for the same event:
state is re-fetched and upserted, grants are keyed on Stripe ids.
Attribution and catalog misses are logged and acknowledged; store and
Stripe errors propagate so the webhook answers non-2xx and Stripe retries.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from tokenledger.models.ledger_entry import KIND_MONTHLY_GRANT, KIND_TOPUP
from tokenledger.models.subscription import STATUS_PAST_DUE
from tokenledger.observability import log_event
from tokenledger.services import billing as stripe_api

from . import ledger, projector
from .catalog import GRANT_PLAN, GRANT_TOPUP, resolve_grant
from .errors import MissingCustomerMapping, UnknownPriceMapping

_PAID_SESSION_STATES = ("paid", "no_payment_required")


@dataclass(frozen=True)
class RouteOutcome:
    handled: bool
    detail: str


def _meta_user(obj: Dict[str, Any], key: str = "user_id") -> Optional[int]:
    raw = (obj.get("metadata") or {}).get(key)
    try:
        return int(raw) if raw else None
    except (TypeError, ValueError):
        return None


def _client_reference(obj: Dict[str, Any]) -> Optional[int]:
    raw = obj.get("client_reference_id")
    try:
        return int(raw) if raw else None
    except (TypeError, ValueError):
        return None


def _skip(exc: Exception, event_type: str, **fields) -> RouteOutcome:
    log_event(
        "webhook.skipped",
        level="warning",
        event_type=event_type,
        reason=type(exc).__name__,
        message=str(exc),
        **fields,
    )
    return RouteOutcome(handled=False, detail=f"skipped:{type(exc).__name__}")


# ----- checkout -----

def _checkout_subscription(session: Dict[str, Any]) -> RouteOutcome:
    customer_id = stripe_api.object_id(session.get("customer"))
    user_id = projector.resolve_user_id(customer_id, _meta_user(session), _client_reference(session))
    if user_id is None:
        raise MissingCustomerMapping("checkout session has no attributable user", stripe_customer_id=customer_id)
    subscription_id = stripe_api.object_id(session.get("subscription"))
    projector.mark_checkout_linkage(user_id, customer_id, subscription_id)
    return RouteOutcome(handled=True, detail="checkout_linked")


def _checkout_topup(session: Dict[str, Any]) -> RouteOutcome:
    session_id = session.get("id")
    if session.get("payment_status") not in _PAID_SESSION_STATES:
        # async payment methods settle later via checkout.session.async_payment_succeeded
        return RouteOutcome(handled=True, detail="topup_awaiting_payment")

    customer_id = stripe_api.object_id(session.get("customer"))
    user_id = projector.resolve_user_id(customer_id, _meta_user(session), _client_reference(session))
    if user_id is None:
        raise MissingCustomerMapping("top-up session has no attributable user", stripe_customer_id=customer_id)

    tokens = 0
    for item in stripe_api.list_checkout_line_items(session_id):
        grant = resolve_grant(item["price_id"])
        if grant is None or grant.kind != GRANT_TOPUP:
            raise UnknownPriceMapping(item["price_id"])
        tokens += grant.tokens * item["quantity"]
    if tokens <= 0:
        raise UnknownPriceMapping(None)

    projector.record_customer_mapping(user_id, customer_id)
    result = ledger.append(user_id, tokens, KIND_TOPUP, session_id, f"Token top-up ({tokens} tokens)")
    return RouteOutcome(handled=True, detail="topup_granted" if result.applied else "topup_duplicate")


def _on_checkout_completed(obj: Dict[str, Any]) -> RouteOutcome:
    mode = obj.get("mode")
    if mode == "subscription":
        return _checkout_subscription(obj)
    if mode == "payment":
        return _checkout_topup(obj)
    return RouteOutcome(handled=False, detail=f"ignored_mode:{mode}")


# ----- subscription lifecycle -----

def _on_subscription_changed(obj: Dict[str, Any]) -> RouteOutcome:
    subscription_id = obj.get("id")
    if not subscription_id:
        return RouteOutcome(handled=False, detail="missing_subscription_id")
    sub = projector.refresh_subscription(subscription_id, user_id=_meta_user(obj))
    if sub is None:
        raise MissingCustomerMapping(
            "subscription has no attributable user",
            stripe_customer_id=stripe_api.object_id(obj.get("customer")),
        )
    return RouteOutcome(handled=True, detail=f"subscription_{sub.status}")


# ----- invoices -----

def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub = stripe_api.object_id(invoice.get("subscription"))
    if sub:
        return sub
    # 2025+ API versions moved it under parent.subscription_details
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return stripe_api.object_id(details.get("subscription"))


def _invoice_user(invoice: Dict[str, Any], snapshot: Dict[str, Any]) -> int:
    invoice_customer = stripe_api.object_id(invoice.get("customer"))
    snapshot_customer = stripe_api.object_id(snapshot.get("customer"))
    user_id = projector.user_for_customer(invoice_customer)
    if user_id is None:
        user_id = projector.resolve_user_id(snapshot_customer, _meta_user(invoice), _meta_user(snapshot))
    if user_id is None:
        raise MissingCustomerMapping("invoice has no attributable user", stripe_customer_id=invoice_customer or snapshot_customer)
    return user_id


def _on_invoice_paid(invoice: Dict[str, Any]) -> RouteOutcome:
    subscription_id = invoice_subscription_id(invoice)
    if not subscription_id:
        return RouteOutcome(handled=False, detail="invoice_without_subscription")

    snapshot = stripe_api.retrieve_subscription(subscription_id)
    user_id = _invoice_user(invoice, snapshot)

    price_id = projector.snapshot_price_id(snapshot)
    grant = resolve_grant(price_id)
    if grant is None or grant.kind != GRANT_PLAN:
        # state still converges even though no tokens are granted
        projector.project_subscription(snapshot, user_id=user_id)
        raise UnknownPriceMapping(price_id)

    result = ledger.append(
        user_id,
        grant.tokens,
        KIND_MONTHLY_GRANT,
        invoice["id"],
        f"Monthly tokens for plan {grant.plan_id}",
    )
    projector.project_subscription(snapshot, user_id=user_id)
    return RouteOutcome(handled=True, detail="grant_applied" if result.applied else "grant_duplicate")


def _on_invoice_failed(invoice: Dict[str, Any]) -> RouteOutcome:
    subscription_id = invoice_subscription_id(invoice)
    if not subscription_id:
        return RouteOutcome(handled=False, detail="invoice_without_subscription")

    snapshot = stripe_api.retrieve_subscription(subscription_id)
    user_id = _invoice_user(invoice, snapshot)
    sub = projector.project_subscription(snapshot, user_id=user_id, status_override=STATUS_PAST_DUE)
    return RouteOutcome(handled=True, detail=f"subscription_{sub.status}")


_HANDLERS: Dict[str, Callable[[Dict[str, Any]], RouteOutcome]] = {
    "checkout.session.completed": _on_checkout_completed,
    "checkout.session.async_payment_succeeded": _on_checkout_completed,
    "customer.subscription.created": _on_subscription_changed,
    "customer.subscription.updated": _on_subscription_changed,
    "customer.subscription.deleted": _on_subscription_changed,
    "invoice.paid": _on_invoice_paid,
    "invoice.payment_succeeded": _on_invoice_paid,
    "invoice.payment_failed": _on_invoice_failed,
}


def handle_event(event: Dict[str, Any]) -> RouteOutcome:
    """Route one verified event. Unknown types are acknowledged and ignored."""
    event_type = event.get("type")
    handler = _HANDLERS.get(event_type)
    if handler is None:
        return RouteOutcome(handled=False, detail="ignored")

    obj = (event.get("data") or {}).get("object") or {}
    try:
        return handler(obj)
    except (MissingCustomerMapping, UnknownPriceMapping) as exc:
        return _skip(
            exc,
            event_type,
            event_id=event.get("id"),
            stripe_customer_id=getattr(exc, "stripe_customer_id", None),
            price_id=getattr(exc, "price_id", None),
        )
