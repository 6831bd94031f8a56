"""
Subscription state projection.

Every lifecycle event is handled by re-reading the subscription from Stripe
and overwriting the user's row with that snapshot. Upserting "current truth"
converges no matter in which order, or how often, Stripe delivers events.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tokenledger.extensions import db
from tokenledger.models import BillingCustomer, Subscription, User
from tokenledger.models.subscription import (
    SUBSCRIPTION_STATUSES,
    STATUS_CANCELED,
    STATUS_INCOMPLETE,
    STATUS_PAST_DUE,
)
from tokenledger.observability import log_event
from tokenledger.services import billing as stripe_api

from .catalog import plan_for_price

# Stripe statuses outside our state machine
_STATUS_ALIASES = {
    "incomplete_expired": STATUS_CANCELED,
    "unpaid": STATUS_PAST_DUE,
    "paused": STATUS_PAST_DUE,
}


def normalize_status(raw: Optional[str]) -> str:
    if raw in SUBSCRIPTION_STATUSES:
        return raw
    return _STATUS_ALIASES.get(raw or "", STATUS_INCOMPLETE)


def _to_dt(ts) -> Optional[datetime]:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc) if ts else None


def _metadata_user_id(obj: Dict[str, Any]) -> Optional[int]:
    raw = (obj.get("metadata") or {}).get("user_id")
    try:
        return int(raw) if raw else None
    except (TypeError, ValueError):
        return None


def user_for_customer(stripe_customer_id: Optional[str]) -> Optional[int]:
    if not stripe_customer_id:
        return None
    bc = db.session.query(BillingCustomer).filter_by(stripe_customer_id=stripe_customer_id).one_or_none()
    return bc.user_id if bc else None


def record_customer_mapping(user_id: int, stripe_customer_id: Optional[str]) -> None:
    """Remember which user a Stripe customer belongs to. First mapping wins."""
    if not stripe_customer_id:
        return
    if db.session.query(BillingCustomer).filter(
        (BillingCustomer.user_id == user_id) | (BillingCustomer.stripe_customer_id == stripe_customer_id)
    ).first():
        return
    db.session.add(BillingCustomer(user_id=user_id, stripe_customer_id=stripe_customer_id))


def resolve_user_id(stripe_customer_id: Optional[str], *candidates: Optional[int]) -> Optional[int]:
    """
    Stored customer mapping first, then the candidate ids in order
    (explicit hints, then metadata). Candidates must name an existing user.
    """
    user_id = user_for_customer(stripe_customer_id)
    if user_id is not None:
        return user_id
    for candidate in candidates:
        if candidate is not None and db.session.get(User, candidate) is not None:
            return candidate
    return None


def _first_item(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    items = (snapshot.get("items") or {}).get("data") or []
    return items[0] if items else {}


def snapshot_price_id(snapshot: Dict[str, Any]) -> Optional[str]:
    return stripe_api.object_id(_first_item(snapshot).get("price"))


def _superseded_by_row(sub: Subscription, subscription_id: Optional[str], status: str) -> bool:
    """A canceled snapshot of some other subscription never replaces a live row."""
    return (
        status == STATUS_CANCELED
        and sub.stripe_subscription_id is not None
        and sub.stripe_subscription_id != subscription_id
        and sub.status != STATUS_CANCELED
    )


def project_subscription(snapshot: Dict[str, Any], *, user_id: Optional[int] = None,
                         status_override: Optional[str] = None, commit: bool = True) -> Optional[Subscription]:
    """
    Upsert the user's Subscription row from a Stripe subscription snapshot.
    Returns None when the snapshot cannot be attributed to a user.
    """
    customer_id = stripe_api.object_id(snapshot.get("customer"))
    resolved = resolve_user_id(customer_id, user_id, _metadata_user_id(snapshot))
    if resolved is None:
        log_event(
            "projector.missing_customer_mapping",
            level="warning",
            stripe_customer_id=customer_id,
            stripe_subscription_id=snapshot.get("id"),
        )
        return None

    record_customer_mapping(resolved, customer_id)

    first = _first_item(snapshot)
    price_id = snapshot_price_id(snapshot)
    plan = plan_for_price(price_id)
    status = normalize_status(snapshot.get("status"))
    if status_override and status != STATUS_CANCELED:
        status = status_override
    # Newer API versions carry the period on the item instead of the subscription
    period_end = snapshot.get("current_period_end") or first.get("current_period_end")

    sub = db.session.query(Subscription).filter_by(user_id=resolved).one_or_none()
    if sub is not None and _superseded_by_row(sub, snapshot.get("id"), status):
        if commit:
            db.session.commit()
        log_event(
            "projector.stale_snapshot_ignored",
            user_id=resolved,
            stripe_subscription_id=snapshot.get("id"),
            current_subscription_id=sub.stripe_subscription_id,
            status=status,
        )
        return sub
    if sub is None:
        sub = Subscription(user_id=resolved)
        db.session.add(sub)
    sub.stripe_customer_id = customer_id
    sub.stripe_subscription_id = snapshot.get("id")
    sub.price_id = price_id
    sub.plan_id = plan.id if plan else None
    sub.status = status
    sub.current_period_end = _to_dt(period_end)
    sub.cancel_at_period_end = bool(snapshot.get("cancel_at_period_end"))

    if commit:
        db.session.commit()

    log_event(
        "projector.upsert",
        user_id=resolved,
        stripe_subscription_id=sub.stripe_subscription_id,
        status=status,
        plan_id=sub.plan_id,
    )
    return sub


def refresh_subscription(subscription_id: str, *, user_id: Optional[int] = None,
                         status_override: Optional[str] = None) -> Optional[Subscription]:
    """Re-fetch the subscription from Stripe and project it."""
    snapshot = stripe_api.retrieve_subscription(subscription_id)
    return project_subscription(snapshot, user_id=user_id, status_override=status_override)


def mark_checkout_linkage(user_id: int, stripe_customer_id: Optional[str],
                          stripe_subscription_id: Optional[str]) -> Subscription:
    """
    Minimal row right after a subscription checkout completes.

    A row already linked to the same subscription keeps its status: a
    lifecycle event delivered earlier may already have activated it.
    """
    record_customer_mapping(user_id, stripe_customer_id)
    sub = db.session.query(Subscription).filter_by(user_id=user_id).one_or_none()
    if sub is None:
        sub = Subscription(user_id=user_id, status=STATUS_INCOMPLETE)
        db.session.add(sub)
    elif sub.stripe_subscription_id != stripe_subscription_id and sub.is_active:
        # redelivered checkout for an older subscription; the live one stays linked
        db.session.commit()
        log_event("projector.stale_checkout_ignored", user_id=user_id, stripe_subscription_id=stripe_subscription_id,
                  current_subscription_id=sub.stripe_subscription_id)
        return sub
    elif sub.stripe_subscription_id != stripe_subscription_id:
        sub.status = STATUS_INCOMPLETE
        sub.plan_id = None
        sub.price_id = None
        sub.current_period_end = None
        sub.cancel_at_period_end = False
    sub.stripe_customer_id = stripe_customer_id or sub.stripe_customer_id
    sub.stripe_subscription_id = stripe_subscription_id
    db.session.commit()

    log_event("projector.checkout_linkage", user_id=user_id, stripe_subscription_id=stripe_subscription_id, status=sub.status)
    return sub
