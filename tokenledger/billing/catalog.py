from dataclasses import dataclass
from typing import Optional

from tokenledger.extensions import db
from tokenledger.models import Plan, TokenTopup

GRANT_PLAN = "plan"
GRANT_TOPUP = "topup"


@dataclass(frozen=True)
class Grant:
    kind: str
    tokens: int
    plan_id: Optional[str] = None


def resolve_grant(price_id: Optional[str]) -> Optional[Grant]:
    """
    Map a Stripe price id to the tokens it grants.

    Plans are checked first, then top-up packs. Returns None for an unknown
    price; callers log it and skip the grant, they never default an amount.
    Retired (inactive) rows still resolve: the customer already paid.
    """
    if not price_id:
        return None

    plan = db.session.query(Plan).filter_by(stripe_price_id=price_id).one_or_none()
    if plan is not None:
        return Grant(kind=GRANT_PLAN, tokens=int(plan.monthly_tokens), plan_id=plan.id)

    pack = db.session.get(TokenTopup, price_id)
    if pack is not None:
        return Grant(kind=GRANT_TOPUP, tokens=int(pack.tokens))

    return None


def plan_for_price(price_id: Optional[str]) -> Optional[Plan]:
    if not price_id:
        return None
    return db.session.query(Plan).filter_by(stripe_price_id=price_id).one_or_none()


def active_plan(plan_id: str) -> Optional[Plan]:
    return db.session.query(Plan).filter_by(id=plan_id, is_active=True).one_or_none()


def active_topup(price_id: str) -> Optional[TokenTopup]:
    """Stricter lookup used when selling a pack: only active packs can be bought."""
    return db.session.query(TokenTopup).filter_by(stripe_price_id=price_id, is_active=True).one_or_none()


def list_active_plans():
    return db.session.query(Plan).filter_by(is_active=True).order_by(Plan.monthly_tokens).all()


def list_active_topups():
    return db.session.query(TokenTopup).filter_by(is_active=True).order_by(TokenTopup.tokens).all()
