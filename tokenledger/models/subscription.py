from sqlalchemy import func, false, CheckConstraint
from tokenledger.extensions import db

STATUS_INCOMPLETE = "incomplete"
STATUS_ACTIVE = "active"
STATUS_TRIALING = "trialing"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"

SUBSCRIPTION_STATUSES = (
    STATUS_INCOMPLETE,
    STATUS_ACTIVE,
    STATUS_TRIALING,
    STATUS_PAST_DUE,
    STATUS_CANCELED,
)


class Subscription(db.Model):
    """
    Current subscription state, one row per user.
    Written only by the projector; cancellation is a status, rows are never deleted.
    """

    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, unique=True, index=True)

    stripe_customer_id = db.Column(db.String(64), nullable=True, index=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, unique=True, index=True)

    plan_id = db.Column(db.String(64), db.ForeignKey("plans.id", ondelete="RESTRICT"), nullable=True, index=True)
    price_id = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(32), nullable=False, index=True, default=STATUS_INCOMPLETE)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False, server_default=false())

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "status IN ('incomplete', 'active', 'trialing', 'past_due', 'canceled')",
            name="ck_subscriptions_status",
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status in (STATUS_ACTIVE, STATUS_TRIALING)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "plan_id": self.plan_id,
            "price_id": self.price_id,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": bool(self.cancel_at_period_end),
        }

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} user_id={self.user_id} status={self.status!r} plan_id={self.plan_id!r}>"
