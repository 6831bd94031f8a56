from sqlalchemy import true, CheckConstraint
from tokenledger.extensions import db


class Plan(db.Model):
    """Subscription plan: a Stripe recurring price and the tokens granted per paid invoice."""

    __tablename__ = "plans"

    id = db.Column(db.String(64), primary_key=True)  # slug, e.g. "beta", "pro"
    name = db.Column(db.String(120), nullable=True)
    stripe_price_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    monthly_tokens = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=true())

    __table_args__ = (
        CheckConstraint("monthly_tokens > 0", name="ck_plans_monthly_tokens_positive"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "stripe_price_id": self.stripe_price_id,
            "monthly_tokens": self.monthly_tokens,
        }

    def __repr__(self) -> str:
        return f"<Plan {self.id!r} price={self.stripe_price_id!r} tokens={self.monthly_tokens}>"


class TokenTopup(db.Model):
    """One-time token pack sold through a payment-mode checkout."""

    __tablename__ = "token_topups"

    stripe_price_id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(120), nullable=True)
    tokens = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=true())

    __table_args__ = (
        CheckConstraint("tokens > 0", name="ck_token_topups_tokens_positive"),
    )

    def to_dict(self) -> dict:
        return {"stripe_price_id": self.stripe_price_id, "name": self.name, "tokens": self.tokens}

    def __repr__(self) -> str:
        return f"<TokenTopup price={self.stripe_price_id!r} tokens={self.tokens} active={self.is_active}>"
