from sqlalchemy import func, true, JSON
from sqlalchemy.dialects.postgresql import JSONB
from tokenledger.extensions import db

JSONType = JSON().with_variant(JSONB(), "postgresql")


class BillingEventLog(db.Model):
    """Every Stripe webhook delivery, for audit and to skip fully processed redeliveries."""

    __tablename__ = "billing_event_logs"

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    type = db.Column(db.String(80), nullable=False, index=True)
    signature_valid = db.Column(db.Boolean, nullable=False, default=True, server_default=true())
    payload = db.Column(JSONType, nullable=False, default=dict)
    retries = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    notes = db.Column(db.String(255), nullable=True)

    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<BillingEventLog {self.stripe_event_id!r} type={self.type!r} processed={self.processed_at is not None}>"
