from sqlalchemy import func, event, CheckConstraint, UniqueConstraint
from tokenledger.extensions import db

KIND_MONTHLY_GRANT = "monthly_grant"
KIND_TOPUP = "topup"
KIND_SPEND = "spend"
KIND_REFUND = "refund"

LEDGER_KINDS = (KIND_MONTHLY_GRANT, KIND_TOPUP, KIND_SPEND, KIND_REFUND)


class LedgerEntry(db.Model):
    """
    Immutable token movement. A user's balance is the sum of their deltas.

    external_id is the Stripe invoice id (monthly_grant), the checkout
    session id (topup) or the generation job id (spend/refund).
    """

    __tablename__ = "token_ledger"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    delta = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(32), nullable=False)
    external_id = db.Column(db.String(255), nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)

    __table_args__ = (
        UniqueConstraint("user_id", "kind", "external_id", name="uq_token_ledger_idempotency"),
        CheckConstraint(
            "kind IN ('monthly_grant', 'topup', 'spend', 'refund')",
            name="ck_token_ledger_kind",
        ),
        CheckConstraint(
            "(kind = 'spend' AND delta < 0) OR (kind <> 'spend' AND delta > 0)",
            name="ck_token_ledger_delta_sign",
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "delta": self.delta,
            "external_id": self.external_id,
            "reason": self.reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<LedgerEntry id={self.id} user_id={self.user_id} {self.kind} {self.delta:+d} ext={self.external_id!r}>"


class ImmutableLedgerError(RuntimeError):
    pass


@event.listens_for(LedgerEntry, "before_update")
def _refuse_update(mapper, connection, target):
    raise ImmutableLedgerError("token_ledger rows are append-only and cannot be updated")


@event.listens_for(LedgerEntry, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise ImmutableLedgerError("token_ledger rows are append-only and cannot be deleted")
