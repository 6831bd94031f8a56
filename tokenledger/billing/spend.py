"""Token reservation before a generation call, and the refund when that call fails."""

from dataclasses import dataclass

from tokenledger.models.ledger_entry import KIND_SPEND, KIND_REFUND
from tokenledger.observability import log_event

from . import ledger
from .ledger import LedgerResult


@dataclass(frozen=True)
class SpendResult:
    success: bool
    balance: int
    applied: bool = False
    closed: bool = False  # job id was already spent and refunded

    def to_dict(self) -> dict:
        return {"success": self.success, "balance": self.balance}


def try_spend(user_id: int, cost: int, job_id: str, reason: str) -> SpendResult:
    """
    Atomically debit `cost` tokens for `job_id` if the balance covers it.

    On success `balance` is the balance after the debit; on failure it is the
    unchanged balance. Retrying with the same job id never debits twice: an
    open job reports success again, a job that was already refunded is closed
    and reports failure.
    """
    if not isinstance(cost, int) or isinstance(cost, bool) or cost <= 0:
        raise ValueError("cost must be a positive integer")
    if not job_id:
        raise ValueError("job_id is required")

    with ledger.customer_lock(user_id):
        if ledger.find_entry(user_id, KIND_SPEND, job_id) is not None:
            balance = ledger.balance_of(user_id)
            refunded = ledger.find_entry(user_id, KIND_REFUND, job_id) is not None
            log_event("spend.retry", user_id=user_id, job_id=job_id, refunded=refunded, balance=balance)
            return SpendResult(success=not refunded, balance=balance, applied=False, closed=refunded)

        balance = ledger.balance_of(user_id)
        if balance < cost:
            log_event("spend.insufficient", user_id=user_id, job_id=job_id, cost=cost, balance=balance)
            return SpendResult(success=False, balance=balance)

        ledger.append(user_id, -cost, KIND_SPEND, job_id, reason, commit=False)
        balance_after = balance - cost

    return SpendResult(success=True, balance=balance_after, applied=True)


def refund(user_id: int, job_id: str, reason: str) -> LedgerResult:
    """
    Give back exactly what `job_id` spent. A no-op when the job never spent
    or was already refunded.
    """
    if not job_id:
        raise ValueError("job_id is required")

    with ledger.customer_lock(user_id):
        spent = ledger.find_entry(user_id, KIND_SPEND, job_id)
        if spent is None:
            log_event("refund.no_spend", level="warning", user_id=user_id, job_id=job_id)
            return LedgerResult(applied=False)
        result = ledger.append(user_id, -spent.delta, KIND_REFUND, job_id, reason, commit=False)

    return result
