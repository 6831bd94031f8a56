"""Reserve tokens, run one staging job, give the tokens back if it fails."""

from dataclasses import dataclass
from typing import Optional

from flask import current_app

from tokenledger.billing import ledger, spend
from tokenledger.billing.errors import DownstreamGenerationFailure
from tokenledger.observability import log_event

from . import compositor
from .compositor import MODEL_HIGH_FIDELITY, StagingOptions


def generation_cost(options: StagingOptions) -> int:
    """Tokens one job costs; depends only on the request."""
    cfg = current_app.config
    if options.model_version == MODEL_HIGH_FIDELITY:
        return int(cfg.get("GENERATION_COST_HIGH_FIDELITY", 2))
    return int(cfg.get("GENERATION_COST_STANDARD", 1))


@dataclass(frozen=True)
class StagingOutcome:
    success: bool
    job_id: str
    cost: int
    balance: int
    image_url: Optional[str] = None
    original_image_url: Optional[str] = None
    error: Optional[str] = None
    insufficient_balance: bool = False


def stage_room(user_id: int, image_bytes: bytes, options: StagingOptions, job_id: str) -> StagingOutcome:
    cost = generation_cost(options)
    reason = f"Room staging ({options.model_version})"

    reserved = spend.try_spend(user_id, cost, job_id, reason)
    if reserved.closed:
        return StagingOutcome(success=False, job_id=job_id, cost=cost, balance=reserved.balance, error="job_already_refunded")
    if reserved.success and not reserved.applied:
        # this job id was charged by an earlier request; only that request may generate or refund
        log_event("staging.duplicate_job", level="warning", user_id=user_id, job_id=job_id)
        return StagingOutcome(success=False, job_id=job_id, cost=cost, balance=reserved.balance, error="job_already_charged")
    if not reserved.success:
        return StagingOutcome(
            success=False,
            job_id=job_id,
            cost=cost,
            balance=reserved.balance,
            error="insufficient_balance",
            insufficient_balance=True,
        )

    try:
        result = compositor.call_compositor(image_bytes, options)
    except DownstreamGenerationFailure as exc:
        try:
            spend.refund(user_id, job_id, f"Refund: {exc}")
        except Exception:
            # caller still sees the generation error; the refund can be replayed by job id
            current_app.logger.exception("staging.refund_failed job_id=%s user_id=%s", job_id, user_id)
        log_event("staging.failed", level="warning", user_id=user_id, job_id=job_id, error=str(exc))
        return StagingOutcome(success=False, job_id=job_id, cost=cost, balance=ledger.balance_of(user_id), error=str(exc))

    log_event("staging.succeeded", user_id=user_id, job_id=job_id, cost=cost)
    return StagingOutcome(
        success=True,
        job_id=job_id,
        cost=cost,
        balance=reserved.balance,
        image_url=result.image_url,
        original_image_url=result.original_image_url,
    )
