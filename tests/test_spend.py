import gc
import threading

import pytest

from tokenledger.billing import ledger, spend
from tokenledger.billing.errors import MissingCustomerMapping
from tokenledger.models import LedgerEntry


def _fund(app, uid, tokens, external_id="cs_fund"):
    with app.app_context():
        ledger.append(uid, tokens, "topup", external_id)


def test_spend_debits_and_retry_is_idempotent(app, make_user):
    uid = make_user()
    _fund(app, uid, 10)
    with app.app_context():
        first = spend.try_spend(uid, 2, "job-1", "staging")
        assert first.success is True
        assert first.applied is True
        assert first.balance == 8

        retry = spend.try_spend(uid, 2, "job-1", "staging")
        assert retry.success is True
        assert retry.applied is False
        assert retry.balance == 8

        assert LedgerEntry.query.filter_by(kind="spend", external_id="job-1").count() == 1
        assert ledger.balance_of(uid) == 8


def test_insufficient_balance_leaves_ledger_untouched(app, make_user):
    uid = make_user()
    _fund(app, uid, 1)
    with app.app_context():
        result = spend.try_spend(uid, 2, "job-poor", "staging")
        assert result.success is False
        assert result.balance == 1
        assert result.to_dict() == {"success": False, "balance": 1}
        assert LedgerEntry.query.filter_by(kind="spend").count() == 0


def test_exact_balance_can_be_spent(app, make_user):
    uid = make_user()
    _fund(app, uid, 3)
    with app.app_context():
        assert spend.try_spend(uid, 3, "job-all", "staging").balance == 0
        assert spend.try_spend(uid, 1, "job-more", "staging").success is False


def test_refund_restores_spent_amount_once(app, make_user):
    uid = make_user()
    _fund(app, uid, 10)
    with app.app_context():
        spend.try_spend(uid, 3, "job-r", "staging")
        assert ledger.balance_of(uid) == 7

        first = spend.refund(uid, "job-r", "generation failed")
        again = spend.refund(uid, "job-r", "generation failed")
        assert first.applied is True
        assert first.entry.delta == 3
        assert again.applied is False
        assert ledger.balance_of(uid) == 10


def test_refund_without_spend_is_a_noop(app, make_user):
    uid = make_user()
    _fund(app, uid, 10)
    with app.app_context():
        result = spend.refund(uid, "job-never", "nothing to refund")
        assert result.applied is False
        assert LedgerEntry.query.filter_by(kind="refund").count() == 0
        assert ledger.balance_of(uid) == 10


def test_refunded_job_is_closed(app, make_user):
    uid = make_user()
    _fund(app, uid, 10)
    with app.app_context():
        spend.try_spend(uid, 2, "job-c", "staging")
        spend.refund(uid, "job-c", "failed")

        retry = spend.try_spend(uid, 2, "job-c", "staging")
        assert retry.success is False
        assert retry.closed is True
        assert ledger.balance_of(uid) == 10


def test_spend_rejects_bad_input(app, make_user):
    uid = make_user()
    with app.app_context():
        with pytest.raises(ValueError):
            spend.try_spend(uid, 0, "job", "x")
        with pytest.raises(ValueError):
            spend.try_spend(uid, 2, "", "x")


def test_spend_for_unknown_user(app):
    with app.app_context():
        with pytest.raises(MissingCustomerMapping):
            spend.try_spend(424242, 1, "job", "x")


def test_concurrent_spends_never_overdraw(app, make_user):
    uid = make_user()
    _fund(app, uid, 10)
    results = []
    errors = []

    def worker(i):
        try:
            with app.app_context():
                results.append(spend.try_spend(uid, 3, f"job-{i}", "staging"))
        except Exception as exc:  # surfaced by the assertions below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    succeeded = [r for r in results if r.success]
    assert len(succeeded) == 3
    with app.app_context():
        assert ledger.balance_of(uid) == 1
        assert LedgerEntry.query.filter_by(kind="spend").count() == 3


def test_customer_locks_are_released_after_use(app, make_user):
    uid = make_user()
    _fund(app, uid, 10)
    first = ledger._lock_for(uid)
    assert ledger._lock_for(uid) is first

    del first
    with app.app_context():
        for n in range(5):
            spend.try_spend(uid, 1, f"job-lock-{n}", "staging")
    gc.collect()
    assert uid not in ledger._customer_locks
