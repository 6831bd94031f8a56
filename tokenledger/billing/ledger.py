"""Append-only token ledger: balance is always the sum of a user's entries."""

import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from tokenledger.extensions import db
from tokenledger.models import LedgerEntry, User
from tokenledger.models.ledger_entry import LEDGER_KINDS, KIND_SPEND
from tokenledger.observability import log_event

from .errors import MissingCustomerMapping


@dataclass(frozen=True)
class LedgerResult:
    applied: bool
    entry: Optional[LedgerEntry] = None


def balance_of(user_id: int) -> int:
    result = db.session.execute(
        select(func.coalesce(func.sum(LedgerEntry.delta), 0)).where(LedgerEntry.user_id == user_id)
    )
    return int(result.scalar() or 0)


def find_entry(user_id: int, kind: str, external_id: str) -> Optional[LedgerEntry]:
    return (
        db.session.query(LedgerEntry)
        .filter_by(user_id=user_id, kind=kind, external_id=external_id)
        .one_or_none()
    )


def recent_entries(user_id: int, limit: int = 30):
    return (
        db.session.query(LedgerEntry)
        .filter_by(user_id=user_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .limit(limit)
        .all()
    )


def _validate(delta: int, kind: str, external_id: str) -> None:
    if kind not in LEDGER_KINDS:
        raise ValueError(f"unknown ledger kind {kind!r}")
    if not external_id:
        raise ValueError("external_id is required")
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        raise ValueError("delta must be a non-zero integer")
    if (kind == KIND_SPEND) != (delta < 0):
        raise ValueError(f"delta {delta:+d} has the wrong sign for kind {kind!r}")


def append(user_id: int, delta: int, kind: str, external_id: str, reason: Optional[str] = None, *, commit: bool = True) -> LedgerResult:
    """
    Insert one entry unless (user_id, kind, external_id) already exists.

    A duplicate is not an error: the call returns applied=False and changes
    nothing. Two concurrent inserts of the same key both pass the pre-check;
    the unique constraint rejects the second, which is reported the same way.
    """
    _validate(delta, kind, external_id)

    if find_entry(user_id, kind, external_id) is not None:
        log_event("ledger.duplicate", user_id=user_id, kind=kind, external_id=external_id)
        return LedgerResult(applied=False)

    entry = LedgerEntry(
        user_id=user_id,
        delta=delta,
        kind=kind,
        external_id=external_id,
        reason=reason[:255] if reason else None,
    )
    db.session.add(entry)
    try:
        db.session.flush()  # enforce unique/constraints early
        if commit:
            db.session.commit()
    except IntegrityError:
        db.session.rollback()
        if find_entry(user_id, kind, external_id) is None:
            # some other constraint (FK, check) failed; not a duplicate
            raise
        log_event("ledger.duplicate", user_id=user_id, kind=kind, external_id=external_id, raced=True)
        return LedgerResult(applied=False)

    log_event("ledger.append", user_id=user_id, kind=kind, delta=delta, external_id=external_id)
    return LedgerResult(applied=True, entry=entry)


# Per-user locks for the current process. Row locks below cover other processes.
# Entries vanish once no request holds the lock
_customer_locks = weakref.WeakValueDictionary()
_customer_locks_guard = threading.Lock()


def _lock_for(user_id: int) -> threading.Lock:
    with _customer_locks_guard:
        lock = _customer_locks.get(user_id)
        if lock is None:
            lock = _customer_locks[user_id] = threading.Lock()
        return lock


@contextmanager
def customer_lock(user_id: int):
    """
    Serialize balance-conditional writes for one user.

    Holds a process-local lock and a SELECT ... FOR UPDATE on the user row
    until the block exits. Writes made inside the block are committed on a
    clean exit and rolled back on an exception; either way the row lock is
    released. Other users are never blocked.
    """
    lock = _lock_for(user_id)
    with lock:
        locked = db.session.execute(
            select(User.id).where(User.id == user_id).with_for_update()
        ).scalar_one_or_none()
        if locked is None:
            db.session.rollback()
            raise MissingCustomerMapping(f"user {user_id} does not exist")
        try:
            yield
        except Exception:
            db.session.rollback()
            raise
        else:
            db.session.commit()
