"""Savings ledger primitives.

Savings.total_amount is only a cache. Every figure written here is derived
from the member's SavingsTransaction rows, so a stale cache heals itself the
next time any of these functions touches the account.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError
from app.db.base import atomic
from app.models.member import Member
from app.models.savings import Savings, SavingsSource, SavingsTransaction
from app.services.accounting import (
    SAVINGS_EPSILON,
    ZERO,
    require_positive,
    sum_positive,
    to_money,
)

logger = logging.getLogger(__name__)


def _get_or_create_savings(db: Session, member_id: UUID) -> Savings:
    """Atomic get-or-create keyed on the unique member_id."""
    savings = db.query(Savings).filter(Savings.member_id == member_id).first()
    if savings:
        return savings

    try:
        with db.begin_nested():
            savings = Savings(member_id=member_id, total_amount=ZERO)
            db.add(savings)
            db.flush()
    except IntegrityError:
        # Another request created it first
        savings = db.query(Savings).filter(Savings.member_id == member_id).one()
    return savings


def _positive_total(db: Session, savings_id: UUID) -> Decimal:
    db.flush()
    rows = db.query(SavingsTransaction.amount).filter(
        SavingsTransaction.savings_id == savings_id
    ).all()
    return sum_positive(row.amount for row in rows)


def _rebuild_running_totals(db: Session, savings: Savings) -> Decimal:
    """Rewrite running totals in date order and reset the cached balance."""
    db.flush()
    transactions = db.query(SavingsTransaction).filter(
        SavingsTransaction.savings_id == savings.id
    ).order_by(
        SavingsTransaction.date.asc(),
        SavingsTransaction.created_at.asc(),
    ).all()

    running = ZERO
    for txn in transactions:
        amount = to_money(txn.amount)
        if amount > ZERO:
            running += amount
        txn.running_total = running

    savings.total_amount = max(ZERO, running)
    db.flush()
    return savings.total_amount


def post_savings_entry(
    db: Session,
    member_id: UUID,
    amount: Decimal,
    entry_date: date,
    source: SavingsSource = SavingsSource.MANUAL,
    collection_payment_id: UUID = None
) -> Tuple[SavingsTransaction, Savings]:
    """Append a contribution inside the caller's transaction (flush only).

    A backdated entry rewrites the running totals of everything after it.
    """
    amount = require_positive(amount)
    savings = _get_or_create_savings(db, member_id)
    latest_date = db.query(func.max(SavingsTransaction.date)).filter(
        SavingsTransaction.savings_id == savings.id
    ).scalar()

    # Never trust the cached total
    new_total = _positive_total(db, savings.id) + amount

    txn = SavingsTransaction(
        savings_id=savings.id,
        date=entry_date,
        amount=amount,
        running_total=new_total,
        source=source,
        collection_payment_id=collection_payment_id,
    )
    db.add(txn)
    savings.total_amount = new_total
    db.flush()

    if latest_date is not None and entry_date < latest_date:
        _rebuild_running_totals(db, savings)
    return txn, savings


def rebuild_member_savings(db: Session, member_id: UUID) -> Optional[Decimal]:
    """Re-derive a member's savings inside the caller's transaction."""
    savings = db.query(Savings).filter(Savings.member_id == member_id).first()
    if not savings:
        return None
    return _rebuild_running_totals(db, savings)


def recompute_savings_total(db: Session, member_id: UUID) -> Decimal:
    """Return the member's true balance, correcting the cached total if it drifted.

    Safe to call on every read. Issues a single short write only when the
    stored value is off by more than SAVINGS_EPSILON, so a second call in a
    row performs no writes.
    """
    savings = db.query(Savings).filter(Savings.member_id == member_id).first()
    if not savings:
        return ZERO

    computed = _positive_total(db, savings.id)
    stored = to_money(savings.total_amount)

    if abs(computed - stored) > SAVINGS_EPSILON:
        logger.warning(f"Savings drift for member {member_id}: stored={stored}, computed={computed}. Correcting.")
        with atomic(db):
            savings.total_amount = computed
    return computed


def append_contribution(
    db: Session,
    member_id: UUID,
    amount: Decimal,
    entry_date: date = None,
    source: SavingsSource = SavingsSource.MANUAL
) -> Tuple[SavingsTransaction, Savings]:
    """Record a positive contribution and return the entry with the updated account."""
    amount = require_positive(amount)
    entry_date = entry_date or date.today()

    with atomic(db):
        member = db.query(Member).filter(Member.id == member_id).first()
        if not member:
            raise NotFoundError("Member not found")
        txn, savings = post_savings_entry(db, member_id, amount, entry_date, source)

    db.refresh(txn)
    db.refresh(savings)
    logger.info(f"Contribution of {amount} recorded for member {member_id}; balance {savings.total_amount}")
    return txn, savings


def delete_transaction(
    db: Session,
    transaction_id: UUID
) -> Savings:
    """Delete one savings entry and re-sum the balance from what is left."""
    with atomic(db):
        txn = db.query(SavingsTransaction).filter(SavingsTransaction.id == transaction_id).first()
        if not txn:
            raise NotFoundError("Savings transaction not found")

        savings = txn.savings
        amount = txn.amount
        db.delete(txn)
        db.flush()
        _rebuild_running_totals(db, savings)

    db.refresh(savings)
    logger.info(f"Savings transaction {transaction_id} ({amount}) deleted; balance now {savings.total_amount}")
    return savings


def get_member_savings(
    db: Session,
    member_id: UUID
) -> Optional[Savings]:
    """Read path: recompute before returning."""
    recompute_savings_total(db, member_id)
    return db.query(Savings).filter(Savings.member_id == member_id).first()


def list_savings(db: Session) -> List[Savings]:
    """All savings accounts, each recomputed from its transactions."""
    member_ids = [row.member_id for row in db.query(Savings.member_id).all()]
    for member_id in member_ids:
        recompute_savings_total(db, member_id)
    return db.query(Savings).order_by(Savings.created_at.asc()).all()


def migrate_legacy_negative_entries(db: Session) -> dict:
    """One-time cleanup of negative rows left by the old savings-deduction loans.

    The rows are discarded and every affected account is rebuilt, so no read
    path has to filter them again.
    """
    with atomic(db):
        legacy = db.query(SavingsTransaction).filter(SavingsTransaction.amount < 0).all()
        affected_ids = {txn.savings_id for txn in legacy}
        for txn in legacy:
            logger.info(f"Discarding legacy savings entry {txn.id}: amount={txn.amount}, date={txn.date}")
            db.delete(txn)
        db.flush()

        for savings in db.query(Savings).filter(Savings.id.in_(affected_ids)).all() if affected_ids else []:
            _rebuild_running_totals(db, savings)

    return {"discarded": len(legacy), "accounts": len(affected_ids)}
