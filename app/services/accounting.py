import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ValidationError
from app.db.base import atomic
from app.models.collection import CollectionPayment, MonthlyCollection, PaymentStatus
from app.models.cycle import GroupFund, LoanCycle
from app.models.savings import Savings
from app.models.transaction import Loan, LoanStatus, LoanTransaction

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
SAVINGS_EPSILON = Decimal("0.001")  # Drift tolerated before a cached total is rewritten
LOAN_EPSILON = Decimal("0.01")  # Balance treated as fully repaid


def to_money(value) -> Decimal:
    """Coerce to a two-decimal Decimal (half-up)."""
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def require_positive(amount, label: str = "Amount") -> Decimal:
    amount = to_money(amount)
    if amount <= ZERO:
        raise ValidationError(f"{label} must be greater than zero")
    return amount


def sum_positive(amounts: Iterable) -> Decimal:
    """Sum ignoring legacy negative entries."""
    total = ZERO
    for amount in amounts:
        amount = to_money(amount)
        if amount > ZERO:
            total += amount
    return total


def get_savings_pool(db: Session) -> Decimal:
    """Savings pool available to individual loans.

    Total of every member's savings minus the outstanding balance of
    active loans given outside a rotation.
    """
    total_savings = db.query(func.coalesce(func.sum(Savings.total_amount), 0)).scalar()
    outstanding = db.query(func.coalesce(func.sum(Loan.remaining), 0)).filter(
        Loan.cycle_id.is_(None),
        Loan.status == LoanStatus.ACTIVE,
    ).scalar()
    return to_money(total_savings) - to_money(outstanding)


def _paid_total_for_cycle(db: Session, cycle_id: UUID) -> Decimal:
    total = db.query(func.coalesce(func.sum(CollectionPayment.amount), 0)).join(
        MonthlyCollection, CollectionPayment.collection_id == MonthlyCollection.id
    ).filter(
        MonthlyCollection.cycle_id == cycle_id,
        CollectionPayment.status == PaymentStatus.PAID,
    ).scalar()
    return to_money(total)


def recompute_group_fund(db: Session, cycle_id: UUID) -> Optional[GroupFund]:
    """Re-derive the cycle's fund figures from collections and loans.

    total_funds     = external investment + collected + repaid
    investment_pool = total_funds - disbursed (may go negative)

    Does nothing for cycles without a fund. Flushes, never commits.
    """
    fund = db.query(GroupFund).filter(GroupFund.cycle_id == cycle_id).first()
    if not fund:
        return None

    collected = _paid_total_for_cycle(db, cycle_id)
    disbursed = to_money(db.query(func.coalesce(func.sum(Loan.principal), 0)).filter(
        Loan.cycle_id == cycle_id
    ).scalar())
    repaid = to_money(db.query(func.coalesce(func.sum(LoanTransaction.amount), 0)).join(
        Loan, LoanTransaction.loan_id == Loan.id
    ).filter(
        Loan.cycle_id == cycle_id
    ).scalar())

    fund.total_funds = to_money(fund.external_investment) + collected + repaid
    fund.investment_pool = fund.total_funds - disbursed
    db.flush()

    if fund.investment_pool < ZERO:
        logger.info(f"Cycle {cycle_id} pool is negative ({fund.investment_pool}); loan funded from future contributions")
    return fund


def add_investment(
    db: Session,
    cycle_id: UUID,
    amount: Decimal
) -> GroupFund:
    """Add outside capital to a cycle's fund, creating the fund on first use."""
    amount = require_positive(amount, "Investment amount")
    with atomic(db):
        cycle = db.query(LoanCycle).filter(LoanCycle.id == cycle_id).first()
        if not cycle:
            raise NotFoundError("Cycle not found")

        fund = db.query(GroupFund).filter(GroupFund.cycle_id == cycle_id).first()
        if not fund:
            fund = GroupFund(cycle_id=cycle_id, external_investment=ZERO)
            db.add(fund)
            db.flush()

        fund.external_investment = to_money(fund.external_investment) + amount
        recompute_group_fund(db, cycle_id)

    db.refresh(fund)
    logger.info(f"Investment of {amount} added to cycle {cycle.cycle_number}; pool now {fund.investment_pool}")
    return fund
