import logging
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterator, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.audit import write_audit_log
from app.core.errors import AlreadyPaidError, ConflictError, NotFoundError, ValidationError
from app.db.base import atomic
from app.models.collection import PaymentMethod
from app.models.cycle import SequenceStatus
from app.models.transaction import Loan, LoanStatus, LoanTransaction
from app.services.accounting import CENT, LOAN_EPSILON, ZERO, recompute_group_fund, to_money

logger = logging.getLogger(__name__)


def _installment_snapshot(txn: LoanTransaction) -> dict:
    return {
        "id": str(txn.id),
        "month": txn.month,
        "payment_date": txn.date.isoformat() if txn.date else None,
        "amount": str(to_money(txn.amount)),
        "status": "PAID",
    }


def next_installment(remaining: Decimal, months: int, current_month: int) -> Decimal:
    """Spread whatever remains evenly over whatever periods remain.

    The last period (or an overrun past the schedule) takes the whole balance.
    """
    remaining = to_money(remaining)
    periods = months - current_month
    if periods <= 1:
        return remaining
    installment = (remaining / periods).quantize(CENT, rounding=ROUND_HALF_UP)
    return min(installment, remaining)


def _get_loan_for_update(db: Session, loan_id: UUID) -> Loan:
    loan = db.query(Loan).filter(Loan.id == loan_id).with_for_update().first()
    if not loan:
        raise NotFoundError("Loan not found")
    return loan


def _sync_sequence(loan: Loan) -> None:
    sequence = loan.sequence
    if sequence is None or loan.status == LoanStatus.DEFAULTED:
        return
    sequence.status = SequenceStatus.COMPLETED if loan.status == LoanStatus.COMPLETED else SequenceStatus.DISBURSED


def repay(
    db: Session,
    loan_id: UUID,
    payment_date: Optional[date] = None,
    method: Optional[PaymentMethod] = None
) -> Tuple[LoanTransaction, Loan]:
    """Record the next monthly installment on an active loan.

    The installment is recomputed each time as remaining / periods left, so
    an uneven history is always fully amortized by the final month.

    Raises:
        AlreadyPaidError: the installment for the next month already exists.
    """
    payment_date = payment_date or date.today()

    with atomic(db):
        loan = _get_loan_for_update(db, loan_id)
        if loan.status != LoanStatus.ACTIVE:
            raise ConflictError(f"Loan is {loan.status.value}; only active loans accept repayments")

        target_month = loan.current_month + 1
        existing = db.query(LoanTransaction).filter(
            LoanTransaction.loan_id == loan.id,
            LoanTransaction.month == target_month,
        ).first()
        if existing:
            raise AlreadyPaidError(f"Installment for month {target_month} is already paid", existing=_installment_snapshot(existing))

        installment = next_installment(loan.remaining, loan.months, loan.current_month)
        if installment <= ZERO:
            raise ConflictError("Loan has no remaining balance")

        new_remaining = to_money(loan.remaining) - installment
        txn = LoanTransaction(
            loan_id=loan.id,
            date=payment_date,
            amount=installment,
            remaining=new_remaining,
            month=target_month,
            payment_method=method,
        )
        try:
            with db.begin_nested():
                db.add(txn)
                db.flush()
        except IntegrityError:
            winner = db.query(LoanTransaction).filter(
                LoanTransaction.loan_id == loan.id,
                LoanTransaction.month == target_month,
            ).first()
            raise AlreadyPaidError(
                f"Installment for month {target_month} is already paid",
                existing=_installment_snapshot(winner) if winner else None,
            )

        loan.remaining = new_remaining
        loan.current_month = target_month
        if new_remaining <= LOAN_EPSILON or loan.current_month >= loan.months:
            loan.status = LoanStatus.COMPLETED
            loan.completed_at = datetime.utcnow()
            _sync_sequence(loan)
        db.flush()

        if loan.cycle_id:
            recompute_group_fund(db, loan.cycle_id)

    db.refresh(txn)
    db.refresh(loan)
    logger.info(f"Installment {target_month}/{loan.months} of {installment} paid on loan {loan.id}; remaining {loan.remaining}")
    if loan.status == LoanStatus.COMPLETED:
        logger.info(f"Loan {loan.id} completed")
    return txn, loan


def mark_defaulted(db: Session, loan_id: UUID, reason: Optional[str] = None) -> Loan:
    """Terminal. No further installments are accepted afterwards."""
    with atomic(db):
        loan = _get_loan_for_update(db, loan_id)
        if loan.status != LoanStatus.ACTIVE:
            raise ConflictError(f"Loan is {loan.status.value}; only active loans can be defaulted")
        loan.status = LoanStatus.DEFAULTED
        if reason:
            loan.reason = f"{loan.reason}\n{reason}" if loan.reason else reason

    db.refresh(loan)
    logger.info(f"Loan {loan.id} marked as defaulted with {loan.remaining} outstanding")
    write_audit_log("LOAN_DEFAULTED", f"loan={loan.id} member={loan.member_id} remaining={loan.remaining}")
    return loan


def _rebuild_from_transactions(db: Session, loan: Loan) -> None:
    """Renumber surviving installments 1..n and re-derive the loan's balance from them."""
    db.flush()
    survivors = db.query(LoanTransaction).filter(
        LoanTransaction.loan_id == loan.id
    ).order_by(LoanTransaction.month.asc()).all()

    principal = to_money(loan.principal)
    running = principal
    for index, txn in enumerate(survivors, start=1):
        running -= to_money(txn.amount)
        txn.remaining = running
        if txn.month != index:
            txn.month = index
            # One row at a time keeps (loan_id, month) unique throughout
            db.flush()

    loan.remaining = running
    loan.current_month = len(survivors)

    if loan.status != LoanStatus.DEFAULTED:
        if survivors and (running <= LOAN_EPSILON or loan.current_month >= loan.months):
            loan.status = LoanStatus.COMPLETED
            loan.completed_at = loan.completed_at or datetime.utcnow()
        else:
            loan.status = LoanStatus.ACTIVE
            loan.completed_at = None
        _sync_sequence(loan)
    db.flush()


def delete_loan_transaction(db: Session, transaction_id: UUID) -> Loan:
    """Delete one installment and recompute the loan from what is left.

    Later installments move down to close the gap, so current_month always
    equals the number of installments paid.
    """
    with atomic(db):
        txn = db.query(LoanTransaction).filter(LoanTransaction.id == transaction_id).first()
        if not txn:
            raise NotFoundError("Loan transaction not found")

        loan = _get_loan_for_update(db, txn.loan_id)
        month = txn.month
        amount = txn.amount
        db.delete(txn)
        db.flush()
        db.expire(loan, ["transactions"])

        _rebuild_from_transactions(db, loan)
        if loan.cycle_id:
            recompute_group_fund(db, loan.cycle_id)

    db.refresh(loan)
    logger.info(f"Installment {month} ({amount}) deleted from loan {loan.id}; remaining {loan.remaining}, month {loan.current_month}")
    write_audit_log("LOAN_TRANSACTION_DELETED", f"loan={loan.id} month={month} amount={amount}")
    return loan


def get_loan(db: Session, loan_id: UUID) -> Loan:
    loan = db.query(Loan).filter(Loan.id == loan_id).first()
    if not loan:
        raise NotFoundError("Loan not found")
    return loan


def list_loans(
    db: Session,
    member_id: Optional[UUID] = None,
    cycle_id: Optional[UUID] = None,
    status: Optional[LoanStatus] = None
):
    query = db.query(Loan)
    if member_id:
        query = query.filter(Loan.member_id == member_id)
    if cycle_id:
        query = query.filter(Loan.cycle_id == cycle_id)
    if status:
        query = query.filter(Loan.status == status)
    return query.order_by(Loan.disbursed_at.desc()).all()


class PaymentSchedule:
    """Lazy installment plan. Iterating it again starts over from the first row.

    Rows carry an ``interest`` field for display compatibility; loans are
    interest-free so it is always zero.
    """

    def __init__(
        self,
        remaining_principal: Decimal,
        installment_amount: Decimal,
        periods_remaining: int,
        start_month: int = 1
    ):
        if periods_remaining < 0:
            raise ValidationError("Periods remaining cannot be negative")
        self.remaining_principal = to_money(remaining_principal)
        self.installment_amount = to_money(installment_amount)
        if self.remaining_principal > ZERO and periods_remaining > 1 and self.installment_amount <= ZERO:
            raise ValidationError("Installment amount must be greater than zero")
        self.periods_remaining = periods_remaining
        self.start_month = start_month

    def __iter__(self) -> Iterator[dict]:
        balance = self.remaining_principal
        for offset in range(self.periods_remaining):
            if balance <= ZERO:
                return
            last = offset == self.periods_remaining - 1
            payment = balance if last else min(self.installment_amount, balance)
            new_balance = balance - payment
            yield {
                "month": self.start_month + offset,
                "principal_remaining": balance,
                "principal_payment": payment,
                "interest": ZERO,
                "total_payment": payment,
                "new_balance": new_balance,
            }
            balance = new_balance


def generate_payment_schedule(
    remaining_principal: Decimal,
    installment_amount: Decimal,
    periods_remaining: int,
    start_month: int = 1
) -> PaymentSchedule:
    return PaymentSchedule(remaining_principal, installment_amount, periods_remaining, start_month)


def loan_schedule(loan: Loan) -> PaymentSchedule:
    """Schedule for what is still owed on a loan."""
    periods = max(loan.months - loan.current_month, 0)
    if loan.status != LoanStatus.ACTIVE:
        periods = 0
    installment = next_installment(loan.remaining, loan.months, loan.current_month) if periods else ZERO
    return PaymentSchedule(loan.remaining, installment, periods, start_month=loan.current_month + 1)
