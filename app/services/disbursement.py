"""Pooled payouts from a cycle and individual loans outside any rotation.

Rotation loans are funded by the collection pool only. Nothing here ever
touches a member's savings balance.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.audit import write_audit_log
from app.core.config import settings
from app.core.errors import (
    ConflictError,
    InsufficientPoolError,
    NotFoundError,
    ValidationError,
)
from app.db.base import atomic
from app.models.collection import MonthlyCollection, PaymentMethod
from app.models.cycle import GroupMember, LoanCycle, LoanSequence, SequenceStatus
from app.models.member import Member
from app.models.transaction import Loan, LoanStatus, LoanTransaction
from app.services.accounting import (
    ZERO,
    get_savings_pool,
    recompute_group_fund,
    require_positive,
    to_money,
)

logger = logging.getLogger(__name__)


def _has_cycle_loan(db: Session, cycle_id: UUID, member_id: UUID) -> bool:
    return db.query(Loan.id).filter(
        Loan.cycle_id == cycle_id,
        Loan.member_id == member_id,
    ).first() is not None


def ensure_eligible(db: Session, cycle_id: UUID, member_id: UUID) -> GroupMember:
    """The member must be active in the cycle and not have received its payout yet."""
    group_member = db.query(GroupMember).filter(
        GroupMember.cycle_id == cycle_id,
        GroupMember.member_id == member_id,
        GroupMember.is_active == True,
    ).first()
    if not group_member:
        raise ConflictError("Member is not an active member of this cycle")
    if _has_cycle_loan(db, cycle_id, member_id):
        raise ConflictError("Member has already received a loan in this cycle")
    return group_member


def _repayment_months(db: Session, cycle_id: UUID) -> int:
    """Active members still waiting for their payout, recipient included."""
    received = select(Loan.member_id).where(Loan.cycle_id == cycle_id)
    waiting = db.query(func.count(GroupMember.id)).filter(
        GroupMember.cycle_id == cycle_id,
        GroupMember.is_active == True,
        GroupMember.member_id.notin_(received),
    ).scalar()
    return max(1, waiting or 0)


def refresh_total_received(db: Session, cycle_id: UUID, member_id: UUID) -> None:
    """Re-derive GroupMember.total_received from the member's loans in the cycle."""
    group_member = db.query(GroupMember).filter(
        GroupMember.cycle_id == cycle_id,
        GroupMember.member_id == member_id,
    ).first()
    if not group_member:
        return

    db.flush()
    total = db.query(func.coalesce(func.sum(Loan.principal), 0)).filter(
        Loan.cycle_id == cycle_id,
        Loan.member_id == member_id,
    ).scalar()
    group_member.total_received = to_money(total)
    db.flush()


def _close_cycle_if_exhausted(db: Session, cycle: LoanCycle) -> None:
    db.flush()
    loans_given = db.query(func.count(Loan.id)).filter(Loan.cycle_id == cycle.id).scalar()
    if loans_given >= cycle.total_members and cycle.is_active:
        cycle.is_active = False
        cycle.end_date = date.today()
        db.flush()
        logger.info(f"Cycle {cycle.cycle_number} closed: every member has received a loan")


def _mark_sequence_disbursed(db: Session, loan: Loan, disbursed_at: date) -> None:
    sequence = db.query(LoanSequence).filter(
        LoanSequence.cycle_id == loan.cycle_id,
        LoanSequence.member_id == loan.member_id,
    ).with_for_update().first()
    if not sequence:
        return
    if sequence.status != SequenceStatus.PENDING:
        raise ConflictError("Member's loan sequence is not pending")
    sequence.status = SequenceStatus.DISBURSED
    sequence.disbursed_at = disbursed_at
    loan.sequence_id = sequence.id


def _insert_loan(db: Session, loan: Loan) -> Loan:
    try:
        with db.begin_nested():
            db.add(loan)
            db.flush()
    except IntegrityError:
        raise ConflictError("A loan has already been disbursed for this collection or sequence")
    return loan


def link_funding_collection(db: Session, collection: MonthlyCollection, loan: Loan) -> None:
    """Record a completed collection as the source of a loan already paid out (flush only)."""
    loan.collection_id = collection.id
    collection.loan_disbursed = True
    collection.loan_member_id = loan.member_id
    collection.loan_amount = to_money(loan.principal)
    db.flush()


def advanced_loan_for_month(db: Session, cycle_id: UUID, month: int) -> Optional[Loan]:
    """Loan paid from the month's rotation slot before its collection completed."""
    return db.query(Loan).join(LoanSequence, Loan.sequence_id == LoanSequence.id).filter(
        LoanSequence.cycle_id == cycle_id,
        LoanSequence.month == month,
        Loan.collection_id.is_(None),
    ).first()


def disburse_collection(
    db: Session,
    collection: MonthlyCollection,
    member_id: UUID,
    method: Optional[PaymentMethod] = None,
    disbursed_at: Optional[date] = None
) -> Loan:
    """Disburse a completed collection's pool to one member (flush only).

    The caller holds the collection row lock and owns the transaction.
    """
    if collection.loan_disbursed:
        raise ConflictError("Loan for this collection has already been disbursed")
    if not collection.is_completed:
        raise ConflictError("Collection is not completed yet")
    ensure_eligible(db, collection.cycle_id, member_id)

    amount = to_money(collection.total_collected)
    if amount <= ZERO:
        raise ConflictError("Collection has no funds to disburse")

    disbursed_at = disbursed_at or date.today()
    cycle = collection.cycle
    loan = Loan(
        member_id=member_id,
        cycle_id=cycle.id,
        collection_id=collection.id,
        principal=amount,
        remaining=amount,
        months=_repayment_months(db, cycle.id),
        loan_month=collection.month,
        current_month=0,
        status=LoanStatus.ACTIVE,
        disbursed_at=disbursed_at,
        disbursement_method=method,
    )
    _mark_sequence_disbursed(db, loan, disbursed_at)
    _insert_loan(db, loan)

    collection.loan_disbursed = True
    collection.loan_member_id = member_id
    collection.loan_amount = amount
    db.flush()

    refresh_total_received(db, cycle.id, member_id)
    _close_cycle_if_exhausted(db, cycle)
    recompute_group_fund(db, cycle.id)

    logger.info(f"Loan of {amount} disbursed to member {member_id} from collection month {collection.month} of cycle {cycle.cycle_number} over {loan.months} months")
    write_audit_log("LOAN_DISBURSED", f"loan={loan.id} member={member_id} amount={amount} collection={collection.id}")
    return loan


def disburse_from_collection(
    db: Session,
    collection_id: UUID,
    member_id: UUID,
    method: Optional[PaymentMethod] = None
) -> Loan:
    """Give a completed collection's pooled amount to the chosen member."""
    with atomic(db):
        collection = db.query(MonthlyCollection).filter(
            MonthlyCollection.id == collection_id
        ).with_for_update().first()
        if not collection:
            raise NotFoundError("Collection not found")
        loan = disburse_collection(db, collection, member_id, method=method)

    db.refresh(loan)
    return loan


def _check_guarantors(db: Session, member_id: UUID, guarantor_ids) -> None:
    for guarantor_id in guarantor_ids:
        if guarantor_id is None:
            continue
        if guarantor_id == member_id:
            raise ValidationError("A member cannot guarantee their own loan")
        if not db.query(Member.id).filter(Member.id == guarantor_id).first():
            raise NotFoundError("Guarantor not found")


def disburse_from_sequence(
    db: Session,
    sequence_id: UUID,
    guarantor1_id: Optional[UUID] = None,
    guarantor2_id: Optional[UUID] = None,
    method: Optional[PaymentMethod] = None,
    disbursed_at: Optional[date] = None
) -> Loan:
    """Disburse the pooled amount scheduled on a rotation slot.

    The amount is the slot's loan_amount (monthly amount x members). When the
    collection of the same month is completed and still undisbursed, it is
    recorded as the source of this loan. A slot whose month has no collection
    yet is paid in advance, and that collection is linked to the loan once it
    completes instead of paying out again.

    Refused while the month's collection is still open or after it has
    already paid someone.
    """
    disbursed_at = disbursed_at or date.today()

    with atomic(db):
        sequence = db.query(LoanSequence).filter(
            LoanSequence.id == sequence_id
        ).with_for_update().first()
        if not sequence:
            raise NotFoundError("Loan sequence not found")
        if sequence.status != SequenceStatus.PENDING:
            raise ConflictError(f"Loan sequence is {sequence.status.value}, not PENDING")

        cycle = sequence.cycle
        ensure_eligible(db, cycle.id, sequence.member_id)
        _check_guarantors(db, sequence.member_id, [guarantor1_id, guarantor2_id])

        collection = db.query(MonthlyCollection).filter(
            MonthlyCollection.cycle_id == cycle.id,
            MonthlyCollection.month == sequence.month,
        ).with_for_update().first()
        if collection and not collection.is_completed:
            raise ConflictError(
                f"Collection for month {sequence.month} is still open; it pays out when complete",
                payload={"collection_id": str(collection.id)},
            )
        if collection and collection.loan_disbursed:
            raise ConflictError(
                f"Collection for month {sequence.month} has already been paid out",
                payload={"collection_id": str(collection.id)},
            )

        amount = to_money(sequence.loan_amount)
        loan = Loan(
            member_id=sequence.member_id,
            cycle_id=cycle.id,
            sequence_id=sequence.id,
            principal=amount,
            remaining=amount,
            months=_repayment_months(db, cycle.id),
            loan_month=sequence.month,
            current_month=0,
            status=LoanStatus.ACTIVE,
            disbursed_at=disbursed_at,
            disbursement_method=method,
            guarantor1_id=guarantor1_id,
            guarantor2_id=guarantor2_id,
        )

        sequence.status = SequenceStatus.DISBURSED
        sequence.disbursed_at = disbursed_at
        _insert_loan(db, loan)
        if collection:
            link_funding_collection(db, collection, loan)

        refresh_total_received(db, cycle.id, sequence.member_id)
        _close_cycle_if_exhausted(db, cycle)
        recompute_group_fund(db, cycle.id)

    db.refresh(loan)
    logger.info(f"Loan of {amount} disbursed to member {loan.member_id} from sequence month {loan.loan_month}")
    write_audit_log("LOAN_DISBURSED", f"loan={loan.id} member={loan.member_id} amount={amount} sequence={sequence_id}")
    return loan


def reverse_loan_disbursement(
    db: Session,
    loan_id: Optional[UUID] = None,
    collection_id: Optional[UUID] = None
) -> None:
    """Undo a rotation payout that has not been repaid at all.

    Identify the loan either by its id or by the collection it was paid
    from, never both. The collection and the rotation slot go back to their
    undisbursed state. A cycle that closed because every member had been paid
    is reopened; one closed by hand stays closed.
    """
    if (loan_id is None) == (collection_id is None):
        raise ValidationError("Provide exactly one of loan_id or collection_id")

    with atomic(db):
        if loan_id is not None:
            loan = db.query(Loan).filter(Loan.id == loan_id).with_for_update().first()
            if not loan:
                raise NotFoundError("Loan not found")
        else:
            collection = db.query(MonthlyCollection).filter(
                MonthlyCollection.id == collection_id
            ).with_for_update().first()
            if not collection:
                raise NotFoundError("Collection not found")
            if not collection.loan_disbursed:
                raise ConflictError("No loan has been disbursed from this collection")
            loan = db.query(Loan).filter(Loan.collection_id == collection.id).with_for_update().first()
            if not loan and collection.loan_member_id:
                # Rows written before loans were linked to their collection
                loan = db.query(Loan).filter(
                    Loan.cycle_id == collection.cycle_id,
                    Loan.member_id == collection.loan_member_id,
                ).with_for_update().first()
            if not loan:
                raise NotFoundError("Loan for this collection not found")

        if loan.cycle_id is None:
            raise ConflictError("Individual loans are deleted, not reversed")

        repayments = db.query(func.count(LoanTransaction.id)).filter(
            LoanTransaction.loan_id == loan.id
        ).scalar()
        if repayments:
            raise ConflictError(
                "Cannot reverse a loan that already has repayments. Delete the repayments first.",
                payload={"transactions": repayments},
            )

        cycle = loan.cycle
        member_id = loan.member_id
        principal = loan.principal
        reversed_id = loan.id
        loans_before = db.query(func.count(Loan.id)).filter(Loan.cycle_id == cycle.id).scalar()
        closed_by_exhaustion = not cycle.is_active and loans_before >= cycle.total_members

        funding = loan.collection
        if funding is None and collection_id is not None:
            funding = collection
        if funding is not None:
            funding.loan_disbursed = False
            funding.loan_member_id = None
            funding.loan_amount = None
            funding.designated_member_id = None

        sequence = loan.sequence
        if sequence is None:
            sequence = db.query(LoanSequence).filter(
                LoanSequence.cycle_id == cycle.id,
                LoanSequence.member_id == member_id,
            ).first()
        if sequence is not None:
            sequence.status = SequenceStatus.PENDING
            sequence.disbursed_at = None

        db.delete(loan)
        db.flush()

        refresh_total_received(db, cycle.id, member_id)
        if closed_by_exhaustion:
            cycle.is_active = True
            cycle.end_date = None
        recompute_group_fund(db, cycle.id)

    logger.info(f"Loan {reversed_id} of {principal} to member {member_id} reversed in cycle {cycle.cycle_number}")
    write_audit_log("LOAN_REVERSED", f"loan={reversed_id} member={member_id} amount={principal}")


def give_individual_loan(
    db: Session,
    member_id: UUID,
    principal: Decimal,
    months: Optional[int] = None,
    reason: Optional[str] = None,
    guarantor1_id: Optional[UUID] = None,
    guarantor2_id: Optional[UUID] = None,
    method: Optional[PaymentMethod] = None,
    disbursed_at: Optional[date] = None
) -> Loan:
    """Interest-free loan outside any rotation, backed by the savings pool."""
    principal = require_positive(principal, "Loan amount")
    months = months or settings.DEFAULT_REPAYMENT_MONTHS
    if months < 1:
        raise ValidationError("Loan must run for at least one month")

    with atomic(db):
        if not db.query(Member.id).filter(Member.id == member_id).first():
            raise NotFoundError("Member not found")
        _check_guarantors(db, member_id, [guarantor1_id, guarantor2_id])

        available = get_savings_pool(db)
        if principal > available:
            raise InsufficientPoolError(
                f"Loan amount {principal} exceeds the available savings pool {available}",
                payload={"available": str(available), "requested": str(principal)},
            )

        loan = Loan(
            member_id=member_id,
            cycle_id=None,
            principal=principal,
            remaining=principal,
            months=months,
            current_month=0,
            status=LoanStatus.ACTIVE,
            disbursed_at=disbursed_at or date.today(),
            disbursement_method=method,
            guarantor1_id=guarantor1_id,
            guarantor2_id=guarantor2_id,
            reason=reason,
        )
        db.add(loan)
        db.flush()

    db.refresh(loan)
    logger.info(f"Individual loan of {principal} given to member {member_id} over {months} months")
    write_audit_log("INDIVIDUAL_LOAN", f"loan={loan.id} member={member_id} amount={principal}")
    return loan


def delete_loan(db: Session, loan_id: UUID) -> None:
    """Remove an individual loan with its repayments. Rotation loans go through reversal."""
    with atomic(db):
        loan = db.query(Loan).filter(Loan.id == loan_id).with_for_update().first()
        if not loan:
            raise NotFoundError("Loan not found")
        if loan.cycle_id is not None:
            raise ConflictError("Rotation loans must be reversed, not deleted")

        member_id = loan.member_id
        principal = loan.principal
        db.query(LoanTransaction).filter(LoanTransaction.loan_id == loan.id).delete(synchronize_session=False)
        db.expire(loan, ["transactions"])
        db.delete(loan)

    logger.info(f"Individual loan {loan_id} of {principal} for member {member_id} deleted")
    write_audit_log("LOAN_DELETED", f"loan={loan_id} member={member_id} amount={principal}")
