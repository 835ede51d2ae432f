import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.audit import write_audit_log
from app.core.config import settings
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.db.base import atomic
from app.models.collection import CollectionPayment, MonthlyCollection
from app.models.cycle import GroupFund, GroupMember, LoanCycle, LoanSequence, SequenceStatus
from app.models.member import Member
from app.models.savings import SavingsTransaction
from app.models.transaction import Loan, LoanStatus, LoanTransaction
from app.schemas.cycle import FixedMemberCycle, GroupFundedCycle, RotatingPoolCycle
from app.services.accounting import ZERO, recompute_group_fund, require_positive, to_money
from app.services.collection import (
    add_paid_payment,
    contribution_rate,
    evaluate_completion,
    open_collection,
    refresh_expected_amount,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"name", "start_date", "end_date", "is_active", "monthly_amount"}


def _insert_cycle(db: Session, **fields) -> LoanCycle:
    """Allocate the next cycle number, retrying on the unique constraint."""
    candidate = (db.query(func.max(LoanCycle.cycle_number)).scalar() or 0) + 1

    for attempt in range(settings.CYCLE_NUMBER_MAX_RETRIES):
        cycle = LoanCycle(cycle_number=candidate, **fields)
        try:
            with db.begin_nested():
                db.add(cycle)
                db.flush()
            return cycle
        except IntegrityError:
            logger.warning(f"Cycle number {candidate} taken (attempt {attempt + 1}); trying {candidate + 1}")
            candidate += 1

    raise ConflictError("Could not allocate a cycle number. Try again.")


def _build_cycle(
    db: Session,
    member_ids: List[UUID],
    monthly_amount: Decimal,
    start_date: date,
    name: Optional[str] = None
) -> LoanCycle:
    """Create the cycle, its memberships and one PENDING slot per member (flush only)."""
    if not member_ids:
        raise ValidationError("A cycle needs at least one member")
    if len(set(member_ids)) != len(member_ids):
        raise ValidationError("Member list contains duplicates")
    monthly_amount = require_positive(monthly_amount, "Monthly amount")

    found = {
        row.id for row in db.query(Member.id).filter(Member.id.in_(member_ids)).all()
    }
    missing = [str(member_id) for member_id in member_ids if member_id not in found]
    if missing:
        raise NotFoundError("Member not found", payload={"member_ids": missing})

    total_members = len(member_ids)
    loan_amount = monthly_amount * total_members

    cycle = _insert_cycle(
        db,
        name=name,
        start_date=start_date,
        monthly_amount=monthly_amount,
        total_members=total_members,
        current_month=0,
        is_active=True,
    )

    for index, member_id in enumerate(member_ids):
        db.add(GroupMember(cycle_id=cycle.id, member_id=member_id, join_month=1, is_active=True))
        db.add(LoanSequence(
            cycle_id=cycle.id,
            member_id=member_id,
            month=index + 1,
            loan_amount=loan_amount,
            status=SequenceStatus.PENDING,
        ))
    db.flush()
    return cycle


def create_cycle(
    db: Session,
    member_ids: List[UUID],
    monthly_amount: Decimal,
    start_date: date,
    name: Optional[str] = None
) -> LoanCycle:
    """Create a rotation cycle.

    Every member gets a PENDING slot in list order with the pooled loan
    amount (monthly amount x number of members).
    """
    with atomic(db, timeout_ms=settings.FANOUT_TRANSACTION_TIMEOUT_MS):
        cycle = _build_cycle(db, member_ids, monthly_amount, start_date, name)

    db.refresh(cycle)
    logger.info(f"Cycle {cycle.cycle_number} created with {cycle.total_members} members at {cycle.monthly_amount}/month")
    return cycle


def create_cycle_from_request(
    db: Session,
    request: Union[FixedMemberCycle, RotatingPoolCycle, GroupFundedCycle]
) -> LoanCycle:
    """Create a cycle from one of the tagged creation variants."""
    with atomic(db, timeout_ms=settings.FANOUT_TRANSACTION_TIMEOUT_MS):
        cycle = _build_cycle(
            db,
            request.member_ids,
            request.monthly_amount,
            request.start_date,
            request.name,
        )

        if isinstance(request, RotatingPoolCycle):
            open_collection(db, cycle, request.first_collection_date or request.start_date, month=1)
        elif isinstance(request, GroupFundedCycle):
            db.add(GroupFund(cycle_id=cycle.id, external_investment=to_money(request.initial_investment)))
            db.flush()
            recompute_group_fund(db, cycle.id)

    db.refresh(cycle)
    logger.info(f"Cycle {cycle.cycle_number} created ({request.kind}) with {cycle.total_members} members")
    return cycle


def get_cycle(db: Session, cycle_id: UUID) -> LoanCycle:
    cycle = db.query(LoanCycle).filter(LoanCycle.id == cycle_id).first()
    if not cycle:
        raise NotFoundError("Cycle not found")
    return cycle


def list_cycles(db: Session, active_only: bool = False) -> List[LoanCycle]:
    query = db.query(LoanCycle)
    if active_only:
        query = query.filter(LoanCycle.is_active == True)
    return query.order_by(LoanCycle.cycle_number.desc()).all()


def add_member_to_cycle(
    db: Session,
    cycle_id: UUID,
    member_id: UUID,
    monthly_amount: Optional[Decimal] = None,
    joining_date: Optional[date] = None
) -> Tuple[LoanSequence, Decimal, int]:
    """Add a member to a running cycle.

    The newcomer owes a catch-up of monthly_amount for every payout already
    made, and keeps that amount as their own monthly rate. Pending slots are
    re-priced to the new pooled amount; slots already paid out keep what they
    were given. The new member takes the next free slot and starts
    contributing from the next month.

    Returns (sequence, catch_up_amount, loans_already_given).
    """
    joining_date = joining_date or date.today()

    with atomic(db, timeout_ms=settings.FANOUT_TRANSACTION_TIMEOUT_MS):
        cycle = db.query(LoanCycle).filter(LoanCycle.id == cycle_id).with_for_update().first()
        if not cycle:
            raise NotFoundError("Cycle not found")
        if not cycle.is_active:
            raise ConflictError("Cycle is closed")
        if not db.query(Member.id).filter(Member.id == member_id).first():
            raise NotFoundError("Member not found")

        rate = require_positive(monthly_amount, "Monthly amount") if monthly_amount is not None else to_money(cycle.monthly_amount)

        sequences = db.query(LoanSequence).filter(LoanSequence.cycle_id == cycle.id).all()
        if any(seq.member_id == member_id for seq in sequences):
            raise ConflictError("Member is already part of this cycle")

        loans_already_given = sum(
            1 for seq in sequences
            if seq.status in (SequenceStatus.DISBURSED, SequenceStatus.COMPLETED) or seq.loan is not None
        )
        catch_up_amount = rate * loans_already_given

        cycle.total_members += 1
        pooled = to_money(cycle.monthly_amount) * cycle.total_members
        for seq in sequences:
            if seq.status == SequenceStatus.PENDING:
                seq.loan_amount = pooled

        next_month = max((seq.month for seq in sequences), default=cycle.current_month) + 1
        sequence = LoanSequence(
            cycle_id=cycle.id,
            member_id=member_id,
            month=next_month,
            loan_amount=pooled,
            status=SequenceStatus.PENDING,
        )
        db.add(sequence)

        db.add(GroupMember(
            cycle_id=cycle.id,
            member_id=member_id,
            join_month=cycle.current_month + 1,
            monthly_amount=rate if monthly_amount is not None else None,
            is_active=True,
        ))
        db.flush()

        open_collections = db.query(MonthlyCollection).filter(
            MonthlyCollection.cycle_id == cycle.id,
            MonthlyCollection.is_completed == False,
        ).all()
        for collection in open_collections:
            refresh_expected_amount(db, collection)

        if catch_up_amount > ZERO:
            latest = db.query(MonthlyCollection).filter(
                MonthlyCollection.cycle_id == cycle.id
            ).order_by(MonthlyCollection.month.desc()).with_for_update().first()
            if latest:
                add_paid_payment(db, latest, member_id, catch_up_amount, None, joining_date, is_catch_up=True)
                evaluate_completion(db, latest)

        recompute_group_fund(db, cycle.id)

    db.refresh(sequence)
    logger.info(f"Member {member_id} joined cycle {cycle.cycle_number} at month {next_month}: catch-up {catch_up_amount} for {loans_already_given} loans, pooled amount now {pooled}")
    return sequence, catch_up_amount, loans_already_given


def deactivate_group_member(
    db: Session,
    cycle_id: UUID,
    member_id: UUID
) -> GroupMember:
    """Soft leave. Open collections stop expecting the member's contribution."""
    with atomic(db):
        group_member = db.query(GroupMember).filter(
            GroupMember.cycle_id == cycle_id,
            GroupMember.member_id == member_id,
        ).with_for_update().first()
        if not group_member:
            raise NotFoundError("Member is not part of this cycle")
        if not group_member.is_active:
            return group_member

        group_member.is_active = False
        db.flush()

        open_collections = db.query(MonthlyCollection).filter(
            MonthlyCollection.cycle_id == cycle_id,
            MonthlyCollection.is_completed == False,
        ).order_by(MonthlyCollection.month.asc()).all()
        for collection in open_collections:
            if collection.designated_member_id == member_id:
                collection.designated_member_id = None
            refresh_expected_amount(db, collection)
            evaluate_completion(db, collection)

    db.refresh(group_member)
    logger.info(f"Member {member_id} deactivated in cycle {cycle_id}")
    return group_member


def update_member_amount(
    db: Session,
    cycle_id: UUID,
    member_id: UUID,
    monthly_amount: Decimal
) -> GroupMember:
    """Set an active member's own monthly amount and re-price open collections."""
    monthly_amount = require_positive(monthly_amount, "Monthly amount")

    with atomic(db):
        group_member = db.query(GroupMember).filter(
            GroupMember.cycle_id == cycle_id,
            GroupMember.member_id == member_id,
            GroupMember.is_active == True,
        ).with_for_update().first()
        if not group_member:
            raise NotFoundError("Member not found in cycle")

        group_member.monthly_amount = monthly_amount
        db.flush()

        open_collections = db.query(MonthlyCollection).filter(
            MonthlyCollection.cycle_id == cycle_id,
            MonthlyCollection.is_completed == False,
        ).order_by(MonthlyCollection.month.asc()).all()
        for collection in open_collections:
            refresh_expected_amount(db, collection)
            evaluate_completion(db, collection)

    db.refresh(group_member)
    logger.info(f"Monthly amount of member {member_id} in cycle {cycle_id} set to {monthly_amount}")
    return group_member


def calculate_benefit(db: Session, cycle_id: UUID, member_id: UUID, month: int) -> dict:
    """Proportional share of a month's pool for a member who may have joined late.

    Every active member contributes from their join month through `month` at
    their own rate. The member gets

        benefit = member_contribution / total_contributions x pool_amount

    where pool_amount is what the members due that month pay in. Nothing is
    written.
    """
    if month < 1:
        raise ValidationError("Month must be at least 1")

    cycle = get_cycle(db, cycle_id)
    group_member = db.query(GroupMember).filter(
        GroupMember.cycle_id == cycle_id,
        GroupMember.member_id == member_id,
    ).first()
    if not group_member:
        raise NotFoundError("Member is not part of this cycle")

    active = db.query(GroupMember).filter(
        GroupMember.cycle_id == cycle_id,
        GroupMember.is_active == True,
    ).order_by(GroupMember.join_month.asc()).all()

    def months_in(gm: GroupMember) -> int:
        return max(0, month - gm.join_month + 1)

    total_contributions = sum((months_in(gm) * contribution_rate(gm, cycle) for gm in active), ZERO)
    due = [gm for gm in active if gm.join_month <= month]
    pool_amount = sum((contribution_rate(gm, cycle) for gm in due), ZERO)
    member_contribution = months_in(group_member) * contribution_rate(group_member, cycle)

    if total_contributions > ZERO:
        benefit = member_contribution * pool_amount / total_contributions
    else:
        benefit = pool_amount / max(len(due), 1)

    return {
        "member_id": member_id,
        "join_month": group_member.join_month,
        "months_contributed": months_in(group_member),
        "total_contributed": to_money(member_contribution),
        "pool_amount": to_money(pool_amount),
        "active_members": len(due),
        "total_contributions": to_money(total_contributions),
        "benefit_amount": to_money(benefit),
    }


def update_cycle(db: Session, cycle_id: UUID, patch: dict) -> LoanCycle:
    """Partial update of name, dates, active flag and monthly amount."""
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    if "monthly_amount" in patch:
        patch = dict(patch, monthly_amount=require_positive(patch["monthly_amount"], "Monthly amount"))

    with atomic(db):
        cycle = get_cycle(db, cycle_id)
        for field, value in patch.items():
            setattr(cycle, field, value)

    db.refresh(cycle)
    return cycle


def delete_cycle(db: Session, cycle_id: UUID) -> None:
    """Delete a cycle and everything it owns in one transaction.

    Refused while any of its loans is still active. Members' savings are
    kept; their entries just lose the link to the deleted payments.
    """
    with atomic(db, timeout_ms=settings.FANOUT_TRANSACTION_TIMEOUT_MS):
        cycle = db.query(LoanCycle).filter(LoanCycle.id == cycle_id).with_for_update().first()
        if not cycle:
            raise NotFoundError("Cycle not found")

        active_loans = db.query(func.count(Loan.id)).filter(
            Loan.cycle_id == cycle.id,
            Loan.status == LoanStatus.ACTIVE,
        ).scalar()
        if active_loans:
            raise ConflictError(
                f"Cycle has {active_loans} active loan(s); settle them before deleting",
                payload={"active_loans": active_loans},
            )

        cycle_number = cycle.cycle_number
        collection_ids = select(MonthlyCollection.id).where(MonthlyCollection.cycle_id == cycle.id)
        payment_ids = select(CollectionPayment.id).where(CollectionPayment.collection_id.in_(collection_ids))
        loan_ids = select(Loan.id).where(Loan.cycle_id == cycle.id)

        db.query(SavingsTransaction).filter(
            SavingsTransaction.collection_payment_id.in_(payment_ids)
        ).update({SavingsTransaction.collection_payment_id: None}, synchronize_session="fetch")
        db.query(GroupFund).filter(GroupFund.cycle_id == cycle.id).delete(synchronize_session="fetch")
        db.query(LoanTransaction).filter(LoanTransaction.loan_id.in_(loan_ids)).delete(synchronize_session="fetch")
        db.query(Loan).filter(Loan.cycle_id == cycle.id).delete(synchronize_session="fetch")
        db.query(LoanSequence).filter(LoanSequence.cycle_id == cycle.id).delete(synchronize_session="fetch")
        db.query(CollectionPayment).filter(CollectionPayment.collection_id.in_(collection_ids)).delete(synchronize_session="fetch")
        db.query(MonthlyCollection).filter(MonthlyCollection.cycle_id == cycle.id).delete(synchronize_session="fetch")
        db.query(GroupMember).filter(GroupMember.cycle_id == cycle.id).delete(synchronize_session="fetch")
        db.query(LoanCycle).filter(LoanCycle.id == cycle.id).delete(synchronize_session="fetch")

    logger.info(f"Cycle {cycle_number} deleted")
    write_audit_log("CYCLE_DELETED", f"cycle={cycle_id} number={cycle_number}")
