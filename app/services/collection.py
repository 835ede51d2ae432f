import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import (
    ConflictError,
    DuplicatePaymentError,
    NotFoundError,
    ValidationError,
)
from app.db.base import atomic
from app.models.collection import (
    CollectionPayment,
    MonthlyCollection,
    PaymentMethod,
    PaymentStatus,
)
from app.models.cycle import GroupMember, LoanCycle, LoanSequence, SequenceStatus
from app.models.savings import SavingsSource, SavingsTransaction
from app.models.transaction import Loan
from app.services import disbursement
from app.services.accounting import ZERO, recompute_group_fund, require_positive, to_money
from app.services.savings import post_savings_entry, rebuild_member_savings

logger = logging.getLogger(__name__)


def _payment_snapshot(payment: CollectionPayment) -> dict:
    return {
        "id": str(payment.id),
        "payment_date": payment.payment_date.isoformat() if payment.payment_date else None,
        "amount": str(to_money(payment.amount)),
        "status": payment.status.value if payment.status else None,
    }


def contribution_rate(group_member: GroupMember, cycle: LoanCycle) -> Decimal:
    """The member's own monthly amount, or the cycle's when none was set."""
    if group_member.monthly_amount is not None:
        return to_money(group_member.monthly_amount)
    return to_money(cycle.monthly_amount)


def _required_members(db: Session, cycle_id: UUID, month: int) -> List[GroupMember]:
    return db.query(GroupMember).filter(
        GroupMember.cycle_id == cycle_id,
        GroupMember.is_active == True,
        GroupMember.join_month <= month,
    ).all()


def required_member_ids(db: Session, cycle_id: UUID, month: int) -> List[UUID]:
    """Active members who owe a contribution for the given month."""
    return [gm.member_id for gm in _required_members(db, cycle_id, month)]


def expected_for_month(db: Session, cycle: LoanCycle, month: int) -> Decimal:
    return to_money(sum(
        (contribution_rate(gm, cycle) for gm in _required_members(db, cycle.id, month)),
        ZERO,
    ))


def _get_collection_for_update(db: Session, collection_id: UUID) -> MonthlyCollection:
    collection = db.query(MonthlyCollection).filter(
        MonthlyCollection.id == collection_id
    ).with_for_update().first()
    if not collection:
        raise NotFoundError("Collection not found")
    return collection


def refresh_collected_total(db: Session, collection: MonthlyCollection) -> Decimal:
    """Re-sum total_collected from the collection's PAID payments."""
    db.flush()
    total = db.query(func.coalesce(func.sum(CollectionPayment.amount), 0)).filter(
        CollectionPayment.collection_id == collection.id,
        CollectionPayment.status == PaymentStatus.PAID,
    ).scalar()
    collection.total_collected = to_money(total)
    db.flush()
    return collection.total_collected


def refresh_expected_amount(db: Session, collection: MonthlyCollection) -> Decimal:
    """Expected = sum of the monthly amounts of members required this month. Open collections only."""
    if collection.is_completed:
        return collection.expected_amount
    collection.expected_amount = expected_for_month(db, collection.cycle, collection.month)
    db.flush()
    return collection.expected_amount


def refresh_member_contribution(db: Session, cycle_id: UUID, member_id: UUID) -> Optional[GroupMember]:
    """Re-derive GroupMember.total_contributed from PAID payments in the cycle."""
    group_member = db.query(GroupMember).filter(
        GroupMember.cycle_id == cycle_id,
        GroupMember.member_id == member_id,
    ).first()
    if not group_member:
        return None

    db.flush()
    total = db.query(func.coalesce(func.sum(CollectionPayment.amount), 0)).join(
        MonthlyCollection, CollectionPayment.collection_id == MonthlyCollection.id
    ).filter(
        MonthlyCollection.cycle_id == cycle_id,
        CollectionPayment.member_id == member_id,
        CollectionPayment.status == PaymentStatus.PAID,
    ).scalar()
    group_member.total_contributed = to_money(total)
    db.flush()
    return group_member


def _is_complete(db: Session, collection: MonthlyCollection) -> bool:
    required = set(required_member_ids(db, collection.cycle_id, collection.month))
    if not required:
        return False
    if to_money(collection.total_collected) < to_money(collection.expected_amount):
        return False

    paid_rows = db.query(CollectionPayment.member_id).filter(
        CollectionPayment.collection_id == collection.id,
        CollectionPayment.status == PaymentStatus.PAID,
    ).all()
    paid = {row.member_id for row in paid_rows}
    return required.issubset(paid)


def _next_in_rotation(db: Session, cycle_id: UUID) -> Optional[UUID]:
    """Member of the earliest PENDING sequence who has not yet received a loan."""
    received = {
        row.member_id for row in db.query(Loan.member_id).filter(Loan.cycle_id == cycle_id).all()
    }
    active = {
        row.member_id for row in db.query(GroupMember.member_id).filter(
            GroupMember.cycle_id == cycle_id,
            GroupMember.is_active == True,
        ).all()
    }
    pending = db.query(LoanSequence).filter(
        LoanSequence.cycle_id == cycle_id,
        LoanSequence.status == SequenceStatus.PENDING,
    ).order_by(LoanSequence.month.asc()).all()

    for sequence in pending:
        if sequence.member_id in active and sequence.member_id not in received:
            return sequence.member_id
    return None


def evaluate_completion(
    db: Session,
    collection: MonthlyCollection,
    method: Optional[PaymentMethod] = None
) -> Optional[Loan]:
    """Mark the collection completed when fully paid and auto-disburse on that transition.

    Completion is monotonic: an already completed collection is left alone.
    When the month's slot was already paid in advance the collection is
    linked to that loan and nothing new is disbursed.
    Returns the loan created by the automatic disbursement, if any.
    """
    if collection.is_completed:
        return None
    if not _is_complete(db, collection):
        return None

    collection.is_completed = True
    db.flush()
    logger.info(f"Collection month {collection.month} of cycle {collection.cycle_id} completed with {collection.total_collected}")

    if collection.loan_disbursed:
        return None

    advanced = disbursement.advanced_loan_for_month(db, collection.cycle_id, collection.month)
    if advanced is not None:
        disbursement.link_funding_collection(db, collection, advanced)
        logger.info(f"Collection {collection.id} funds loan {advanced.id} already paid from the month {collection.month} slot")
        return None

    recipient_id = collection.designated_member_id or _next_in_rotation(db, collection.cycle_id)
    if recipient_id is None:
        logger.info(f"No eligible recipient for collection {collection.id}; left completed without a loan")
        return None

    return disbursement.disburse_collection(db, collection, recipient_id, method=method)


def open_collection(
    db: Session,
    cycle: LoanCycle,
    collection_date: date,
    month: Optional[int] = None
) -> MonthlyCollection:
    """Insert the next collection for a cycle (flush only)."""
    if not cycle.is_active:
        raise ConflictError("Cycle is not active")

    if month is None:
        last_month = db.query(func.max(MonthlyCollection.month)).filter(
            MonthlyCollection.cycle_id == cycle.id
        ).scalar()
        month = (last_month or 0) + 1

    if month < 1 or month > cycle.total_members:
        raise ValidationError(f"Month must be between 1 and {cycle.total_members}")

    existing = db.query(MonthlyCollection).filter(
        MonthlyCollection.cycle_id == cycle.id,
        MonthlyCollection.month == month,
    ).first()
    if existing:
        raise ConflictError(f"Collection for month {month} already exists", payload={"collection_id": str(existing.id)})

    collection = MonthlyCollection(
        cycle_id=cycle.id,
        month=month,
        collection_date=collection_date,
        expected_amount=expected_for_month(db, cycle, month),
        total_collected=ZERO,
        is_completed=False,
        loan_disbursed=False,
    )
    try:
        with db.begin_nested():
            db.add(collection)
            db.flush()
    except IntegrityError:
        raise ConflictError(f"Collection for month {month} already exists")

    if month > cycle.current_month:
        cycle.current_month = month
    db.flush()
    return collection


def create_collection(
    db: Session,
    cycle_id: UUID,
    collection_date: date,
    month: Optional[int] = None
) -> MonthlyCollection:
    """Open a monthly collection for a cycle.

    Month defaults to the month after the last collection. Expected amount is
    what the active members due owe, each at their own monthly amount when one
    is set and at the cycle's otherwise.
    """
    with atomic(db):
        cycle = db.query(LoanCycle).filter(LoanCycle.id == cycle_id).with_for_update().first()
        if not cycle:
            raise NotFoundError("Cycle not found")
        collection = open_collection(db, cycle, collection_date, month)

    db.refresh(collection)
    logger.info(f"Collection month {collection.month} opened for cycle {cycle.cycle_number}: expected {collection.expected_amount}")
    return collection


def add_paid_payment(
    db: Session,
    collection: MonthlyCollection,
    member_id: UUID,
    amount: Decimal,
    method: Optional[PaymentMethod],
    payment_date: date,
    is_catch_up: bool = False
) -> CollectionPayment:
    """Insert (or upgrade) a PAID payment and its savings entry (flush only)."""
    existing = db.query(CollectionPayment).filter(
        CollectionPayment.collection_id == collection.id,
        CollectionPayment.member_id == member_id,
    ).with_for_update().first()

    if existing and existing.status == PaymentStatus.PAID:
        raise DuplicatePaymentError("Payment already recorded for this member", existing=_payment_snapshot(existing))

    if existing:
        # Legacy PENDING row
        payment = existing
        payment.amount = amount
        payment.payment_date = payment_date
        payment.payment_method = method
        payment.status = PaymentStatus.PAID
        payment.is_catch_up = is_catch_up
        db.flush()
    else:
        payment = CollectionPayment(
            collection_id=collection.id,
            member_id=member_id,
            amount=amount,
            payment_date=payment_date,
            payment_method=method,
            status=PaymentStatus.PAID,
            is_catch_up=is_catch_up,
        )
        try:
            with db.begin_nested():
                db.add(payment)
                db.flush()
        except IntegrityError:
            winner = db.query(CollectionPayment).filter(
                CollectionPayment.collection_id == collection.id,
                CollectionPayment.member_id == member_id,
            ).first()
            raise DuplicatePaymentError(
                "Payment already recorded for this member",
                existing=_payment_snapshot(winner) if winner else None,
            )

    source = SavingsSource.CATCH_UP if is_catch_up else SavingsSource.COLLECTION
    post_savings_entry(db, member_id, amount, payment_date, source, collection_payment_id=payment.id)

    refresh_collected_total(db, collection)
    refresh_member_contribution(db, collection.cycle_id, member_id)
    return payment


def record_payment(
    db: Session,
    collection_id: UUID,
    member_id: UUID,
    amount: Decimal,
    method: Optional[PaymentMethod] = None,
    payment_date: Optional[date] = None
) -> Tuple[CollectionPayment, MonthlyCollection, Optional[Loan]]:
    """Record a member's PAID contribution toward a monthly collection.

    The amount is also credited to the member's savings. When this payment
    completes the collection, the pooled amount is disbursed automatically
    to the designated member (if any) or the next member in rotation.

    Returns (payment, collection, loan) where loan is None unless an
    automatic disbursement happened.
    """
    amount = require_positive(amount)
    payment_date = payment_date or date.today()

    with atomic(db):
        collection = _get_collection_for_update(db, collection_id)
        if collection.loan_disbursed:
            raise ConflictError("Loan for this collection has already been disbursed")

        group_member = db.query(GroupMember).filter(
            GroupMember.cycle_id == collection.cycle_id,
            GroupMember.member_id == member_id,
            GroupMember.is_active == True,
        ).first()
        if not group_member:
            raise ConflictError("Member is not an active member of this cycle")

        payment = add_paid_payment(db, collection, member_id, amount, method, payment_date)
        loan = evaluate_completion(db, collection)
        recompute_group_fund(db, collection.cycle_id)

    db.refresh(payment)
    db.refresh(collection)
    if loan:
        db.refresh(loan)
    logger.info(f"Payment of {amount} recorded for member {member_id} on collection {collection_id}; collected {collection.total_collected}/{collection.expected_amount}")
    return payment, collection, loan


def update_collection_date(
    db: Session,
    collection_id: UUID,
    collection_date: date
) -> MonthlyCollection:
    with atomic(db):
        collection = _get_collection_for_update(db, collection_id)
        if collection.loan_disbursed:
            raise ConflictError("Cannot change the date after the loan has been disbursed")
        collection.collection_date = collection_date

    db.refresh(collection)
    return collection


def designate_recipient(
    db: Session,
    collection_id: UUID,
    member_id: UUID
) -> MonthlyCollection:
    """Choose who receives this collection's payout instead of the rotation order."""
    with atomic(db):
        collection = _get_collection_for_update(db, collection_id)
        _designate(db, collection, member_id)

    db.refresh(collection)
    return collection


def _designate(db: Session, collection: MonthlyCollection, member_id: UUID) -> None:
    if collection.loan_disbursed:
        raise ConflictError("Loan for this collection has already been disbursed")
    disbursement.ensure_eligible(db, collection.cycle_id, member_id)
    collection.designated_member_id = member_id
    db.flush()
    logger.info(f"Member {member_id} designated for collection month {collection.month}")


def give_loan(
    db: Session,
    cycle_id: UUID,
    member_id: UUID,
    method: Optional[PaymentMethod] = None
) -> Tuple[MonthlyCollection, Optional[Loan]]:
    """Admin "give loan" action.

    Disburses the latest completed, undisbursed collection to the member right
    away. Without one, the member is designated on the open collection and
    receives the payout automatically when it completes.
    """
    with atomic(db):
        cycle = db.query(LoanCycle).filter(LoanCycle.id == cycle_id).first()
        if not cycle:
            raise NotFoundError("Cycle not found")

        ready = db.query(MonthlyCollection).filter(
            MonthlyCollection.cycle_id == cycle_id,
            MonthlyCollection.is_completed == True,
            MonthlyCollection.loan_disbursed == False,
        ).order_by(MonthlyCollection.month.desc()).with_for_update().first()

        loan = None
        if ready:
            collection = ready
            loan = disbursement.disburse_collection(db, collection, member_id, method=method)
        else:
            collection = db.query(MonthlyCollection).filter(
                MonthlyCollection.cycle_id == cycle_id,
                MonthlyCollection.is_completed == False,
            ).order_by(MonthlyCollection.month.desc()).with_for_update().first()
            if not collection:
                raise ConflictError("No open collection to designate the loan on")
            _designate(db, collection, member_id)

    db.refresh(collection)
    if loan:
        db.refresh(loan)
    return collection, loan


def get_collection(db: Session, collection_id: UUID) -> MonthlyCollection:
    """Read path. Re-sums total_collected and corrects it if it drifted."""
    collection = db.query(MonthlyCollection).filter(MonthlyCollection.id == collection_id).first()
    if not collection:
        raise NotFoundError("Collection not found")

    stored = to_money(collection.total_collected)
    total = to_money(db.query(func.coalesce(func.sum(CollectionPayment.amount), 0)).filter(
        CollectionPayment.collection_id == collection.id,
        CollectionPayment.status == PaymentStatus.PAID,
    ).scalar())
    if total != stored:
        logger.warning(f"Collection {collection_id} total drift: stored={stored}, computed={total}. Correcting.")
        with atomic(db):
            collection.total_collected = total
        db.refresh(collection)
    return collection


def list_collections(db: Session, cycle_id: UUID) -> List[MonthlyCollection]:
    return db.query(MonthlyCollection).filter(
        MonthlyCollection.cycle_id == cycle_id
    ).order_by(MonthlyCollection.month.asc()).all()


def delete_collection(db: Session, collection_id: UUID) -> None:
    """Delete a collection with its payments and their savings entries.

    Refused once a loan was disbursed from it; reverse the loan first.
    """
    with atomic(db):
        collection = _get_collection_for_update(db, collection_id)
        if collection.loan_disbursed:
            raise ConflictError("Reverse the loan disbursement before deleting this collection")

        cycle = collection.cycle
        month = collection.month
        payments = db.query(CollectionPayment).filter(
            CollectionPayment.collection_id == collection.id
        ).all()
        member_ids = {payment.member_id for payment in payments}
        payment_ids = [payment.id for payment in payments]

        if payment_ids:
            linked = db.query(SavingsTransaction).filter(
                SavingsTransaction.collection_payment_id.in_(payment_ids)
            ).all()
            for txn in linked:
                db.delete(txn)
        for payment in payments:
            db.delete(payment)
        db.flush()
        db.expire(collection, ["payments"])
        db.delete(collection)
        db.flush()

        for member_id in member_ids:
            rebuild_member_savings(db, member_id)
            refresh_member_contribution(db, cycle.id, member_id)

        last_month = db.query(func.max(MonthlyCollection.month)).filter(
            MonthlyCollection.cycle_id == cycle.id
        ).scalar()
        cycle.current_month = last_month or 0
        recompute_group_fund(db, cycle.id)

    logger.info(f"Collection month {month} of cycle {cycle.cycle_number} deleted with {len(payment_ids)} payments")
