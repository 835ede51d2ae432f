from datetime import date
from decimal import Decimal
import uuid

import pytest

from app.core.errors import ConflictError, InsufficientPoolError, NotFoundError, ValidationError
from app.models.cycle import GroupMember, LoanSequence, SequenceStatus
from app.models.transaction import Loan, LoanStatus
from app.services.accounting import get_savings_pool
from app.services.collection import create_collection, record_payment
from app.services.cycle import update_cycle
from app.services.disbursement import (
    delete_loan,
    disburse_from_collection,
    disburse_from_sequence,
    give_individual_loan,
    reverse_loan_disbursement,
)
from app.services.repayment import repay
from app.services.savings import append_contribution


def sequences_of(db, cycle):
    return db.query(LoanSequence).filter(LoanSequence.cycle_id == cycle.id).order_by(LoanSequence.month).all()


def total_received(db, cycle, member):
    return db.query(GroupMember).filter(
        GroupMember.cycle_id == cycle.id,
        GroupMember.member_id == member.id,
    ).one().total_received


def test_disburse_from_sequence(db, make_cycle, make_member):
    cycle, members = make_cycle(3)
    guarantor = make_member()
    first = sequences_of(db, cycle)[0]

    loan = disburse_from_sequence(db, first.id, guarantor1_id=guarantor.id, disbursed_at=date(2024, 1, 10))

    assert loan.principal == Decimal("3000.00")
    assert loan.remaining == Decimal("3000.00")
    assert loan.months == 3
    assert loan.status == LoanStatus.ACTIVE
    assert loan.guarantor1_id == guarantor.id
    assert loan.disbursed_at == date(2024, 1, 10)
    db.refresh(first)
    assert first.status == SequenceStatus.DISBURSED
    assert loan.sequence_id == first.id
    assert total_received(db, cycle, members[0]) == Decimal("3000.00")


def test_disburse_from_sequence_twice(db, make_cycle):
    cycle, _ = make_cycle(3)
    first = sequences_of(db, cycle)[0]
    disburse_from_sequence(db, first.id)

    with pytest.raises(ConflictError):
        disburse_from_sequence(db, first.id)
    assert db.query(Loan).count() == 1


def test_disburse_from_sequence_marks_funding_collection(db, make_cycle):
    cycle, members = make_cycle(2)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    for member in members:
        record_payment(db, collection.id, member.id, Decimal("1000"))
    reverse_loan_disbursement(db, collection_id=collection.id)
    first = sequences_of(db, cycle)[0]

    loan = disburse_from_sequence(db, first.id)

    db.refresh(collection)
    assert loan.collection_id == collection.id
    assert collection.loan_disbursed
    assert collection.loan_member_id == members[0].id
    assert collection.loan_amount == Decimal("2000.00")


def test_disburse_from_sequence_rejects_self_guarantee(db, make_cycle):
    cycle, members = make_cycle(2)
    first = sequences_of(db, cycle)[0]

    with pytest.raises(ValidationError):
        disburse_from_sequence(db, first.id, guarantor1_id=members[0].id)
    with pytest.raises(NotFoundError):
        disburse_from_sequence(db, first.id, guarantor2_id=uuid.uuid4())


def test_disburse_from_sequence_refused_while_month_is_open(db, make_cycle):
    cycle, members = make_cycle(3)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))

    with pytest.raises(ConflictError) as exc_info:
        disburse_from_sequence(db, sequences_of(db, cycle)[0].id)

    assert exc_info.value.payload["collection_id"] == str(collection.id)
    assert db.query(Loan).count() == 0
    assert sequences_of(db, cycle)[0].status == SequenceStatus.PENDING


def test_disburse_from_sequence_refused_once_month_paid_out(db, make_cycle):
    cycle, members = make_cycle(3)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    collection.designated_member_id = members[1].id
    db.commit()
    for member in members:
        record_payment(db, collection.id, member.id, Decimal("1000"))

    with pytest.raises(ConflictError):
        disburse_from_sequence(db, sequences_of(db, cycle)[0].id)
    assert db.query(Loan).count() == 1


def test_advanced_slot_is_not_paid_again_when_month_completes(db, make_cycle):
    cycle, members = make_cycle(3)
    advanced = disburse_from_sequence(db, sequences_of(db, cycle)[0].id)

    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    for member in members:
        _, _, loan = record_payment(db, collection.id, member.id, Decimal("1000"))

    assert loan is None
    db.refresh(collection)
    db.refresh(advanced)
    assert collection.is_completed
    assert collection.loan_disbursed
    assert collection.loan_member_id == members[0].id
    assert collection.loan_amount == Decimal("3000.00")
    assert advanced.collection_id == collection.id
    assert [row.principal for row in db.query(Loan).all()] == [Decimal("3000.00")]
    assert total_received(db, cycle, members[1]) == Decimal("0.00")


def test_member_receives_pool_only_once(db, make_cycle):
    cycle, members = make_cycle(3)
    first = create_collection(db, cycle.id, date(2024, 1, 5))
    for member in members:
        record_payment(db, first.id, member.id, Decimal("1000"))

    second = create_collection(db, cycle.id, date(2024, 2, 5))
    for member in members:
        _, _, loan = record_payment(db, second.id, member.id, Decimal("1000"))
    assert loan.member_id == members[1].id
    reverse_loan_disbursement(db, collection_id=second.id)

    with pytest.raises(ConflictError):
        disburse_from_collection(db, second.id, members[0].id)

    loan = disburse_from_collection(db, second.id, members[2].id)
    assert loan.principal == Decimal("3000.00")


def test_disburse_from_collection_requires_completion(db, make_cycle):
    cycle, members = make_cycle(3)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    record_payment(db, collection.id, members[0].id, Decimal("1000"))

    with pytest.raises(ConflictError):
        disburse_from_collection(db, collection.id, members[0].id)


def test_cycle_closes_when_everyone_has_received(db, make_cycle):
    cycle, _ = make_cycle(3)
    months = []
    for sequence in sequences_of(db, cycle):
        months.append(disburse_from_sequence(db, sequence.id).months)

    db.refresh(cycle)
    assert months == [3, 2, 1]
    assert not cycle.is_active
    assert cycle.end_date == date.today()


def test_reverse_by_loan_id_restores_slot_and_cycle(db, make_cycle):
    cycle, members = make_cycle(2)
    sequences = sequences_of(db, cycle)
    disburse_from_sequence(db, sequences[0].id)
    last = disburse_from_sequence(db, sequences[1].id)
    db.refresh(cycle)
    assert not cycle.is_active

    reverse_loan_disbursement(db, loan_id=last.id)

    db.refresh(cycle)
    db.refresh(sequences[1])
    assert cycle.is_active
    assert cycle.end_date is None
    assert sequences[1].status == SequenceStatus.PENDING
    assert sequences[1].disbursed_at is None
    assert total_received(db, cycle, members[1]) == Decimal("0.00")
    assert db.query(Loan).count() == 1


def test_reverse_keeps_manually_closed_cycle_closed(db, make_cycle):
    cycle, _ = make_cycle(3)
    loan = disburse_from_sequence(db, sequences_of(db, cycle)[0].id)
    update_cycle(db, cycle.id, {"is_active": False, "end_date": date(2024, 3, 31)})

    reverse_loan_disbursement(db, loan_id=loan.id)

    db.refresh(cycle)
    assert not cycle.is_active
    assert cycle.end_date == date(2024, 3, 31)
    assert db.query(Loan).count() == 0


def test_reverse_by_collection_resets_collection(db, make_cycle):
    cycle, members = make_cycle(2)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    collection.designated_member_id = members[1].id
    db.commit()
    for member in members:
        record_payment(db, collection.id, member.id, Decimal("1000"))

    reverse_loan_disbursement(db, collection_id=collection.id)

    db.refresh(collection)
    assert collection.is_completed
    assert not collection.loan_disbursed
    assert collection.loan_member_id is None
    assert collection.loan_amount is None
    assert collection.designated_member_id is None
    assert db.query(Loan).count() == 0


def test_reverse_requires_exactly_one_identifier(db):
    with pytest.raises(ValidationError):
        reverse_loan_disbursement(db)
    with pytest.raises(ValidationError):
        reverse_loan_disbursement(db, loan_id=uuid.uuid4(), collection_id=uuid.uuid4())


def test_reverse_refused_once_repaid(db, make_cycle):
    cycle, _ = make_cycle(3)
    loan = disburse_from_sequence(db, sequences_of(db, cycle)[0].id)
    repay(db, loan.id, date(2024, 2, 1))

    with pytest.raises(ConflictError) as exc_info:
        reverse_loan_disbursement(db, loan_id=loan.id)
    assert exc_info.value.payload["transactions"] == 1
    assert db.query(Loan).count() == 1


def test_individual_loan_limited_by_savings_pool(db, make_member):
    saver, borrower = make_member(), make_member()
    append_contribution(db, saver.id, Decimal("5000"), date(2024, 1, 1))

    with pytest.raises(InsufficientPoolError):
        give_individual_loan(db, borrower.id, Decimal("6000"))

    loan = give_individual_loan(db, borrower.id, Decimal("4000"), reason="School fees", guarantor1_id=saver.id)
    assert loan.cycle_id is None
    assert loan.months == 10
    assert loan.principal == loan.remaining == Decimal("4000.00")
    assert get_savings_pool(db) == Decimal("1000.00")

    with pytest.raises(InsufficientPoolError):
        give_individual_loan(db, borrower.id, Decimal("2000"))

    # Savings are never deducted
    db.refresh(saver)
    assert saver.savings.total_amount == Decimal("5000.00")


def test_individual_loan_unknown_member(db):
    with pytest.raises(NotFoundError):
        give_individual_loan(db, uuid.uuid4(), Decimal("100"))


def test_delete_individual_loan(db, make_member):
    saver = make_member()
    append_contribution(db, saver.id, Decimal("1000"), date(2024, 1, 1))
    loan = give_individual_loan(db, saver.id, Decimal("600"), months=3)
    repay(db, loan.id, date(2024, 2, 1))

    delete_loan(db, loan.id)

    assert db.query(Loan).count() == 0
    assert get_savings_pool(db) == Decimal("1000.00")


def test_delete_loan_refuses_rotation_loans(db, make_cycle):
    cycle, _ = make_cycle(2)
    loan = disburse_from_sequence(db, sequences_of(db, cycle)[0].id)
    with pytest.raises(ConflictError):
        delete_loan(db, loan.id)
