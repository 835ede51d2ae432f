from datetime import date
from decimal import Decimal

import pytest

from app.core.errors import ConflictError, DuplicatePaymentError, ValidationError
from app.models.collection import CollectionPayment, PaymentMethod
from app.models.cycle import GroupMember, LoanSequence, SequenceStatus
from app.models.savings import SavingsSource, SavingsTransaction
from app.services.collection import (
    create_collection,
    delete_collection,
    designate_recipient,
    give_loan,
    record_payment,
    update_collection_date,
)
from app.services.cycle import deactivate_group_member, update_cycle
from app.services.disbursement import reverse_loan_disbursement

from tests.conftest import assert_savings_consistent


def pay_all(db, collection, members, amount="1000"):
    result = None
    for member in members:
        result = record_payment(db, collection.id, member.id, Decimal(amount), PaymentMethod.CASH, date(2024, 1, 5))
    return result


def test_create_collection_defaults(db, make_cycle):
    cycle, _ = make_cycle(3)

    first = create_collection(db, cycle.id, date(2024, 1, 5))
    second = create_collection(db, cycle.id, date(2024, 2, 5))

    assert (first.month, second.month) == (1, 2)
    assert first.expected_amount == Decimal("3000.00")
    assert first.total_collected == Decimal("0.00")
    assert not first.is_completed
    db.refresh(cycle)
    assert cycle.current_month == 2


def test_create_collection_rejects_duplicate_and_out_of_range_months(db, make_cycle):
    cycle, _ = make_cycle(3)
    create_collection(db, cycle.id, date(2024, 1, 5), month=1)

    with pytest.raises(ConflictError):
        create_collection(db, cycle.id, date(2024, 1, 6), month=1)
    with pytest.raises(ValidationError):
        create_collection(db, cycle.id, date(2024, 4, 5), month=4)
    with pytest.raises(ValidationError):
        create_collection(db, cycle.id, date(2024, 4, 5), month=0)


def test_create_collection_on_inactive_cycle(db, make_cycle):
    cycle, _ = make_cycle(2)
    update_cycle(db, cycle.id, {"is_active": False})
    with pytest.raises(ConflictError):
        create_collection(db, cycle.id, date(2024, 1, 5))


def test_full_collection_auto_disburses_to_next_in_rotation(db, make_cycle):
    cycle, members = make_cycle(3)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))

    for member in members[:2]:
        _, collection, loan = record_payment(db, collection.id, member.id, Decimal("1000"))
        assert loan is None
        assert not collection.is_completed

    _, collection, loan = record_payment(db, collection.id, members[2].id, Decimal("1000"))

    assert collection.is_completed
    assert collection.loan_disbursed
    assert collection.loan_member_id == members[0].id
    assert collection.loan_amount == Decimal("3000.00")
    assert loan.principal == Decimal("3000.00")
    assert loan.remaining == Decimal("3000.00")
    assert loan.months == 3
    assert loan.collection_id == collection.id

    sequence = db.query(LoanSequence).filter(LoanSequence.id == loan.sequence_id).one()
    assert sequence.member_id == members[0].id
    assert sequence.status == SequenceStatus.DISBURSED


def test_designated_member_is_paid_over_rotation_order(db, make_cycle):
    cycle, members = make_cycle(3)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    designate_recipient(db, collection.id, members[2].id)

    _, collection, loan = pay_all(db, collection, members)

    assert loan.member_id == members[2].id
    assert collection.loan_member_id == members[2].id


def test_payment_credits_savings_and_contribution(db, make_cycle):
    cycle, members = make_cycle(3)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))

    payment, _, _ = record_payment(db, collection.id, members[0].id, Decimal("1000"), PaymentMethod.UPI)

    entry = db.query(SavingsTransaction).filter(SavingsTransaction.collection_payment_id == payment.id).one()
    assert entry.amount == Decimal("1000.00")
    assert entry.source == SavingsSource.COLLECTION
    assert assert_savings_consistent(db, members[0].id) == Decimal("1000.00")

    group_member = db.query(GroupMember).filter(
        GroupMember.cycle_id == cycle.id,
        GroupMember.member_id == members[0].id,
    ).one()
    assert group_member.total_contributed == Decimal("1000.00")


def test_duplicate_payment_reports_existing_and_changes_nothing(db, make_cycle):
    cycle, members = make_cycle(3)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    record_payment(db, collection.id, members[0].id, Decimal("1000"), payment_date=date(2024, 1, 3))

    with pytest.raises(DuplicatePaymentError) as exc_info:
        record_payment(db, collection.id, members[0].id, Decimal("1000"), payment_date=date(2024, 1, 4))

    assert exc_info.value.existing["amount"] == "1000.00"
    assert exc_info.value.existing["payment_date"] == "2024-01-03"
    assert exc_info.value.payload["existing_payment"]["status"] == "PAID"

    db.refresh(collection)
    assert collection.total_collected == Decimal("1000.00")
    assert db.query(CollectionPayment).count() == 1
    assert assert_savings_consistent(db, members[0].id) == Decimal("1000.00")


def test_payment_from_outsider_is_rejected(db, make_cycle, make_member):
    cycle, _ = make_cycle(3)
    outsider = make_member()
    collection = create_collection(db, cycle.id, date(2024, 1, 5))

    with pytest.raises(ConflictError):
        record_payment(db, collection.id, outsider.id, Decimal("1000"))


def test_payment_after_disbursement_is_rejected(db, make_cycle, make_member):
    cycle, members = make_cycle(2)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    pay_all(db, collection, members)

    with pytest.raises(ConflictError):
        record_payment(db, collection.id, members[0].id, Decimal("10"))


def test_completion_survives_reversal_and_member_changes(db, make_cycle):
    cycle, members = make_cycle(3)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    _, collection, loan = pay_all(db, collection, members)

    reverse_loan_disbursement(db, collection_id=collection.id)
    deactivate_group_member(db, cycle.id, members[1].id)

    db.refresh(collection)
    assert collection.is_completed
    assert not collection.loan_disbursed
    assert collection.loan_member_id is None


def test_deactivating_last_unpaid_member_completes_collection(db, make_cycle):
    cycle, members = make_cycle(3)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    record_payment(db, collection.id, members[0].id, Decimal("1000"))
    record_payment(db, collection.id, members[1].id, Decimal("1000"))

    deactivate_group_member(db, cycle.id, members[2].id)

    db.refresh(collection)
    assert collection.expected_amount == Decimal("2000.00")
    assert collection.is_completed
    assert collection.loan_disbursed
    assert collection.loan_amount == Decimal("2000.00")


def test_give_loan_designates_on_open_collection(db, make_cycle):
    cycle, members = make_cycle(3)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))

    collection, loan = give_loan(db, cycle.id, members[1].id)
    assert loan is None
    assert collection.designated_member_id == members[1].id

    _, _, loan = pay_all(db, collection, members)
    assert loan.member_id == members[1].id


def test_give_loan_pays_completed_collection_immediately(db, make_cycle):
    cycle, members = make_cycle(3)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    pay_all(db, collection, members)
    reverse_loan_disbursement(db, collection_id=collection.id)

    collection, loan = give_loan(db, cycle.id, members[2].id, PaymentMethod.BANK_TRANSFER)

    assert loan is not None
    assert loan.member_id == members[2].id
    assert loan.disbursement_method == PaymentMethod.BANK_TRANSFER
    assert collection.loan_disbursed


def test_give_loan_without_any_collection(db, make_cycle):
    cycle, members = make_cycle(2)
    with pytest.raises(ConflictError):
        give_loan(db, cycle.id, members[0].id)


def test_update_collection_date(db, make_cycle):
    cycle, members = make_cycle(2)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))

    collection = update_collection_date(db, collection.id, date(2024, 1, 10))
    assert collection.collection_date == date(2024, 1, 10)

    pay_all(db, collection, members)
    with pytest.raises(ConflictError):
        update_collection_date(db, collection.id, date(2024, 1, 12))


def test_delete_collection_unwinds_payments_and_savings(db, make_cycle):
    cycle, members = make_cycle(3)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    record_payment(db, collection.id, members[0].id, Decimal("1000"))
    record_payment(db, collection.id, members[1].id, Decimal("1000"))

    delete_collection(db, collection.id)

    assert db.query(CollectionPayment).count() == 0
    assert db.query(SavingsTransaction).count() == 0
    for member in members[:2]:
        assert assert_savings_consistent(db, member.id) == Decimal("0.00")
        group_member = db.query(GroupMember).filter(
            GroupMember.cycle_id == cycle.id,
            GroupMember.member_id == member.id,
        ).one()
        assert group_member.total_contributed == Decimal("0.00")
    db.refresh(cycle)
    assert cycle.current_month == 0


def test_delete_collection_refused_after_disbursement(db, make_cycle):
    cycle, members = make_cycle(2)
    collection = create_collection(db, cycle.id, date(2024, 1, 5))
    pay_all(db, collection, members)

    with pytest.raises(ConflictError):
        delete_collection(db, collection.id)
