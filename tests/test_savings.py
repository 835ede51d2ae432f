from datetime import date
from decimal import Decimal
import uuid

import pytest
from sqlalchemy import event

from app.core.errors import NotFoundError, ValidationError
from app.models.savings import Savings, SavingsSource, SavingsTransaction
from app.services.savings import (
    append_contribution,
    delete_transaction,
    get_member_savings,
    list_savings,
    migrate_legacy_negative_entries,
    recompute_savings_total,
)

from tests.conftest import assert_savings_consistent


def test_append_contribution_creates_savings_lazily(db, make_member):
    member = make_member()
    assert db.query(Savings).filter(Savings.member_id == member.id).first() is None

    txn, savings = append_contribution(db, member.id, Decimal("1000"), date(2024, 1, 1))

    assert savings.total_amount == Decimal("1000.00")
    assert txn.running_total == Decimal("1000.00")
    assert txn.source == SavingsSource.MANUAL
    assert_savings_consistent(db, member.id)


def test_append_contribution_recomputes_instead_of_trusting_cache(db, make_member):
    member = make_member()
    append_contribution(db, member.id, Decimal("1000"), date(2024, 1, 1))

    savings = db.query(Savings).filter(Savings.member_id == member.id).one()
    savings.total_amount = Decimal("50.00")
    db.commit()

    txn, savings = append_contribution(db, member.id, Decimal("500"), date(2024, 2, 1))
    assert txn.running_total == Decimal("1500.00")
    assert savings.total_amount == Decimal("1500.00")


def test_backdated_contribution_rewrites_running_totals(db, make_member):
    member = make_member()
    later, _ = append_contribution(db, member.id, Decimal("100"), date(2024, 2, 1))

    earlier, savings = append_contribution(db, member.id, Decimal("50"), date(2024, 1, 1))

    db.refresh(later)
    assert earlier.running_total == Decimal("50.00")
    assert later.running_total == Decimal("150.00")
    assert savings.total_amount == Decimal("150.00")
    assert_savings_consistent(db, member.id)


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-10")])
def test_append_contribution_rejects_non_positive(db, make_member, amount):
    member = make_member()
    with pytest.raises(ValidationError):
        append_contribution(db, member.id, amount)
    assert db.query(SavingsTransaction).count() == 0


def test_append_contribution_unknown_member(db):
    with pytest.raises(NotFoundError):
        append_contribution(db, uuid.uuid4(), Decimal("100"))


def test_recompute_without_savings_returns_zero(db, make_member):
    member = make_member()
    assert recompute_savings_total(db, member.id) == Decimal("0.00")


def test_recompute_corrects_drift_then_performs_no_writes(db, engine, make_member):
    member = make_member()
    append_contribution(db, member.id, Decimal("1000"), date(2024, 1, 1))
    append_contribution(db, member.id, Decimal("250"), date(2024, 1, 2))

    savings = db.query(Savings).filter(Savings.member_id == member.id).one()
    savings.total_amount = Decimal("1.00")
    db.commit()

    assert recompute_savings_total(db, member.id) == Decimal("1250.00")
    assert_savings_consistent(db, member.id)

    writes = []

    def capture(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(("INSERT", "UPDATE", "DELETE")):
            writes.append(statement)

    event.listen(engine, "before_cursor_execute", capture)
    try:
        assert recompute_savings_total(db, member.id) == Decimal("1250.00")
    finally:
        event.remove(engine, "before_cursor_execute", capture)
    assert writes == []


def test_delete_transaction_resums_remaining_entries(db, make_member):
    member = make_member()
    append_contribution(db, member.id, Decimal("1000"), date(2024, 1, 1))
    second, _ = append_contribution(db, member.id, Decimal("500"), date(2024, 2, 1))

    # Stale cache must not leak into the result
    savings = db.query(Savings).filter(Savings.member_id == member.id).one()
    savings.total_amount = Decimal("9999.00")
    db.commit()

    savings = delete_transaction(db, second.id)

    assert savings.total_amount == Decimal("1000.00")
    survivors = db.query(SavingsTransaction).filter(SavingsTransaction.savings_id == savings.id).all()
    assert [t.running_total for t in survivors] == [Decimal("1000.00")]


def test_delete_transaction_rewrites_running_totals_in_date_order(db, make_member):
    member = make_member()
    first, _ = append_contribution(db, member.id, Decimal("100"), date(2024, 1, 1))
    append_contribution(db, member.id, Decimal("200"), date(2024, 2, 1))
    append_contribution(db, member.id, Decimal("300"), date(2024, 3, 1))

    savings = delete_transaction(db, first.id)

    rows = db.query(SavingsTransaction).filter(
        SavingsTransaction.savings_id == savings.id
    ).order_by(SavingsTransaction.date).all()
    assert [r.running_total for r in rows] == [Decimal("200.00"), Decimal("500.00")]
    assert savings.total_amount == Decimal("500.00")


def test_delete_transaction_missing(db):
    with pytest.raises(NotFoundError):
        delete_transaction(db, uuid.uuid4())


def test_read_paths_heal_drift(db, make_member):
    first, second = make_member(), make_member()
    append_contribution(db, first.id, Decimal("700"), date(2024, 1, 1))
    append_contribution(db, second.id, Decimal("300"), date(2024, 1, 1))

    for savings in db.query(Savings).all():
        savings.total_amount = Decimal("0.00")
    db.commit()

    totals = {s.member_id: s.total_amount for s in list_savings(db)}
    assert totals == {first.id: Decimal("700.00"), second.id: Decimal("300.00")}
    assert get_member_savings(db, first.id).total_amount == Decimal("700.00")


def test_migration_discards_legacy_negative_entries(db, make_member):
    member = make_member()
    _, savings = append_contribution(db, member.id, Decimal("1000"), date(2024, 1, 1))
    db.add(SavingsTransaction(
        savings_id=savings.id,
        date=date(2024, 1, 15),
        amount=Decimal("-400.00"),
        running_total=Decimal("600.00"),
        source=SavingsSource.MANUAL,
    ))
    db.commit()

    # Negative rows never count, even before the migration
    assert recompute_savings_total(db, member.id) == Decimal("1000.00")

    result = migrate_legacy_negative_entries(db)

    assert result == {"discarded": 1, "accounts": 1}
    assert db.query(SavingsTransaction).filter(SavingsTransaction.amount < 0).count() == 0
    assert assert_savings_consistent(db, member.id) == Decimal("1000.00")
    assert migrate_legacy_negative_entries(db) == {"discarded": 0, "accounts": 0}
