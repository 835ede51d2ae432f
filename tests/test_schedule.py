from datetime import date
from decimal import Decimal
import types

import pytest

from app.core.errors import ValidationError
from app.services.disbursement import give_individual_loan
from app.services.repayment import generate_payment_schedule, loan_schedule, repay
from app.services.savings import append_contribution


def test_schedule_rows():
    rows = list(generate_payment_schedule(Decimal("3000"), Decimal("1000"), 3))

    assert [r["month"] for r in rows] == [1, 2, 3]
    assert [r["principal_remaining"] for r in rows] == [Decimal("3000.00"), Decimal("2000.00"), Decimal("1000.00")]
    assert [r["new_balance"] for r in rows] == [Decimal("2000.00"), Decimal("1000.00"), Decimal("0.00")]
    assert all(r["interest"] == Decimal("0") for r in rows)
    assert all(r["total_payment"] == r["principal_payment"] for r in rows)


def test_schedule_is_restartable():
    schedule = generate_payment_schedule(Decimal("1000"), Decimal("250"), 4, start_month=3)

    assert isinstance(iter(schedule), types.GeneratorType)
    assert list(schedule) == list(schedule)
    assert [r["month"] for r in schedule] == [3, 4, 5, 6]


def test_last_row_absorbs_rounding():
    rows = list(generate_payment_schedule(Decimal("1000"), Decimal("333.33"), 3))

    assert [r["principal_payment"] for r in rows] == [Decimal("333.33"), Decimal("333.33"), Decimal("333.34")]
    assert rows[-1]["new_balance"] == Decimal("0.00")


def test_schedule_stops_once_paid_off():
    rows = list(generate_payment_schedule(Decimal("500"), Decimal("300"), 5))
    assert [r["principal_payment"] for r in rows] == [Decimal("300.00"), Decimal("200.00")]


def test_schedule_with_no_periods_is_empty():
    assert list(generate_payment_schedule(Decimal("500"), Decimal("0"), 0)) == []


def test_schedule_rejects_bad_input():
    with pytest.raises(ValidationError):
        generate_payment_schedule(Decimal("500"), Decimal("100"), -1)
    with pytest.raises(ValidationError):
        generate_payment_schedule(Decimal("500"), Decimal("0"), 3)


def test_loan_schedule_follows_the_loan(db, make_member):
    saver = make_member()
    append_contribution(db, saver.id, Decimal("5000"), date(2024, 1, 1))
    loan = give_individual_loan(db, saver.id, Decimal("1000"), months=3)
    _, loan = repay(db, loan.id, date(2024, 2, 1))

    rows = list(loan_schedule(loan))

    assert [r["month"] for r in rows] == [2, 3]
    assert [r["principal_payment"] for r in rows] == [Decimal("333.34"), Decimal("333.33")]
    assert rows[-1]["new_balance"] == Decimal("0.00")

    for month in (3, 4):
        _, loan = repay(db, loan.id, date(2024, month, 1))
    assert list(loan_schedule(loan)) == []
