from app.db.base import Base

# Import all models so metadata.create_all sees them
from app.models.member import Member
from app.models.savings import Savings, SavingsTransaction, SavingsSource
from app.models.cycle import LoanCycle, GroupMember, LoanSequence, GroupFund, SequenceStatus
from app.models.collection import (
    MonthlyCollection,
    CollectionPayment,
    PaymentStatus,
    PaymentMethod,
)
from app.models.transaction import Loan, LoanTransaction, LoanStatus

__all__ = [
    "Base",
    "Member",
    "Savings",
    "SavingsTransaction",
    "SavingsSource",
    "LoanCycle",
    "GroupMember",
    "LoanSequence",
    "GroupFund",
    "SequenceStatus",
    "MonthlyCollection",
    "CollectionPayment",
    "PaymentStatus",
    "PaymentMethod",
    "Loan",
    "LoanTransaction",
    "LoanStatus",
]
