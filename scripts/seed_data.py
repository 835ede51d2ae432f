"""
Seed demo data: members, a few savings contributions and one running cycle.
"""
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from app.db.base import SessionLocal, init_db
from app.models.member import Member
from app.models.cycle import LoanCycle
from app.schemas.cycle import RotatingPoolCycle
from app.services.cycle import create_cycle_from_request
from app.services.member import create_member
from app.services.savings import append_contribution
from decimal import Decimal
from datetime import date


def seed_members(db):
    """Seed demo members."""
    print("Seeding members...")
    members_data = [
        {"name": "Asha Patel", "phone": "+91 90000 00001"},
        {"name": "Ravi Kumar", "phone": "+91 90000 00002"},
        {"name": "Meena Iyer", "phone": "+91 90000 00003"},
        {"name": "Joseph Mathew", "phone": "+91 90000 00004"},
    ]

    members = []
    for member_data in members_data:
        existing = db.query(Member).filter(Member.name == member_data["name"]).first()
        if existing:
            print(f"  - Member already exists: {existing.name}")
            members.append(existing)
            continue
        member = create_member(db, **member_data)
        print(f"  ✓ Created member: {member.display_user_id} {member.name}")
        members.append(member)
    return members


def seed_savings(db, members):
    """Seed an opening contribution per member."""
    print("Seeding savings...")
    for member in members:
        if member.savings is not None:
            print(f"  - Savings already exist for {member.name}")
            continue
        txn, savings = append_contribution(db, member.id, Decimal("5000.00"), date.today())
        print(f"  ✓ {member.name}: {savings.total_amount}")


def seed_cycle(db, members):
    """Seed one rotation with its first collection open."""
    print("Seeding cycle...")
    if db.query(LoanCycle).first():
        print("  - A cycle already exists")
        return
    request = RotatingPoolCycle(
        kind="rotating_pool",
        member_ids=[member.id for member in members[:3]],
        monthly_amount=Decimal("1000.00"),
        start_date=date.today(),
        name="Demo rotation",
    )
    cycle = create_cycle_from_request(db, request)
    print(f"  ✓ Created cycle {cycle.cycle_number} with {cycle.total_members} members")


if __name__ == "__main__":
    init_db()
    db = SessionLocal()
    try:
        members = seed_members(db)
        seed_savings(db, members)
        seed_cycle(db, members)
        print("\nSeed data complete!")
    except Exception as e:
        db.rollback()
        print(f"Error seeding data: {e}")
        raise
    finally:
        db.close()
