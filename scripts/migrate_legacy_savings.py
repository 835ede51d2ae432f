"""
One-time cleanup of negative savings entries left by the old savings-deduction loans.

Discards every negative SavingsTransaction and rebuilds the affected balances
and running totals. Safe to run more than once.
"""
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from app.db.base import SessionLocal
from app.services.savings import migrate_legacy_negative_entries
import logging

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


if __name__ == "__main__":
    db = SessionLocal()
    try:
        result = migrate_legacy_negative_entries(db)
        print(f"Discarded {result['discarded']} legacy entries across {result['accounts']} savings accounts")
    except Exception as e:
        print(f"Error migrating legacy savings: {e}")
        raise
    finally:
        db.close()
