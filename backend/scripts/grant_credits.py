#!/usr/bin/env python3
"""
Manual credit adjustments and special access grants.

Usage:
    # Grant (or with a negative number, remove) credits
    python grant_credits.py --email user@example.com --credits 500 --reason "support refund"

    # Grant coaching dashboard access after a booked call
    python grant_credits.py --email user@example.com --dashboard
"""

import argparse
from decimal import Decimal, InvalidOperation
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.exc import IntegrityError

from paygate.db.session import SessionLocal
from paygate.models import SpecialAccess, User
from paygate.services import ledger_service


def grant_credits(email: str, amount: Decimal, reason: str) -> bool:
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if not user:
            print(f"❌ User not found: {email}")
            return False

        old_balance = user.credits
        ledger_service.add_credits(db, user.id, amount, "admin", {"reason": reason, "admin_script": True})
        db.commit()
        db.refresh(user)
        print(f"✅ Adjusted credits for {email} by {amount}")
        print(f"   Balance: {old_balance} → {user.credits}")
        return True
    except IntegrityError:
        db.rollback()
        print(f"❌ Adjustment would make the balance negative for {email}")
        return False
    finally:
        db.close()


def grant_dashboard(email: str) -> bool:
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if not user:
            print(f"❌ User not found: {email}")
            return False

        db.add(SpecialAccess(user_id=user.id, access_type="dashboard", granted_by="admin_script"))
        db.commit()
        print(f"✅ Dashboard access granted to {email}")
        return True
    except IntegrityError:
        db.rollback()
        print(f"ℹ️  {email} already has dashboard access")
        return True
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(
        description='Adjust credits or grant special access',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--email', required=True, help='User email address')
    parser.add_argument('--credits', help='Credits to add (negative to remove)')
    parser.add_argument('--reason', default='admin_grant', help='Reason stored on the ledger line')
    parser.add_argument('--dashboard', action='store_true', help='Grant coaching dashboard access')
    args = parser.parse_args()

    if not args.credits and not args.dashboard:
        parser.print_help()
        sys.exit(1)

    success = True
    if args.credits:
        try:
            amount = Decimal(args.credits)
        except InvalidOperation:
            print(f"❌ Not a number: {args.credits}")
            sys.exit(1)
        success = grant_credits(args.email, amount, args.reason)
    if args.dashboard:
        success = grant_dashboard(args.email) and success

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
