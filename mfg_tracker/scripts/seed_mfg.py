"""
Seed an admin, a shop-floor operator and one sample work order per class.

This script:
- Creates the tables if they do not exist
- Creates (or reuses) an admin user and an mfg operator
- Creates sample PCB, assembly and testing work orders at their default stages
- Prints bearer tokens for both accounts

Usage:
    python -m mfg_tracker.scripts.seed_mfg
    python -m mfg_tracker.scripts.seed_mfg --operator-password secret123
    python -m mfg_tracker.scripts.seed_mfg --dry-run
"""

import argparse

from mfg_tracker import create_app
from mfg_tracker.auth.permissions import resolve_operator_context
from mfg_tracker.auth.utils import CallerIdentity, hash_password, issue_token
from mfg_tracker.logging_config import get_logger
from mfg_tracker.models import User, WorkOrder, db
from mfg_tracker.workorders.registry import WorkOrderRegistry

logger = get_logger(__name__)

OPERATOR_PERMISSIONS = ["traveler:read", "traveler:release", "qc:hold"]

SAMPLE_WORK_ORDERS = [
    {"woNumber": "WO-PCB-0001", "workOrderClass": "pcb", "customer": "Acme Robotics",
     "product": "Controller PCB", "quantity": 50, "priority": "high"},
    {"woNumber": "WO-ASM-0001", "workOrderClass": "assembly", "customer": "Acme Robotics",
     "product": "Controller Assembly", "quantity": 25, "priority": "normal"},
    {"woNumber": "WO-TST-0001", "workOrderClass": "testing", "customer": "Acme Robotics",
     "product": "Controller Test Lot", "quantity": 25, "testType": "functional"},
]


def _get_or_create_user(email, password, role, **fields):
    user = User.query.filter_by(email=email).first()
    if user is not None:
        print(f"  = {role} {email} already exists (id={user.id})")
        return user
    user = User(email=email, password_hash=hash_password(password), role=role, **fields)
    db.session.add(user)
    db.session.flush()
    print(f"  + {role} {email} created (id={user.id})")
    return user


def seed_mfg(admin_email, admin_password, operator_email, operator_password, dry_run=False):
    """
    Seed accounts and sample work orders.

    Returns:
        dict with admin/operator tokens and created work order numbers
    """
    print("=" * 80)
    print("SEED MANUFACTURING DATA")
    print("=" * 80)
    mode = "DRY RUN (Preview Only)" if dry_run else "LIVE MODE"
    print(f"\n[INFO] Mode: {mode}")

    try:
        db.create_all()

        print("\n[STEP 1] Accounts...")
        admin = _get_or_create_user(admin_email, admin_password, "admin", name="Admin")
        operator = _get_or_create_user(
            operator_email,
            operator_password,
            "mfg",
            name="Floor Operator",
            login_id="operator1",
            work_center="assembly_store",
            permissions=OPERATOR_PERMISSIONS,
        )

        print("\n[STEP 2] Work orders...")
        ctx = resolve_operator_context(CallerIdentity(admin.id, "admin"))
        created = []
        for payload in SAMPLE_WORK_ORDERS:
            if WorkOrder.query.filter_by(wo_number=payload["woNumber"]).first() is not None:
                print(f"  = {payload['woNumber']} already exists")
                continue
            work_order = WorkOrderRegistry.create(payload, ctx)
            created.append(work_order.wo_number)
            print(f"  + {work_order.wo_number} ({work_order.work_order_class}) at {work_order.stage}")

        if dry_run:
            db.session.rollback()
            print("\n[INFO] Dry run: nothing committed")
        else:
            db.session.commit()

        result = {
            "admin_token": issue_token(admin.id, "admin"),
            "operator_token": issue_token(operator.id, "mfg"),
            "created": created,
        }
        print("\n" + "=" * 80)
        print(f"Admin token:    {result['admin_token']}")
        print(f"Operator token: {result['operator_token']}")
        print("=" * 80)
        return result

    except Exception as e:
        db.session.rollback()
        logger.error("Seeding failed", error=str(e), exc_info=True)
        print(f"\n[ERROR] Seeding failed: {e}")
        raise


def main():
    parser = argparse.ArgumentParser(description="Seed manufacturing accounts and work orders")
    parser.add_argument("--admin-email", default="admin@example.com")
    parser.add_argument("--admin-password", default="admin123")
    parser.add_argument("--operator-email", default="operator1@example.com")
    parser.add_argument("--operator-password", default="operator123")
    parser.add_argument("--dry-run", action="store_true", help="Preview without committing")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        seed_mfg(
            args.admin_email,
            args.admin_password,
            args.operator_email,
            args.operator_password,
            dry_run=args.dry_run,
        )


if __name__ == "__main__":
    main()
