"""
Script to re-derive every user's plan from Stripe.

Fetches each subscription and reconciles the profile row and any pending
plan change. Useful after changing price/product configuration.
Run: python -m scripts.resync_profiles [--email someone@example.com] [--dry-run]
"""
import argparse
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.errors import GatewayError
from app.core.plan_catalog import get_catalog
from app.db.session import SessionLocal
from app.db.models.user import User
from app.services.subscription_gateway import SubscriptionGateway, build_stripe_client
from app.services.subscription_sync import SubscriptionSync
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def resync_profiles(sync: SubscriptionSync, gateway, email: str = None, dry_run: bool = False) -> dict:
    """Reconcile users with a Stripe subscription. Returns counts per outcome."""
    counts = {"synced": 0, "changed": 0, "failed": 0}
    db = SessionLocal()
    try:
        query = db.query(User).filter(User.stripe_subscription_id.isnot(None))
        if email:
            query = query.filter(User.email == email.lower())

        for user in query.order_by(User.id).all():
            before = user.plan_id
            try:
                subscription = gateway.fetch(user.stripe_subscription_id)
            except GatewayError as e:
                counts["failed"] += 1
                logger.error(f"Could not fetch subscription: user_id={user.id}, error={e.message}")
                continue

            after = sync.plan_id_for(subscription)
            if dry_run:
                logger.info(f"[dry-run] user_id={user.id}: {before} -> {after} ({subscription.status})")
            else:
                sync.sync_user(db, user, subscription)
            counts["synced"] += 1
            if before != after:
                counts["changed"] += 1
                logger.info(f"Plan corrected: user_id={user.id}, {before} -> {after}")
        return counts
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Re-sync user plans from Stripe")
    parser.add_argument("--email", help="Only re-sync this user")
    parser.add_argument("--dry-run", action="store_true", help="Report differences without writing")
    args = parser.parse_args()

    gateway = SubscriptionGateway(build_stripe_client())
    sync = SubscriptionSync(get_catalog(), gateway)
    result = resync_profiles(sync, gateway, email=args.email, dry_run=args.dry_run)

    print(f"\nSynced: {result['synced']}  Changed: {result['changed']}  Failed: {result['failed']}")
    if result["failed"]:
        sys.exit(1)
