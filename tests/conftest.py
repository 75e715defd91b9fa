"""
Shared fixtures: in-memory database, a priced plan catalog and a fake
subscription gateway that keeps Stripe-side state in memory.
"""
import dataclasses
import itertools
import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.errors import GatewayRejected, GatewayUnavailable, WebhookSignatureError
from app.core.plan_catalog import PlanCatalog, default_plans
from app.core.security import create_access_token
from app.core.user_locks import UserLocks
from app.db.base import Base
from app.db.models.user import User
from app.db.session import get_db
from app.main import app, init_services
from app.services.profile_cache import ProfileCache
from app.services.quota_ledger import QuotaLedger
from app.services.subscription_mapping import (
    ACTIVE,
    CANCELED,
    CheckoutSession,
    SchedulePhase,
    Subscription,
    SubscriptionSchedule,
)
from app.services.subscription_sync import SubscriptionSync


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
PERIOD_START = datetime(2026, 10, 5, 9, 30, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 11, 5, 9, 30, tzinfo=timezone.utc)


def price_id(plan_id: str, period: str = "monthly") -> str:
    return f"price_{plan_id}_{period}"


def build_test_catalog() -> PlanCatalog:
    plans = []
    for plan in default_plans():
        if plan.id == "starter":
            plans.append(plan)
            continue
        plans.append(dataclasses.replace(
            plan,
            stripe_product_id=f"prod_{plan.id}",
            stripe_price_ids={"monthly": price_id(plan.id), "annual": price_id(plan.id, "annual")},
        ))
    return PlanCatalog(plans)


class FakeGateway:
    """
    In-memory stand-in for SubscriptionGateway.

    Mutations replay the stored result when the same idempotency key is
    reused, mirroring Stripe's idempotency behaviour.
    """

    def __init__(self, catalog: PlanCatalog):
        self.catalog = catalog
        self.subscriptions = {}
        self.schedules = {}
        self.calls = []
        self.charges = []
        self.fail_with = None
        self.proration_amount = 1250
        self._idempotent = {}
        self.keys = []
        self._ids = itertools.count(1)

    # helpers -----------------------------------------------------------

    def add_subscription(self, plan_id: str, status: str = ACTIVE, customer_id: str = "cus_test",
                         period_start: datetime = PERIOD_START, period_end: datetime = PERIOD_END,
                         cancel_at_period_end: bool = False) -> Subscription:
        sub = Subscription(
            id=f"sub_{next(self._ids)}",
            customer_id=customer_id,
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
            item_id=f"si_{next(self._ids)}",
            price_id=price_id(plan_id),
            product_id=f"prod_{plan_id}",
        )
        self.subscriptions[sub.id] = sub
        return sub

    def _maybe_fail(self, operation):
        self.calls.append(operation)
        if self.fail_with is not None:
            raise self.fail_with

    def _replay(self, key, fn):
        self.keys.append(key)
        if key in self._idempotent:
            return self._idempotent[key]
        result = fn()
        self._idempotent[key] = result
        return result

    def _product_for(self, price):
        plan = self.catalog.by_price_id(price)
        return plan.stripe_product_id if plan else None

    # reads -------------------------------------------------------------

    def fetch(self, subscription_id):
        self._maybe_fail("fetch")
        if subscription_id not in self.subscriptions:
            raise GatewayRejected(f"No such subscription: {subscription_id}", provider_code="resource_missing")
        return self.subscriptions[subscription_id]

    def fetch_schedule(self, schedule_id):
        self._maybe_fail("fetch_schedule")
        return self.schedules[schedule_id]

    def estimate_proration(self, subscription, new_price_id):
        self._maybe_fail("estimate_proration")
        return self.proration_amount

    # mutations ---------------------------------------------------------

    def upgrade_now(self, subscription, new_price_id, idempotency_key):
        self._maybe_fail("upgrade_now")

        def run():
            current = self.subscriptions[subscription.id]
            if current.schedule_id:
                raise GatewayRejected("Subscription is managed by a schedule")
            updated = dataclasses.replace(
                current, price_id=new_price_id, product_id=self._product_for(new_price_id),
                cancel_at_period_end=False,
            )
            self.subscriptions[subscription.id] = updated
            self.charges.append((subscription.id, new_price_id))
            return updated

        return self._replay(idempotency_key, run)

    def schedule_change(self, subscription, new_price_id, effective_at, idempotency_key):
        self._maybe_fail("schedule_change")

        def run():
            current = self.subscriptions[subscription.id]
            schedule_id = current.schedule_id or f"sub_sched_{next(self._ids)}"
            self.schedules[schedule_id] = SubscriptionSchedule(
                id=schedule_id,
                subscription_id=subscription.id,
                status="active",
                phases=[
                    SchedulePhase(current.price_id, current.current_period_start, effective_at),
                    SchedulePhase(new_price_id, effective_at, None),
                ],
            )
            self.subscriptions[subscription.id] = dataclasses.replace(current, schedule_id=schedule_id)
            return schedule_id

        return self._replay(idempotency_key, run)

    def release_schedule(self, schedule_id, idempotency_key):
        self._maybe_fail("release_schedule")

        def run():
            schedule = self.schedules.pop(schedule_id, None)
            if schedule is not None and schedule.subscription_id in self.subscriptions:
                sub = self.subscriptions[schedule.subscription_id]
                self.subscriptions[sub.id] = dataclasses.replace(sub, schedule_id=None)

        return self._replay(idempotency_key, run)

    def _update(self, subscription_id, idempotency_key, **changes):
        def run():
            sub = dataclasses.replace(self.subscriptions[subscription_id], **changes)
            self.subscriptions[subscription_id] = sub
            return sub

        return self._replay(idempotency_key, run)

    def cancel_at_period_end(self, subscription_id, idempotency_key):
        self._maybe_fail("cancel_at_period_end")
        return self._update(subscription_id, idempotency_key, cancel_at_period_end=True)

    def cancel_now(self, subscription_id, idempotency_key):
        self._maybe_fail("cancel_now")
        return self._update(subscription_id, idempotency_key, status=CANCELED)

    def reactivate(self, subscription_id, idempotency_key):
        self._maybe_fail("reactivate")
        return self._update(subscription_id, idempotency_key, cancel_at_period_end=False)

    def create_checkout_session(self, price_id, user_id, plan_id, success_url, cancel_url,
                                idempotency_key, customer_id=None, customer_email=None):
        self._maybe_fail("create_checkout_session")

        def run():
            session_id = f"cs_test_{next(self._ids)}"
            return CheckoutSession(id=session_id, url=f"https://checkout.stripe.test/{plan_id}/{session_id}")

        return self._replay(idempotency_key, run)

    def construct_event(self, payload, signature):
        if signature != "valid":
            raise WebhookSignatureError("Invalid webhook signature")
        return json.loads(payload)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=test_engine)
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def catalog():
    return build_test_catalog()


@pytest.fixture
def gateway(catalog):
    return FakeGateway(catalog)


@pytest.fixture
def locks():
    return UserLocks()


@pytest.fixture
def sync(catalog, gateway, locks):
    return SubscriptionSync(catalog, gateway, locks)


@pytest.fixture
def cache(catalog, gateway, sync):
    return ProfileCache(catalog, gateway, sync, clock=lambda: NOW)


@pytest.fixture
def ledger(catalog):
    return QuotaLedger(catalog)


@pytest.fixture
def make_user(db):
    """Factory creating users, optionally linked to a fake subscription."""
    def _make(email="test@example.com", plan_id="starter", subscription=None,
              created_at=datetime(2026, 3, 12, 8, 0, tzinfo=timezone.utc)):
        user = User(full_name="Test User", email=email, plan_id=plan_id, created_at=created_at)
        if subscription is not None:
            user.plan_status = subscription.status
            user.stripe_customer_id = subscription.customer_id
            user.stripe_subscription_id = subscription.id
            user.stripe_price_id = subscription.price_id
            user.current_period_start = subscription.current_period_start
            user.current_period_end = subscription.current_period_end
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def unavailable():
    return GatewayUnavailable("Billing provider unavailable during fetch subscription")


@pytest.fixture
def client(db, catalog, gateway):
    """TestClient wired to the fake gateway and the in-memory database."""
    def override_get_db():
        session = TestSessionLocal()
        try:
            yield session
        finally:
            session.close()

    init_services(app, gateway, catalog)
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(email: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': email})}"}
