"""
Unit tests for the Stripe gateway and subscription mapping.
The Stripe client is a MagicMock; sleep and clock are injected.
"""
from unittest.mock import MagicMock

import pytest
import stripe

from app.core.errors import GatewayRejected, GatewayResponseError, GatewayUnavailable, WebhookSignatureError
from app.services.subscription_gateway import SubscriptionGateway, compute_backoff, is_transient
from app.services.subscription_mapping import schedule_from_stripe, subscription_from_stripe
from conftest import PERIOD_END, PERIOD_START

START_TS = int(PERIOD_START.timestamp())
END_TS = int(PERIOD_END.timestamp())


def raw_subscription(**overrides):
    raw = {
        "id": "sub_123",
        "customer": "cus_123",
        "status": "active",
        "cancel_at_period_end": False,
        "current_period_start": START_TS,
        "current_period_end": END_TS,
        "schedule": None,
        "metadata": {"user_id": "7"},
        "items": {"data": [{"id": "si_123", "price": {"id": "price_basic_monthly", "product": "prod_basic"}}]},
    }
    raw.update(overrides)
    return raw


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def stripe_gateway(client, sleeps):
    return SubscriptionGateway(
        client,
        webhook_secret="whsec_test",
        max_attempts=3,
        backoff_base=0.5,
        backoff_max=4,
        deadline_seconds=10,
        sleep=sleeps.append,
        clock=lambda: 0.0,
    )


def test_backoff_doubles_until_cap():
    assert [compute_backoff(n, 0.5, 4) for n in range(1, 6)] == [0.5, 1.0, 2.0, 4, 4]


def test_transient_classification():
    assert is_transient(stripe.APIConnectionError("connection reset"))
    assert is_transient(stripe.RateLimitError("slow down"))
    assert is_transient(stripe.APIError("server error", http_status=500))
    assert not is_transient(stripe.InvalidRequestError("No such price", "price", http_status=400))
    assert not is_transient(stripe.CardError("declined", "card", "card_declined", http_status=402))


def test_fetch_retries_transient_errors(stripe_gateway, client, sleeps):
    client.subscriptions.retrieve.side_effect = [
        stripe.APIConnectionError("timeout"),
        stripe.APIConnectionError("timeout"),
        raw_subscription(),
    ]

    subscription = stripe_gateway.fetch("sub_123")

    assert subscription.id == "sub_123"
    assert client.subscriptions.retrieve.call_count == 3
    assert sleeps == [0.5, 1.0]


def test_fetch_gives_up_after_max_attempts(stripe_gateway, client, sleeps):
    client.subscriptions.retrieve.side_effect = stripe.APIConnectionError("timeout")

    with pytest.raises(GatewayUnavailable) as exc_info:
        stripe_gateway.fetch("sub_123")

    assert client.subscriptions.retrieve.call_count == 3
    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 503
    assert exc_info.value.retry_after >= 1


def test_deadline_stops_retrying_early(client, sleeps):
    ticks = iter([0.0, 9.8])
    gateway = SubscriptionGateway(
        client, webhook_secret="whsec_test", max_attempts=5, backoff_base=0.5,
        backoff_max=4, deadline_seconds=10, sleep=sleeps.append, clock=lambda: next(ticks),
    )
    client.subscriptions.retrieve.side_effect = stripe.RateLimitError("slow down")

    with pytest.raises(GatewayUnavailable):
        gateway.fetch("sub_123")

    assert client.subscriptions.retrieve.call_count == 1
    assert sleeps == []


def test_rejection_is_not_retried(stripe_gateway, client, sleeps):
    client.subscriptions.update.side_effect = stripe.InvalidRequestError(
        "No such price: 'price_gone'", "items", code="resource_missing", http_status=400,
    )
    subscription = subscription_from_stripe(raw_subscription())

    with pytest.raises(GatewayRejected) as exc_info:
        stripe_gateway.upgrade_now(subscription, "price_gone", "key-1")

    assert client.subscriptions.update.call_count == 1
    assert exc_info.value.provider_code == "resource_missing"
    assert sleeps == []


def test_upgrade_prorates_and_keeps_anchor(stripe_gateway, client):
    client.subscriptions.update.return_value = raw_subscription(
        items={"data": [{"id": "si_123", "price": {"id": "price_plus_monthly", "product": "prod_plus"}}]},
    )
    subscription = subscription_from_stripe(raw_subscription())

    updated = stripe_gateway.upgrade_now(subscription, "price_plus_monthly", "key-1")

    args, kwargs = client.subscriptions.update.call_args
    assert args == ("sub_123",)
    assert kwargs["params"]["proration_behavior"] == "create_prorations"
    assert kwargs["params"]["billing_cycle_anchor"] == "unchanged"
    assert kwargs["params"]["items"] == [{"id": "si_123", "price": "price_plus_monthly"}]
    assert kwargs["options"] == {"idempotency_key": "key-1"}
    assert updated.price_id == "price_plus_monthly"


def test_schedule_change_creates_schedule_with_two_phases(stripe_gateway, client):
    client.subscription_schedules.create.return_value = {"id": "sub_sched_1"}
    subscription = subscription_from_stripe(raw_subscription())

    schedule_id = stripe_gateway.schedule_change(subscription, "price_starter", PERIOD_END, "key-2")

    assert schedule_id == "sub_sched_1"
    create_kwargs = client.subscription_schedules.create.call_args.kwargs
    assert create_kwargs["params"] == {"from_subscription": "sub_123"}
    assert create_kwargs["options"] == {"idempotency_key": "key-2:create"}

    args, kwargs = client.subscription_schedules.update.call_args
    assert args == ("sub_sched_1",)
    phases = kwargs["params"]["phases"]
    assert phases[0]["items"][0]["price"] == "price_basic_monthly"
    assert phases[0]["end_date"] == END_TS
    assert phases[1]["items"][0]["price"] == "price_starter"
    assert kwargs["params"]["end_behavior"] == "release"


def test_schedule_change_reuses_existing_schedule(stripe_gateway, client):
    subscription = subscription_from_stripe(raw_subscription(schedule="sub_sched_9"))
    assert stripe_gateway.schedule_change(subscription, "price_x", PERIOD_END, "key-3") == "sub_sched_9"
    client.subscription_schedules.create.assert_not_called()


def test_cancel_at_period_end_params(stripe_gateway, client):
    client.subscriptions.update.return_value = raw_subscription(cancel_at_period_end=True)

    updated = stripe_gateway.cancel_at_period_end("sub_123", "key-4")

    args, kwargs = client.subscriptions.update.call_args
    assert args == ("sub_123",)
    assert kwargs["params"] == {"cancel_at_period_end": True, "proration_behavior": "none"}
    assert kwargs["options"] == {"idempotency_key": "key-4"}
    assert updated.cancel_at_period_end is True


def test_reactivate_clears_cancel_at_period_end(stripe_gateway, client):
    client.subscriptions.update.return_value = raw_subscription()

    updated = stripe_gateway.reactivate("sub_123", "key-5")

    args, kwargs = client.subscriptions.update.call_args
    assert args == ("sub_123",)
    assert kwargs["params"] == {"cancel_at_period_end": False}
    assert kwargs["options"] == {"idempotency_key": "key-5"}
    assert updated.cancel_at_period_end is False


def test_release_schedule(stripe_gateway, client):
    assert stripe_gateway.release_schedule("sub_sched_1", "key-6") is None

    args, kwargs = client.subscription_schedules.release.call_args
    assert args == ("sub_sched_1",)
    assert kwargs["options"] == {"idempotency_key": "key-6"}


def test_cancel_now(stripe_gateway, client):
    client.subscriptions.cancel.return_value = raw_subscription(status="canceled")

    updated = stripe_gateway.cancel_now("sub_123", "key-7")

    args, kwargs = client.subscriptions.cancel.call_args
    assert args == ("sub_123",)
    assert kwargs["options"] == {"idempotency_key": "key-7"}
    assert updated.status == "canceled"
    assert not updated.is_entitled


def test_mutation_retries_reuse_idempotency_key(stripe_gateway, client, sleeps):
    client.subscriptions.update.side_effect = [
        stripe.APIConnectionError("timeout"),
        raw_subscription(cancel_at_period_end=True),
    ]

    stripe_gateway.cancel_at_period_end("sub_123", "key-8")

    assert client.subscriptions.update.call_count == 2
    keys = [call.kwargs["options"]["idempotency_key"] for call in client.subscriptions.update.call_args_list]
    assert keys == ["key-8", "key-8"]
    assert sleeps == [0.5]


def test_checkout_session_for_existing_customer(stripe_gateway, client):
    client.checkout.sessions.create.return_value = {"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"}

    session = stripe_gateway.create_checkout_session(
        price_id="price_plus_monthly", user_id=7, plan_id="plus",
        success_url="https://app.test/ok", cancel_url="https://app.test/cancel",
        idempotency_key="key-9:checkout", customer_id="cus_123", customer_email="t@example.com",
    )

    kwargs = client.checkout.sessions.create.call_args.kwargs
    params = kwargs["params"]
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_plus_monthly", "quantity": 1}]
    assert params["customer"] == "cus_123"
    assert "customer_email" not in params
    assert params["client_reference_id"] == "7"
    assert params["metadata"] == {"user_id": "7", "plan_id": "plus"}
    assert params["subscription_data"] == {"metadata": {"user_id": "7", "plan_id": "plus"}}
    assert kwargs["options"] == {"idempotency_key": "key-9:checkout"}
    assert session.id == "cs_1"
    assert session.url == "https://checkout.stripe.com/c/cs_1"


def test_checkout_session_for_new_customer_uses_email(stripe_gateway, client):
    client.checkout.sessions.create.return_value = {"id": "cs_2", "url": "https://checkout.stripe.com/c/cs_2"}

    stripe_gateway.create_checkout_session(
        price_id="price_basic_annual", user_id=8, plan_id="basic",
        success_url="https://app.test/ok", cancel_url="https://app.test/cancel",
        idempotency_key="key-10", customer_email="new@example.com",
    )

    params = client.checkout.sessions.create.call_args.kwargs["params"]
    assert params["customer_email"] == "new@example.com"
    assert "customer" not in params


def test_estimate_proration_returns_amount_due(stripe_gateway, client):
    client.invoices.create_preview.return_value = {"amount_due": 1733}
    subscription = subscription_from_stripe(raw_subscription())
    assert stripe_gateway.estimate_proration(subscription, "price_plus_monthly") == 1733


def test_construct_event_wraps_signature_errors(stripe_gateway, monkeypatch):
    def reject(payload, signature, secret):
        raise stripe.SignatureVerificationError("bad signature", signature)

    monkeypatch.setattr(stripe.Webhook, "construct_event", reject)
    with pytest.raises(WebhookSignatureError):
        stripe_gateway.construct_event(b"{}", "t=1,v1=abc")
    with pytest.raises(WebhookSignatureError):
        stripe_gateway.construct_event(b"{}", None)


def test_mapping_reads_item_level_period():
    raw = raw_subscription(current_period_start=None, current_period_end=None)
    raw["items"]["data"][0].update(current_period_start=START_TS, current_period_end=END_TS)

    subscription = subscription_from_stripe(raw)

    assert subscription.current_period_start == PERIOD_START
    assert subscription.current_period_end == PERIOD_END
    assert subscription.product_id == "prod_basic"
    assert subscription.metadata == {"user_id": "7"}
    assert subscription.is_entitled


def test_mapping_rejects_unknown_status():
    with pytest.raises(GatewayResponseError):
        subscription_from_stripe(raw_subscription(status="frozen"))


def test_mapping_rejects_missing_items():
    with pytest.raises(GatewayResponseError):
        subscription_from_stripe(raw_subscription(items={"data": []}))


def test_schedule_mapping_finds_next_phase():
    schedule = schedule_from_stripe({
        "id": "sub_sched_1",
        "subscription": "sub_123",
        "status": "active",
        "phases": [
            {"items": [{"price": "price_plus_monthly"}], "start_date": START_TS, "end_date": END_TS},
            {"items": [{"price": {"id": "price_basic_monthly"}}], "start_date": END_TS, "end_date": None},
        ],
    })

    assert schedule.is_active
    assert schedule.phase_after(PERIOD_END).price_id == "price_basic_monthly"
