"""Tests for webhook event handling and the webhook endpoint."""

import json
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from httpx import ASGITransport, AsyncClient

from guardian.main import create_app
from guardian.models.premium import SubscriptionStatus
from guardian.services.stripe_service import StripeService
from guardian.services.webhook_handler import WebhookHandler
from tests.fakes import VALID_SIGNATURE, make_event, make_subscription, sign_payload

REAL_SECRET = "whsec_route"


@pytest.fixture
def signed_app(settings, services, profiles, identity, reconciler):
    """The app with the real Stripe adapter verifying and serving the handler."""
    real_stripe = StripeService("sk_test_route", webhook_secret=REAL_SECRET)
    services.stripe = real_stripe
    services.webhooks = WebhookHandler(real_stripe, profiles, identity, reconciler)
    return create_app(settings=settings, services=services)


async def post_signed(app, event):
    payload = json.dumps(event).encode()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        return await ac.post(
            "/api/stripe/webhook",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload, REAL_SECRET), "Content-Type": "application/json"},
        )


@pytest.mark.asyncio
async def test_past_due_update_replayed_twice_is_idempotent(webhooks, fake_stripe, profiles):
    profiles.seed("U1", customer_id="cus_1")
    subscription = fake_stripe.add_subscription(make_subscription(status="past_due"))
    event = make_event("customer.subscription.updated", subscription)

    assert await webhooks.process(event)
    first = profiles.premium_of("U1")
    first_updated = profiles.rows["U1"]["premium"]["updatedAt"]

    assert await webhooks.process(event)
    second = profiles.premium_of("U1")

    assert first.is_active is False
    assert first.status == SubscriptionStatus.PAST_DUE
    assert second == first
    assert profiles.rows["U1"]["premium"]["updatedAt"] == first_updated
    assert len([w for w in profiles.writes if w[0] == "premium"]) == 1


@pytest.mark.asyncio
async def test_subscription_event_uses_latest_stripe_state(webhooks, fake_stripe, profiles):
    profiles.seed("U1", customer_id="cus_1")
    fake_stripe.add_subscription(make_subscription(status="active"))
    stale_payload = make_subscription(status="incomplete")

    await webhooks.process(make_event("customer.subscription.created", stale_payload))

    premium = profiles.premium_of("U1")
    assert premium.status == SubscriptionStatus.ACTIVE
    assert premium.is_active


@pytest.mark.asyncio
async def test_subscription_event_falls_back_to_payload(webhooks, profiles):
    profiles.seed("U1", customer_id="cus_1")

    await webhooks.process(make_event("customer.subscription.updated", make_subscription(status="trialing")))

    assert profiles.premium_of("U1").status == SubscriptionStatus.TRIALING


@pytest.mark.asyncio
async def test_subscription_deleted_forces_canceled(webhooks, fake_stripe, profiles):
    profiles.seed("U1", customer_id="cus_1")
    await webhooks.process(make_event("customer.subscription.created", fake_stripe.add_subscription(make_subscription())))

    await webhooks.process(make_event("customer.subscription.deleted", make_subscription(status="active"), "evt_2"))

    premium = profiles.premium_of("U1")
    assert premium.status == SubscriptionStatus.CANCELED
    assert premium.is_active is False


@pytest.mark.asyncio
async def test_deleted_event_for_replaced_subscription_is_ignored(webhooks, fake_stripe, profiles):
    profiles.seed("U1", customer_id="cus_1")
    fake_stripe.add_subscription(make_subscription(subscription_id="sub_new"))
    await webhooks.process(make_event("customer.subscription.created", make_subscription(subscription_id="sub_new")))

    await webhooks.process(
        make_event("customer.subscription.deleted", make_subscription(subscription_id="sub_old", status="canceled"))
    )

    premium = profiles.premium_of("U1")
    assert premium.stripe_subscription_id == "sub_new"
    assert premium.is_active


@pytest.mark.asyncio
async def test_payment_failed_marks_past_due(webhooks, fake_stripe, profiles):
    profiles.seed("U1", customer_id="cus_1")
    fake_stripe.add_subscription(make_subscription())
    invoice = {"id": "in_1", "customer": "cus_1", "subscription": "sub_a"}

    await webhooks.process(make_event("invoice.payment_failed", invoice))

    premium = profiles.premium_of("U1")
    assert premium.status == SubscriptionStatus.PAST_DUE
    assert not premium.is_active


@pytest.mark.asyncio
async def test_payment_succeeded_reads_nested_subscription_reference(webhooks, fake_stripe, profiles):
    profiles.seed("U1", customer_id="cus_1")
    fake_stripe.add_subscription(make_subscription())
    invoice = {
        "id": "in_2",
        "customer": "cus_1",
        "parent": {"subscription_details": {"subscription": "sub_a"}},
    }

    await webhooks.process(make_event("invoice.payment_succeeded", invoice))

    assert profiles.premium_of("U1").is_active


@pytest.mark.asyncio
async def test_checkout_completed_links_customer_and_syncs(webhooks, fake_stripe, profiles):
    profiles.seed("U1")
    fake_stripe.add_subscription(make_subscription(customer_id="cus_7"))
    session = {
        "id": "cs_1",
        "mode": "subscription",
        "customer": "cus_7",
        "subscription": "sub_a",
        "metadata": {"userId": "U1"},
    }

    await webhooks.process(make_event("checkout.session.completed", session))

    assert profiles.rows["U1"]["stripe_customer_id"] == "cus_7"
    assert profiles.premium_of("U1").is_active


@pytest.mark.asyncio
async def test_customer_created_links_by_email(webhooks, profiles):
    customer = {"id": "cus_new", "email": "Linked@Example.com", "metadata": {}}

    await webhooks.process(make_event("customer.created", customer))

    assert profiles.rows["U-email"]["stripe_customer_id"] == "cus_new"


@pytest.mark.asyncio
async def test_customer_event_does_not_relink(webhooks, profiles):
    profiles.seed("U1", customer_id="cus_old")

    await webhooks.process(make_event("customer.updated", {"id": "cus_new", "metadata": {"userId": "U1"}}))

    assert profiles.rows["U1"]["stripe_customer_id"] == "cus_old"


@pytest.mark.asyncio
async def test_handler_errors_are_swallowed(webhooks, profiles):
    profiles.seed("U1", customer_id="cus_1")
    invoice = {"id": "in_3", "customer": "cus_1", "subscription": "sub_missing"}

    handled = await webhooks.process(make_event("invoice.payment_succeeded", invoice))

    assert handled is False
    assert profiles.writes == []


@pytest.mark.asyncio
async def test_unknown_event_type_is_acknowledged(webhooks):
    assert await webhooks.process(make_event("product.created", {"id": "prod_1"}))


@pytest.mark.asyncio
async def test_endpoint_rejects_bad_signature(client: AsyncClient, profiles):
    profiles.seed("U1", customer_id="cus_1")

    resp = await client.post("/api/stripe/webhook", content=b"{}", headers={"Stripe-Signature": "invalid"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid signature"
    assert profiles.writes == []


@pytest.mark.asyncio
async def test_endpoint_requires_signature_header(client: AsyncClient):
    resp = await client.post("/api/stripe/webhook", content=b"{}")

    assert resp.status_code == 400
    assert "Stripe-Signature" in resp.json()["error"]


@pytest.mark.asyncio
async def test_endpoint_acknowledges_processed_event(client: AsyncClient, fake_stripe, profiles):
    profiles.seed("U1", customer_id="cus_1")
    subscription = fake_stripe.add_subscription(make_subscription())
    payload = json.dumps(make_event("customer.subscription.updated", subscription)).encode()

    resp = await client.post(
        "/api/stripe/webhook",
        content=payload,
        headers={"Stripe-Signature": VALID_SIGNATURE, "Content-Type": "application/json"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    assert profiles.premium_of("U1").is_active


@pytest.mark.asyncio
async def test_endpoint_acknowledges_failed_event(client: AsyncClient, profiles):
    profiles.seed("U1", customer_id="cus_1")
    invoice = {"id": "in_4", "customer": "cus_1", "subscription": "sub_missing"}
    payload = json.dumps(make_event("invoice.payment_failed", invoice)).encode()

    resp = await client.post("/api/stripe/webhook", content=payload, headers={"Stripe-Signature": VALID_SIGNATURE})

    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_signed_customer_created_links_profile(signed_app, profiles):
    profiles.seed("U1")
    customer = {"id": "cus_9", "object": "customer", "email": "a@b.test", "metadata": {"userId": "U1"}}
    event = {"id": "evt_signed", "object": "event", "type": "customer.created", "data": {"object": customer}}

    resp = await post_signed(signed_app, event)

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    assert profiles.rows["U1"]["stripe_customer_id"] == "cus_9"


@pytest.mark.asyncio
async def test_signed_subscription_event_refetches_sdk_object(signed_app, profiles):
    profiles.seed("U1", customer_id="cus_1")
    latest = stripe.Subscription.construct_from(make_subscription(status="active"), "sk_test_route")
    event = {
        "id": "evt_sub",
        "object": "event",
        "type": "customer.subscription.updated",
        "data": {"object": make_subscription(status="incomplete")},
    }

    with patch("stripe.Subscription.retrieve_async", new=AsyncMock(return_value=latest)):
        resp = await post_signed(signed_app, event)

    assert resp.status_code == 200
    premium = profiles.premium_of("U1")
    assert premium.status == SubscriptionStatus.ACTIVE
    assert premium.is_active
