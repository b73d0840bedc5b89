"""Tests for the billing API flows."""

import pytest
from httpx import AsyncClient

from guardian.models.premium import Premium, SubscriptionStatus
from tests.fakes import make_subscription


def paymentsheet_body(**overrides):
    body = {"userId": "U1", "email": "a@b.test", "planId": "P", "stripePriceId": "price_123"}
    body.update(overrides)
    return body


def checkout_body(**overrides):
    body = {
        "userId": "U1",
        "email": "a@b.test",
        "planId": "P",
        "priceId": "price_123",
        "successUrl": "https://wiznote.app/success",
        "cancelUrl": "https://wiznote.app/cancel",
    }
    body.update(overrides)
    return body


def active_premium(subscription_id="sub_a", customer_id="cus_1"):
    return Premium(
        is_active=True,
        status=SubscriptionStatus.ACTIVE,
        stripe_subscription_id=subscription_id,
        stripe_customer_id=customer_id,
    )


@pytest.mark.asyncio
async def test_paymentsheet_happy_path(client: AsyncClient, profiles):
    resp = await client.post("/api/stripe/create-paymentsheet", json=paymentsheet_body())

    assert resp.status_code == 200
    data = resp.json()
    assert data["setupIntent"].endswith("_secret")
    assert data["customer"]
    assert data["ephemeralKey"] == "ek_test_secret"
    assert data["publishableKey"] == "pk_test_guardian"
    assert data["planId"] == "P"
    assert data["stripePriceId"] == "price_123"
    assert profiles.rows["U1"]["stripe_customer_id"] == data["customer"]
    assert profiles.rows["U1"]["premium"] is None


@pytest.mark.asyncio
async def test_paymentsheet_rejects_inactive_price(client: AsyncClient, fake_stripe):
    fake_stripe.prices["price_old"] = {"id": "price_old", "active": False}

    resp = await client.post("/api/stripe/create-paymentsheet", json=paymentsheet_body(stripePriceId="price_old"))

    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid plan price ID"
    assert "create_setup_intent" not in fake_stripe.call_names()


@pytest.mark.asyncio
async def test_checkout_guard_uses_stored_premium(client: AsyncClient, fake_stripe, profiles):
    profiles.seed("U1", customer_id="cus_1", premium=active_premium())

    resp = await client.post("/api/stripe/create-checkout", json=checkout_body())

    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "Subscription already active"
    assert body["existingSubscriptionId"] == "sub_a"
    assert body["status"] == "active"
    assert fake_stripe.calls == []


@pytest.mark.asyncio
async def test_checkout_guard_rejects_pending_subscription(client: AsyncClient, profiles):
    pending = Premium(
        is_active=False,
        status=SubscriptionStatus.INCOMPLETE,
        stripe_subscription_id="sub_p",
        stripe_customer_id="cus_1",
    )
    profiles.seed("U1", customer_id="cus_1", premium=pending)

    resp = await client.post("/api/stripe/create-checkout", json=checkout_body())

    assert resp.status_code == 409
    assert resp.json()["error"] == "Subscription pending"


@pytest.mark.asyncio
async def test_checkout_guard_consults_stripe(client: AsyncClient, fake_stripe, profiles):
    fake_stripe.customers["cus_1"] = {"id": "cus_1", "email": "a@b.test"}
    fake_stripe.add_subscription(make_subscription())
    profiles.seed("U1", customer_id="cus_1")
    before = dict(fake_stripe.subscriptions)

    resp = await client.post("/api/stripe/create-checkout", json=checkout_body())

    assert resp.status_code == 409
    assert resp.json()["error"] == "Existing subscription found"
    assert resp.json()["existingSubscriptionId"] == "sub_a"
    assert fake_stripe.subscriptions.keys() == before.keys()
    assert "create_checkout_session" not in fake_stripe.call_names()
    assert profiles.premium_of("U1").is_active


@pytest.mark.asyncio
async def test_checkout_creates_session(client: AsyncClient, fake_stripe, profiles):
    resp = await client.post("/api/stripe/create-checkout", json=checkout_body(couponId="SUMMER"))

    assert resp.status_code == 200
    data = resp.json()
    assert data["url"].startswith("https://checkout.stripe.test/")
    session = fake_stripe.sessions[data["sessionId"]]
    assert session["metadata"] == {"userId": "U1", "planId": "P", "priceId": "price_123", "couponId": "SUMMER"}
    assert profiles.rows["U1"]["stripe_customer_id"] == data["customerId"]


@pytest.mark.asyncio
async def test_checkout_replaces_stale_customer(client: AsyncClient, profiles):
    profiles.seed("U1", customer_id="cus_deleted")

    resp = await client.post("/api/stripe/create-checkout", json=checkout_body())

    assert resp.status_code == 200
    assert resp.json()["customerId"] != "cus_deleted"
    assert profiles.rows["U1"]["stripe_customer_id"] == resp.json()["customerId"]


@pytest.mark.asyncio
async def test_checkout_relink_carries_premium_customer(client: AsyncClient, profiles):
    lapsed = Premium(
        is_active=False,
        status=SubscriptionStatus.CANCELED,
        stripe_subscription_id="sub_old",
        stripe_customer_id="cus_deleted",
    )
    profiles.seed("U1", customer_id="cus_deleted", premium=lapsed)

    resp = await client.post("/api/stripe/create-checkout", json=checkout_body())

    assert resp.status_code == 200
    customer_id = resp.json()["customerId"]
    premium = profiles.premium_of("U1")
    assert profiles.rows["U1"]["stripe_customer_id"] == customer_id
    assert premium.stripe_customer_id == customer_id
    assert premium.stripe_subscription_id == "sub_old"
    assert premium.status == SubscriptionStatus.CANCELED


@pytest.mark.asyncio
async def test_missing_fields_are_listed(client: AsyncClient):
    resp = await client.post("/api/stripe/create-checkout", json={"userId": "U1"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "Missing required fields: email, planId, priceId, successUrl, cancelUrl"


@pytest.mark.asyncio
async def test_confirm_paymentsheet_creates_one_subscription(client: AsyncClient, fake_stripe, profiles):
    sheet = (await client.post("/api/stripe/create-paymentsheet", json=paymentsheet_body())).json()
    intent = fake_stripe.setup_intents[sheet["setupIntentId"]]
    intent["status"] = "succeeded"
    intent["payment_method"] = "pm_card"
    body = {"setupIntentId": sheet["setupIntentId"], "planId": "P", "userId": "U1"}

    first = await client.post("/api/stripe/confirm-paymentsheet", json=body)
    second = await client.post("/api/stripe/confirm-paymentsheet", json=body)

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["subscriptionId"] == second.json()["subscriptionId"]
    assert len(fake_stripe.subscriptions) == 1
    premium = profiles.premium_of("U1")
    assert premium.is_active
    assert premium.plan_id == "P"
    assert premium.stripe_customer_id == sheet["customer"]


@pytest.mark.asyncio
async def test_confirm_requires_succeeded_intent(client: AsyncClient, fake_stripe):
    sheet = (await client.post("/api/stripe/create-paymentsheet", json=paymentsheet_body())).json()

    resp = await client.post(
        "/api/stripe/confirm-paymentsheet",
        json={"setupIntentId": sheet["setupIntentId"], "planId": "P", "userId": "U1"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"] == "Payment not completed"
    assert "create_subscription" not in fake_stripe.call_names()


@pytest.mark.asyncio
async def test_confirm_requires_payment_method(client: AsyncClient, fake_stripe):
    sheet = (await client.post("/api/stripe/create-paymentsheet", json=paymentsheet_body())).json()
    fake_stripe.setup_intents[sheet["setupIntentId"]]["status"] = "succeeded"

    resp = await client.post(
        "/api/stripe/confirm-paymentsheet",
        json={"setupIntentId": sheet["setupIntentId"], "planId": "P", "userId": "U1"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"] == "Payment method not found"
    assert "create_subscription" not in fake_stripe.call_names()


@pytest.mark.asyncio
async def test_confirm_prefers_requested_price(client: AsyncClient, fake_stripe, profiles):
    sheet = (await client.post("/api/stripe/create-paymentsheet", json=paymentsheet_body())).json()
    intent = fake_stripe.setup_intents[sheet["setupIntentId"]]
    intent["status"] = "succeeded"
    intent["payment_method"] = "pm_card"

    resp = await client.post(
        "/api/stripe/confirm-paymentsheet",
        json={
            "setupIntentId": sheet["setupIntentId"],
            "planId": "P",
            "userId": "U1",
            "stripePriceId": "price_promo",
        },
    )

    assert resp.status_code == 200
    created = [args for name, args in fake_stripe.calls if name == "create_subscription"]
    assert created == [(sheet["customer"], "price_promo", f"subscription-{sheet['setupIntentId']}")]


@pytest.mark.asyncio
async def test_confirm_accepts_legacy_payment_intent(client: AsyncClient, fake_stripe, profiles):
    fake_stripe.payment_intents["pi_1"] = {
        "id": "pi_1",
        "status": "succeeded",
        "customer": "cus_1",
        "payment_method": "pm_card",
        "metadata": {},
    }
    profiles.seed("U1", customer_id="cus_1")

    resp = await client.post(
        "/api/stripe/confirm-paymentsheet",
        json={"paymentIntentId": "pi_1", "planId": "P", "userId": "U1"},
    )

    assert resp.status_code == 200
    assert ("create_subscription", ("cus_1", "price_123", "subscription-pi_1")) in fake_stripe.calls


@pytest.mark.asyncio
async def test_confirm_unknown_plan_is_404(client: AsyncClient, fake_stripe):
    fake_stripe.payment_intents["pi_1"] = {
        "id": "pi_1",
        "status": "succeeded",
        "customer": "cus_1",
        "payment_method": "pm_card",
        "metadata": {},
    }

    resp = await client.post(
        "/api/stripe/confirm-paymentsheet",
        json={"paymentIntentId": "pi_1", "planId": "nope", "userId": "U1"},
    )

    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_verify_session_records_subscription(client: AsyncClient, fake_stripe, profiles):
    profiles.seed("U1", customer_id="cus_1")
    fake_stripe.add_subscription(make_subscription())
    fake_stripe.sessions["cs_paid"] = {
        "id": "cs_paid",
        "customer": "cus_1",
        "payment_status": "paid",
        "subscription": "sub_a",
        "metadata": {"planId": "P"},
    }

    resp = await client.get("/api/stripe/verify-session", params={"session_id": "cs_paid"})

    assert resp.status_code == 200
    assert resp.json()["session"] == {
        "id": "cs_paid",
        "payment_status": "paid",
        "subscription_id": "sub_a",
        "customer_id": "cus_1",
        "plan_id": "P",
    }
    assert profiles.premium_of("U1").is_active


@pytest.mark.asyncio
async def test_verify_session_requires_payment(client: AsyncClient, fake_stripe):
    fake_stripe.sessions["cs_open"] = {"id": "cs_open", "payment_status": "unpaid", "metadata": {}}

    resp = await client.get("/api/stripe/verify-session", params={"session_id": "cs_open"})

    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_verify_session_requires_session_id(client: AsyncClient):
    resp = await client.get("/api/stripe/verify-session")

    assert resp.status_code == 400
    assert resp.json()["error"] == "Missing session_id"


@pytest.mark.asyncio
async def test_cancel_then_reactivate(client: AsyncClient, fake_stripe, profiles, reconciler):
    profiles.seed("U1", customer_id="cus_1")
    subscription = fake_stripe.add_subscription(make_subscription())
    await reconciler.sync_customer("cus_1", subscription)
    body = {"userId": "U1", "subscriptionId": "sub_a"}

    canceled = await client.post("/api/stripe/cancel-subscription", json=body)

    assert canceled.status_code == 200
    assert canceled.json()["subscription"]["cancel_at_period_end"] is True
    assert "canceled_at" in canceled.json()["subscription"]
    premium = profiles.premium_of("U1")
    assert premium.cancel_at_period_end is True
    assert premium.canceled_at is not None
    assert premium.is_active

    reactivated = await client.post("/api/stripe/reactivate-subscription", json=body)

    assert reactivated.status_code == 200
    assert "canceled_at" not in reactivated.json()["subscription"]
    premium = profiles.premium_of("U1")
    assert premium.cancel_at_period_end is False
    assert premium.canceled_at is None
    assert premium.reactivated_at is not None
    assert premium.is_active
    assert premium.status == SubscriptionStatus.ACTIVE
    assert "canceledAt" not in profiles.rows["U1"]["premium"]


@pytest.mark.asyncio
async def test_cancel_refuses_foreign_subscription(client: AsyncClient, fake_stripe, profiles):
    profiles.seed("U1", customer_id="cus_1")
    fake_stripe.add_subscription(make_subscription(customer_id="cus_other"))

    resp = await client.post("/api/stripe/cancel-subscription", json={"userId": "U1", "subscriptionId": "sub_a"})

    assert resp.status_code == 400
    assert "schedule_cancellation" not in fake_stripe.call_names()


@pytest.mark.asyncio
async def test_cancel_reports_success_when_local_write_fails(client: AsyncClient, fake_stripe, profiles):
    profiles.seed("U1", customer_id="cus_1")
    fake_stripe.add_subscription(make_subscription())
    profiles.fail_writes = True

    resp = await client.post("/api/stripe/cancel-subscription", json={"userId": "U1", "subscriptionId": "sub_a"})

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert "pending" in resp.json()["message"]
    assert fake_stripe.subscriptions["sub_a"]["cancel_at_period_end"] is True


@pytest.mark.asyncio
async def test_create_customer_links_profile(client: AsyncClient, profiles):
    first = await client.post("/api/stripe/create-customer", json={"userId": "U1", "email": "a@b.test"})
    second = await client.post("/api/stripe/create-customer", json={"userId": "U1", "email": "a@b.test"})

    assert first.status_code == 200
    assert first.json()["isExisting"] is False
    assert second.json()["isExisting"] is True
    assert second.json()["customerId"] == first.json()["customerId"]
    assert profiles.rows["U1"]["stripe_customer_id"] == first.json()["customerId"]


@pytest.mark.asyncio
async def test_create_customer_relink_carries_premium_customer(client: AsyncClient, profiles):
    profiles.seed("U1", customer_id="cus_deleted", premium=active_premium(subscription_id="sub_old", customer_id="cus_deleted"))

    resp = await client.post("/api/stripe/create-customer", json={"userId": "U1", "email": "a.test"})

    assert resp.status_code == 200
    customer_id = resp.json()["customerId"]
    assert customer_id != "cus_deleted"
    assert profiles.rows["U1"]["stripe_customer_id"] == customer_id
    assert profiles.premium_of("U1").stripe_customer_id == customer_id


@pytest.mark.asyncio
async def test_billing_history(client: AsyncClient, fake_stripe, profiles):
    profiles.seed("U1", customer_id="cus_1")
    fake_stripe.invoices["cus_1"] = [
        {
            "id": "in_1",
            "amount_paid": 999,
            "currency": "usd",
            "status": "paid",
            "created": 1700000000,
            "lines": {"data": [{"description": "Premium Monthly"}]},
        }
    ]

    resp = await client.post("/api/stripe/get-billing-history", json={"userId": "U1", "limit": 500})

    assert resp.status_code == 200
    history = resp.json()["billingHistory"]
    assert history[0]["amount"] == 9.99
    assert history[0]["currency"] == "USD"
    assert history[0]["description"] == "Premium Monthly"
    assert ("list_invoices", ("cus_1", 100)) in fake_stripe.calls


@pytest.mark.asyncio
async def test_billing_history_without_customer_is_empty(client: AsyncClient, profiles):
    profiles.seed("U1")

    resp = await client.post("/api/stripe/get-billing-history", json={"userId": "U1"})

    assert resp.status_code == 200
    assert resp.json()["billingHistory"] == []


@pytest.mark.asyncio
async def test_billing_history_unknown_user_is_404(client: AsyncClient):
    resp = await client.post("/api/stripe/get-billing-history", json={"userId": "ghost"})

    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_sync_plan_stores_stripe_ids(client: AsyncClient, plans):
    resp = await client.post("/api/stripe/sync-plan", json={"planId": "P"})

    assert resp.status_code == 200
    assert resp.json()["plan"]["stripe_price_id"] == "price_P_999"
    assert plans.plans["P"].stripe_price_id == "price_P_999"


@pytest.mark.asyncio
async def test_sync_plan_write_back_failure_is_500(client: AsyncClient, plans):
    plans.fail_writes = True

    resp = await client.post("/api/stripe/sync-plan", json={"planId": "P"})

    assert resp.status_code == 500
    assert resp.json()["error"] == "Failed to update plan with Stripe IDs"


@pytest.mark.asyncio
async def test_sync_plan_unknown_plan_is_404(client: AsyncClient):
    resp = await client.post("/api/stripe/sync-plan", json={"planId": "nope"})

    assert resp.status_code == 404
