"""Tests for the coupon, promotion code and discounted price endpoints."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_create_percentage_coupon(client: AsyncClient, fake_stripe):
    resp = await client.post(
        "/api/stripe/create-coupon",
        json={"name": "Spring", "discountType": "percentage", "discountValue": 20, "promotionId": "promo-7"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["coupon"]["percentOff"] == 20
    params = fake_stripe.calls[-1][1][0]
    assert params["promotion_id"] == "promo-7"
    assert params["duration"] == "once"


@pytest.mark.asyncio
async def test_create_coupon_requires_fields(client: AsyncClient):
    resp = await client.post("/api/stripe/create-coupon", json={"name": "Spring"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "Missing required fields: discountType, discountValue"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload,message",
    [
        ({"discountType": "bogus", "discountValue": 5}, "discountType"),
        ({"discountType": "percentage", "discountValue": 0}, "positive"),
        ({"discountType": "percentage", "discountValue": 150}, "between 1 and 100"),
        ({"discountType": "fixed_amount", "discountValue": 5, "duration": "weekly"}, "duration"),
        ({"discountType": "fixed_amount", "discountValue": 5, "duration": "repeating"}, "durationInMonths"),
    ],
)
async def test_create_coupon_rejects_bad_discounts(client: AsyncClient, fake_stripe, payload, message):
    resp = await client.post("/api/stripe/create-coupon", json={"name": "Spring", **payload})

    assert resp.status_code == 400
    assert message in resp.json()["error"]
    assert "create_coupon" not in fake_stripe.call_names()


@pytest.mark.asyncio
async def test_create_repeating_coupon(client: AsyncClient):
    resp = await client.post(
        "/api/stripe/create-coupon",
        json={
            "name": "Quarter off",
            "discountType": "fixed_amount",
            "discountValue": 2.5,
            "duration": "repeating",
            "durationInMonths": 3,
        },
    )

    assert resp.status_code == 200
    coupon = resp.json()["coupon"]
    assert coupon["amountOff"] == 250
    assert coupon["durationInMonths"] == 3


@pytest.mark.asyncio
async def test_create_promotion_code_uppercases(client: AsyncClient):
    resp = await client.post("/api/stripe/create-promotion-code", json={"couponId": "coupon_1", "code": "spring-24"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["promotionCode"]["code"] == "SPRING-24"
    assert body["promotionCode"]["couponId"] == "coupon_1"
    assert body["promotionCodeId"] == body["promotionCode"]["id"]


@pytest.mark.asyncio
async def test_create_promotion_code_rejects_bad_characters(client: AsyncClient):
    resp = await client.post("/api/stripe/create-promotion-code", json={"couponId": "coupon_1", "code": "no spaces!"})

    assert resp.status_code == 400
    assert "letters, numbers" in resp.json()["error"]


@pytest.mark.asyncio
async def test_duplicate_promotion_code_is_409(client: AsyncClient):
    payload = {"couponId": "coupon_1", "code": "TWICE"}
    await client.post("/api/stripe/create-promotion-code", json=payload)

    resp = await client.post("/api/stripe/create-promotion-code", json=payload)

    assert resp.status_code == 409
    assert resp.json()["error"] == "Promotion code already exists"


@pytest.mark.asyncio
async def test_create_discounted_price_rounds_to_cents(client: AsyncClient):
    resp = await client.post(
        "/api/stripe/create-discounted-price",
        json={
            "productId": "prod_P",
            "plan": {"id": "P", "price": 9.99, "interval": "monthly"},
            "discountType": "percentage",
            "discountValue": 15,
        },
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["originalPrice"] == 9.99
    assert body["discountedPrice"] == 8.49
    assert body["discountType"] == "percentage"
    assert body["priceId"].startswith("price_")


@pytest.mark.asyncio
async def test_fixed_discount_must_stay_below_price(client: AsyncClient, fake_stripe):
    resp = await client.post(
        "/api/stripe/create-discounted-price",
        json={
            "productId": "prod_P",
            "plan": {"id": "P", "price": 9.99, "interval": "monthly"},
            "discountType": "fixed_amount",
            "discountValue": 9.99,
        },
    )

    assert resp.status_code == 400
    assert "create_discounted_price" not in fake_stripe.call_names()


@pytest.mark.asyncio
async def test_discounted_price_requires_plan_fields(client: AsyncClient):
    resp = await client.post(
        "/api/stripe/create-discounted-price",
        json={"productId": "prod_P", "plan": {"id": "P"}, "discountType": "percentage", "discountValue": 10},
    )

    assert resp.status_code == 400
    assert resp.json()["error"] == "Missing required fields: price, interval"


@pytest.mark.asyncio
async def test_validate_coupon_get_and_post(client: AsyncClient):
    await client.post("/api/stripe/create-promotion-code", json={"couponId": "coupon_1", "code": "SPRING"})

    by_query = await client.get("/api/stripe/validate-coupon", params={"code": "spring"})
    by_body = await client.post("/api/stripe/validate-coupon", json={"code": "SPRING"})

    assert by_query.status_code == by_body.status_code == 200
    assert by_query.json()["valid"] is True
    assert by_body.json()["promotionCode"]["code"] == "SPRING"


@pytest.mark.asyncio
async def test_invalid_code_answers_200(client: AsyncClient):
    resp = await client.get("/api/stripe/validate-coupon", params={"code": "NOPE"})

    assert resp.status_code == 200
    assert resp.json() == {"valid": False, "error": "Coupon not found"}


@pytest.mark.asyncio
async def test_validate_coupon_requires_code(client: AsyncClient):
    get_resp = await client.get("/api/stripe/validate-coupon")
    post_resp = await client.post("/api/stripe/validate-coupon", json={})

    assert get_resp.status_code == post_resp.status_code == 400
    assert get_resp.json()["error"] == "Missing required parameter: code"
