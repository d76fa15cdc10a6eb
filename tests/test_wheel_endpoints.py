from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from factories import make_merchant, make_prize
from spinloyal_api.core.settings import settings


async def _seed_sure_win(session_factory):
    async with session_factory() as session:
        merchant = make_merchant(
            unlucky_quantity=0,
            retry_quantity=0,
            unlucky_probability=0,
            retry_probability=0,
        )
        session.add(merchant)
        session.add(make_prize(merchant, "Free Espresso", 100, image_url="https://cdn.example.com/espresso.png"))
        await session.commit()
    return merchant


@pytest.mark.asyncio
async def test_segments_endpoint_returns_weighted_wheel(app_with_db) -> None:
    app, session_factory = app_with_db
    merchant = await _seed_sure_win(session_factory)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get(f"/api/v1/wheel/{merchant.id}/segments")
        missing = await client.get(f"/api/v1/wheel/{uuid4()}/segments")

    assert response.status_code == 200
    payload = response.json()
    assert len(payload["segments"]) == 6
    assert payload["totalWeight"] == pytest.approx(100)
    assert payload["segments"][0]["label"] == "Free Espresso"
    assert payload["segments"][0]["imageUrl"] == "https://cdn.example.com/espresso.png"
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_spin_issues_coupon_once_per_day(app_with_db) -> None:
    app, session_factory = app_with_db
    merchant = await _seed_sure_win(session_factory)
    dispatcher = app.state.notification_dispatcher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post(f"/api/v1/wheel/{merchant.id}/spin", json={"visitorToken": "visitor-1"})
        second = await client.post(f"/api/v1/wheel/{merchant.id}/spin", json={"visitorToken": "visitor-1"})
        invalid = await client.post(f"/api/v1/wheel/{merchant.id}/spin", json={"visitorToken": ""})

    assert first.status_code == 201
    body = first.json()
    assert body["outcome"] == "prize"
    assert body["canRetry"] is False
    assert body["segments"][body["segmentIndex"]]["label"] == "Free Espresso"
    coupon = body["coupon"]
    assert coupon["prizeName"] == "Free Espresso"
    assert coupon["used"] is False
    assert coupon["couponUrl"].endswith(f"/coupon?code={coupon['code']}")

    assert second.status_code == 409
    assert second.json()["detail"]["code"] == "already_spun_today"
    assert invalid.status_code == 422

    assert await dispatcher.drain() == 1
    event = dispatcher.backend.delivered[0]
    assert event.event_type == "coupon.issued"
    assert event.payload["code"] == coupon["code"]


@pytest.mark.asyncio
async def test_coupon_page_reads_state_without_staff_key(app_with_db) -> None:
    app, session_factory = app_with_db
    merchant = await _seed_sure_win(session_factory)
    other = await _seed_sure_win(session_factory)

    previous_key = settings.staff_api_key
    settings.staff_api_key = "staff-key"
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            spun = await client.post(f"/api/v1/wheel/{merchant.id}/spin", json={"visitorToken": "visitor-9"})
            code = spun.json()["coupon"]["code"]

            fresh = await client.get(f"/api/v1/wheel/{merchant.id}/coupons/{code.lower()}")
            await client.post(
                f"/api/v1/tokens/{merchant.id}/use",
                json={"code": code},
                headers={"X-API-Key": "staff-key"},
            )
            used = await client.get(f"/api/v1/wheel/{merchant.id}/coupons/{code}")
            foreign = await client.get(f"/api/v1/wheel/{other.id}/coupons/{code}")
    finally:
        settings.staff_api_key = previous_key

    assert fresh.status_code == 200
    assert fresh.json()["code"] == code
    assert fresh.json()["prizeName"] == "Free Espresso"
    assert fresh.json()["used"] is False
    assert used.status_code == 200
    assert used.json()["used"] is True
    assert used.json()["usedAt"] is not None
    assert foreign.status_code == 404
    assert foreign.json()["detail"]["code"] == "not_found"
