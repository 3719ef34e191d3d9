"""
End-to-end tests through the HTTP surface.
"""
import base64
import uuid
from typing import Any, AsyncGenerator, Dict

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select, update

from conftest import FakeProvider, add_listing, make_event, sign_payload
from escrow_market.api.dependencies import get_provider
from escrow_market.api.main import app
from escrow_market.core.authorization import Principal
from escrow_market.database import connection
from escrow_market.database.models import SecurePayload, Transaction


def headers(principal: Principal) -> Dict[str, str]:
    return {"X-User-Id": str(principal.user_id), "X-User-Role": principal.role.value}


@pytest_asyncio.fixture
async def client(
    session_factory, provider: FakeProvider, monkeypatch
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client bound to the test ledger and the fake provider."""
    monkeypatch.setattr(connection, "_async_session_factory", session_factory)
    app.dependency_overrides[get_provider] = lambda: provider
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _create_order(client: AsyncClient, market) -> Dict[str, Any]:
    response = await client.post(
        "/orders", json={"listing_id": str(market.listing_id)}, headers=headers(market.buyer)
    )
    assert response.status_code == 201
    return response.json()


async def _provider_ref(session_factory, order_id: str) -> str:
    async with session_factory() as db:
        return (
            await db.execute(
                select(Transaction.provider_ref).where(
                    Transaction.order_id == uuid.UUID(order_id)
                )
            )
        ).scalar_one()


async def _deliver_webhook(client: AsyncClient, payload: str, secret: str):
    return await client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": sign_payload(payload, secret)},
    )


class TestIdentity:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_headers_unauthorized(self, client, market) -> None:
        response = await client.post("/orders", json={"listing_id": str(market.listing_id)})
        assert response.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_role_unauthorized(self, client, market) -> None:
        response = await client.get(
            f"/orders/{uuid.uuid4()}",
            headers={"X-User-Id": str(market.buyer.user_id), "X-User-Role": "root"},
        )
        assert response.status_code == 401


class TestPurchaseFlow:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pay_then_reveal_credentials(
        self, client, session_factory, market, test_settings
    ) -> None:
        stored = await client.put(
            f"/listings/{market.listing_id}/payload",
            json={"credentials": "login: bob / pw: s3cret"},
            headers=headers(market.seller),
        )
        assert stored.status_code == 204

        created = await _create_order(client, market)
        order_id = created["order"]["id"]
        assert created["order"]["status"] == "pending"
        assert created["client_secret"].endswith("_secret_test")

        pending = await client.get(f"/orders/{order_id}", headers=headers(market.buyer))
        assert pending.json()["credentials"] is None

        ref = await _provider_ref(session_factory, order_id)
        payload = make_event(uuid.UUID(order_id), ref, event_id="evt_api_1")

        first = await _deliver_webhook(client, payload, test_settings.stripe_webhook_secret)
        again = await _deliver_webhook(client, payload, test_settings.stripe_webhook_secret)
        assert first.status_code == 200
        assert first.json()["status"] == "success"
        assert again.status_code == 200
        assert again.json()["status"] == "duplicate"

        as_buyer = await client.get(f"/orders/{order_id}", headers=headers(market.buyer))
        as_seller = await client.get(f"/orders/{order_id}", headers=headers(market.seller))
        assert as_buyer.json()["status"] == "paid"
        assert as_buyer.json()["credentials"] == "login: bob / pw: s3cret"
        assert as_seller.json()["credentials"] is None

        acked = await client.post(
            f"/orders/{order_id}/acknowledge", headers=headers(market.buyer)
        )
        assert acked.status_code == 200
        assert acked.json()["status"] == "delivered"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client, market) -> None:
        created = await _create_order(client, market)
        payload = make_event(uuid.UUID(created["order"]["id"]), "pi_whatever")

        response = await _deliver_webhook(client, payload, "whsec_wrong")

        assert response.status_code == 400
        assert response.json()["error"] == "signature_invalid"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_for_unknown_order(self, client, test_settings) -> None:
        payload = make_event(uuid.uuid4(), "pi_unknown")
        response = await _deliver_webhook(client, payload, test_settings.stripe_webhook_secret)
        assert response.status_code == 404


class TestErrorMapping:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_self_trade_is_422(self, client, market) -> None:
        response = await client.post(
            "/orders", json={"listing_id": str(market.listing_id)}, headers=headers(market.seller)
        )
        assert response.status_code == 422
        assert response.json()["error"] == "self_trade"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_listing_is_404(self, client, market) -> None:
        response = await client.post(
            "/orders", json={"listing_id": str(uuid.uuid4())}, headers=headers(market.buyer)
        )
        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stranger_is_403(self, client, market) -> None:
        created = await _create_order(client, market)
        response = await client.get(
            f"/orders/{created['order']['id']}", headers=headers(market.stranger)
        )
        assert response.status_code == 403

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_acknowledge_pending_is_409(self, client, market) -> None:
        created = await _create_order(client, market)
        response = await client.post(
            f"/orders/{created['order']['id']}/acknowledge", headers=headers(market.buyer)
        )
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_state"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tampered_payload_is_500(
        self, client, session_factory, market, test_settings
    ) -> None:
        await client.put(
            f"/listings/{market.listing_id}/payload",
            json={"credentials": "login: bob / pw: s3cret"},
            headers=headers(market.seller),
        )
        created = await _create_order(client, market)
        order_id = created["order"]["id"]
        ref = await _provider_ref(session_factory, order_id)
        payload = make_event(uuid.UUID(order_id), ref, event_id="evt_api_tamper")
        await _deliver_webhook(client, payload, test_settings.stripe_webhook_secret)

        async with session_factory() as db:
            await db.execute(
                update(SecurePayload)
                .where(SecurePayload.listing_id == market.listing_id)
                .values(cipher_text=base64.b64encode(b"\x00" * 40).decode("ascii"))
            )
            await db.commit()

        response = await client.get(f"/orders/{order_id}", headers=headers(market.buyer))

        assert response.status_code == 500
        assert response.json()["error"] == "vault_error"
        assert "authentication" not in response.json()["message"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_blank_dispute_reason_rejected(self, client, market) -> None:
        created = await _create_order(client, market)
        response = await client.post(
            f"/orders/{created['order']['id']}/dispute",
            json={"reason": "   "},
            headers=headers(market.buyer),
        )
        assert response.status_code == 422


class TestSellerAndAdmin:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_balance_and_payout_limits(self, client, market) -> None:
        balance = await client.get("/sellers/me/balance", headers=headers(market.seller))
        assert balance.status_code == 200
        assert balance.json()["available_cents"] == 0

        payout = await client.post(
            "/payouts", json={"amount_cents": 500}, headers=headers(market.seller)
        )
        assert payout.status_code == 422
        assert payout.json()["error"] == "invalid_amount"

        as_buyer = await client.get("/sellers/me/balance", headers=headers(market.buyer))
        assert as_buyer.status_code == 403

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sweep_requires_admin(self, client, market) -> None:
        denied = await client.post("/admin/sweeps", headers=headers(market.seller))
        allowed = await client.post("/admin/sweeps", headers=headers(market.admin))

        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["selected"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconciliation_queue(self, client, market) -> None:
        response = await client.get("/admin/reconciliation", headers=headers(market.admin))
        assert response.status_code == 200
        assert response.json() == {"events": [], "count": 0}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_listing_delist(self, client, session_factory, market) -> None:
        listing_id = await add_listing(session_factory, market.seller)
        response = await client.put(
            f"/listings/{listing_id}/status",
            json={"status": "delisted"},
            headers=headers(market.seller),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "delisted"


class TestOrderHistoryAndReviews:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_my_orders_filtered_by_status(self, client, market) -> None:
        created = await _create_order(client, market)

        mine = await client.get("/orders", headers=headers(market.buyer))
        pending = await client.get(
            "/orders", params={"status": "pending"}, headers=headers(market.buyer)
        )
        paid = await client.get("/orders", params={"status": "paid"}, headers=headers(market.buyer))
        theirs = await client.get("/orders", headers=headers(market.stranger))

        assert mine.status_code == 200
        assert [o["id"] for o in mine.json()["items"]] == [created["order"]["id"]]
        assert mine.json()["items"][0]["credentials"] is None
        assert pending.json()["total"] == 1
        assert paid.json()["total"] == 0
        assert theirs.json()["items"] == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_my_orders_rejects_bad_paging(self, client, market) -> None:
        response = await client.get(
            "/orders", params={"page_size": 500}, headers=headers(market.buyer)
        )
        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_review_after_delivery(
        self, client, session_factory, market, test_settings
    ) -> None:
        created = await _create_order(client, market)
        order_id = created["order"]["id"]

        early = await client.post(
            f"/orders/{order_id}/review", json={"rating": 5}, headers=headers(market.buyer)
        )
        assert early.status_code == 409

        ref = await _provider_ref(session_factory, order_id)
        payload = make_event(uuid.UUID(order_id), ref, event_id="evt_api_review")
        await _deliver_webhook(client, payload, test_settings.stripe_webhook_secret)
        await client.post(f"/orders/{order_id}/acknowledge", headers=headers(market.buyer))

        out_of_range = await client.post(
            f"/orders/{order_id}/review", json={"rating": 9}, headers=headers(market.buyer)
        )
        review = await client.post(
            f"/orders/{order_id}/review",
            json={"rating": 4, "comment": "  fine  "},
            headers=headers(market.buyer),
        )
        again = await client.post(
            f"/orders/{order_id}/review", json={"rating": 1}, headers=headers(market.buyer)
        )
        listed = await client.get(
            f"/sellers/{market.seller.user_id}/reviews", headers=headers(market.stranger)
        )

        assert out_of_range.status_code == 422
        assert review.status_code == 201
        assert review.json()["comment"] == "fine"
        assert again.status_code == 409
        assert again.json()["error"] == "conflict"
        assert listed.status_code == 200
        assert listed.json()["total"] == 1
        assert listed.json()["average_rating"] == 4.0


class TestCartEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_add_and_checkout(self, client, market) -> None:
        added = await client.post(
            "/cart", json={"listing_id": str(market.listing_id)}, headers=headers(market.buyer)
        )
        assert added.status_code == 200
        assert added.json()["listing"]["id"] == str(market.listing_id)

        checkout = await client.post("/cart/checkout", headers=headers(market.buyer))
        assert checkout.status_code == 201
        assert checkout.json()["order"]["status"] == "pending"

        empty = await client.get("/cart", headers=headers(market.buyer))
        assert empty.json()["listing"] is None


class TestMonitoring:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_root_and_liveness(self, client) -> None:
        root = await client.get("/")
        live = await client.get("/health/live")
        assert root.json()["status"] == "operational"
        assert live.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_checks_database(self, client) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["checks"]["ledger"]["status"] == "healthy"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_exposed(self, client) -> None:
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "order_transitions_total" in response.text
