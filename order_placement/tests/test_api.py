import pytest
from datetime import timedelta
from decimal import Decimal
from sqlalchemy import select

from order_placement.adapters.errors import TwoFactorRequired
from order_placement.core.enums import ChallengeRequestType, OrderStatus, UserRole
from order_placement.models.audit import Audit
from order_placement.models.order import Order
from order_placement.models.user import User


async def stored(session_factory, order_id):
    async with session_factory() as db:
        return (await db.execute(select(Order).where(Order.id == order_id))).scalars().one()


class TestReadOrders:

    async def test_list_and_get(self, api_client, create_order_factory):
        order = await create_order_factory()

        listing = await api_client.get("/orders/")
        detail = await api_client.get(f"/orders/{order.id}")

        assert [o["id"] for o in listing.json()] == [order.id]
        body = detail.json()
        assert body["supplier_name"] == "Sysco"
        assert body["items"][0]["supplier_sku"] == "SKU-1"
        assert Decimal(body["subtotal"]) == Decimal("120.00")

    async def test_other_users_order(self, db, api_client, world):
        other = User(username="other", email="other@example.com", role=UserRole.MEMBER)
        order = Order(user=other, supplier=world.supplier)
        order.add_item(world.products[0], 1)
        db.add_all([other, order])
        await db.commit()

        assert (await api_client.get(f"/orders/{order.id}")).status_code == 403
        assert (await api_client.get("/orders/")).json() == []

    async def test_missing_order(self, api_client):
        assert (await api_client.get("/orders/999")).status_code == 404


class TestSubmit:

    async def test_submit_queues_with_reservation_token(self, api_client, session_factory, dispatcher,
                                                        create_order_factory):
        order = await create_order_factory()

        response = await api_client.post(f"/orders/{order.id}/submit", json={"skip_warnings": True})

        assert response.status_code == 202
        assert response.json()["status"] == "processing"
        saved = await stored(session_factory, order.id)
        assert saved.status == OrderStatus.PROCESSING
        assert saved.placement_started_at is None
        call = dispatcher.named("place_order")[0]
        assert call["placement_token"] == saved.placement_token
        assert call["skip_warnings"] is True

    async def test_second_submit_conflicts(self, api_client, dispatcher, create_order_factory):
        order = await create_order_factory()

        await api_client.post(f"/orders/{order.id}/submit")
        second = await api_client.post(f"/orders/{order.id}/submit")

        assert second.status_code == 409
        assert len(dispatcher.named("place_order")) == 1

    async def test_idempotency_key_replays_response(self, api_client, dispatcher, create_order_factory):
        order = await create_order_factory()
        headers = {"Idempotency-Key": "double-click"}

        first = await api_client.post(f"/orders/{order.id}/submit", headers=headers)
        second = await api_client.post(f"/orders/{order.id}/submit", headers=headers)

        assert second.status_code == 202
        assert second.json() == first.json()
        assert len(dispatcher.named("place_order")) == 1

    async def test_submit_is_audited(self, api_client, session_factory, world, create_order_factory):
        order = await create_order_factory()

        await api_client.post(f"/orders/{order.id}/submit")

        async with session_factory() as db:
            audits = (await db.execute(select(Audit))).scalars().all()
        assert [(a.action, a.resource_id, a.user_id) for a in audits] == [("submit_order", order.id, world.user.id)]


class TestLifecycle:

    async def test_cancel(self, api_client, session_factory, create_order_factory):
        order = await create_order_factory()

        response = await api_client.post(f"/orders/{order.id}/cancel")

        assert response.json()["status"] == "cancelled"
        assert (await stored(session_factory, order.id)).status == OrderStatus.CANCELLED

    async def test_cancel_submitted_conflicts(self, api_client, create_order_factory):
        order = await create_order_factory(status=OrderStatus.SUBMITTED, confirmation_number="ABC123")

        assert (await api_client.post(f"/orders/{order.id}/cancel")).status_code == 409

    async def test_cancel_after_submit_was_queued_conflicts(self, api_client, session_factory, create_order_factory):
        order = await create_order_factory()
        assert (await api_client.post(f"/orders/{order.id}/submit")).status_code == 202

        assert (await api_client.post(f"/orders/{order.id}/cancel")).status_code == 409
        assert (await stored(session_factory, order.id)).status == OrderStatus.PROCESSING

    async def test_retry_failed_order(self, api_client, session_factory, dispatcher, create_order_factory):
        order = await create_order_factory(status=OrderStatus.FAILED, error_message="Order failed: boom")

        response = await api_client.post(f"/orders/{order.id}/retry")

        assert response.status_code == 202
        saved = await stored(session_factory, order.id)
        assert saved.status == OrderStatus.PROCESSING
        assert saved.error_message is None
        assert dispatcher.named("place_order") == [{"order_id": order.id, "placement_token": saved.placement_token}]

    async def test_retry_needs_failure(self, api_client, create_order_factory):
        order = await create_order_factory()

        assert (await api_client.post(f"/orders/{order.id}/retry")).status_code == 409

    async def test_placement_status(self, api_client, create_order_factory):
        order = await create_order_factory(
            status=OrderStatus.SUBMITTED, confirmation_number="ABC123", total_amount=Decimal("120.00")
        )

        body = (await api_client.get(f"/orders/{order.id}/placement-status")).json()

        assert body["processing"] is False
        assert body["confirmation_number"] == "ABC123"


class TestVerification:

    async def test_verify_prices_queues_job(self, api_client, dispatcher, create_order_factory):
        order = await create_order_factory()

        response = await api_client.post(f"/orders/{order.id}/verify-prices")

        assert response.status_code == 202
        assert response.json()["status"] == "verifying"
        assert dispatcher.named("verify_prices") == [{"order_id": order.id}]

    async def test_accept_price_changes(self, db, api_client, create_order_factory):
        order = await create_order_factory(status=OrderStatus.PRICE_CHANGED)
        order.items[0].verified_price = Decimal("33.00")
        await db.commit()

        body = (await api_client.post(f"/orders/{order.id}/accept-price-changes")).json()

        assert body["status"] == "pending"
        assert Decimal(body["subtotal"]) == Decimal("132.00")

    async def test_skip_verification(self, api_client, create_order_factory):
        order = await create_order_factory(status=OrderStatus.VERIFYING)

        body = (await api_client.post(f"/orders/{order.id}/skip-verification", json={})).json()

        assert body["status"] == "pending"
        assert body["verification_status"] == "skipped"
        assert body["error"] == "Skipped by user"

    async def test_skip_while_processing_conflicts(self, api_client, create_order_factory):
        order = await create_order_factory(status=OrderStatus.PROCESSING)

        response = await api_client.post(f"/orders/{order.id}/skip-verification", json={"reason": "rush"})

        assert response.status_code == 409


class TestBatches:

    async def test_verify_and_submit_batch(self, api_client, dispatcher, create_order_factory):
        first = await create_order_factory(batch_id="b-1")
        second = await create_order_factory(batch_id="b-1", status=OrderStatus.SUBMITTED, confirmation_number="X")

        verify = (await api_client.post("/orders/batches/b-1/verify-prices")).json()

        assert verify["queued"] == [first.id]
        assert verify["skipped"] == {str(second.id): "submitted"}
        assert dispatcher.named("verify_batch") == [{"order_ids": [first.id]}]

        status = (await api_client.get("/orders/batches/b-1/verification-status")).json()
        assert status["complete"] is False
        assert status["counts"] == {"verifying": 1, "pending": 1}

    async def test_submit_batch_skips_unsubmittable(self, api_client, dispatcher, create_order_factory):
        first = await create_order_factory(batch_id="b-2")
        second = await create_order_factory(batch_id="b-2", status=OrderStatus.CANCELLED)

        body = (await api_client.post("/orders/batches/b-2/submit")).json()

        assert body["queued"] == [first.id]
        assert body["skipped"] == {str(second.id): "cancelled"}
        assert [c["order_id"] for c in dispatcher.named("place_order")] == [first.id]

    async def test_unknown_batch(self, api_client):
        assert (await api_client.get("/orders/batches/nope/verification-status")).status_code == 404


class TestTwoFactorEndpoints:

    @pytest.fixture
    async def challenge(self, world, challenge_manager):
        return await challenge_manager().open_challenge(
            TwoFactorRequired(session_token="api-tok", two_fa_type="email"), world.credential,
            ChallengeRequestType.LOGIN,
        )

    async def test_pending(self, api_client, challenge):
        body = (await api_client.get("/two-factor/pending")).json()

        assert [(c["session_token"], c["supplier_name"], c["attempts_remaining"]) for c in body] == [
            ("api-tok", "Sysco", 3)
        ]
        assert 0 < body[0]["time_remaining"] <= timedelta(minutes=5).total_seconds()

    async def test_unknown_token(self, api_client, challenge):
        response = await api_client.post("/two-factor/nope/code", json={"code": "123456"})

        assert response.status_code == 404

    async def test_submit_code_resumes(self, db, api_client, dispatcher, world, challenge):
        # An adapter without code verification accepts the code as entered
        world.supplier.adapter_class = "conftest.FakeAdapter"
        await db.commit()

        response = await api_client.post("/two-factor/api-tok/code", json={"code": "123456"})

        assert response.json()["success"] is True
        assert dispatcher.named("refresh_session") == [{"credential_id": world.credential.id, "order_id": None}]

    async def test_cancel(self, api_client, bus, world, challenge):
        response = await api_client.post("/two-factor/api-tok/cancel")

        assert response.json() == {"type": "cancelled", "session_token": "api-tok"}
        assert bus.messages(world.user.id, "cancelled")


class TestMonitoring:

    async def test_health(self, api_client):
        body = (await api_client.get("/health")).json()

        assert body["status"] == "healthy"
        assert body["dependencies"]["redis"] == "disconnected"

    async def test_metrics(self, api_client):
        await api_client.get("/health")

        response = await api_client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    async def test_readiness_without_redis(self, api_client):
        assert (await api_client.get("/readiness")).status_code == 503
