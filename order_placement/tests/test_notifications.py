from datetime import date
from decimal import Decimal

import httpx
import pytest

from order_placement.core.config import settings
from order_placement.services import webhook
from order_placement.services.notifications import NotificationEvent, WebhookNotifier
from order_placement.services.webhook import send_webhook


@pytest.fixture
def webhook_server(monkeypatch):
    """Route the webhook client to a scripted transport and skip backoff sleeps."""
    received = []
    statuses = []
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        status = statuses.pop(0) if statuses else 200
        if isinstance(status, Exception):
            raise status
        return httpx.Response(status)

    async def no_sleep(seconds):
        return None

    monkeypatch.setattr(
        webhook.httpx, "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    monkeypatch.setattr(webhook.asyncio, "sleep", no_sleep)
    return received, statuses


async def test_delivered_first_time(webhook_server):
    received, _ = webhook_server

    assert await send_webhook({"event": "order_confirmed", "order_id": 1})
    assert len(received) == 1
    assert str(received[0].url) == settings.NOTIFICATION_WEBHOOK_URL


async def test_retries_server_errors(webhook_server):
    received, statuses = webhook_server
    statuses.extend([500, httpx.ConnectError("refused")])

    assert await send_webhook({"event": "order_failed"})
    assert len(received) == 3


async def test_gives_up_after_retries(webhook_server):
    received, statuses = webhook_server
    statuses.extend([503, 503])

    assert not await send_webhook({"event": "order_failed"}, retries=2)
    assert len(received) == 2


async def test_notifier_payloads(notifier, world, create_order_factory):
    order = await create_order_factory(confirmation_number="ABC123", delivery_date=date(2026, 10, 20))
    order.total_amount = Decimal("120.00")

    await notifier.order_submitted(order)
    await notifier.account_hold(world.credential, "Payment overdue", order_id=order.id)

    confirmed, hold = notifier.sent
    assert confirmed == {
        "event": "order_confirmed",
        "user_id": world.user.id,
        "order_id": order.id,
        "supplier": "Sysco",
        "confirmation_number": "ABC123",
        "total_amount": 120.0,
        "delivery_date": "2026-10-20",
    }
    assert hold["event"] == str(NotificationEvent.ACCOUNT_HOLD)
    assert hold["reason"] == "Payment overdue"


async def test_webhook_notifier_posts_json(webhook_server, world, create_order_factory):
    received, _ = webhook_server
    order = await create_order_factory(error_message="Order failed: boom")

    assert await WebhookNotifier().order_failed(order)

    body = received[0].read()
    assert b'"event":"order_failed"' in body.replace(b" ", b"")
    assert b"Order failed: boom" in body
