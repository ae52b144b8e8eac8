import pytest

from order_placement.core.enums import OrderStatus
from order_placement.core.exceptions import CredentialBusy
from order_placement.core.redis import acquire_credential_lock, credential_lock_key
from order_placement.services import tasks, tasks_internal
from order_placement.services.tasks_internal import place_order_async


@pytest.fixture
def queued(monkeypatch):
    sent = []
    monkeypatch.setattr(tasks.place_order, "apply_async", lambda kwargs: sent.append(kwargs))
    return sent


class TestCeleryDispatcher:

    def test_reserved_submission_keeps_its_token(self, queued):
        tasks.CeleryDispatcher().place_order(7, placement_token="tok", skip_warnings=True)

        assert queued[0]["placement_token"] == "tok"
        assert queued[0]["reserved"] is True
        assert queued[0]["skip_warnings"] is True

    def test_unreserved_job_gets_its_own_token(self, queued):
        tasks.CeleryDispatcher().place_order(7, resume_checkout=True)

        assert len(queued[0]["placement_token"]) == 32
        assert queued[0]["reserved"] is False
        assert queued[0]["retry_policy"] == "placement"


@pytest.fixture
def worker(monkeypatch, session_factory, fake_redis):
    async def fake_init_redis():
        return fake_redis

    async def fake_close_redis():
        return None

    monkeypatch.setattr(tasks_internal, "AsyncSessionWorker", session_factory)
    monkeypatch.setattr(tasks_internal, "init_redis", fake_init_redis)
    monkeypatch.setattr(tasks_internal, "close_redis", fake_close_redis)
    return fake_redis


class TestPlacementWorker:

    async def test_order_in_flight_elsewhere_is_left_alone(self, worker, world, create_order_factory):
        order = await create_order_factory(status=OrderStatus.SUBMITTED, confirmation_number="ABC123")

        assert await place_order_async(order.id, placement_token="stale") is None
        assert credential_lock_key(world.credential.id) not in worker.store

    async def test_busy_credential_defers_the_job(self, worker, world, create_order_factory):
        order = await create_order_factory()
        await acquire_credential_lock(worker, world.credential.id)

        with pytest.raises(CredentialBusy):
            await place_order_async(order.id, placement_token="tok")
