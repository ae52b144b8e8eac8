from sqlalchemy import select

from conftest import FakeAdapter
from order_placement.adapters.errors import AuthenticationError, TwoFactorRequired
from order_placement.core.enums import ChallengeRequestType, CredentialStatus, OrderStatus
from order_placement.models.two_factor_challenge import TwoFactorChallenge
from order_placement.services.credentials import refresh_session, usable_credentials


class TestUsableCredentials:

    async def test_failed_login_only_when_asked(self, db, world):
        world.credential.status = CredentialStatus.FAILED
        await db.commit()

        assert await usable_credentials(db, world.user.id, world.supplier.id) == []
        assert await usable_credentials(db, world.user.id, world.supplier.id, include_failed=True) == [world.credential]

    async def test_account_on_hold_is_never_usable(self, db, world):
        world.credential.account_on_hold = True
        await db.commit()

        assert await usable_credentials(db, world.user.id, world.supplier.id, include_failed=True) == []


class TestRefreshSession:

    async def test_soft_refresh_restores_and_requeues_waiting_order(self, db, world, dispatcher, create_order_factory):
        world.credential.status = CredentialStatus.EXPIRED
        order = await create_order_factory(status=OrderStatus.PENDING_MANUAL)
        adapter = FakeAdapter(soft_refresh=True)

        ok = await refresh_session(
            db, world.credential.id, adapter_factory=lambda c: adapter, dispatcher=dispatcher, order_id=order.id
        )

        assert ok
        assert world.credential.status == CredentialStatus.ACTIVE
        assert adapter.called("login") == []
        assert adapter.called("close") == [()]
        assert dispatcher.named("place_order") == [{"order_id": order.id}]

    async def test_order_no_longer_waiting_is_left_alone(self, db, world, dispatcher, create_order_factory):
        order = await create_order_factory(status=OrderStatus.CANCELLED)

        await refresh_session(
            db, world.credential.id, adapter_factory=lambda c: FakeAdapter(soft_refresh=True),
            dispatcher=dispatcher, order_id=order.id,
        )

        assert dispatcher.calls == []

    async def test_falls_back_to_login(self, db, world):
        adapter = FakeAdapter(soft_refresh=False, login=True)

        assert await refresh_session(db, world.credential.id, adapter_factory=lambda c: adapter)
        assert len(adapter.called("login")) == 1

    async def test_login_failure_marks_credential(self, db, world):
        adapter = FakeAdapter(login=AuthenticationError("Invalid password"))

        assert not await refresh_session(db, world.credential.id, adapter_factory=lambda c: adapter)
        assert world.credential.status == CredentialStatus.FAILED
        assert world.credential.last_error == "Invalid password"

    async def test_another_code_opens_login_challenge(self, db, world, challenge_manager, create_order_factory):
        order = await create_order_factory(status=OrderStatus.PENDING_MANUAL)
        adapter = FakeAdapter(soft_refresh=False, login=TwoFactorRequired(session_token="again"))

        ok = await refresh_session(
            db, world.credential.id, adapter_factory=lambda c: adapter,
            challenges=challenge_manager(adapter), order_id=order.id,
        )

        assert not ok
        challenge = (await db.execute(select(TwoFactorChallenge))).scalars().one()
        assert challenge.request_type == ChallengeRequestType.LOGIN
        assert challenge.order_id == order.id
        assert world.credential.status == CredentialStatus.ACTIVE

    async def test_unknown_credential(self, db):
        assert not await refresh_session(db, 404, adapter_factory=lambda c: FakeAdapter())
