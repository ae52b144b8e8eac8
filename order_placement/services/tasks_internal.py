import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from order_placement.core.config import settings
import order_placement.db.base  # noqa: F401
from order_placement.core.enums import ChallengeStatus, OrderStatus
from order_placement.core.exceptions import OrderNotClaimableError
from order_placement.core.redis import close_redis, credential_lock, init_redis
from order_placement.models.two_factor_challenge import TwoFactorChallenge
from order_placement.services import price_refresh, price_verification
from order_placement.services.credentials import credential_id_for_order, refresh_session
from order_placement.services.message_bus import RedisMessageBus
from order_placement.services.notifications import WebhookNotifier
from order_placement.services.placement import PlacementContext, PlacementOptions, PlacementOrchestrator
from order_placement.services.two_factor import TwoFactorChallengeManager

logger = logging.getLogger(__name__)

# Every task runs in its own event loop, so connections are never pooled across runs
engine_worker = create_async_engine(settings.DATABASE_URL, future=True, echo=False, poolclass=NullPool)
AsyncSessionWorker = async_sessionmaker(engine_worker, class_=AsyncSession, expire_on_commit=False)


def _dispatcher():
    from order_placement.services.tasks import dispatcher
    return dispatcher


async def place_order_async(
    order_id: int,
    placement_token: Optional[str] = None,
    reserved: bool = True,
    accept_price_changes: bool = False,
    skip_warnings: bool = False,
    resume_checkout: bool = False,
):
    redis = await init_redis()
    try:
        async with AsyncSessionWorker() as db:
            credential_id = await credential_id_for_order(db, order_id)
            bus = RedisMessageBus(redis)
            context = PlacementContext(
                db=db,
                bus=bus,
                notifier=WebhookNotifier(),
                challenges=TwoFactorChallengeManager(db, bus, _dispatcher()),
            )
            options = PlacementOptions(
                accept_price_changes=accept_price_changes,
                skip_warnings=skip_warnings,
                resume_checkout=resume_checkout,
                placement_token=placement_token,
                reserved=reserved,
            )
            async with credential_lock(redis, credential_id):
                try:
                    outcome = await PlacementOrchestrator(context).place(order_id, options)
                except OrderNotClaimableError as e:
                    logger.info(f"[OrderPlacement] Order {order_id} in flight elsewhere ({e.status}), nothing to do")
                    return None
            logger.info(f"[OrderPlacement] Order {order_id} finished as {outcome.status}")
            return outcome
    finally:
        await close_redis()


async def notify_order_failed_async(order_id: int):
    """Tell the user once placement has given up on an order."""
    async with AsyncSessionWorker() as db:
        order = await price_verification.load_order(db, order_id)
        if order is None or order.status != OrderStatus.FAILED:
            return
        await WebhookNotifier().order_failed(order)


async def verify_prices_async(order_id: int):
    redis = await init_redis()
    try:
        async with AsyncSessionWorker() as db:
            credential_id = await credential_id_for_order(db, order_id)
            challenges = TwoFactorChallengeManager(db, RedisMessageBus(redis), _dispatcher())
            async with credential_lock(redis, credential_id):
                return await price_verification.verify_order(db, order_id, challenges=challenges)
    finally:
        await close_redis()


async def verify_batch_async(order_ids: List[int]):
    redis = await init_redis()
    try:
        outcomes = await price_verification.verify_batch(AsyncSessionWorker, order_ids, redis=redis)
    finally:
        await close_redis()
    logger.info(f"[PriceVerification] Batch of {len(order_ids)} finished, {len(outcomes)} outcome(s)")
    return outcomes


async def refresh_session_async(credential_id: int, order_id: Optional[int] = None):
    redis = await init_redis()
    try:
        async with AsyncSessionWorker() as db:
            challenges = TwoFactorChallengeManager(db, RedisMessageBus(redis), _dispatcher())
            async with credential_lock(redis, credential_id):
                return await refresh_session(
                    db, credential_id, challenges=challenges, dispatcher=_dispatcher(), order_id=order_id
                )
    except Exception as e:
        logger.error(f"Session refresh failed for credential {credential_id}: {e}")
        return False
    finally:
        await close_redis()


async def refresh_prices_async(user_id: int, supplier_id: Optional[int] = None):
    redis = await init_redis()
    try:
        bus = RedisMessageBus(redis)
        return await price_refresh.refresh_prices(
            AsyncSessionWorker,
            user_id,
            supplier_id=supplier_id,
            redis=redis,
            challenge_manager_factory=lambda db: TwoFactorChallengeManager(db, bus, _dispatcher()),
        )
    finally:
        await close_redis()


async def notify_two_factor_async(challenge_id: int):
    async with AsyncSessionWorker() as db:
        res = await db.execute(select(TwoFactorChallenge).where(TwoFactorChallenge.id == challenge_id))
        challenge = res.scalars().first()
        if challenge is None or challenge.status != ChallengeStatus.PENDING:
            return False
        return await WebhookNotifier().two_factor_code_required(challenge)


async def expire_challenges_async() -> int:
    async with AsyncSessionWorker() as db:
        # Nothing is published and nothing is dispatched from here
        manager = TwoFactorChallengeManager(db, bus=None, dispatcher=None)
        return await manager.expire_stale()
