import asyncio
import logging
import uuid
from typing import List, Optional

from celery import Celery
from order_placement.core.config import settings
from order_placement.core.exceptions import CredentialBusy
from order_placement.core.metrics import credential_lock_contention
from order_placement.adapters.errors import AdapterTimeoutError
from order_placement.services.retry import get_policy

logger = logging.getLogger(__name__)

celery_app = Celery(
    "order_placement",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_BACKEND,
)
celery_app.conf.task_routes = {
    "order_placement.services.tasks.place_order": {"queue": "critical"},
    "order_placement.services.tasks.notify_two_factor": {"queue": "critical"},
    "order_placement.services.tasks.verify_prices": {"queue": "price_verification"},
    "order_placement.services.tasks.verify_batch": {"queue": "price_verification"},
    "order_placement.services.tasks.refresh_prices": {"queue": "scraping"},
}
celery_app.conf.task_acks_late = True
celery_app.conf.beat_schedule = {
    "expire-two-factor-challenges": {
        "task": "order_placement.services.tasks.expire_challenges",
        "schedule": 60.0,
    },
}


@celery_app.task(bind=True, max_retries=settings.PLACEMENT_MAX_RETRIES)
def place_order(
    self,
    order_id: int,
    placement_token: Optional[str] = None,
    reserved: bool = True,
    accept_price_changes: bool = False,
    skip_warnings: bool = False,
    resume_checkout: bool = False,
    retry_policy: str = "placement",
):
    from order_placement.services.tasks_internal import place_order_async, notify_order_failed_async

    policy = get_policy(retry_policy)
    try:
        asyncio.run(place_order_async(
            order_id,
            placement_token=placement_token,
            reserved=reserved,
            accept_price_changes=accept_price_changes,
            skip_warnings=skip_warnings,
            resume_checkout=resume_checkout,
        ))
    except CredentialBusy as e:
        credential_lock_contention.inc()
        raise self.retry(exc=e, countdown=settings.CREDENTIAL_LOCK_RETRY_DELAY, max_retries=self.request.retries + 1)
    except Exception as e:
        if policy.should_retry(e, self.request.retries):
            raise self.retry(exc=e, countdown=policy.countdown_for(self.request.retries))
        if not isinstance(e, policy.give_up_on):
            asyncio.run(notify_order_failed_async(order_id))
        raise


@celery_app.task(bind=True, max_retries=settings.VERIFICATION_MAX_RETRIES)
def verify_prices(self, order_id: int, retry_policy: str = "verification"):
    from order_placement.services.tasks_internal import verify_prices_async

    policy = get_policy(retry_policy)
    try:
        outcome = asyncio.run(verify_prices_async(order_id))
    except CredentialBusy as e:
        credential_lock_contention.inc()
        raise self.retry(exc=e, countdown=settings.CREDENTIAL_LOCK_RETRY_DELAY, max_retries=self.request.retries + 1)

    if outcome is not None and outcome.retryable:
        exc = AdapterTimeoutError(outcome.error)
        if policy.should_retry(exc, self.request.retries):
            raise self.retry(exc=exc, countdown=policy.countdown_for(self.request.retries))


@celery_app.task
def verify_batch(order_ids: List[int]):
    from order_placement.services.tasks_internal import verify_batch_async

    asyncio.run(verify_batch_async(order_ids))


@celery_app.task
def refresh_session(credential_id: int, order_id: Optional[int] = None):
    # No retries: a failed refresh must not spam the user with new codes
    from order_placement.services.tasks_internal import refresh_session_async

    asyncio.run(refresh_session_async(credential_id, order_id=order_id))


@celery_app.task
def refresh_prices(user_id: int, supplier_id: Optional[int] = None):
    from order_placement.services.tasks_internal import refresh_prices_async

    asyncio.run(refresh_prices_async(user_id, supplier_id=supplier_id))


@celery_app.task
def notify_two_factor(challenge_id: int):
    from order_placement.services.tasks_internal import notify_two_factor_async

    asyncio.run(notify_two_factor_async(challenge_id))


@celery_app.task
def expire_challenges():
    from order_placement.services.tasks_internal import expire_challenges_async

    return asyncio.run(expire_challenges_async())


class CeleryDispatcher:
    """Enqueues follow-up jobs. Passed to services that need to start work later."""

    def place_order(
        self,
        order_id: int,
        placement_token: Optional[str] = None,
        accept_price_changes: bool = False,
        skip_warnings: bool = False,
        resume_checkout: bool = False,
        retry_policy: str = "placement",
    ) -> None:
        # Unreserved jobs still carry a token so their own retries can re-claim
        reserved = placement_token is not None
        place_order.apply_async(kwargs={
            "order_id": order_id,
            "placement_token": placement_token or uuid.uuid4().hex,
            "reserved": reserved,
            "accept_price_changes": accept_price_changes,
            "skip_warnings": skip_warnings,
            "resume_checkout": resume_checkout,
            "retry_policy": retry_policy,
        })
        logger.info(f"Queued placement for order {order_id}")

    def verify_prices(self, order_id: int, retry_policy: str = "verification") -> None:
        verify_prices.apply_async(kwargs={"order_id": order_id, "retry_policy": retry_policy})

    def verify_batch(self, order_ids: List[int]) -> None:
        verify_batch.apply_async(kwargs={"order_ids": list(order_ids)})

    def refresh_session(self, credential_id: int, order_id: Optional[int] = None) -> None:
        refresh_session.apply_async(kwargs={"credential_id": credential_id, "order_id": order_id})

    def refresh_prices(self, user_id: int, supplier_id: Optional[int] = None) -> None:
        refresh_prices.apply_async(kwargs={"user_id": user_id, "supplier_id": supplier_id})

    def notify_two_factor(self, challenge_id: int) -> None:
        notify_two_factor.apply_async(kwargs={"challenge_id": challenge_id})


dispatcher = CeleryDispatcher()


def get_dispatcher() -> CeleryDispatcher:
    return dispatcher
