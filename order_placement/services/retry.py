import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from order_placement.adapters.errors import AdapterTimeoutError
from order_placement.core.config import settings
from order_placement.core.exceptions import InvalidTransitionError, OrderNotClaimableError, OrderValidationError


@dataclass(frozen=True)
class RetryPolicy:
    """How a queued job is retried. Chosen by name when the job is enqueued."""

    name: str
    max_retries: int
    retry_on: Tuple[type, ...] = ()
    give_up_on: Tuple[type, ...] = ()
    countdown: Optional[int] = None

    def should_retry(self, exc: BaseException, retries: int) -> bool:
        if retries >= self.max_retries:
            return False
        if isinstance(exc, self.give_up_on):
            return False
        return isinstance(exc, self.retry_on)

    def countdown_for(self, retries: int) -> int:
        if self.countdown is not None:
            return self.countdown
        return 2 ** retries


PLACEMENT = RetryPolicy(
    name="placement",
    max_retries=settings.PLACEMENT_MAX_RETRIES,
    retry_on=(Exception,),
    give_up_on=(OrderNotClaimableError, InvalidTransitionError, OrderValidationError),
)

VERIFICATION = RetryPolicy(
    name="verification",
    max_retries=settings.VERIFICATION_MAX_RETRIES,
    retry_on=(AdapterTimeoutError, asyncio.TimeoutError),
    countdown=10,
)

NO_RETRY = RetryPolicy(name="none", max_retries=0)

POLICIES: Dict[str, RetryPolicy] = {p.name: p for p in (PLACEMENT, VERIFICATION, NO_RETRY)}


def get_policy(name: str) -> RetryPolicy:
    try:
        return POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown retry policy: {name}") from None
