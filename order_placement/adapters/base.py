"""Capability contract for supplier adapters and the single boundary that
turns adapter exceptions into tagged results.

Adapters are browser-automation collaborators living outside this package.
Every capability is optional: the base class raises ``NotImplementedError``
and callers treat that as "skip this check".
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, List, Optional

from order_placement.adapters import errors
from order_placement.core.config import settings
from order_placement.core.metrics import adapter_call_duration

logger = logging.getLogger(__name__)


class SupplierAdapter:
    def __init__(self, credential):
        self.credential = credential

    async def login(self) -> bool:
        raise NotImplementedError("login")

    async def soft_refresh(self) -> bool:
        raise NotImplementedError("soft_refresh")

    async def add_to_cart(self, items: List[dict], delivery_date: Optional[date] = None) -> Any:
        raise NotImplementedError("add_to_cart")

    async def checkout(self) -> dict:
        raise NotImplementedError("checkout")

    async def check_stock(self, sku: str) -> dict:
        raise NotImplementedError("check_stock")

    async def get_product_info(self, sku: str) -> dict:
        raise NotImplementedError("get_product_info")

    async def get_order_minimum(self) -> dict:
        raise NotImplementedError("get_order_minimum")

    async def get_delivery_availability(self, delivery_date: date) -> dict:
        raise NotImplementedError("get_delivery_availability")

    async def scrape_prices(self, skus: List[str]) -> List[dict]:
        raise NotImplementedError("scrape_prices")

    async def verify_two_factor_code(self, session_token: str, code: str) -> dict:
        raise NotImplementedError("verify_two_factor_code")

    async def close(self) -> None:
        return None


class ErrorKind(str, Enum):
    NOT_IMPLEMENTED = "not_implemented"
    AUTHENTICATION = "authentication"
    SESSION_EXPIRED = "session_expired"
    ORDER_MINIMUM = "order_minimum"
    ITEM_UNAVAILABLE = "item_unavailable"
    PRICE_CHANGED = "price_changed"
    ACCOUNT_HOLD = "account_hold"
    CAPTCHA = "captcha"
    DELIVERY_UNAVAILABLE = "delivery_unavailable"
    MAINTENANCE = "maintenance"
    RATE_LIMITED = "rate_limited"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    TIMEOUT = "timeout"
    UNEXPECTED = "unexpected"

    def __str__(self):
        return self.value


_KINDS = (
    (errors.AuthenticationError, ErrorKind.AUTHENTICATION),
    (errors.SessionExpiredError, ErrorKind.SESSION_EXPIRED),
    (errors.OrderMinimumError, ErrorKind.ORDER_MINIMUM),
    (errors.ItemUnavailableError, ErrorKind.ITEM_UNAVAILABLE),
    (errors.PriceChangedError, ErrorKind.PRICE_CHANGED),
    (errors.AccountHoldError, ErrorKind.ACCOUNT_HOLD),
    (errors.CaptchaDetectedError, ErrorKind.CAPTCHA),
    (errors.DeliveryUnavailableError, ErrorKind.DELIVERY_UNAVAILABLE),
    (errors.MaintenanceError, ErrorKind.MAINTENANCE),
    (errors.RateLimitedError, ErrorKind.RATE_LIMITED),
    (errors.TwoFactorRequired, ErrorKind.TWO_FACTOR_REQUIRED),
    (errors.AdapterTimeoutError, ErrorKind.TIMEOUT),
    (NotImplementedError, ErrorKind.NOT_IMPLEMENTED),
)


def classify(exc: BaseException) -> ErrorKind:
    for exc_type, kind in _KINDS:
        if isinstance(exc, exc_type):
            return kind
    return ErrorKind.UNEXPECTED


@dataclass
class AdapterResult:
    value: Any = None
    kind: Optional[ErrorKind] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.kind is None

    @classmethod
    def success(cls, value: Any) -> "AdapterResult":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, error: BaseException) -> "AdapterResult":
        return cls(kind=kind, error=error)

    @property
    def message(self) -> str:
        return str(self.error) if self.error is not None else ""


async def invoke(
    adapter: SupplierAdapter,
    operation: str,
    *args,
    timeout: Optional[float] = None,
    retries: Optional[int] = None,
    **kwargs,
) -> AdapterResult:
    """Call one adapter capability, bounded by a timeout.

    Only timeouts are retried. Anything the adapter raises comes back as a
    failed ``AdapterResult`` tagged with its ``ErrorKind``.
    """
    method = getattr(adapter, operation, None)
    if method is None:
        return AdapterResult.failure(ErrorKind.NOT_IMPLEMENTED, NotImplementedError(operation))

    timeout = settings.ADAPTER_CALL_TIMEOUT if timeout is None else timeout
    retries = settings.ADAPTER_TIMEOUT_RETRIES if retries is None else retries
    last_error: Optional[BaseException] = None

    for attempt in range(1, retries + 2):
        start_time = time.time()
        try:
            value = await asyncio.wait_for(method(*args, **kwargs), timeout=timeout)
            adapter_call_duration.labels(operation=operation, outcome="ok").observe(time.time() - start_time)
            return AdapterResult.success(value)
        except (asyncio.TimeoutError, errors.AdapterTimeoutError) as exc:
            adapter_call_duration.labels(operation=operation, outcome="timeout").observe(time.time() - start_time)
            last_error = exc if isinstance(exc, errors.AdapterTimeoutError) else errors.AdapterTimeoutError(
                f"{operation} timed out after {timeout}s"
            )
            logger.warning(f"[Adapter] {operation} timed out (attempt {attempt}/{retries + 1})")
            if attempt <= retries:
                await asyncio.sleep(0.5 * attempt)
        except Exception as exc:
            kind = classify(exc)
            adapter_call_duration.labels(operation=operation, outcome=str(kind)).observe(time.time() - start_time)
            if kind == ErrorKind.UNEXPECTED:
                logger.error(f"[Adapter] {operation} raised {exc.__class__.__name__}: {exc}", exc_info=True)
            return AdapterResult.failure(kind, exc)

    return AdapterResult.failure(ErrorKind.TIMEOUT, last_error)
