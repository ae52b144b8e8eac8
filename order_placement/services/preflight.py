"""Live checks against the supplier immediately before checkout.

Unlike the validation engine this talks to the adapter, so every check is
optional: a capability the adapter does not implement is skipped, and a
lookup that errors falls back to cached data instead of blocking.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from order_placement.adapters.base import ErrorKind, SupplierAdapter, invoke
from order_placement.adapters.errors import TwoFactorRequired
from order_placement.models.order import Order, OrderItem
from order_placement.models.supplier_credential import SupplierCredential
from order_placement.utils.money import to_money, format_currency, ZERO
from order_placement.utils.timeutils import utcnow, as_utc

logger = logging.getLogger(__name__)


class PreflightFailure(str, Enum):
    CREDENTIALS = "credentials"
    SESSION = "session"
    TWO_FACTOR = "two_factor"
    STOCK = "stock"
    PRICE_CHANGED = "price_changed"
    ORDER_MINIMUM = "order_minimum"
    DELIVERY = "delivery"

    def __str__(self):
        return self.value


@dataclass
class PreflightResult:
    proceed: bool = True
    failure: Optional[PreflightFailure] = None
    errors: List[dict] = field(default_factory=list)
    warnings: List[dict] = field(default_factory=list)
    price_changes: List[dict] = field(default_factory=list)
    two_factor: Optional[TwoFactorRequired] = None

    def fail(self, failure: PreflightFailure, message: str, item: Optional[OrderItem] = None, **details) -> None:
        entry = {"type": failure, "message": message, **details}
        if item is not None:
            entry["item_id"] = item.id
        self.errors.append(entry)
        if self.failure is None:
            self.failure = failure
        self.proceed = False

    def warn(self, kind: str, message: str, item: Optional[OrderItem] = None) -> None:
        entry = {"type": kind, "message": message}
        if item is not None:
            entry["item_id"] = item.id
        self.warnings.append(entry)

    @property
    def message(self) -> str:
        return "; ".join(e["message"] for e in self.errors)

    @property
    def price_change_total(self) -> Decimal:
        return to_money(sum((c["difference"] * c["quantity"] for c in self.price_changes), ZERO))


class PreflightVerifier:
    def __init__(self, adapter: SupplierAdapter, now: Optional[datetime] = None):
        self.adapter = adapter
        self.now = now

    async def verify(
        self,
        order: Order,
        credential: Optional[SupplierCredential],
        accept_price_changes: bool = False,
        delivery_date: Optional[date] = None,
    ) -> PreflightResult:
        now = self.now or utcnow()
        supplier = order.supplier
        result = PreflightResult()
        logger.info(f"[PreFlight] Verifying order {order.id} with {supplier.name}")

        if credential is None:
            result.fail(PreflightFailure.CREDENTIALS, f"No credentials found for {supplier.name}")
            return result
        if not credential.active:
            result.fail(
                PreflightFailure.CREDENTIALS,
                f"Credentials for {supplier.name} are not active (status: {credential.status})",
            )
            return result

        if not await self._establish_session(order, credential, result, now):
            return result

        await self._check_stock(order, result)
        if result.errors:
            return result

        await self._check_prices(order, result, accept_price_changes, now)
        if result.errors:
            return result

        await self._check_order_minimum(order, result)
        if result.errors:
            return result

        await self._check_delivery(order, result, delivery_date or order.delivery_date or (now.date() + timedelta(days=1)), now)
        if result.errors:
            return result

        if result.price_changes and not accept_price_changes and not order.within_price_threshold(result.price_change_total):
            result.fail(
                PreflightFailure.PRICE_CHANGED,
                f"{len(result.price_changes)} item(s) changed price by "
                f"{format_currency(result.price_change_total)} in total. Review changes before submitting.",
                price_change_amount=result.price_change_total,
            )
        return result

    async def _establish_session(
        self, order: Order, credential: SupplierCredential, result: PreflightResult, now: datetime
    ) -> bool:
        supplier = order.supplier
        refreshed = await invoke(self.adapter, "soft_refresh")
        if refreshed.ok and refreshed.value:
            return True
        if refreshed.kind == ErrorKind.TWO_FACTOR_REQUIRED:
            return self._two_factor(result, refreshed.error)
        if not refreshed.ok and refreshed.kind not in (ErrorKind.NOT_IMPLEMENTED, ErrorKind.SESSION_EXPIRED):
            result.fail(PreflightFailure.SESSION, f"Could not establish connection to {supplier.name}: {refreshed.message}")
            return False

        logger.info(f"[PreFlight] Soft refresh unavailable for {supplier.name}, logging in")
        logged_in = await invoke(self.adapter, "login")
        if logged_in.kind == ErrorKind.TWO_FACTOR_REQUIRED:
            return self._two_factor(result, logged_in.error)
        if not logged_in.ok:
            result.fail(PreflightFailure.SESSION, f"Failed to connect to {supplier.name}: {logged_in.message}")
            return False
        if logged_in.value is False:
            result.fail(
                PreflightFailure.SESSION,
                f"Could not establish connection to {supplier.name}. Session may have expired.",
            )
            return False
        credential.mark_active(now)
        return True

    @staticmethod
    def _two_factor(result: PreflightResult, signal: TwoFactorRequired) -> bool:
        result.two_factor = signal
        result.fail(
            PreflightFailure.TWO_FACTOR,
            "2FA required to validate order. Please complete authentication first.",
        )
        return False

    def _session_lost(self, order: Order, result: PreflightResult, call) -> bool:
        """Stop the checks when a lookup finds the session gone."""
        if call.kind == ErrorKind.TWO_FACTOR_REQUIRED:
            self._two_factor(result, call.error)
            return True
        if call.kind == ErrorKind.SESSION_EXPIRED:
            result.fail(
                PreflightFailure.SESSION,
                f"Session with {order.supplier.name} expired during pre-flight checks. Please try again.",
            )
            return True
        return False

    async def _check_stock(self, order: Order, result: PreflightResult) -> None:
        for item in order.items:
            product = item.supplier_product
            if product is None:
                continue
            stock = await invoke(self.adapter, "check_stock", product.supplier_sku)
            if self._session_lost(order, result, stock):
                return
            if not stock.ok:
                if stock.kind != ErrorKind.NOT_IMPLEMENTED:
                    logger.warning(f"[PreFlight] Stock check failed for {product.supplier_sku}: {stock.message}")
                if product.out_of_stock:
                    item.mark_failed("Out of stock")
                    result.fail(PreflightFailure.STOCK, f"{product.supplier_name} is out of stock (cached data)", item)
                continue

            info = stock.value or {}
            available = info.get("available_quantity")
            if info.get("in_stock") is False:
                item.mark_failed(info.get("message") or "Out of stock")
                result.fail(PreflightFailure.STOCK, f"{product.supplier_name} is out of stock", item)
            elif available is not None and Decimal(str(available)) < item.quantity:
                item.mark_failed(f"Only {available} available")
                result.fail(
                    PreflightFailure.STOCK,
                    f"{product.supplier_name} has insufficient stock. "
                    f"Available: {available}, Requested: {int(item.quantity)}",
                    item,
                )

    async def _check_prices(
        self, order: Order, result: PreflightResult, accept_price_changes: bool, now: datetime
    ) -> None:
        for item in order.items:
            product = item.supplier_product
            if product is None:
                continue
            info = await invoke(self.adapter, "get_product_info", product.supplier_sku)
            if self._session_lost(order, result, info):
                return
            if info.kind == ErrorKind.NOT_IMPLEMENTED:
                logger.debug(f"[PreFlight] Price checks unsupported for {order.supplier.name}")
                return
            if not info.ok:
                logger.warning(f"[PreFlight] Price check failed for {product.supplier_sku}: {info.message}")
                continue

            live_price = (info.value or {}).get("price")
            if live_price is None:
                continue
            live_price = to_money(live_price)
            old_price = to_money(item.unit_price)
            product.update_price(live_price, in_stock=(info.value or {}).get("in_stock") is not False, now=now)
            if live_price == old_price:
                continue

            result.price_changes.append({
                "item_id": item.id,
                "product_name": product.supplier_name,
                "old_price": old_price,
                "new_price": live_price,
                "difference": live_price - old_price,
                "quantity": item.quantity,
            })
            result.warn(
                "price_changed",
                f"{product.supplier_name} price changed from {format_currency(old_price)} to {format_currency(live_price)}",
                item,
            )
            if accept_price_changes:
                order.set_item_price(item, live_price)

    async def _check_order_minimum(self, order: Order, result: PreflightResult) -> None:
        info = await invoke(self.adapter, "get_order_minimum")
        if not info.ok:
            if info.kind != ErrorKind.NOT_IMPLEMENTED:
                logger.warning(f"[PreFlight] Order minimum check failed: {info.message}")
            return
        minimum = (info.value or {}).get("minimum")
        if minimum is None:
            return
        minimum = to_money(minimum)
        total = order.calculated_subtotal()
        if total < minimum:
            difference = minimum - total
            result.fail(
                PreflightFailure.ORDER_MINIMUM,
                f"Order minimum is {format_currency(minimum)}. Current total: {format_currency(total)}. "
                f"Need {format_currency(difference)} more.",
                minimum=minimum,
                current_total=total,
                difference=difference,
            )

    async def _check_delivery(self, order: Order, result: PreflightResult, delivery_date: date, now: datetime) -> None:
        info = await invoke(self.adapter, "get_delivery_availability", delivery_date)
        if not info.ok:
            if info.kind != ErrorKind.NOT_IMPLEMENTED:
                logger.warning(f"[PreFlight] Delivery check failed: {info.message}")
            return
        delivery = info.value or {}
        formatted_date = delivery_date.strftime("%A, %B %d")
        if not delivery.get("available", True):
            result.fail(
                PreflightFailure.DELIVERY,
                f"Delivery is not available for {formatted_date}. "
                f"{delivery.get('message') or 'Please select a different date.'}",
            )
            return
        cutoff = delivery.get("cutoff_time")
        if isinstance(cutoff, datetime) and now > as_utc(cutoff):
            result.fail(
                PreflightFailure.DELIVERY,
                f"Order cutoff time ({cutoff.strftime('%I:%M %p')}) has passed for {formatted_date}",
            )
