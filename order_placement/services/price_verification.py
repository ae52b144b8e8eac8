"""Review-time price verification.

Reads live prices for one order and records verified / price_changed /
failed / skipped. It never touches placement code.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from functools import partial
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from order_placement.adapters.base import ErrorKind, AdapterResult, invoke
from order_placement.adapters.registry import build_adapter
from order_placement.core.config import settings
from order_placement.core.enums import ChallengeRequestType, OrderStatus, VerificationStatus
from order_placement.core.exceptions import CredentialBusy
from order_placement.core.metrics import verification_outcomes
from order_placement.core.redis import credential_lock
from order_placement.models.order import Order
from order_placement.services.credentials import credential_id_for_order, usable_credentials
from order_placement.utils.money import to_money, ZERO
from order_placement.utils.timeutils import utcnow, as_utc, time_ago_in_words

logger = logging.getLogger(__name__)


@dataclass
class VerificationOutcome:
    order_id: int
    status: VerificationStatus
    verified_total: Optional[Decimal] = None
    price_change_amount: Decimal = ZERO
    results: List[dict] = field(default_factory=list)
    error: Optional[str] = None
    skip_reason: Optional[str] = None
    retryable: bool = False

    @property
    def success(self) -> bool:
        return self.status != VerificationStatus.FAILED

    @property
    def has_price_changes(self) -> bool:
        return self.status == VerificationStatus.PRICE_CHANGED


class PriceVerifier:
    def __init__(
        self,
        db: AsyncSession,
        adapter_factory: Callable = build_adapter,
        challenges=None,
        now: Optional[datetime] = None,
    ):
        self.db = db
        self.adapter_factory = adapter_factory
        self.challenges = challenges
        self.now = now

    async def verify(self, order: Order) -> VerificationOutcome:
        now = self.now or utcnow()
        supplier = order.supplier
        logger.info(f"[PriceVerification] Starting verification for order {order.id} ({supplier.name})")

        if self._prices_fresh(order, now):
            return await self._use_cached_prices(order, now)

        credentials = await usable_credentials(
            self.db, order.user_id, order.supplier_id, include_failed=supplier.password_auth
        )
        if not credentials:
            if supplier.no_password_required:
                return await self._skip(order, now, f"{supplier.name} requires re-login. Using last imported prices.")
            return await self._fail(
                order,
                f"No saved login found for {supplier.name}. Please add your credentials in Supplier Settings.",
            )
        credential = credentials[0]

        skus = [item.supplier_sku for item in order.items if item.supplier_sku]
        if not skus:
            return await self._fail(order, "No products to verify for this order.")

        adapter = self.adapter_factory(credential)
        try:
            if supplier.no_password_required and not credential.session_valid(now):
                logger.info(f"[PriceVerification] {supplier.name} local session expired, trying soft refresh")
                refreshed = await invoke(adapter, "soft_refresh")
                if not (refreshed.ok and refreshed.value):
                    return await self._skip(order, now, f"{supplier.name} session expired. Using last imported prices.")
                credential.mark_active(now)

            scraped = await invoke(adapter, "scrape_prices", skus)
            if not scraped.ok:
                return await self._handle_error(order, credential, scraped, now)
            return await self._compare(order, scraped.value or [], now)
        finally:
            await invoke(adapter, "close")

    @staticmethod
    def _prices_fresh(order: Order, now: datetime) -> bool:
        stamps = [
            item.supplier_product.price_updated_at
            for item in order.items
            if item.supplier_product is not None
        ]
        if not stamps or any(s is None for s in stamps):
            return False
        oldest = min(as_utc(s) for s in stamps)
        return oldest > now - timedelta(minutes=settings.PRICE_FRESHNESS_MINUTES)

    @staticmethod
    def _latest_price_update(order: Order) -> Optional[datetime]:
        stamps = [
            as_utc(item.supplier_product.price_updated_at)
            for item in order.items
            if item.supplier_product is not None and item.supplier_product.price_updated_at is not None
        ]
        return max(stamps) if stamps else None

    async def _use_cached_prices(self, order: Order, now: datetime) -> VerificationOutcome:
        last_update = self._latest_price_update(order)
        ago = time_ago_in_words(last_update, now) if last_update else "recently"
        logger.info(
            f"[PriceVerification] Order {order.id}: all prices fresh (updated {ago}), skipping live verification"
        )
        for item in order.items:
            item.verified_price = item.unit_price
        verified_total = order.calculated_subtotal()
        return await self._finish(order, partial(order.mark_verified, verified_total, now), VerificationOutcome(
            order_id=order.id,
            status=VerificationStatus.VERIFIED,
            verified_total=verified_total,
        ))

    async def _handle_error(self, order: Order, credential, result: AdapterResult, now: datetime) -> VerificationOutcome:
        name = order.supplier.name
        challenge_only = order.supplier.no_password_required
        kind = result.kind
        logger.error(f"[PriceVerification] {kind} for {name}: {result.message}")

        if kind == ErrorKind.NOT_IMPLEMENTED:
            return await self._skip(order, now)
        if kind == ErrorKind.CAPTCHA:
            return await self._skip(order, now, f"{name} requires manual verification. Using last imported prices.")
        if kind == ErrorKind.MAINTENANCE:
            return await self._skip(order, now, f"{name} is under maintenance. Using last imported prices.")
        if kind == ErrorKind.AUTHENTICATION:
            if challenge_only:
                return await self._skip(order, now, f"Could not connect to {name}. Using last imported prices.")
            return await self._fail(order, f"Could not log in to {name}. Please check your credentials in Supplier Settings.")
        if kind == ErrorKind.SESSION_EXPIRED:
            if challenge_only:
                return await self._skip(order, now, f"{name} session expired. Using last imported prices.")
            return await self._fail(order, f"Connection to {name} expired. Please retry.")
        if kind == ErrorKind.TWO_FACTOR_REQUIRED:
            if self.challenges is not None:
                await self.challenges.open_challenge(result.error, credential, ChallengeRequestType.PRICE_REFRESH, order)
            if challenge_only:
                return await self._skip(order, now, f"{name} needs a verification code. Using last imported prices.")
            return await self._fail(order, f"{name} needs a verification code before prices can be checked.")
        if kind == ErrorKind.RATE_LIMITED:
            return await self._fail(order, f"{name} is busy. Please retry in a few minutes.")
        if kind == ErrorKind.TIMEOUT:
            return await self._fail(order, f"{name} took too long to respond. Please retry.", retryable=True)
        logger.error(f"[PriceVerification] Unexpected error for order {order.id}", exc_info=result.error)
        return await self._fail(order, f"Could not verify prices for {name}. Please retry or skip.")

    async def _compare(self, order: Order, scraped: List[dict], now: datetime) -> VerificationOutcome:
        prices: Dict[str, dict] = {}
        for row in scraped:
            prices[row.get("supplier_sku")] = {
                "price": row.get("current_price"),
                "in_stock": row.get("in_stock") is not False,
            }

        results = []
        verified_total = ZERO
        for item in order.items:
            sku = item.supplier_sku
            live = prices.get(sku)
            expected = to_money(item.unit_price)
            if live and live["price"] is not None:
                verified_price = to_money(live["price"])
                item.verified_price = verified_price
                product = item.supplier_product
                if product.current_price is None or to_money(product.current_price) != verified_price:
                    product.update_price(verified_price, in_stock=live["in_stock"], now=now)
                line = to_money(verified_price * item.quantity)
                results.append({
                    "item_id": item.id,
                    "sku": sku,
                    "name": item.name,
                    "expected_price": expected,
                    "verified_price": verified_price,
                    "difference": verified_price - expected,
                    "line_difference": line - to_money(item.line_total),
                    "in_stock": live["in_stock"],
                })
            else:
                line = to_money(item.line_total)
                results.append({
                    "item_id": item.id,
                    "sku": sku,
                    "name": item.name,
                    "expected_price": expected,
                    "verified_price": None,
                    "difference": ZERO,
                    "line_difference": ZERO,
                    "in_stock": True,
                    "unverified": True,
                })
            verified_total += line

        subtotal = order.calculated_subtotal()
        total_change = to_money(verified_total - subtotal)
        has_changes = any(r["difference"] != 0 and not r.get("unverified") for r in results)

        if has_changes and not order.within_price_threshold(total_change):
            logger.info(
                f"[PriceVerification] Order {order.id}: price changes detected. "
                f"Old total: ${subtotal}, new total: ${verified_total}, change: ${total_change}"
            )
            status = VerificationStatus.PRICE_CHANGED
            transition = partial(order.mark_price_changed, verified_total, total_change, now)
        else:
            logger.info(f"[PriceVerification] Order {order.id}: prices verified. Total: ${verified_total}")
            status = VerificationStatus.VERIFIED
            transition = partial(order.mark_verified, verified_total, now)

        return await self._finish(order, transition, VerificationOutcome(
            order_id=order.id,
            status=status,
            verified_total=verified_total,
            price_change_amount=total_change if status == VerificationStatus.PRICE_CHANGED else ZERO,
            results=results,
        ))

    async def _skip(self, order: Order, now: datetime, reason: Optional[str] = None) -> VerificationOutcome:
        reason = reason or f"Price verification not available for {order.supplier.name}."
        last_update = self._latest_price_update(order)
        if last_update:
            reason = f"{reason} (prices updated {time_ago_in_words(last_update, now)})"
        logger.info(f"[PriceVerification] Order {order.id}: skipping, {reason}")
        cached_total = order.calculated_subtotal()
        transition = partial(order.skip_verification, reason, verified_total=cached_total)
        return await self._finish(order, transition, VerificationOutcome(
            order_id=order.id,
            status=VerificationStatus.SKIPPED,
            verified_total=cached_total,
            skip_reason=reason,
        ))

    async def _fail(self, order: Order, message: str, retryable: bool = False) -> VerificationOutcome:
        logger.error(f"[PriceVerification] Order {order.id}: {message}")
        return await self._finish(order, partial(order.mark_verification_failed, message), VerificationOutcome(
            order_id=order.id,
            status=VerificationStatus.FAILED,
            error=message,
            retryable=retryable,
        ))

    async def _finish(
        self, order: Order, transition: Callable[[], None], outcome: VerificationOutcome
    ) -> Optional[VerificationOutcome]:
        """Apply the result only if the order is still waiting on it.

        The row is locked and re-read first. A cancel or skip that landed
        while the supplier was being scraped wins, and the result is dropped.
        Refreshed catalog prices are kept either way.
        """
        if not await still_verifying(self.db, order.id):
            logger.info(f"[PriceVerification] Order {order.id} changed during verification, result discarded")
            await self.db.commit()
            return None
        transition()
        verification_outcomes.labels(status=str(outcome.status)).inc()
        await self.db.commit()
        return outcome


async def load_order(db: AsyncSession, order_id: int) -> Optional[Order]:
    res = await db.execute(select(Order).where(Order.id == order_id))
    return res.scalars().first()


async def still_verifying(db: AsyncSession, order_id: int) -> bool:
    status = await db.scalar(select(Order.status).where(Order.id == order_id).with_for_update())
    return status == OrderStatus.VERIFYING


async def verify_order(db: AsyncSession, order_id: int, **kwargs) -> Optional[VerificationOutcome]:
    """Verify one order if it is still waiting on verification."""
    order = await load_order(db, order_id)
    if order is None:
        return None
    if order.status != OrderStatus.VERIFYING:
        logger.info(f"[PriceVerification] Order {order_id} is {order.status}, skipping")
        return None
    return await PriceVerifier(db, **kwargs).verify(order)


async def verify_batch(
    session_factory: Callable,
    order_ids: List[int],
    branch_timeout: Optional[float] = None,
    total_budget: Optional[float] = None,
    redis=None,
    **kwargs,
) -> Dict[int, VerificationOutcome]:
    """Verify several orders concurrently, one session per branch.

    Orders that share a supplier login take turns, and with ``redis`` each
    branch also holds the credential lock so no other job drives that login
    meanwhile. A branch that overruns its own timeout or the shared budget,
    or finds the login busy, is abandoned and reported as failed; the
    others still complete.
    """
    branch_timeout = settings.VERIFICATION_BRANCH_TIMEOUT if branch_timeout is None else branch_timeout
    total_budget = settings.VERIFICATION_TOTAL_BUDGET if total_budget is None else total_budget
    turns: Dict[Optional[int], asyncio.Lock] = {}

    async def branch(order_id: int) -> Optional[VerificationOutcome]:
        async with session_factory() as db:
            credential_id = await credential_id_for_order(db, order_id)
            async with turns.setdefault(credential_id, asyncio.Lock()):
                async with credential_lock(redis, credential_id):
                    return await asyncio.wait_for(verify_order(db, order_id, **kwargs), timeout=branch_timeout)

    tasks = {asyncio.ensure_future(branch(order_id)): order_id for order_id in order_ids}
    if not tasks:
        return {}
    done, pending = await asyncio.wait(tasks.keys(), timeout=total_budget)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    outcomes: Dict[int, VerificationOutcome] = {}
    for task, order_id in tasks.items():
        error: Optional[str] = None
        if task in pending:
            error = "Price verification exceeded its time budget. Please retry."
        elif task.exception() is not None:
            exc = task.exception()
            if isinstance(exc, asyncio.TimeoutError):
                error = "Supplier took too long to respond. Please retry."
            elif isinstance(exc, CredentialBusy):
                error = "Your supplier login is in use by another job. Please retry."
            else:
                logger.error(f"[PriceVerification] Branch for order {order_id} crashed: {exc}", exc_info=exc)
                error = "Could not verify prices. Please retry or skip."
        else:
            outcome = task.result()
            if outcome is not None:
                outcomes[order_id] = outcome
            continue
        outcomes[order_id] = await _abandon(session_factory, order_id, error)
    return outcomes


async def _abandon(session_factory: Callable, order_id: int, message: str) -> VerificationOutcome:
    async with session_factory() as db:
        order = await load_order(db, order_id)
        if order is not None and await still_verifying(db, order_id):
            order.mark_verification_failed(message)
        await db.commit()
    logger.warning(f"[PriceVerification] Order {order_id} abandoned: {message}")
    verification_outcomes.labels(status=str(VerificationStatus.FAILED)).inc()
    return VerificationOutcome(order_id=order_id, status=VerificationStatus.FAILED, error=message, retryable=True)
