"""Per-order placement pipeline.

    claim -> validation -> pre-flight -> add_to_cart/checkout -> outcome

The claim is a single conditional UPDATE so two jobs can never run checkout
for the same order. Adapter failures arrive as tagged results and are
dispatched by ``ErrorKind``; only unexpected errors propagate to the queue.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, update, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from order_placement.adapters.base import AdapterResult, ErrorKind, SupplierAdapter, invoke
from order_placement.adapters.registry import build_adapter
from order_placement.core.enums import ChallengeRequestType, OrderStatus, ValidationType
from order_placement.core.exceptions import InvalidTransitionError, OrderNotClaimableError, OrderValidationError
from order_placement.core.metrics import placement_outcomes
from order_placement.models.order import Order, CANCELLABLE_STATUSES, SUBMITTABLE_STATUSES
from order_placement.models.supplier_credential import SupplierCredential
from order_placement.schemas.two_factor import StatusUpdateMessage
from order_placement.services.credentials import find_credential
from order_placement.services.message_bus import MessageBus
from order_placement.services.notifications import Notifier
from order_placement.services.preflight import PreflightFailure, PreflightResult, PreflightVerifier
from order_placement.services.two_factor import TwoFactorChallengeManager
from order_placement.services.validation import ValidationEngine
from order_placement.utils.money import format_currency, to_money
from order_placement.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PlacementOptions:
    accept_price_changes: bool = False
    skip_warnings: bool = False
    resume_checkout: bool = False
    placement_token: Optional[str] = None
    reserved: bool = True


@dataclass
class PlacementContext:
    db: AsyncSession
    bus: MessageBus
    notifier: Notifier
    challenges: TwoFactorChallengeManager
    adapter_factory: Callable = build_adapter
    now: Optional[datetime] = None


@dataclass
class PlacementOutcome:
    order_id: int
    status: OrderStatus
    error_type: Optional[str] = None
    message: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == OrderStatus.SUBMITTED


async def reserve_order(db: AsyncSession, order_id: int) -> str:
    """Move a submittable order to ``processing`` for a job that is about to be queued.

    Returns the placement token the job must present. Raises
    ``OrderNotClaimableError`` when the order is not in a submittable state.
    """
    token = uuid.uuid4().hex
    res = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status.in_(SUBMITTABLE_STATUSES))
        .values(status=OrderStatus.PROCESSING, placement_token=token, placement_started_at=None, error_message=None)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        await db.rollback()
        current = await db.scalar(select(Order.status).where(Order.id == order_id))
        raise OrderNotClaimableError(order_id, current)
    await db.commit()
    logger.info(f"[OrderPlacement] Order {order_id} reserved for placement")
    return token


async def cancel_order(db: AsyncSession, order_id: int) -> None:
    """Cancel an order that no job has started.

    Conditional like ``reserve_order``: if a job claimed the order after the
    caller loaded it, the cancel is refused rather than written over
    ``processing``.
    """
    res = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status.in_(CANCELLABLE_STATUSES))
        .values(status=OrderStatus.CANCELLED, placement_token=None, placement_started_at=None)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        await db.rollback()
        current = await db.scalar(select(Order.status).where(Order.id == order_id))
        raise InvalidTransitionError(order_id, current, "cancel")
    await db.commit()
    logger.info(f"[OrderPlacement] Order {order_id} cancelled")


async def claim_order(
    db: AsyncSession, order_id: int, token: Optional[str], now: datetime, reserved: bool = True
) -> str:
    """Take ownership of an order for this job.

    A reserved job may start the order its token reserved. Any job may
    re-enter an order its own earlier attempt left ``failed``. An unreserved
    job may also claim a submittable order directly. Anything else is in
    flight elsewhere.
    """
    if not token:
        token, reserved = uuid.uuid4().hex, False

    own_failure = and_(Order.placement_token == token, Order.status == OrderStatus.FAILED)
    if reserved:
        condition = or_(
            and_(
                Order.placement_token == token,
                Order.status == OrderStatus.PROCESSING,
                Order.placement_started_at.is_(None),
            ),
            own_failure,
        )
    else:
        condition = or_(Order.status.in_(SUBMITTABLE_STATUSES), own_failure)

    res = await db.execute(
        update(Order)
        .where(Order.id == order_id, condition)
        .values(
            status=OrderStatus.PROCESSING,
            placement_token=token,
            placement_started_at=now,
            error_message=None,
            confirmation_number=None,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        await db.rollback()
        current = await db.scalar(select(Order.status).where(Order.id == order_id))
        raise OrderNotClaimableError(order_id, current)
    await db.commit()
    return token


class PlacementOrchestrator:
    def __init__(self, context: PlacementContext):
        self.ctx = context
        self.db = context.db
        self._handlers: Dict[ErrorKind, Callable] = {
            ErrorKind.ORDER_MINIMUM: self._on_order_minimum,
            ErrorKind.ITEM_UNAVAILABLE: self._on_item_unavailable,
            ErrorKind.PRICE_CHANGED: self._on_price_changed,
            ErrorKind.ACCOUNT_HOLD: self._on_account_hold,
            ErrorKind.CAPTCHA: self._on_captcha,
            ErrorKind.DELIVERY_UNAVAILABLE: self._on_delivery_unavailable,
            ErrorKind.TWO_FACTOR_REQUIRED: self._on_two_factor,
            ErrorKind.NOT_IMPLEMENTED: self._on_not_implemented,
        }

    def _now(self) -> datetime:
        return self.ctx.now or utcnow()

    async def place(self, order_id: int, options: Optional[PlacementOptions] = None) -> PlacementOutcome:
        options = options or PlacementOptions()
        await claim_order(self.db, order_id, options.placement_token, self._now(), reserved=options.reserved)

        order = await self._load(order_id)
        logger.info(
            f"[OrderPlacement] Processing order {order.id} for {order.supplier.name}"
            f"{' (resuming checkout)' if options.resume_checkout else ''}"
        )
        try:
            return await self._run(order, options)
        except Exception as e:
            logger.error(f"[OrderPlacement] Order {order_id} failed: {e.__class__.__name__} - {e}", exc_info=True)
            await self.db.rollback()
            order = await self._load(order_id)
            if order.status == OrderStatus.PROCESSING:
                order.mark_failed(f"Order failed: {e}", retryable=True)
                await self._commit(order)
            raise

    async def _load(self, order_id: int) -> Order:
        res = await self.db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        return res.scalars().one()

    async def _run(self, order: Order, options: PlacementOptions) -> PlacementOutcome:
        credential = await find_credential(self.db, order.user_id, order.supplier_id)

        if not options.resume_checkout:
            engine = ValidationEngine(self.db, now=self._now())
            try:
                validation = await engine.validate(order, credential, blocking=True)
            except OrderValidationError as e:
                order.mark_failed(str(e))
                await self._commit(order)
                await self.ctx.notifier.order_failed(order)
                return self._outcome(order, "validation", str(e), errors=e.errors, warnings=e.warnings)

            if validation.warnings and not options.skip_warnings:
                messages = "; ".join(w["message"] for w in validation.warnings)
                order.mark_pending_review(messages, notes=f"Warnings: {messages}")
                await self._commit(order)
                price_warnings = validation.of_type(ValidationType.PRICE_CHANGED)
                if price_warnings:
                    await self.ctx.notifier.price_change_review(order, price_warnings[0]["details"]["changes"])
                return self._outcome(order, "warnings", messages, warnings=validation.warnings)

        if credential is None or not credential.active:
            order.mark_failed(f"No active credentials for {order.supplier.name}")
            await self._commit(order)
            await self.ctx.notifier.order_failed(order)
            return self._outcome(order, "no_credentials", order.error_message)

        if not order.supplier.checkout_enabled:
            reason = f"Automated checkout is disabled for {order.supplier.name}. Please place this order manually."
            order.mark_pending_manual(reason)
            await self._commit(order)
            await self.ctx.notifier.manual_intervention_required(order, reason, url=order.supplier.base_url)
            return self._outcome(order, "checkout_disabled", reason)

        adapter = self.ctx.adapter_factory(credential)
        try:
            if not options.resume_checkout:
                preflight = await PreflightVerifier(adapter, now=self._now()).verify(
                    order, credential, accept_price_changes=options.accept_price_changes
                )
                if not preflight.proceed:
                    return await self._on_preflight_failure(order, credential, preflight)
            return await self._checkout(order, credential, adapter, options)
        finally:
            await invoke(adapter, "close")

    async def _checkout(
        self, order: Order, credential: SupplierCredential, adapter: SupplierAdapter, options: PlacementOptions
    ) -> PlacementOutcome:
        price_retry_used = False
        while True:
            # Neither call is idempotent on the supplier side, so a timeout is never re-sent
            carted = await invoke(adapter, "add_to_cart", self._cart_items(order), order.delivery_date, retries=0)
            failure = carted
            if carted.ok:
                placed = await invoke(adapter, "checkout", retries=0)
                if placed.ok:
                    return await self._on_submitted(order, placed.value or {})
                if placed.kind == ErrorKind.TIMEOUT:
                    return await self._on_checkout_timeout(order)
                failure = placed

            if (
                failure.kind == ErrorKind.PRICE_CHANGED
                and options.accept_price_changes
                and not price_retry_used
            ):
                logger.info(f"[OrderPlacement] Order {order.id}: applying accepted price changes and retrying checkout")
                self._apply_price_changes(order, failure.error.changes)
                await self.db.flush()
                price_retry_used = True
                continue

            handler = self._handlers.get(failure.kind, self._on_unexpected)
            return await handler(order, credential, failure)

    @staticmethod
    def _cart_items(order: Order) -> List[dict]:
        return [
            {
                "sku": item.supplier_sku,
                "quantity": int(item.quantity),
                "expected_price": to_money(item.unit_price),
            }
            for item in order.items
        ]

    @staticmethod
    def _apply_price_changes(order: Order, changes: List[dict]) -> None:
        by_sku = {item.supplier_sku: item for item in order.items}
        for change in changes:
            item = by_sku.get(change.get("sku"))
            if item is not None and change.get("new_price") is not None:
                order.set_item_price(item, change["new_price"])

    async def _on_submitted(self, order: Order, result: dict) -> PlacementOutcome:
        confirmation_number = result.get("confirmation_number")
        if not confirmation_number:
            # The supplier may or may not have the order; a person has to check
            reason = "Checkout finished without a confirmation number. Please confirm on the supplier site."
            order.mark_pending_manual(reason)
            await self._commit(order)
            await self.ctx.notifier.manual_intervention_required(order, reason, url=order.supplier.base_url)
            return self._outcome(order, "missing_confirmation", reason)

        delivery_date = result.get("delivery_date")
        if isinstance(delivery_date, str):
            delivery_date = date.fromisoformat(delivery_date)
        order.mark_submitted(confirmation_number, total=result.get("total"), delivery_date=delivery_date, now=self._now())
        await self._commit(order)
        logger.info(f"[OrderPlacement] Order {order.id} submitted successfully: {confirmation_number}")
        await self.ctx.notifier.order_submitted(order)
        return self._outcome(order)

    async def _on_checkout_timeout(self, order: Order) -> PlacementOutcome:
        reason = (
            "Checkout timed out before the supplier answered. "
            "Please confirm on the supplier site whether the order went through."
        )
        logger.warning(f"[OrderPlacement] Order {order.id} checkout timed out, outcome unknown")
        order.mark_pending_manual(reason)
        await self._commit(order)
        await self.ctx.notifier.manual_intervention_required(order, reason, url=order.supplier.base_url)
        return self._outcome(order, "checkout_timeout", reason)

    async def _on_preflight_failure(
        self, order: Order, credential: SupplierCredential, preflight: PreflightResult
    ) -> PlacementOutcome:
        message = preflight.message
        failure = preflight.failure
        logger.warning(f"[OrderPlacement] Order {order.id} stopped at pre-flight ({failure}): {message}")

        if failure == PreflightFailure.TWO_FACTOR:
            order.mark_pending_manual("Two-factor authentication required. Please enter the verification code.")
            challenge = await self.ctx.challenges.open_challenge(
                preflight.two_factor, credential, ChallengeRequestType.LOGIN, order
            )
            await self._commit(order)
            return self._outcome(order, "2fa_required", order.error_message, session_token=challenge.session_token)

        if failure == PreflightFailure.PRICE_CHANGED:
            order.mark_pending_review(message)
            await self._commit(order)
            await self.ctx.notifier.price_change_review(order, preflight.price_changes)
            return self._outcome(order, "price_changed", message, price_changes=preflight.price_changes)

        order.mark_failed(message)
        await self._commit(order)
        await self.ctx.notifier.order_failed(order)
        return self._outcome(order, f"preflight_{failure}", message, errors=preflight.errors)

    async def _on_order_minimum(self, order: Order, credential, failure: AdapterResult) -> PlacementOutcome:
        error = failure.error
        minimum, current = to_money(error.minimum), to_money(error.current_total)
        difference = minimum - current
        order.mark_failed(
            f"Order minimum not met. Minimum: {format_currency(minimum)}, Current: {format_currency(current)}. "
            f"Add {format_currency(difference)} more to proceed."
        )
        await self._commit(order)
        await self.ctx.notifier.order_failed(order)
        return self._outcome(
            order, "order_minimum", failure.message, minimum=minimum, current_total=current, difference=difference
        )

    async def _on_item_unavailable(self, order: Order, credential, failure: AdapterResult) -> PlacementOutcome:
        items = failure.error.items or []
        by_sku = {item.supplier_sku: item for item in order.items}
        for unavailable in items:
            item = by_sku.get(unavailable.get("sku"))
            if item is not None:
                item.mark_failed(unavailable.get("message") or "Unavailable")
        names = ", ".join(i["name"] for i in items if i.get("name"))
        order.mark_failed(f"{len(items)} item(s) are unavailable: {names}")
        await self._commit(order)
        await self.ctx.notifier.order_failed(order)
        return self._outcome(order, "items_unavailable", failure.message, unavailable_items=items)

    async def _on_price_changed(self, order: Order, credential, failure: AdapterResult) -> PlacementOutcome:
        changes = failure.error.changes or []
        order.mark_pending_review(f"Prices changed for {len(changes)} item(s). Review required.")
        await self._commit(order)
        await self.ctx.notifier.price_change_review(order, changes)
        return self._outcome(order, "price_changed", failure.message, price_changes=changes)

    async def _on_account_hold(self, order: Order, credential, failure: AdapterResult) -> PlacementOutcome:
        credential.mark_on_hold(failure.message)
        order.mark_failed(f"Account issue: {failure.message}")
        await self._commit(order)
        await self.ctx.notifier.account_hold(credential, failure.message, order_id=order.id)
        await self.ctx.notifier.order_failed(order)
        return self._outcome(order, "account_hold", failure.message)

    async def _on_captcha(self, order: Order, credential, failure: AdapterResult) -> PlacementOutcome:
        order.mark_pending_manual("CAPTCHA detected. Manual order placement required.")
        await self._commit(order)
        await self.ctx.notifier.manual_intervention_required(order, "CAPTCHA detected", url=order.supplier.base_url)
        return self._outcome(order, "captcha", failure.message, supplier_url=order.supplier.base_url)

    async def _on_delivery_unavailable(self, order: Order, credential, failure: AdapterResult) -> PlacementOutcome:
        order.mark_failed(failure.message)
        await self._commit(order)
        await self.ctx.notifier.order_failed(order)
        return self._outcome(order, "delivery_unavailable", failure.message)

    async def _on_two_factor(self, order: Order, credential, failure: AdapterResult) -> PlacementOutcome:
        order.mark_pending_manual("Two-factor authentication required. Please enter the verification code.")
        challenge = await self.ctx.challenges.open_challenge(
            failure.error, credential, ChallengeRequestType.CHECKOUT, order
        )
        await self._commit(order)
        logger.info(f"[OrderPlacement] Order {order.id} waiting for 2FA")
        return self._outcome(order, "2fa_required", order.error_message, session_token=challenge.session_token)

    async def _on_not_implemented(self, order: Order, credential, failure: AdapterResult) -> PlacementOutcome:
        reason = f"{order.supplier.name} does not support automated checkout. Please place this order manually."
        order.mark_pending_manual(reason)
        await self._commit(order)
        await self.ctx.notifier.manual_intervention_required(order, reason, url=order.supplier.base_url)
        return self._outcome(order, "not_supported", reason)

    async def _on_unexpected(self, order: Order, credential, failure: AdapterResult) -> PlacementOutcome:
        logger.error(f"[OrderPlacement] Order {order.id} failed: {failure.kind} - {failure.message}")
        order.mark_failed(f"Order failed: {failure.message}", retryable=True)
        await self._commit(order)
        raise failure.error

    async def _commit(self, order: Order) -> None:
        await self.db.commit()
        placement_outcomes.labels(status=str(order.status)).inc()
        await self._broadcast(order)

    async def _broadcast(self, order: Order) -> None:
        await self.ctx.bus.publish(order.user_id, StatusUpdateMessage(
            order_id=order.id,
            status=str(order.status),
            verification_status=str(order.verification_status) if order.verification_status else None,
            confirmation_number=order.confirmation_number,
            error_message=order.error_message,
        ))

    @staticmethod
    def _outcome(order: Order, error_type: Optional[str] = None, message: Optional[str] = None, **details) -> PlacementOutcome:
        return PlacementOutcome(
            order_id=order.id,
            status=order.status,
            error_type=error_type,
            message=message,
            details=details,
        )
