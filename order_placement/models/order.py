import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import Column, String, ForeignKey, Enum, Integer, Numeric, Text, Date, DateTime
from sqlalchemy.orm import relationship

from order_placement.core.config import settings
from order_placement.core.enums import OrderStatus, OrderItemStatus, VerificationStatus
from order_placement.core.exceptions import InvalidTransitionError
from order_placement.models.base import BaseModel
from order_placement.utils.money import to_money, ZERO
from order_placement.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

SUBMITTABLE_STATUSES = {
    OrderStatus.PENDING,
    OrderStatus.PENDING_REVIEW,
    OrderStatus.PENDING_MANUAL,
    OrderStatus.PRICE_CHANGED,
}
CANCELLABLE_STATUSES = SUBMITTABLE_STATUSES | {OrderStatus.VERIFYING}
COMPLETED_STATUSES = {OrderStatus.SUBMITTED, OrderStatus.CONFIRMED}


class Order(BaseModel):
    __tablename__ = "orders"

    user_id = Column(ForeignKey("users.id"), nullable=False, index=True)
    organization_id = Column(Integer, nullable=True, index=True)
    supplier_id = Column(ForeignKey("suppliers.id"), nullable=False, index=True)
    location_id = Column(Integer, nullable=True)
    order_list_id = Column(Integer, nullable=True)
    batch_id = Column(String(64), nullable=True, index=True)

    user = relationship("User")
    supplier = relationship("Supplier", lazy="selectin")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id",
    )

    status = Column(Enum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True)
    verification_status = Column(Enum(VerificationStatus), nullable=True)
    verification_error = Column(Text, nullable=True)
    price_verified_at = Column(DateTime(timezone=True), nullable=True)

    subtotal = Column(Numeric(10, 2), nullable=True)
    tax = Column(Numeric(10, 2), nullable=True)
    total_amount = Column(Numeric(10, 2), nullable=True)
    savings_amount = Column(Numeric(10, 2), nullable=True)
    verified_total = Column(Numeric(10, 2), nullable=True)
    price_change_amount = Column(Numeric(10, 2), nullable=True)

    confirmation_number = Column(String(120), nullable=True, index=True)
    delivery_date = Column(Date, nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    # Owner of the current placement attempt; started_at is set while checkout runs
    placement_token = Column(String(64), nullable=True)
    placement_started_at = Column(DateTime(timezone=True), nullable=True)

    # --- status queries ---

    @property
    def processing(self) -> bool:
        return self.status == OrderStatus.PROCESSING

    @property
    def completed(self) -> bool:
        return self.status in COMPLETED_STATUSES

    def can_submit(self) -> bool:
        return self.status in SUBMITTABLE_STATUSES

    def can_cancel(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    # --- totals ---

    def calculated_subtotal(self) -> Decimal:
        return to_money(sum((to_money(item.line_total) for item in self.items), ZERO))

    def recalculate_totals(self) -> None:
        self.subtotal = self.calculated_subtotal()
        self.total_amount = to_money(self.subtotal + to_money(self.tax))

    def set_item_price(self, item: "OrderItem", price) -> None:
        item.unit_price = to_money(price)
        item.line_total = to_money(item.unit_price * Decimal(str(item.quantity)))
        self.recalculate_totals()

    def set_item_quantity(self, item: "OrderItem", quantity) -> None:
        item.quantity = Decimal(str(quantity))
        item.line_total = to_money(to_money(item.unit_price) * item.quantity)
        self.recalculate_totals()

    def add_item(self, supplier_product, quantity, unit_price=None) -> "OrderItem":
        price = to_money(unit_price if unit_price is not None else supplier_product.current_price)
        item = OrderItem(
            supplier_product=supplier_product,
            quantity=Decimal(str(quantity)),
            unit_price=price,
            line_total=to_money(price * Decimal(str(quantity))),
            status=OrderItemStatus.PENDING,
        )
        self.items.append(item)
        self.recalculate_totals()
        return item

    def remove_items(self, items: Iterable["OrderItem"]) -> None:
        for item in list(items):
            self.items.remove(item)
        self.recalculate_totals()

    def price_change_percentage(self) -> float:
        if self.price_change_amount is None or not self.subtotal:
            return 0.0
        return round(float(to_money(self.price_change_amount) / to_money(self.subtotal) * 100), 1)

    def within_price_threshold(self, change: Optional[Decimal] = None) -> bool:
        change = self.price_change_amount if change is None else change
        if change is None or not self.subtotal:
            return True
        return abs(to_money(change)) / to_money(self.subtotal) <= Decimal(str(settings.PRICE_CHANGE_THRESHOLD))

    # --- transitions ---

    def _transition(self, name: str, allowed, target: Optional[OrderStatus]) -> None:
        if allowed is not None and self.status not in allowed:
            raise InvalidTransitionError(self.id, self.status, name)
        if target is not None and target != self.status:
            logger.info(f"[Order] Order {self.id}: {self.status} -> {target} ({name})")
            self.status = target

    def _release_placement(self, keep_token: bool = False) -> None:
        self.placement_started_at = None
        if not keep_token:
            self.placement_token = None

    def mark_processing(self, token: str, now: Optional[datetime] = None) -> None:
        self._transition("mark_processing", SUBMITTABLE_STATUSES | {OrderStatus.FAILED}, OrderStatus.PROCESSING)
        self.placement_token = token
        self.placement_started_at = now or utcnow()
        self.error_message = None
        self.confirmation_number = None

    def mark_submitted(self, confirmation_number: str, total=None, delivery_date=None,
                       now: Optional[datetime] = None) -> None:
        if not confirmation_number:
            raise ValueError("A submitted order needs a confirmation number")
        self._transition("mark_submitted", {OrderStatus.PROCESSING}, OrderStatus.SUBMITTED)
        self.confirmation_number = confirmation_number
        if total is not None:
            self.total_amount = to_money(total)
            self.verified_total = to_money(total)
        self.submitted_at = now or utcnow()
        if delivery_date is not None:
            self.delivery_date = delivery_date
        self.error_message = None
        for item in self.items:
            item.status = OrderItemStatus.ADDED
        self._release_placement()

    def mark_failed(self, message: str, retryable: bool = False) -> None:
        self._transition("mark_failed", {OrderStatus.PROCESSING}, OrderStatus.FAILED)
        self.error_message = message
        # A retryable failure keeps the token so the queue's retry can reclaim it
        self._release_placement(keep_token=retryable)

    def mark_pending_review(self, message: Optional[str] = None, notes: Optional[str] = None) -> None:
        self._transition("mark_pending_review", {OrderStatus.PROCESSING}, OrderStatus.PENDING_REVIEW)
        self.error_message = message
        if notes:
            self.notes = notes
        self._release_placement()

    def mark_pending_manual(self, message: str) -> None:
        self._transition("mark_pending_manual", {OrderStatus.PROCESSING}, OrderStatus.PENDING_MANUAL)
        self.error_message = message
        self._release_placement()

    def mark_confirmed(self, now: Optional[datetime] = None) -> None:
        self._transition("mark_confirmed", {OrderStatus.SUBMITTED}, OrderStatus.CONFIRMED)
        self.confirmed_at = now or utcnow()

    def reset_for_retry(self) -> None:
        self._transition("reset_for_retry", {OrderStatus.FAILED}, OrderStatus.PENDING)
        failed = [item for item in self.items if item.status == OrderItemStatus.FAILED]
        self.remove_items(failed)
        for item in self.items:
            item.status = OrderItemStatus.PENDING
        self.error_message = None
        self.confirmation_number = None
        self._release_placement()

    # --- price verification ---

    def start_verification(self) -> None:
        self._transition(
            "start_verification",
            {OrderStatus.PENDING, OrderStatus.VERIFYING, OrderStatus.PRICE_CHANGED},
            OrderStatus.VERIFYING,
        )
        self.verification_status = VerificationStatus.VERIFYING
        self.verification_error = None

    def mark_verified(self, verified_total, now: Optional[datetime] = None) -> None:
        self._transition("mark_verified", None, OrderStatus.PENDING if self.status == OrderStatus.VERIFYING else None)
        self.verification_status = VerificationStatus.VERIFIED
        self.price_verified_at = now or utcnow()
        self.verified_total = to_money(verified_total)
        self.price_change_amount = ZERO
        self.verification_error = None

    def mark_price_changed(self, verified_total, price_change_amount, now: Optional[datetime] = None) -> None:
        self._transition(
            "mark_price_changed",
            {OrderStatus.PENDING, OrderStatus.VERIFYING, OrderStatus.PRICE_CHANGED},
            OrderStatus.PRICE_CHANGED,
        )
        self.verification_status = VerificationStatus.PRICE_CHANGED
        self.price_verified_at = now or utcnow()
        self.verified_total = to_money(verified_total)
        self.price_change_amount = to_money(price_change_amount)
        self.verification_error = None

    def mark_verification_failed(self, message: str) -> None:
        # Status stays put: a failed check holds the order until retry or skip
        self.verification_status = VerificationStatus.FAILED
        self.verification_error = message

    def skip_verification(self, reason: Optional[str] = None, verified_total=None) -> None:
        self._transition(
            "skip_verification", None, OrderStatus.PENDING if self.status in (
                OrderStatus.VERIFYING, OrderStatus.PRICE_CHANGED
            ) else None
        )
        self.verification_status = VerificationStatus.SKIPPED
        self.verification_error = reason
        if verified_total is not None:
            self.verified_total = to_money(verified_total)

    def accept_price_changes(self) -> None:
        self._transition("accept_price_changes", {OrderStatus.PRICE_CHANGED}, OrderStatus.PENDING)
        for item in self.items:
            if item.verified_price is not None:
                self.set_item_price(item, item.verified_price)
        self.recalculate_totals()
        self.verification_status = VerificationStatus.VERIFIED
        self.price_change_amount = ZERO


class OrderItem(BaseModel):
    __tablename__ = "order_items"

    order_id = Column(ForeignKey("orders.id"), nullable=False, index=True)
    supplier_product_id = Column(ForeignKey("supplier_products.id"), nullable=False, index=True)

    order = relationship("Order", back_populates="items")
    supplier_product = relationship("SupplierProduct", lazy="selectin")

    quantity = Column(Numeric(10, 2), nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    line_total = Column(Numeric(10, 2), nullable=False)
    verified_price = Column(Numeric(10, 2), nullable=True)
    status = Column(Enum(OrderItemStatus), nullable=False, default=OrderItemStatus.PENDING)
    notes = Column(Text, nullable=True)

    @property
    def supplier_sku(self) -> Optional[str]:
        return self.supplier_product.supplier_sku if self.supplier_product else None

    @property
    def name(self) -> Optional[str]:
        return self.supplier_product.supplier_name if self.supplier_product else None

    def price_changed(self) -> bool:
        current = self.supplier_product.current_price if self.supplier_product else None
        return current is not None and to_money(current) != to_money(self.unit_price)

    def verified_price_difference(self) -> Decimal:
        if self.verified_price is None:
            return ZERO
        return to_money(self.verified_price) - to_money(self.unit_price)

    def verified_price_changed(self) -> bool:
        return self.verified_price is not None and to_money(self.verified_price) != to_money(self.unit_price)

    def mark_failed(self, notes: Optional[str] = None) -> None:
        self.status = OrderItemStatus.FAILED
        self.notes = notes
