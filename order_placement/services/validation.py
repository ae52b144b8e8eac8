"""Rule evaluation over an order snapshot.

Rules run in a fixed order. Availability pruning comes first because removing
out-of-stock items changes the subtotal the minimum check sees. Every error and
warning is appended to ``order_validations``.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from order_placement.core.config import settings
from order_placement.core.enums import RequirementType, ValidationType
from order_placement.core.exceptions import OrderValidationError
from order_placement.core.metrics import validation_failures
from order_placement.models.order import Order
from order_placement.models.order_validation import OrderValidation
from order_placement.models.supplier_credential import SupplierCredential
from order_placement.services.credentials import find_credential
from order_placement.utils.money import to_money, format_currency
from order_placement.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    errors: List[dict] = field(default_factory=list)
    warnings: List[dict] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def of_type(self, validation_type: ValidationType) -> List[dict]:
        return [v for v in self.errors + self.warnings if v["type"] == validation_type]


def format_time_remaining(remaining: timedelta) -> str:
    minutes = int(remaining.total_seconds() // 60)
    if minutes >= 60:
        return f"{minutes // 60}h {minutes % 60}m"
    return f"{minutes} minutes"


class ValidationEngine:
    def __init__(self, db: AsyncSession, now: Optional[datetime] = None):
        self.db = db
        self.now = now

    async def validate(
        self,
        order: Order,
        credential: Optional[SupplierCredential] = None,
        blocking: bool = True,
    ) -> ValidationResult:
        """Run every rule against ``order``.

        With ``blocking`` set, any error raises ``OrderValidationError``
        carrying both the errors and the warnings.
        """
        if credential is None:
            credential = await find_credential(self.db, order.user_id, order.supplier_id)

        result = ValidationResult()
        now = self.now or utcnow()

        self._check_item_availability(order, result)
        self._check_order_minimum(order, result)
        self._check_item_limits(order, result)
        self._check_delivery_schedule(order, result, now)
        self._check_account_status(order, credential, result)
        self._check_price_drift(order, result)

        self._record(order, result, now)
        await self.db.flush()

        if result.errors:
            for error in result.errors:
                validation_failures.labels(validation_type=str(error["type"])).inc()
            logger.info(
                f"[OrderValidation] Order {order.id} failed validation: "
                f"{', '.join(str(e['type']) for e in result.errors)}"
            )
            if blocking:
                raise OrderValidationError(errors=result.errors, warnings=result.warnings)
        return result

    @staticmethod
    def _error(result: ValidationResult, validation_type: ValidationType, message: str, **details) -> None:
        result.errors.append({"type": validation_type, "message": message, "details": details, "blocking": True})

    @staticmethod
    def _warning(result: ValidationResult, validation_type: ValidationType, message: str, **details) -> None:
        result.warnings.append({"type": validation_type, "message": message, "details": details, "blocking": False})

    def _check_item_availability(self, order: Order, result: ValidationResult) -> None:
        unavailable = [
            item for item in order.items
            if item.supplier_product is not None and item.supplier_product.out_of_stock
        ]
        if not unavailable:
            return

        if len(unavailable) == len(order.items):
            for item in unavailable:
                self._error(
                    result,
                    ValidationType.ITEM_UNAVAILABLE,
                    f"{item.name} is currently out of stock.",
                    product_id=item.supplier_product_id,
                    product_name=item.name,
                )
            return

        removed_names = [item.name for item in unavailable]
        order.remove_items(unavailable)
        plural = "s" if len(removed_names) > 1 else ""
        self._warning(
            result,
            ValidationType.ITEMS_REMOVED,
            f"Removed {len(removed_names)} out-of-stock item{plural}: {', '.join(removed_names)}",
            removed_items=removed_names,
        )

    def _check_order_minimum(self, order: Order, result: ValidationResult) -> None:
        minimum = order.supplier.order_minimum
        if minimum is None:
            return
        minimum = to_money(minimum)
        current_total = order.calculated_subtotal()
        if current_total >= minimum:
            return

        difference = minimum - current_total
        requirement = order.supplier.requirement(RequirementType.ORDER_MINIMUM)
        self._error(
            result,
            ValidationType.ORDER_MINIMUM,
            requirement.formatted_error_message(
                current_total=format_currency(current_total),
                minimum=format_currency(minimum),
                difference=format_currency(difference),
            ),
            minimum=minimum,
            current_total=current_total,
            difference=difference,
        )

    def _check_item_limits(self, order: Order, result: ValidationResult) -> None:
        for item in order.items:
            product = item.supplier_product
            if product is None:
                continue
            ordered = int(item.quantity)
            if product.minimum_quantity and product.minimum_quantity > 1 and not product.meets_minimum(item.quantity):
                self._error(
                    result,
                    ValidationType.ITEM_MINIMUM,
                    f"{product.supplier_name} requires a minimum quantity of {product.minimum_quantity}. "
                    f"You ordered {ordered}.",
                    product_id=product.id,
                    product_name=product.supplier_name,
                    minimum=product.minimum_quantity,
                    ordered=item.quantity,
                )
            if not product.within_maximum(item.quantity):
                self._error(
                    result,
                    ValidationType.ITEM_MAXIMUM,
                    f"{product.supplier_name} has a maximum order quantity of {product.maximum_quantity}. "
                    f"You ordered {ordered}.",
                    product_id=product.id,
                    product_name=product.supplier_name,
                    maximum=product.maximum_quantity,
                    ordered=item.quantity,
                )

    def _check_delivery_schedule(self, order: Order, result: ValidationResult, now: datetime) -> None:
        supplier = order.supplier
        if not any(s.active for s in supplier.delivery_schedules):
            return

        schedules = supplier.delivery_schedules_for(order.location_id)
        if not schedules:
            self._warning(
                result,
                ValidationType.NO_DELIVERY,
                f"No delivery schedule found for your location from {supplier.name}.",
                supplier=supplier.name,
            )
            return

        # The schedule serving the soonest delivery decides the cutoff
        schedule = min(schedules, key=lambda s: s.next_delivery_date(now))
        if schedule.past_cutoff(now):
            self._error(
                result,
                ValidationType.CUTOFF_PASSED,
                f"Order cutoff time has passed. Orders for {supplier.name} must be placed by "
                f"{schedule.cutoff_time.strftime('%I:%M %p')} on {schedule.cutoff_day_name}.",
                cutoff_time=schedule.next_cutoff_datetime(now),
                current_time=now,
            )
        elif schedule.cutoff_approaching(now, timedelta(minutes=settings.CUTOFF_WARNING_MINUTES)):
            remaining = schedule.time_until_cutoff(now)
            self._warning(
                result,
                ValidationType.CUTOFF_APPROACHING,
                f"Order cutoff is approaching! You have {format_time_remaining(remaining)} "
                f"to place this order for next delivery.",
                cutoff_time=schedule.next_cutoff_datetime(now),
                time_remaining=int(remaining.total_seconds()),
            )

    def _check_account_status(
        self, order: Order, credential: Optional[SupplierCredential], result: ValidationResult
    ) -> None:
        supplier_name = order.supplier.name
        if credential is not None and credential.on_hold:
            self._error(
                result,
                ValidationType.ACCOUNT_HOLD,
                f"Your {supplier_name} account has a hold. Please contact {supplier_name} to resolve. "
                f"Reason: {credential.hold_reason}",
                hold_reason=credential.hold_reason,
            )
            return
        if credential is None or not credential.active:
            self._error(
                result,
                ValidationType.ACCOUNT_INACTIVE,
                f"Your {supplier_name} account is not active. Please verify your credentials.",
                status=credential.status if credential else None,
            )

    def _check_price_drift(self, order: Order, result: ValidationResult) -> None:
        changes = []
        for item in order.items:
            if not item.price_changed():
                continue
            old_price = to_money(item.unit_price)
            new_price = to_money(item.supplier_product.current_price)
            change_percent = round((new_price - old_price) / old_price * 100, 2) if old_price else None
            changes.append({
                "product_name": item.name,
                "old_price": old_price,
                "new_price": new_price,
                "change_percent": change_percent,
            })
        if not changes:
            return

        total_difference = sum(c["new_price"] for c in changes) - sum(c["old_price"] for c in changes)
        self._warning(
            result,
            ValidationType.PRICE_CHANGED,
            f"{len(changes)} item(s) have changed price since you created this order. "
            f"Review changes before submitting.",
            changes=changes,
            total_difference=total_difference,
        )

    def _record(self, order: Order, result: ValidationResult, now: datetime) -> None:
        for entry in result.errors + result.warnings:
            self.db.add(OrderValidation(
                order_id=order.id,
                validation_type=str(entry["type"]),
                passed=not entry["blocking"],
                message=entry["message"],
                details=jsonable_encoder(entry["details"]),
                validated_at=now,
            ))
