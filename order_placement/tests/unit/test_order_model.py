from datetime import date, datetime, time, timezone
from decimal import Decimal

import pytest

from order_placement.core.enums import OrderItemStatus, OrderStatus, VerificationStatus
from order_placement.core.exceptions import InvalidTransitionError
from order_placement.models.order import Order
from order_placement.models.supplier import SupplierDeliverySchedule, SupplierRequirement
from order_placement.models.supplier_product import SupplierProduct


def product(name="Olive Oil", price="30.00"):
    return SupplierProduct(supplier_sku=name.upper(), supplier_name=name, current_price=Decimal(price))


def order_with(*lines, status=OrderStatus.PENDING):
    order = Order(status=status)
    for line in lines:
        order.add_item(*line)
    return order


class TestTotals:

    def test_add_and_reprice(self):
        order = order_with((product(), 4), (product("Flour", "20.00"), Decimal("1.5")))

        assert order.subtotal == Decimal("150.00")
        order.set_item_price(order.items[0], "31.00")
        assert order.items[0].line_total == Decimal("124.00")
        assert order.subtotal == Decimal("154.00")
        assert order.total_amount == Decimal("154.00")

    def test_price_threshold(self):
        order = order_with((product(), 4))

        assert order.within_price_threshold(Decimal("6.00"))
        assert not order.within_price_threshold(Decimal("6.01"))
        assert not order.within_price_threshold(Decimal("-7.00"))
        assert order.within_price_threshold()


class TestTransitions:

    def test_cancel_only_before_processing(self):
        assert order_with((product(), 1), status=OrderStatus.VERIFYING).can_cancel()
        assert not order_with((product(), 1), status=OrderStatus.SUBMITTED).can_cancel()
        assert not order_with((product(), 1), status=OrderStatus.PROCESSING).can_cancel()

    def test_retryable_failure_keeps_token(self):
        order = order_with((product(), 1))
        order.mark_processing("tok")

        order.mark_failed("Order failed: boom", retryable=True)

        assert order.status == OrderStatus.FAILED
        assert order.placement_token == "tok"
        assert order.placement_started_at is None

    def test_final_failure_releases_token(self):
        order = order_with((product(), 1))
        order.mark_processing("tok")

        order.mark_failed("Account issue: hold")

        assert order.placement_token is None

    def test_submitted_needs_confirmation(self):
        order = order_with((product(), 1))
        order.mark_processing("tok")

        with pytest.raises(ValueError):
            order.mark_submitted("")

        order.mark_submitted("ABC123", total="31.50", delivery_date=date(2026, 10, 20))
        assert order.status == OrderStatus.SUBMITTED
        assert order.total_amount == Decimal("31.50")
        assert order.items[0].status == OrderItemStatus.ADDED
        assert order.placement_token is None

    def test_reset_for_retry_drops_failed_items(self):
        order = order_with((product(), 4), (product("Flour", "20.00"), 1))
        order.mark_processing("tok")
        order.items[1].mark_failed("Out of stock")
        order.mark_failed("Some items are unavailable: Flour")

        order.reset_for_retry()

        assert order.status == OrderStatus.PENDING
        assert [item.name for item in order.items] == ["Olive Oil"]
        assert order.subtotal == Decimal("120.00")
        assert order.error_message is None

    def test_reset_requires_failure(self):
        with pytest.raises(InvalidTransitionError):
            order_with((product(), 1)).reset_for_retry()


class TestVerificationState:

    def test_accept_price_changes_applies_verified_prices(self):
        order = order_with((product(), 4), status=OrderStatus.VERIFYING)
        order.items[0].verified_price = Decimal("33.00")
        order.mark_price_changed(Decimal("132.00"), Decimal("12.00"))

        order.accept_price_changes()

        assert order.status == OrderStatus.PENDING
        assert order.subtotal == Decimal("132.00")
        assert order.verification_status == VerificationStatus.VERIFIED
        assert order.price_change_amount == Decimal("0")

    def test_accept_requires_price_change(self):
        with pytest.raises(InvalidTransitionError):
            order_with((product(), 4)).accept_price_changes()

    def test_failed_verification_keeps_status(self):
        order = order_with((product(), 4), status=OrderStatus.VERIFYING)

        order.mark_verification_failed("Sysco is busy. Please retry in a few minutes.")

        assert order.status == OrderStatus.VERIFYING
        assert order.verification_status == VerificationStatus.FAILED

    def test_skip_returns_to_pending(self):
        order = order_with((product(), 4), status=OrderStatus.PRICE_CHANGED)

        order.skip_verification("Skipped by user")

        assert order.status == OrderStatus.PENDING
        assert order.verification_status == VerificationStatus.SKIPPED
        assert order.verification_error == "Skipped by user"


def test_requirement_template():
    requirement = SupplierRequirement(error_message="Order minimum is {{minimum}}. Add {{ difference }} more.")

    assert requirement.formatted_error_message(minimum="$100.00", difference="$20.00") == (
        "Order minimum is $100.00. Add $20.00 more."
    )
    assert requirement.formatted_error_message() == "Order minimum is {{minimum}}. Add {{ difference }} more."


class TestDeliverySchedule:
    @pytest.fixture(autouse=True)
    def tuesday(self):
        # Delivers Tuesday, order by Monday 2pm
        self.schedule = SupplierDeliverySchedule(day_of_week=2, cutoff_day=1, cutoff_time=time(14, 0))

    def test_cutoff_for_delivery(self):
        assert self.schedule.cutoff_for_delivery(date(2026, 10, 20)).replace(tzinfo=None) == datetime(2026, 10, 19, 14, 0)

    def test_next_delivery_rolls_over_after_cutoff(self):
        before = datetime(2026, 10, 19, 13, 0, tzinfo=timezone.utc)
        after = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)

        assert self.schedule.next_delivery_date(before) == date(2026, 10, 20)
        assert self.schedule.next_delivery_date(after) == date(2026, 10, 27)
        assert self.schedule.past_cutoff(after)
        assert not self.schedule.past_cutoff(before)

    def test_cutoff_approaching(self):
        assert self.schedule.cutoff_approaching(datetime(2026, 10, 19, 13, 30, tzinfo=timezone.utc))
        assert not self.schedule.cutoff_approaching(datetime(2026, 10, 18, 13, 30, tzinfo=timezone.utc))

    def test_formatted_schedule(self):
        assert self.schedule.formatted_schedule() == "Delivers Tuesday, order by 02:00 PM Monday"
