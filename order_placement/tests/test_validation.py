import pytest
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from sqlalchemy import select

from order_placement.core.enums import ValidationType
from order_placement.core.exceptions import OrderValidationError
from order_placement.models.order_validation import OrderValidation
from order_placement.models.supplier import SupplierDeliverySchedule
from order_placement.services.validation import ValidationEngine, format_time_remaining

# A Monday
MONDAY_AFTERNOON = datetime(2026, 10, 19, 13, 30, tzinfo=timezone.utc)


async def validate(db, order, now=None):
    return await ValidationEngine(db, now=now).validate(order, blocking=False)


class TestOrderMinimum:

    async def test_shortfall_reports_difference(self, db, world, create_order_factory):
        order = await create_order_factory([(world.products[1], 4)])

        result = await validate(db, order)

        assert not result.valid
        error = result.of_type(ValidationType.ORDER_MINIMUM)[0]
        assert error["details"]["difference"] == Decimal("20.00")
        assert error["details"]["minimum"] == Decimal("100.00")
        assert error["message"] == "Order minimum is $100.00. Add $20.00 more."
        assert error["blocking"] is True

    async def test_exact_minimum_passes(self, db, world, create_order_factory):
        order = await create_order_factory([(world.products[1], 5)])

        result = await validate(db, order)

        assert result.valid
        assert result.warnings == []

    async def test_blocking_mode_raises(self, db, world, create_order_factory):
        order = await create_order_factory([(world.products[1], 4)])

        with pytest.raises(OrderValidationError) as exc:
            await ValidationEngine(db).validate(order)

        assert exc.value.errors[0]["type"] == ValidationType.ORDER_MINIMUM


class TestAvailability:

    async def test_partial_availability_prunes_with_one_warning(self, db, world, create_order_factory):
        oil, flour, butter = world.products
        flour.in_stock = False
        butter.in_stock = False
        order = await create_order_factory([(oil, 4), (flour, 1), (butter, 1)])

        result = await validate(db, order)

        removed = result.of_type(ValidationType.ITEMS_REMOVED)
        assert len(removed) == 1
        assert removed[0]["details"]["removed_items"] == ["Flour", "Butter"]
        assert removed[0]["message"] == "Removed 2 out-of-stock items: Flour, Butter"
        assert [item.supplier_sku for item in order.items] == ["SKU-1"]
        assert order.subtotal == Decimal("120.00")
        assert result.valid

    async def test_all_unavailable_is_an_error_per_item(self, db, world, create_order_factory):
        oil, flour, _ = world.products
        oil.in_stock = False
        flour.in_stock = False
        order = await create_order_factory([(oil, 4), (flour, 1)])

        result = await validate(db, order)

        unavailable = result.of_type(ValidationType.ITEM_UNAVAILABLE)
        assert [e["details"]["product_name"] for e in unavailable] == ["Olive Oil", "Flour"]
        assert len(order.items) == 2


class TestItemLimits:

    async def test_item_minimum_and_maximum(self, db, world, create_order_factory):
        oil, flour, _ = world.products
        oil.minimum_quantity = 6
        flour.maximum_quantity = 2
        order = await create_order_factory([(oil, 4), (flour, 3)])

        result = await validate(db, order)

        minimum = result.of_type(ValidationType.ITEM_MINIMUM)[0]
        maximum = result.of_type(ValidationType.ITEM_MAXIMUM)[0]
        assert minimum["message"] == "Olive Oil requires a minimum quantity of 6. You ordered 4."
        assert maximum["message"] == "Flour has a maximum order quantity of 2. You ordered 3."


class TestDeliverySchedule:

    async def add_tuesday_schedule(self, db, world, location_id=None):
        world.supplier.delivery_schedules.append(SupplierDeliverySchedule(
            location_id=location_id, day_of_week=2, cutoff_day=1, cutoff_time=time(14, 0)
        ))
        await db.commit()

    async def test_cutoff_approaching_warns(self, db, world, create_order_factory):
        await self.add_tuesday_schedule(db, world)
        order = await create_order_factory([(world.products[0], 4)])

        result = await validate(db, order, now=MONDAY_AFTERNOON)

        warning = result.of_type(ValidationType.CUTOFF_APPROACHING)[0]
        assert warning["details"]["time_remaining"] == 30 * 60
        assert "30 minutes" in warning["message"]
        assert result.valid

    async def test_cutoff_passed_blocks(self, db, world, create_order_factory):
        await self.add_tuesday_schedule(db, world)
        order = await create_order_factory([(world.products[0], 4)])

        result = await validate(db, order, now=MONDAY_AFTERNOON + timedelta(hours=1))

        error = result.of_type(ValidationType.CUTOFF_PASSED)[0]
        assert "02:00 PM on Monday" in error["message"]

    async def test_schedule_for_another_location_warns(self, db, world, create_order_factory):
        await self.add_tuesday_schedule(db, world, location_id=99)
        order = await create_order_factory([(world.products[0], 4)], location_id=1)

        result = await validate(db, order, now=MONDAY_AFTERNOON)

        assert len(result.of_type(ValidationType.NO_DELIVERY)) == 1

    async def test_supplier_without_schedules_is_not_checked(self, db, world, create_order_factory):
        order = await create_order_factory([(world.products[0], 4)], location_id=1)

        result = await validate(db, order, now=MONDAY_AFTERNOON)

        assert result.of_type(ValidationType.NO_DELIVERY) == []


class TestAccountAndPrices:

    async def test_hold_takes_precedence_over_inactive(self, db, world, create_order_factory):
        world.credential.account_on_hold = True
        world.credential.hold_reason = "Payment overdue"
        order = await create_order_factory([(world.products[0], 4)])

        result = await validate(db, order)

        assert [e["type"] for e in result.errors] == [ValidationType.ACCOUNT_HOLD]
        assert "Payment overdue" in result.errors[0]["message"]

    async def test_price_drift_is_one_aggregated_warning(self, db, world, create_order_factory):
        oil, flour, _ = world.products
        order = await create_order_factory([(oil, 4, "28.00"), (flour, 1, "21.00")])

        result = await validate(db, order)

        drift = result.of_type(ValidationType.PRICE_CHANGED)
        assert len(drift) == 1
        assert len(drift[0]["details"]["changes"]) == 2
        assert drift[0]["details"]["total_difference"] == Decimal("1.00")

    async def test_results_are_recorded(self, db, world, create_order_factory):
        oil, flour, _ = world.products
        flour.in_stock = False
        order = await create_order_factory([(oil, 1), (flour, 1)])

        result = await validate(db, order)
        await db.commit()

        rows = (await db.execute(select(OrderValidation).where(OrderValidation.order_id == order.id))).scalars().all()
        assert len(rows) == len(result.errors) + len(result.warnings) == 2
        assert {r.validation_type for r in rows} == {"items_removed", "order_minimum"}
        minimum_row = next(r for r in rows if r.validation_type == "order_minimum")
        assert minimum_row.passed is False
        assert minimum_row.details["difference"] == 70.0


def test_format_time_remaining():
    assert format_time_remaining(timedelta(minutes=45)) == "45 minutes"
    assert format_time_remaining(timedelta(minutes=95)) == "1h 35m"
