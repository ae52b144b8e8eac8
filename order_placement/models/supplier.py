import re
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import Column, String, Boolean, ForeignKey, Integer, Numeric, Text, Time, Enum
from sqlalchemy.orm import relationship

from order_placement.core.config import settings
from order_placement.core.enums import SupplierAuthType, RequirementType
from order_placement.models.base import BaseModel
from order_placement.utils.timeutils import utcnow

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def _local_now(now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()).astimezone(ZoneInfo(settings.DELIVERY_TIMEZONE))


def _weekday(day: date) -> int:
    # Schedules use 0 = Sunday
    return (day.weekday() + 1) % 7


class Supplier(BaseModel):
    __tablename__ = "suppliers"

    name = Column(String(120), nullable=False)
    code = Column(String(40), unique=True, nullable=False, index=True)
    base_url = Column(String(255), nullable=False)
    login_url = Column(String(255), nullable=True)
    adapter_class = Column(String(120), nullable=False)
    auth_type = Column(Enum(SupplierAuthType), nullable=False, default=SupplierAuthType.PASSWORD)
    password_required = Column(Boolean, nullable=False, default=True)
    checkout_enabled = Column(Boolean, nullable=False, default=True)
    active = Column(Boolean, nullable=False, default=True)

    requirements = relationship(
        "SupplierRequirement", back_populates="supplier", lazy="selectin", cascade="all, delete-orphan"
    )
    delivery_schedules = relationship(
        "SupplierDeliverySchedule", back_populates="supplier", lazy="selectin", cascade="all, delete-orphan"
    )

    @property
    def password_auth(self) -> bool:
        return self.auth_type == SupplierAuthType.PASSWORD

    @property
    def no_password_required(self) -> bool:
        """Challenge-only suppliers cannot be re-logged in without the user."""
        return not self.password_required or self.auth_type in (
            SupplierAuthType.TWO_FA_ONLY,
            SupplierAuthType.WELCOME_URL,
        )

    def requirement(self, requirement_type: RequirementType) -> Optional["SupplierRequirement"]:
        for requirement in self.requirements:
            if requirement.active and requirement.requirement_type == requirement_type:
                return requirement
        return None

    @property
    def order_minimum(self):
        requirement = self.requirement(RequirementType.ORDER_MINIMUM)
        return requirement.numeric_value if requirement else None

    def delivery_schedules_for(self, location_id: Optional[int]) -> list:
        return sorted(
            (
                s for s in self.delivery_schedules
                if s.active and (s.location_id is None or s.location_id == location_id)
            ),
            key=lambda s: s.day_of_week,
        )


class SupplierRequirement(BaseModel):
    __tablename__ = "supplier_requirements"

    supplier_id = Column(ForeignKey("suppliers.id"), nullable=False, index=True)
    supplier = relationship("Supplier", back_populates="requirements")

    requirement_type = Column(Enum(RequirementType), nullable=False)
    value = Column(String(255), nullable=True)
    numeric_value = Column(Numeric(10, 2), nullable=True)
    description = Column(Text, nullable=True)
    error_message = Column(Text, nullable=False)
    is_blocking = Column(Boolean, nullable=False, default=True)
    active = Column(Boolean, nullable=False, default=True)

    def formatted_error_message(self, **values) -> str:
        """Fill ``{{name}}`` placeholders in the configured message."""
        return re.sub(
            r"\{\{\s*(\w+)\s*\}\}",
            lambda m: str(values.get(m.group(1), m.group(0))),
            self.error_message,
        )


class SupplierDeliverySchedule(BaseModel):
    __tablename__ = "supplier_delivery_schedules"

    supplier_id = Column(ForeignKey("suppliers.id"), nullable=False, index=True)
    supplier = relationship("Supplier", back_populates="delivery_schedules")

    location_id = Column(Integer, nullable=True, index=True)
    day_of_week = Column(Integer, nullable=False)
    cutoff_day = Column(Integer, nullable=False)
    cutoff_time = Column(Time, nullable=False)
    delivery_window = Column(String(60), nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    @property
    def day_name(self) -> str:
        return DAY_NAMES[self.day_of_week]

    @property
    def cutoff_day_name(self) -> str:
        return DAY_NAMES[self.cutoff_day]

    def cutoff_for_delivery(self, delivery_date: date) -> datetime:
        """Cutoff moment (supplier local time) that serves ``delivery_date``."""
        days_before = (self.day_of_week - self.cutoff_day) % 7
        cutoff_date = delivery_date - timedelta(days=days_before)
        return datetime.combine(cutoff_date, self.cutoff_time, tzinfo=ZoneInfo(settings.DELIVERY_TIMEZONE))

    def past_cutoff(self, now: Optional[datetime] = None) -> bool:
        local = _local_now(now)
        if _weekday(local.date()) != self.cutoff_day:
            return False
        return local.time().replace(second=0, microsecond=0) > self.cutoff_time

    def next_delivery_date(self, now: Optional[datetime] = None) -> date:
        today = _local_now(now).date()
        days_until = (self.day_of_week - _weekday(today)) % 7
        delivery = today + timedelta(days=days_until)
        if self.cutoff_for_delivery(delivery) < _local_now(now):
            delivery += timedelta(days=7)
        return delivery

    def next_cutoff_datetime(self, now: Optional[datetime] = None) -> datetime:
        return self.cutoff_for_delivery(self.next_delivery_date(now))

    def time_until_cutoff(self, now: Optional[datetime] = None) -> timedelta:
        remaining = self.next_cutoff_datetime(now) - _local_now(now)
        return max(remaining, timedelta(0))

    def cutoff_approaching(self, now: Optional[datetime] = None, threshold: Optional[timedelta] = None) -> bool:
        threshold = threshold or timedelta(minutes=settings.CUTOFF_WARNING_MINUTES)
        remaining = self.time_until_cutoff(now)
        return timedelta(0) < remaining < threshold

    def formatted_schedule(self) -> str:
        return f"Delivers {self.day_name}, order by {self.cutoff_time.strftime('%I:%M %p')} {self.cutoff_day_name}"
