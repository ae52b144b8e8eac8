from datetime import datetime
from typing import Optional

from sqlalchemy import Column, String, Boolean, ForeignKey, DateTime, Integer, Numeric, UniqueConstraint
from sqlalchemy.orm import relationship

from order_placement.models.base import BaseModel
from order_placement.utils.money import to_money
from order_placement.utils.timeutils import utcnow


class SupplierProduct(BaseModel):
    __tablename__ = "supplier_products"
    __table_args__ = (UniqueConstraint("supplier_id", "supplier_sku"),)

    supplier_id = Column(ForeignKey("suppliers.id"), nullable=False, index=True)
    supplier = relationship("Supplier")

    supplier_sku = Column(String(120), nullable=False)
    supplier_name = Column(String(255), nullable=False)
    supplier_url = Column(String(255), nullable=True)
    current_price = Column(Numeric(10, 2), nullable=True)
    previous_price = Column(Numeric(10, 2), nullable=True)
    minimum_quantity = Column(Integer, nullable=True, default=1)
    maximum_quantity = Column(Integer, nullable=True)
    in_stock = Column(Boolean, nullable=False, default=True)
    price_updated_at = Column(DateTime(timezone=True), nullable=True)
    last_scraped_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def out_of_stock(self) -> bool:
        return self.in_stock is False

    def meets_minimum(self, quantity) -> bool:
        return not self.minimum_quantity or quantity >= self.minimum_quantity

    def within_maximum(self, quantity) -> bool:
        return self.maximum_quantity is None or quantity <= self.maximum_quantity

    def update_price(self, new_price, in_stock: bool = True, now: Optional[datetime] = None) -> None:
        new_price = to_money(new_price)
        now = now or utcnow()
        if self.current_price is not None and to_money(self.current_price) != new_price:
            self.previous_price = self.current_price
        self.current_price = new_price
        self.in_stock = in_stock
        self.price_updated_at = now
        self.last_scraped_at = now
