from sqlalchemy import Column, String, Boolean, ForeignKey, DateTime, Text, JSON
from order_placement.models.base import BaseModel
from order_placement.utils.timeutils import utcnow


class OrderValidation(BaseModel):
    """Append-only audit row for one validation result on an order."""

    __tablename__ = "order_validations"

    order_id = Column(ForeignKey("orders.id"), nullable=False, index=True)
    validation_type = Column(String(40), nullable=False, index=True)
    passed = Column(Boolean, nullable=False)
    message = Column(Text, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    validated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def warning(self) -> bool:
        return bool(self.passed and self.message)
