from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Column, String, Boolean, ForeignKey, DateTime, Text, Enum, UniqueConstraint
from sqlalchemy.orm import relationship

from order_placement.core.enums import CredentialStatus
from order_placement.models.base import BaseModel
from order_placement.utils.timeutils import utcnow, as_utc


class SupplierCredential(BaseModel):
    """Login for one supplier. Secrets live with the session collaborator, not here."""

    __tablename__ = "supplier_credentials"
    __table_args__ = (UniqueConstraint("user_id", "supplier_id", name="idx_supplier_creds_unique"),)

    user_id = Column(ForeignKey("users.id"), nullable=False, index=True)
    supplier_id = Column(ForeignKey("suppliers.id"), nullable=False, index=True)

    user = relationship("User")
    supplier = relationship("Supplier", lazy="selectin")

    status = Column(Enum(CredentialStatus), nullable=False, default=CredentialStatus.PENDING)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    two_fa_enabled = Column(Boolean, nullable=False, default=False)
    two_fa_type = Column(String(20), nullable=True)
    account_on_hold = Column(Boolean, nullable=False, default=False)
    hold_reason = Column(String(255), nullable=True)

    @property
    def active(self) -> bool:
        return self.status == CredentialStatus.ACTIVE

    @property
    def on_hold(self) -> bool:
        return self.status == CredentialStatus.HOLD or bool(self.account_on_hold)

    def session_valid(self, now: Optional[datetime] = None) -> bool:
        if self.last_login_at is None:
            return False
        # Challenge-only suppliers keep sessions alive much longer on their side
        ttl = timedelta(hours=24) if self.supplier and self.supplier.no_password_required else timedelta(hours=6)
        return as_utc(self.last_login_at) > (now or utcnow()) - ttl

    def mark_active(self, now: Optional[datetime] = None) -> None:
        self.status = CredentialStatus.ACTIVE
        self.last_login_at = now or utcnow()
        self.last_error = None

    def mark_failed(self, error_message: str) -> None:
        self.status = CredentialStatus.FAILED
        self.last_error = error_message

    def mark_on_hold(self, reason: str) -> None:
        self.status = CredentialStatus.HOLD
        self.account_on_hold = True
        self.hold_reason = reason
