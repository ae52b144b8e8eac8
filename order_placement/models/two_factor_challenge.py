import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Column, String, ForeignKey, DateTime, Integer, Text, Enum
from sqlalchemy.orm import relationship

from order_placement.core.config import settings
from order_placement.core.enums import ChallengeStatus, ChallengeRequestType
from order_placement.models.base import BaseModel
from order_placement.utils.timeutils import utcnow, as_utc


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)


class TwoFactorChallenge(BaseModel):
    """An outstanding request for a human-entered verification code."""

    __tablename__ = "supplier_2fa_requests"

    user_id = Column(ForeignKey("users.id"), nullable=False, index=True)
    supplier_credential_id = Column(ForeignKey("supplier_credentials.id"), nullable=False, index=True)
    order_id = Column(ForeignKey("orders.id"), nullable=True, index=True)

    credential = relationship("SupplierCredential", lazy="selectin")

    session_token = Column(String(128), unique=True, nullable=False, index=True, default=generate_session_token)
    adapter_request_id = Column(String(128), nullable=True)
    request_type = Column(Enum(ChallengeRequestType), nullable=False)
    two_fa_type = Column(String(20), nullable=True)
    prompt_message = Column(Text, nullable=True)
    status = Column(Enum(ChallengeStatus), nullable=False, default=ChallengeStatus.PENDING, index=True)
    code_submitted = Column(String(32), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    expires_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: utcnow() + timedelta(minutes=settings.TWO_FACTOR_TIMEOUT_MINUTES),
    )
    verified_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def max_attempts(self) -> int:
        return settings.TWO_FACTOR_MAX_ATTEMPTS

    def expired(self, now: Optional[datetime] = None) -> bool:
        return self.status == ChallengeStatus.EXPIRED or as_utc(self.expires_at) <= (now or utcnow())

    def active(self, now: Optional[datetime] = None) -> bool:
        return self.status == ChallengeStatus.PENDING and not self.expired(now)

    def attempts_remaining(self) -> int:
        return max(self.max_attempts - (self.attempts or 0), 0)

    def time_remaining(self, now: Optional[datetime] = None) -> int:
        if self.expired(now):
            return 0
        return int((as_utc(self.expires_at) - (now or utcnow())).total_seconds())

    def mark_verified(self, now: Optional[datetime] = None) -> None:
        self.status = ChallengeStatus.VERIFIED
        self.verified_at = now or utcnow()

    def mark_failed(self) -> None:
        self.status = ChallengeStatus.FAILED

    def mark_expired(self) -> None:
        self.status = ChallengeStatus.EXPIRED

    def mark_cancelled(self) -> None:
        self.status = ChallengeStatus.CANCELLED
