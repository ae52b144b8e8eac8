"""Decides which user-facing notifications an outcome produces.

Delivery is somebody else's job; ``WebhookNotifier`` hands events to the
notification webhook.
"""
import logging
from enum import Enum
from typing import Optional

from fastapi.encoders import jsonable_encoder

from order_placement.services.webhook import send_webhook

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    ORDER_CONFIRMED = "order_confirmed"
    ORDER_FAILED = "order_failed"
    PRICE_CHANGE_REVIEW = "price_change_review"
    MANUAL_INTERVENTION_REQUIRED = "manual_intervention_required"
    ACCOUNT_HOLD = "account_hold"
    TWO_FACTOR_CODE_REQUIRED = "two_factor_code_required"

    def __str__(self):
        return self.value


class Notifier:
    async def deliver(self, payload: dict) -> bool:
        raise NotImplementedError

    async def notify(self, event: NotificationEvent, user_id: int, **data) -> bool:
        payload = jsonable_encoder({"event": str(event), "user_id": user_id, **data})
        logger.info(f"[Notifications] {event} for user {user_id}")
        return await self.deliver(payload)

    async def order_submitted(self, order) -> bool:
        return await self.notify(
            NotificationEvent.ORDER_CONFIRMED,
            order.user_id,
            order_id=order.id,
            supplier=order.supplier.name,
            confirmation_number=order.confirmation_number,
            total_amount=order.total_amount,
            delivery_date=order.delivery_date,
        )

    async def order_failed(self, order) -> bool:
        return await self.notify(
            NotificationEvent.ORDER_FAILED,
            order.user_id,
            order_id=order.id,
            supplier=order.supplier.name,
            error_message=order.error_message,
        )

    async def price_change_review(self, order, changes: Optional[list] = None) -> bool:
        return await self.notify(
            NotificationEvent.PRICE_CHANGE_REVIEW,
            order.user_id,
            order_id=order.id,
            supplier=order.supplier.name,
            message=order.error_message,
            changes=changes or [],
        )

    async def manual_intervention_required(self, order, reason: str, url: Optional[str] = None) -> bool:
        return await self.notify(
            NotificationEvent.MANUAL_INTERVENTION_REQUIRED,
            order.user_id,
            order_id=order.id,
            supplier=order.supplier.name,
            reason=reason,
            url=url,
        )

    async def account_hold(self, credential, reason: str, order_id: Optional[int] = None) -> bool:
        return await self.notify(
            NotificationEvent.ACCOUNT_HOLD,
            credential.user_id,
            order_id=order_id,
            supplier=credential.supplier.name,
            reason=reason,
        )

    async def two_factor_code_required(self, challenge) -> bool:
        return await self.notify(
            NotificationEvent.TWO_FACTOR_CODE_REQUIRED,
            challenge.user_id,
            order_id=challenge.order_id,
            supplier=challenge.credential.supplier.name,
            session_token=challenge.session_token,
            prompt_message=challenge.prompt_message,
            expires_at=challenge.expires_at,
        )


class WebhookNotifier(Notifier):
    async def deliver(self, payload: dict) -> bool:
        return await send_webhook(payload)
