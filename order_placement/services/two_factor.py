"""Two-factor challenge protocol.

When an adapter needs a human-entered code the running job persists a
challenge, tells the user and ends. A later code submission verifies the code
with the supplier and dispatches the follow-up job for whatever was
interrupted. Nothing here retries on its own.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from order_placement.adapters.base import ErrorKind, invoke
from order_placement.adapters.errors import TwoFactorRequired
from order_placement.adapters.registry import build_adapter
from order_placement.core.config import settings
from order_placement.core.enums import ChallengeRequestType, ChallengeStatus, OrderStatus
from order_placement.core.exceptions import ChallengeNotFoundError
from order_placement.core.metrics import challenge_events
from order_placement.models.order import Order
from order_placement.models.supplier_credential import SupplierCredential
from order_placement.models.two_factor_challenge import TwoFactorChallenge, generate_session_token
from order_placement.schemas.two_factor import CancelledMessage, CodeResultMessage, TwoFactorRequiredMessage
from order_placement.services.message_bus import MessageBus
from order_placement.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class TwoFactorChallengeManager:
    def __init__(
        self,
        db: AsyncSession,
        bus: MessageBus,
        dispatcher,
        adapter_factory: Callable = build_adapter,
        now: Optional[datetime] = None,
    ):
        self.db = db
        self.bus = bus
        self.dispatcher = dispatcher
        self.adapter_factory = adapter_factory
        self.now = now

    def _now(self) -> datetime:
        return self.now or utcnow()

    async def open_challenge(
        self,
        signal: TwoFactorRequired,
        credential: SupplierCredential,
        request_type: ChallengeRequestType,
        order: Optional[Order] = None,
    ) -> TwoFactorChallenge:
        """Persist a challenge for ``signal`` and tell the user about it.

        Older pending challenges for the same user and credential are
        cancelled so only the newest one can be answered. Commits the session.
        """
        now = self._now()
        superseded = await self.db.execute(
            update(TwoFactorChallenge)
            .where(
                TwoFactorChallenge.user_id == credential.user_id,
                TwoFactorChallenge.supplier_credential_id == credential.id,
                TwoFactorChallenge.status == ChallengeStatus.PENDING,
            )
            .values(status=ChallengeStatus.CANCELLED)
            .execution_options(synchronize_session=False)
        )
        if superseded.rowcount:
            logger.info(f"[TwoFactor] Superseded {superseded.rowcount} pending challenge(s) for credential {credential.id}")

        expires_in = timedelta(seconds=signal.expires_in) if signal.expires_in else timedelta(
            minutes=settings.TWO_FACTOR_TIMEOUT_MINUTES
        )
        challenge = TwoFactorChallenge(
            user_id=credential.user_id,
            supplier_credential_id=credential.id,
            credential=credential,
            order_id=order.id if order is not None else None,
            session_token=signal.session_token or generate_session_token(),
            adapter_request_id=str(signal.request_id) if signal.request_id is not None else None,
            request_type=request_type,
            two_fa_type=str(signal.two_fa_type) if signal.two_fa_type else None,
            prompt_message=signal.prompt_message,
            status=ChallengeStatus.PENDING,
            attempts=0,
            expires_at=now + expires_in,
        )
        self.db.add(challenge)

        credential.two_fa_enabled = True
        credential.two_fa_type = challenge.two_fa_type
        await self.db.commit()

        challenge_events.labels(event="opened").inc()
        logger.info(
            f"[TwoFactor] Challenge {challenge.id} opened for user {challenge.user_id} "
            f"({credential.supplier.name}, {request_type})"
        )

        await self.bus.publish(challenge.user_id, TwoFactorRequiredMessage(
            session_token=challenge.session_token,
            prompt_message=challenge.prompt_message,
            expires_at=challenge.expires_at,
            supplier_name=credential.supplier.name,
            two_fa_type=challenge.two_fa_type,
            request_type=request_type,
            order_id=challenge.order_id,
        ))
        self.dispatcher.notify_two_factor(challenge.id)
        return challenge

    async def find(self, session_token: str, user_id: int) -> TwoFactorChallenge:
        res = await self.db.execute(
            select(TwoFactorChallenge).where(
                TwoFactorChallenge.session_token == session_token,
                TwoFactorChallenge.user_id == user_id,
            )
        )
        challenge = res.scalars().first()
        if challenge is None:
            raise ChallengeNotFoundError("Invalid or expired request")
        return challenge

    async def pending_for_user(self, user_id: int) -> List[TwoFactorChallenge]:
        res = await self.db.execute(
            select(TwoFactorChallenge)
            .where(
                TwoFactorChallenge.user_id == user_id,
                TwoFactorChallenge.status == ChallengeStatus.PENDING,
                TwoFactorChallenge.expires_at > self._now(),
            )
            .order_by(TwoFactorChallenge.created_at.desc())
        )
        return list(res.scalars().all())

    async def submit_code(self, session_token: str, code: str, user_id: int) -> CodeResultMessage:
        """Check one code against the supplier.

        Raises ``ChallengeNotFoundError`` for a token the user does not own.
        Every other rejection comes back as an unsuccessful result.
        """
        now = self._now()
        challenge = await self.find(session_token, user_id)

        if challenge.status != ChallengeStatus.PENDING:
            return self._result(challenge, False, "Request has expired or been processed")
        if challenge.expired(now):
            challenge.mark_expired()
            await self.db.commit()
            challenge_events.labels(event="expired").inc()
            return self._result(challenge, False, "Request expired")
        if challenge.attempts >= challenge.max_attempts:
            return self._result(challenge, False, "Max attempts exceeded")

        # Claim the attempt; a concurrent submission sees rowcount 0
        claimed = await self.db.execute(
            update(TwoFactorChallenge)
            .where(
                TwoFactorChallenge.id == challenge.id,
                TwoFactorChallenge.status == ChallengeStatus.PENDING,
                TwoFactorChallenge.attempts < challenge.max_attempts,
            )
            .values(
                attempts=TwoFactorChallenge.attempts + 1,
                status=ChallengeStatus.SUBMITTED,
                code_submitted=code,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(challenge)
        if claimed.rowcount == 0:
            return self._result(challenge, False, "Request has expired or been processed")

        credential = challenge.credential
        try:
            adapter = self.adapter_factory(credential)
            try:
                # A code is single use, so a timed-out check is not re-sent
                verified = await invoke(adapter, "verify_two_factor_code", session_token, code, retries=0)
            finally:
                await invoke(adapter, "close")
        except Exception:
            logger.error(f"[TwoFactor] Code verification crashed for challenge {challenge.id}", exc_info=True)
            await self._release_attempt(challenge)
            raise

        if verified.kind == ErrorKind.NOT_IMPLEMENTED:
            # The resumed job enters the recorded code itself
            logger.info(f"[TwoFactor] Adapter cannot verify codes, accepting challenge {challenge.id} optimistically")
            success, error = True, None
        elif verified.ok:
            value = verified.value or {}
            success, error = bool(value.get("success")), value.get("error")
        else:
            logger.warning(f"[TwoFactor] Code verification errored for challenge {challenge.id}: {verified.message}")
            success, error = False, "Verification failed. Please try again."

        if success:
            challenge.mark_verified(now)
            if verified.ok:
                credential.mark_active(now)
            await self.db.commit()
            challenge_events.labels(event="verified").inc()
            logger.info(f"[TwoFactor] Challenge {challenge.id} verified")
            result = self._result(challenge, True)
            await self.bus.publish(challenge.user_id, result)
            await self._resume(challenge)
            return result

        if challenge.attempts >= challenge.max_attempts:
            challenge.mark_failed()
            await self.db.commit()
            challenge_events.labels(event="failed").inc()
            logger.info(f"[TwoFactor] Challenge {challenge.id} failed after {challenge.attempts} attempts")
            result = self._result(challenge, False, "Max attempts exceeded")
        else:
            challenge.status = ChallengeStatus.PENDING
            await self.db.commit()
            challenge_events.labels(event="rejected").inc()
            result = self._result(challenge, False, error or "Invalid code", can_retry=True)
        await self.bus.publish(challenge.user_id, result)
        return result

    async def _release_attempt(self, challenge: TwoFactorChallenge) -> None:
        """Put a claimed challenge back so it is not left ``submitted``."""
        challenge_id = challenge.id
        exhausted = challenge.attempts >= challenge.max_attempts
        await self.db.rollback()
        await self.db.execute(
            update(TwoFactorChallenge)
            .where(TwoFactorChallenge.id == challenge_id, TwoFactorChallenge.status == ChallengeStatus.SUBMITTED)
            .values(status=ChallengeStatus.FAILED if exhausted else ChallengeStatus.PENDING)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    @staticmethod
    def _result(
        challenge: TwoFactorChallenge, success: bool, error: Optional[str] = None, can_retry: bool = False
    ) -> CodeResultMessage:
        return CodeResultMessage(
            session_token=challenge.session_token,
            success=success,
            error=error,
            can_retry=can_retry,
            attempts_remaining=challenge.attempts_remaining(),
        )

    async def _resume(self, challenge: TwoFactorChallenge) -> None:
        credential = challenge.credential
        order_id = challenge.order_id

        if challenge.request_type == ChallengeRequestType.LOGIN:
            self.dispatcher.refresh_session(credential.id, order_id=order_id)
        elif challenge.request_type == ChallengeRequestType.CHECKOUT:
            if order_id is None:
                order_id = await self._waiting_order_id(challenge)
            if order_id is not None:
                self.dispatcher.place_order(order_id, resume_checkout=True)
        elif challenge.request_type == ChallengeRequestType.PRICE_REFRESH:
            if order_id is not None:
                self.dispatcher.verify_prices(order_id)
            else:
                self.dispatcher.refresh_prices(challenge.user_id, supplier_id=credential.supplier_id)
        logger.info(f"[TwoFactor] Dispatched {challenge.request_type} follow-up for challenge {challenge.id}")

    async def _waiting_order_id(self, challenge: TwoFactorChallenge) -> Optional[int]:
        res = await self.db.execute(
            select(Order.id)
            .where(
                Order.user_id == challenge.user_id,
                Order.supplier_id == challenge.credential.supplier_id,
                Order.status == OrderStatus.PENDING_MANUAL,
            )
            .order_by(Order.updated_at.desc())
        )
        return res.scalars().first()

    async def cancel(self, session_token: str, user_id: int) -> TwoFactorChallenge:
        challenge = await self.find(session_token, user_id)
        if challenge.status == ChallengeStatus.PENDING:
            challenge.mark_cancelled()
            await self.db.commit()
            challenge_events.labels(event="cancelled").inc()
            logger.info(f"[TwoFactor] Challenge {challenge.id} cancelled by user {user_id}")
        await self.bus.publish(user_id, CancelledMessage(session_token=session_token))
        return challenge

    async def expire_stale(self) -> int:
        """Expire unanswered challenges, and submissions whose check never finished."""
        now = self._now()
        # A submission still inside its verification call is left alone
        abandoned_before = now - timedelta(seconds=settings.ADAPTER_CALL_TIMEOUT)
        res = await self.db.execute(
            update(TwoFactorChallenge)
            .where(
                or_(
                    and_(
                        TwoFactorChallenge.status == ChallengeStatus.PENDING,
                        TwoFactorChallenge.expires_at <= now,
                    ),
                    and_(
                        TwoFactorChallenge.status == ChallengeStatus.SUBMITTED,
                        TwoFactorChallenge.expires_at <= abandoned_before,
                    ),
                )
            )
            .values(status=ChallengeStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if res.rowcount:
            challenge_events.labels(event="expired").inc(res.rowcount)
            logger.info(f"[TwoFactor] Expired {res.rowcount} stale challenge(s)")
        return res.rowcount
