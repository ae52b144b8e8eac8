import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select, case
from sqlalchemy.ext.asyncio import AsyncSession

from order_placement.adapters.base import ErrorKind, invoke
from order_placement.adapters.registry import build_adapter
from order_placement.core.enums import ChallengeRequestType, CredentialStatus, OrderStatus
from order_placement.models.order import Order
from order_placement.models.supplier_credential import SupplierCredential
from order_placement.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


async def find_credential(db: AsyncSession, user_id: int, supplier_id: int) -> Optional[SupplierCredential]:
    res = await db.execute(
        select(SupplierCredential).where(
            SupplierCredential.user_id == user_id,
            SupplierCredential.supplier_id == supplier_id,
        )
    )
    return res.scalars().first()


async def credential_id_for_order(db: AsyncSession, order_id: int) -> Optional[int]:
    """The login whose supplier session work on this order will use."""
    order = await db.get(Order, order_id)
    if order is None:
        return None
    credential = await find_credential(db, order.user_id, order.supplier_id)
    return credential.id if credential is not None else None


async def usable_credentials(
    db: AsyncSession, user_id: int, supplier_id: int, include_failed: bool = False
) -> List[SupplierCredential]:
    """Credentials that may open a session, active ones first.

    Password suppliers can re-login from a failed credential, so callers pass
    ``include_failed`` for them.
    """
    statuses = [CredentialStatus.ACTIVE]
    if include_failed:
        statuses.append(CredentialStatus.FAILED)
    res = await db.execute(
        select(SupplierCredential)
        .where(
            SupplierCredential.user_id == user_id,
            SupplierCredential.supplier_id == supplier_id,
            SupplierCredential.status.in_(statuses),
            SupplierCredential.account_on_hold.is_(False),
        )
        .order_by(case((SupplierCredential.status == CredentialStatus.ACTIVE, 0), else_=1), SupplierCredential.id)
    )
    return list(res.scalars().all())


async def refresh_session(
    db: AsyncSession,
    credential_id: int,
    adapter_factory: Callable = build_adapter,
    challenges=None,
    dispatcher=None,
    order_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Re-open the supplier session for a credential after a verified code.

    Tries a soft refresh first and falls back to a full login. If the
    supplier asks for another code a new LOGIN challenge is opened. When the
    session is back and ``order_id`` is waiting on a person, placement is
    queued again.
    """
    now = now or utcnow()
    credential = await db.get(SupplierCredential, credential_id)
    if credential is None:
        logger.warning(f"[SessionRefresh] Credential {credential_id} not found")
        return False

    adapter = adapter_factory(credential)
    try:
        result = await invoke(adapter, "soft_refresh")
        if not (result.ok and result.value) and result.kind != ErrorKind.TWO_FACTOR_REQUIRED:
            result = await invoke(adapter, "login")
    finally:
        await invoke(adapter, "close")

    if result.kind == ErrorKind.TWO_FACTOR_REQUIRED:
        if challenges is not None:
            order = await db.get(Order, order_id) if order_id is not None else None
            await challenges.open_challenge(result.error, credential, ChallengeRequestType.LOGIN, order)
        return False

    if not (result.ok and result.value is not False):
        credential.mark_failed(result.message or "Session refresh failed")
        await db.commit()
        logger.warning(f"[SessionRefresh] Credential {credential_id} refresh failed: {result.message}")
        return False

    credential.mark_active(now)
    await db.commit()
    logger.info(f"[SessionRefresh] Session restored for credential {credential_id}")

    if order_id is not None and dispatcher is not None:
        order = await db.get(Order, order_id)
        if order is not None and order.status == OrderStatus.PENDING_MANUAL:
            dispatcher.place_order(order_id)
    return True
