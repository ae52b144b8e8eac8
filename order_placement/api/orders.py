import logging
from collections import Counter
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from typing import Optional, List

from order_placement.db.session import get_db
from order_placement.models.order import Order
from order_placement.schemas.order import (
    BatchSubmitOut,
    BatchVerificationStatus,
    OrderActionOut,
    OrderOut,
    PlacementStatusOut,
    SkipVerification,
    SubmitOptions,
    VerificationOut,
)
from order_placement.core.security import get_current_user
from order_placement.core.audit_decorator import audit_log
from order_placement.core.rate_limit import check_rate_limit
from order_placement.core.auth_utils import check_ownership, check_not_found, filter_by_user
from order_placement.core.response_builders import (
    build_order_response,
    build_order_response_list,
    build_placement_status,
    build_verification_response,
)
from order_placement.core.enums import AuditAction, OrderStatus, VerificationStatus
from order_placement.core.exceptions import InvalidTransitionError, OrderNotClaimableError
from order_placement.services.placement import cancel_order as cancel_unstarted_order, reserve_order
from order_placement.services.tasks import CeleryDispatcher, get_dispatcher
from order_placement.utils.idempotency import get_idempotent, set_idempotent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


async def _get_order(db: AsyncSession, order_id: int, current_user, for_update: bool = False) -> Order:
    query = select(Order).where(Order.id == order_id)
    if for_update:
        # Row lock so a concurrent claim cannot interleave with an ORM transition.
        query = query.with_for_update()
    res = await db.execute(query)
    order = res.scalars().first()
    check_not_found(order, "Order", order_id)
    check_ownership(order, current_user, "Order")
    return order


async def _batch_orders(db: AsyncSession, batch_id: str, current_user, for_update: bool = False) -> List[Order]:
    q = filter_by_user(select(Order).where(Order.batch_id == batch_id), Order, current_user)
    if for_update:
        q = q.with_for_update()
    res = await db.execute(q.order_by(Order.id))
    orders = list(res.scalars().all())
    if not orders:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")
    return orders


def _conflict(e: Exception) -> HTTPException:
    return HTTPException(status_code=409, detail=str(e))


@router.get("/batches/{batch_id}/verification-status", response_model=BatchVerificationStatus)
async def batch_verification_status(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user)
):
    orders = await _batch_orders(db, batch_id, current_user)
    counts = Counter(str(o.verification_status or VerificationStatus.PENDING) for o in orders)
    complete = all(o.status != OrderStatus.VERIFYING for o in orders)
    return BatchVerificationStatus(
        batch_id=batch_id,
        complete=complete,
        counts=dict(counts),
        orders=[build_verification_response(o) for o in orders],
    )


@router.post("/batches/{batch_id}/verify-prices", response_model=BatchSubmitOut)
@audit_log(AuditAction.VERIFY_PRICES)
async def verify_batch_prices(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user),
    dispatcher: CeleryDispatcher = Depends(get_dispatcher),
):
    await check_rate_limit(int(current_user.id))

    queued, skipped = [], {}
    for order in await _batch_orders(db, batch_id, current_user, for_update=True):
        try:
            order.start_verification()
            queued.append(order.id)
        except InvalidTransitionError:
            skipped[order.id] = str(order.status)
    await db.commit()

    if queued:
        dispatcher.verify_batch(queued)
    return BatchSubmitOut(batch_id=batch_id, queued=queued, skipped=skipped)


@router.post("/batches/{batch_id}/submit", response_model=BatchSubmitOut)
@audit_log(AuditAction.SUBMIT_BATCH)
async def submit_batch(
    batch_id: str,
    options: Optional[SubmitOptions] = None,
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user),
    dispatcher: CeleryDispatcher = Depends(get_dispatcher),
):
    await check_rate_limit(int(current_user.id))
    options = options or SubmitOptions()

    # A refused reservation rolls back and expires the loaded orders
    order_ids = [order.id for order in await _batch_orders(db, batch_id, current_user)]

    queued, skipped = [], {}
    for order_id in order_ids:
        try:
            token = await reserve_order(db, order_id)
        except OrderNotClaimableError as e:
            skipped[order_id] = str(e.status)
            continue
        dispatcher.place_order(
            order_id,
            placement_token=token,
            accept_price_changes=options.accept_price_changes,
            skip_warnings=options.skip_warnings,
        )
        queued.append(order_id)

    logger.info(f"Batch {batch_id}: queued {len(queued)} order(s), skipped {len(skipped)}")
    return BatchSubmitOut(batch_id=batch_id, queued=queued, skipped=skipped)


@router.get("/", response_model=List[OrderOut])
async def list_orders(
    status: Optional[OrderStatus] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user)
):
    q = filter_by_user(select(Order), Order, current_user)

    if status:
        q = q.where(Order.status == status)

    q = q.order_by(Order.id.desc()).limit(limit).offset(offset)
    res = await db.execute(q)
    orders = res.scalars().all()

    return build_order_response_list(orders)


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user)
):
    order = await _get_order(db, order_id, current_user)
    return build_order_response(order)


@router.post("/{order_id}/submit", response_model=OrderActionOut, status_code=202)
@audit_log(AuditAction.SUBMIT_ORDER)
async def submit_order(
    order_id: int,
    options: Optional[SubmitOptions] = None,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user),
    dispatcher: CeleryDispatcher = Depends(get_dispatcher),
):
    """Queue an order for placement.

    The order moves to ``processing`` here, so a second submit (or a
    double-click) is refused with 409 instead of queueing a duplicate job.
    Repeating the same ``Idempotency-Key`` returns the first response.
    """
    await check_rate_limit(int(current_user.id))
    options = options or SubmitOptions()

    cached = await get_idempotent(int(current_user.id), idempotency_key)
    if cached:
        return cached

    await _get_order(db, order_id, current_user)
    try:
        token = await reserve_order(db, order_id)
    except OrderNotClaimableError as e:
        raise _conflict(e)

    dispatcher.place_order(
        order_id,
        placement_token=token,
        accept_price_changes=options.accept_price_changes,
        skip_warnings=options.skip_warnings,
    )
    response = OrderActionOut(order_id=order_id, status=OrderStatus.PROCESSING, queued=True)
    await set_idempotent(int(current_user.id), idempotency_key, response.model_dump(mode="json"))
    return response


@router.post("/{order_id}/cancel", response_model=OrderActionOut)
@audit_log(AuditAction.CANCEL_ORDER)
async def cancel_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user)
):
    await check_rate_limit(int(current_user.id))

    await _get_order(db, order_id, current_user)
    try:
        await cancel_unstarted_order(db, order_id)
    except InvalidTransitionError as e:
        raise _conflict(e)

    return OrderActionOut(order_id=order_id, status=OrderStatus.CANCELLED)


@router.post("/{order_id}/retry", response_model=OrderActionOut, status_code=202)
@audit_log(AuditAction.RETRY_ORDER)
async def retry_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user),
    dispatcher: CeleryDispatcher = Depends(get_dispatcher),
):
    await check_rate_limit(int(current_user.id))

    order = await _get_order(db, order_id, current_user, for_update=True)
    try:
        order.reset_for_retry()
    except InvalidTransitionError as e:
        raise _conflict(e)
    await db.commit()

    try:
        token = await reserve_order(db, order_id)
    except OrderNotClaimableError as e:
        raise _conflict(e)
    dispatcher.place_order(order_id, placement_token=token)

    return OrderActionOut(order_id=order_id, status=OrderStatus.PROCESSING, queued=True)


@router.get("/{order_id}/placement-status", response_model=PlacementStatusOut)
async def placement_status(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user)
):
    order = await _get_order(db, order_id, current_user)
    return build_placement_status(order)


@router.post("/{order_id}/verify-prices", response_model=VerificationOut, status_code=202)
@audit_log(AuditAction.VERIFY_PRICES)
async def verify_prices(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user),
    dispatcher: CeleryDispatcher = Depends(get_dispatcher),
):
    await check_rate_limit(int(current_user.id))

    order = await _get_order(db, order_id, current_user, for_update=True)
    try:
        order.start_verification()
    except InvalidTransitionError as e:
        raise _conflict(e)
    await db.commit()

    dispatcher.verify_prices(order_id)
    return build_verification_response(order)


@router.post("/{order_id}/accept-price-changes", response_model=OrderOut)
@audit_log(AuditAction.ACCEPT_PRICE_CHANGES)
async def accept_price_changes(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user)
):
    await check_rate_limit(int(current_user.id))

    order = await _get_order(db, order_id, current_user, for_update=True)
    try:
        order.accept_price_changes()
    except InvalidTransitionError as e:
        raise _conflict(e)
    await db.commit()

    return build_order_response(order)


@router.post("/{order_id}/skip-verification", response_model=VerificationOut)
@audit_log(AuditAction.SKIP_VERIFICATION)
async def skip_verification(
    order_id: int,
    payload: Optional[SkipVerification] = None,
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user)
):
    await check_rate_limit(int(current_user.id))

    order = await _get_order(db, order_id, current_user, for_update=True)
    if order.status not in (OrderStatus.PENDING, OrderStatus.VERIFYING, OrderStatus.PRICE_CHANGED):
        raise HTTPException(status_code=409, detail=f"Order {order_id} is {order.status} and cannot skip verification")
    reason = payload.reason if payload and payload.reason else "Skipped by user"
    order.skip_verification(reason)
    await db.commit()

    return build_verification_response(order)
